"""Tests for the sliding-window rate limiter."""

import asyncio
import json
import re

import pytest

from cmdguard.config import create_test_config
from cmdguard.exceptions import (
    ConfirmationRequiredError,
    RateLimitError,
    SecurityError,
    StatePersistenceError,
)
from cmdguard.security.audit import AuditLogger
from cmdguard.security.file_guard import file_mode
from cmdguard.security.rate_limiter import (
    RateLimiter,
    cleanup_old_entries,
    get_user_identifier,
    is_valid_rate_limit_state,
    with_rate_limit,
)
from cmdguard.security.reporter import SecurityEventReporter

HOUR_MS = 60 * 60 * 1000


@pytest.fixture
def config(tmp_path):
    return create_test_config(
        home_dir=str(tmp_path / "cmdguard"),
        rate_limits={
            "default": {"max": 30, "window_ms": 60_000},
            "deploy": {"max": 3, "window_ms": 60_000},
            "status": {"max": 60, "window_ms": 60_000},
        },
    )


def violations(config):
    log_path = config.audit_dir / "audit.log"
    if not log_path.exists():
        return []
    entries = [json.loads(line) for line in log_path.read_text().splitlines()]
    return [e for e in entries if e["eventType"] == "SECURITY_VIOLATION"]


def write_state(config, text):
    config.rate_limit_file.parent.mkdir(parents=True, exist_ok=True)
    config.rate_limit_file.write_text(text)


class TestSlidingWindow:
    """Test admission decisions."""

    async def test_limit_then_recovery(self, rate_limiter, clock):
        results = [await rate_limiter.check_rate_limit("deploy") for _ in range(3)]

        assert all(r.allowed for r in results)
        assert [r.current_count for r in results] == [1, 2, 3]

        denied = await rate_limiter.check_rate_limit("deploy")
        assert denied.allowed is False
        assert denied.current_count == 3
        assert denied.max == 3
        assert denied.window_ms == 60_000
        assert 0 < denied.retry_after_sec <= 60
        assert denied.retry_after_sec == -(-denied.retry_after_ms // 1000)

        clock.advance(60_000)
        recovered = await rate_limiter.check_rate_limit("deploy")
        assert recovered.allowed is True
        assert recovered.current_count == 1

    async def test_retry_after_tracks_oldest_entry(self, rate_limiter, clock):
        await rate_limiter.check_rate_limit("deploy")
        clock.advance(10_000)
        await rate_limiter.check_rate_limit("deploy")
        await rate_limiter.check_rate_limit("deploy")
        clock.advance(15_500)

        denied = await rate_limiter.check_rate_limit("deploy")

        assert denied.retry_after_ms == 60_000 - 25_500
        assert denied.retry_after_sec == 35

    async def test_check_without_increment(self, rate_limiter, config):
        for _ in range(5):
            result = await rate_limiter.check_rate_limit("deploy", increment=False)
            assert result.allowed is True
            assert result.current_count == 0

        assert json.loads(config.rate_limit_file.read_text()) == {}

    async def test_commands_are_independent(self, rate_limiter):
        for _ in range(3):
            await rate_limiter.check_rate_limit("deploy")

        assert (await rate_limiter.check_rate_limit("status")).allowed is True

    async def test_unknown_command_uses_default(self, rate_limiter):
        result = await rate_limiter.check_rate_limit("brand-new")

        assert result.max == 30
        assert rate_limiter.get_limit("brand-new") == rate_limiter.limits["default"]

    async def test_state_survives_new_instance(self, config, rate_limiter, clock):
        await rate_limiter.check_rate_limit("deploy")
        await rate_limiter.check_rate_limit("deploy")

        other = RateLimiter(config, clock=clock)
        result = await other.check_rate_limit("deploy")

        assert result.current_count == 3

    async def test_state_file_is_owner_only(self, rate_limiter, config):
        await rate_limiter.check_rate_limit("deploy")

        assert file_mode(config.rate_limit_file) == 0o600
        assert len(json.loads(config.rate_limit_file.read_text())["deploy"]) == 1

    @pytest.mark.parametrize("name", ["__proto__", "rm -rf", "a/b", "", "deploy\n"])
    async def test_unsafe_command_names_rejected(self, rate_limiter, name):
        with pytest.raises(SecurityError):
            await rate_limiter.check_rate_limit(name)

    async def test_limits_are_read_only(self, rate_limiter):
        with pytest.raises(TypeError):
            rate_limiter.limits["deploy"] = None

    async def test_concurrent_checks_do_not_over_admit(self, rate_limiter):
        results = await asyncio.gather(
            *(rate_limiter.check_rate_limit("deploy") for _ in range(10))
        )

        assert sum(r.allowed for r in results) == 3


class TestStateLoading:
    """Test fail-safe state loading."""

    async def test_missing_file(self, rate_limiter):
        assert await rate_limiter.load_state() == {}

    async def test_valid_state(self, rate_limiter, config, clock):
        now = clock()
        write_state(config, json.dumps({"deploy": [now - 1000, now - 500]}))

        assert await rate_limiter.load_state() == {"deploy": [now - 1000, now - 500]}

    @pytest.mark.parametrize(
        "text",
        [
            '{"deploy": [], "__proto__": {"polluted": true}}',
            '{"constructor": {"prototype": {"x": 1}}}',
            '{"deploy": [{"__proto__": 1}]}',
            '{"\\u005f_proto__": []}',
        ],
    )
    async def test_pollution_yields_empty_state(self, rate_limiter, config, text):
        write_state(config, text)

        assert await rate_limiter.load_state() == {}

        [event] = violations(config)
        assert event["details"]["violationType"] == "RATE_LIMIT_STATE_POLLUTION"

    @pytest.mark.parametrize(
        "state",
        [
            "[]",
            "not json",
            '{"deploy": "often"}',
            '{"deploy": [true]}',
            '{"deploy": [-1]}',
            '{"deploy": ["1700000000000"]}',
            '{"deploy": [1e400]}',
            '{"bad name": []}',
        ],
    )
    async def test_invalid_structure_yields_empty_state(
        self, rate_limiter, config, state
    ):
        write_state(config, state)

        assert await rate_limiter.load_state() == {}

        [event] = violations(config)
        assert event["details"]["violationType"] == "RATE_LIMIT_STATE_INVALID"

    async def test_out_of_range_timestamps_rejected(self, rate_limiter, config, clock):
        now = clock()
        write_state(config, json.dumps({"deploy": [now + 5 * 60_000]}))
        assert await rate_limiter.load_state() == {}

        write_state(config, json.dumps({"deploy": [now - 400 * 24 * HOUR_MS]}))
        assert await rate_limiter.load_state() == {}

    async def test_oversized_history_rejected(self, rate_limiter, config, clock):
        write_state(config, json.dumps({"deploy": [clock()] * 201}))

        assert await rate_limiter.load_state() == {}

    async def test_polluted_state_does_not_block_admission(self, rate_limiter, config):
        write_state(config, '{"__proto__": {"deploy": []}}')

        result = await rate_limiter.check_rate_limit("deploy")

        assert result.allowed is True
        assert result.current_count == 1


class TestStateHelpers:
    """Test pure state helpers."""

    def test_cleanup_drops_old_and_caps_length(self):
        now = 10 * 24 * HOUR_MS
        state = {
            "old": [now - 25 * HOUR_MS],
            "mixed": [now - 25 * HOUR_MS, now - 1000],
            "busy": list(range(now - 150, now)),
        }

        cleaned = cleanup_old_entries(state, now)

        assert "old" not in cleaned
        assert cleaned["mixed"] == [now - 1000]
        assert len(cleaned["busy"]) == 100
        assert cleaned["busy"][-1] == now - 1

    def test_state_validation(self):
        now = 10 * 24 * HOUR_MS

        assert is_valid_rate_limit_state({}, now) is True
        assert is_valid_rate_limit_state({"deploy": [now]}, now) is True
        assert is_valid_rate_limit_state({"deploy": [now + 120_000]}, now) is False
        assert is_valid_rate_limit_state({"deploy": [0]}, now) is False
        assert is_valid_rate_limit_state({"deploy": None}, now) is False
        assert is_valid_rate_limit_state([], now) is False

    def test_user_identifier(self):
        identifier = get_user_identifier()

        assert re.fullmatch(r"[0-9a-f]{16}", identifier)
        assert get_user_identifier() == identifier


class TestStateSaving:
    """Test persistence failures degrade gracefully."""

    async def test_permission_mismatch_is_reported(
        self, rate_limiter, config, monkeypatch
    ):
        monkeypatch.setattr(
            "cmdguard.security.rate_limiter.harden_permissions",
            lambda path: (False, 0o644),
        )

        assert await rate_limiter.save_state({}) is False

        [event] = violations(config)
        assert event["details"]["violationType"] == (
            "RATE_LIMIT_FILE_PERMISSION_MISMATCH"
        )
        assert event["details"]["actualMode"] == "0o644"

    async def test_write_failure_does_not_break_checks(self, rate_limiter, monkeypatch):
        def fail(*args, **kwargs):
            raise OSError("read-only file system")

        monkeypatch.setattr("cmdguard.security.rate_limiter.atomic_write_bytes", fail)

        assert await rate_limiter.save_state({}) is False
        assert (await rate_limiter.check_rate_limit("deploy")).allowed is True

    async def test_unusable_home_dir_does_not_break_checks(
        self, config, clock, tmp_path
    ):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        config.home_dir = blocker / "home"
        limiter = RateLimiter(config, clock=clock)

        result = await limiter.check_rate_limit("deploy")

        assert result.allowed is True
        assert result.current_count == 1
        assert (await limiter.get_rate_limit_status())["deploy"]["used"] == 0

    async def test_reset_that_cannot_be_saved_raises(self, config, clock, tmp_path):
        blocker = tmp_path / "blocker"
        blocker.write_text("not a directory")
        config.home_dir = blocker / "home"
        limiter = RateLimiter(config, clock=clock)

        with pytest.raises(StatePersistenceError):
            await limiter.reset_rate_limits(force=True)


class TestEnforcement:
    """Test enforce_rate_limit."""

    async def test_allowed_returns_result(self, rate_limiter):
        result = await rate_limiter.enforce_rate_limit("deploy")

        assert result.allowed is True

    async def test_rejection_raises_and_reports(self, rate_limiter, config):
        for _ in range(3):
            await rate_limiter.enforce_rate_limit("deploy")

        with pytest.raises(RateLimitError) as exc_info:
            await rate_limiter.enforce_rate_limit(
                "deploy", {"command": "deploy", "user_id": "alice"}
            )

        error = exc_info.value
        assert error.result.allowed is False
        assert error.result.command == "deploy"
        assert "deploy" in str(error)

        [event] = violations(config)
        assert event["details"] == {
            "violationType": "RATE_LIMIT_EXCEEDED",
            "command": "deploy",
            "attemptedCount": 4,
            "maxAllowed": 3,
            "windowMs": 60_000,
            "retryAfterSec": error.result.retry_after_sec,
        }
        assert event["context"] == {"command": "deploy", "userId": "alice"}

    async def test_rejection_raises_even_if_reporting_fails(self, config, clock):
        class BrokenAuditLogger:
            async def log_security_violation(self, *args):
                raise OSError("audit disk full")

        limiter = RateLimiter(
            config, reporter=SecurityEventReporter(BrokenAuditLogger()), clock=clock
        )
        for _ in range(3):
            await limiter.enforce_rate_limit("deploy")

        with pytest.raises(RateLimitError):
            await limiter.enforce_rate_limit("deploy")

    async def test_decorator(self, rate_limiter):
        calls = []

        @with_rate_limit(rate_limiter, "deploy")
        async def handler(target, options):
            calls.append(target)
            return f"deployed {target}"

        for _ in range(3):
            assert await handler("web", {"force": True}) == "deployed web"

        with pytest.raises(RateLimitError):
            await handler("web", {"force": True})

        assert calls == ["web", "web", "web"]
        assert handler.__name__ == "handler"


class TestStatusAndReset:
    """Test introspection and reset."""

    async def test_status_snapshot(self, rate_limiter, config, clock):
        await rate_limiter.check_rate_limit("deploy")
        clock.advance(1000)
        await rate_limiter.check_rate_limit("deploy")
        before = config.rate_limit_file.read_bytes()

        status = await rate_limiter.get_rate_limit_status()

        assert set(status) == {"deploy", "status"}
        assert status["deploy"]["limit"] == 3
        assert status["deploy"]["used"] == 2
        assert status["deploy"]["remaining"] == 1
        assert status["deploy"]["window_ms"] == 60_000
        assert status["deploy"]["reset_time"].endswith("Z")
        assert status["status"]["used"] == 0
        assert status["status"]["reset_time"] is None
        assert config.rate_limit_file.read_bytes() == before

    async def test_reset_requires_force(self, rate_limiter, config):
        await rate_limiter.check_rate_limit("deploy")

        with pytest.raises(ConfirmationRequiredError):
            await rate_limiter.reset_rate_limits("deploy")

        assert "deploy" in json.loads(config.rate_limit_file.read_text())
        assert violations(config) == []

    async def test_reset_single_command(self, rate_limiter, config):
        await rate_limiter.check_rate_limit("deploy")
        await rate_limiter.check_rate_limit("status")

        assert await rate_limiter.reset_rate_limits("deploy", force=True) is True

        assert set(json.loads(config.rate_limit_file.read_text())) == {"status"}
        [event] = violations(config)
        assert event["details"]["violationType"] == "RATE_LIMIT_RESET"
        assert event["details"]["command"] == "deploy"
        assert event["details"]["resetBy"] == get_user_identifier()

    async def test_reset_all(self, rate_limiter, config):
        for _ in range(3):
            await rate_limiter.check_rate_limit("deploy")

        await rate_limiter.reset_rate_limits(force=True)

        assert json.loads(config.rate_limit_file.read_text()) == {}
        assert (await rate_limiter.check_rate_limit("deploy")).allowed is True
        [event] = violations(config)
        assert event["details"]["command"] == "ALL"


def test_audit_logger_is_optional(config):
    """A limiter without a reporter still works."""
    limiter = RateLimiter(config)

    assert asyncio.run(limiter.check_rate_limit("deploy")).allowed is True
    assert not AuditLogger(config).log_path.exists()
