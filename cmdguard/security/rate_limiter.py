"""Per-command rate limiting with persisted sliding windows.

Features:
- Sliding window per command, shared across processes via a state file
- Fail-safe state loading (polluted or malformed state is discarded)
- Owner-only state file with verified permissions
- Security events for rejections, resets and tampering
"""

import asyncio
import functools
import hashlib
import json
import math
import os
import time
from contextlib import ExitStack, contextmanager
from dataclasses import asdict, dataclass
from datetime import UTC, datetime
from pathlib import Path
from types import MappingProxyType
from typing import (
    Any,
    Awaitable,
    Callable,
    Dict,
    Iterator,
    List,
    Mapping,
    Optional,
    TypeVar,
)

import structlog

from ..config.settings import RateLimitRule, Settings
from ..exceptions import (
    ConfirmationRequiredError,
    RateLimitError,
    SecurityError,
    StatePersistenceError,
)
from ..utils.constants import (
    CLEANUP_AGE_MS,
    DEFAULT_RATE_LIMIT_KEY,
    MAX_CLOCK_SKEW_MS,
    MAX_ENTRIES_PER_COMMAND,
    MAX_STATE_ARRAY_LENGTH,
    MAX_TIMESTAMP_AGE_MS,
    SECURE_FILE_MODE,
)
from .audit import SecurityViolationType
from .correlation import CorrelationIdProvider
from .file_guard import atomic_write_bytes, exclusive_lock, harden_permissions
from .primitives import (
    detect_pollution,
    is_safe_command_name,
    safe_json_parse,
    sanitize_for_log,
)
from .reporter import SecurityEventReporter

logger = structlog.get_logger()

RateLimitState = Dict[str, List[int]]
T = TypeVar("T")


def _epoch_ms() -> int:
    return time.time_ns() // 1_000_000


def _iso_from_ms(millis: int) -> str:
    moment = datetime.fromtimestamp(millis / 1000, tz=UTC)
    return moment.isoformat(timespec="milliseconds").replace("+00:00", "Z")


@dataclass
class RateLimitResult:
    """Admission decision for one command invocation."""

    allowed: bool
    command: str
    current_count: int
    max: int
    window_ms: int
    retry_after_ms: int = 0
    retry_after_sec: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)


def get_user_identifier() -> str:
    """Short stable hash identifying the local account."""
    user_info = f"{os.getuid()}-{os.getgid()}-{Path.home()}"
    return hashlib.sha256(user_info.encode("utf-8")).hexdigest()[:16]


def _is_valid_timestamp(value: Any, now: int) -> bool:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return False
    if not math.isfinite(value) or value <= 0:
        return False
    return now - MAX_TIMESTAMP_AGE_MS <= value <= now + MAX_CLOCK_SKEW_MS


def is_valid_rate_limit_state(state: Any, now: int) -> bool:
    """Validate the shape and bounds of a loaded state structure."""
    if not isinstance(state, dict):
        return False

    for command, entries in state.items():
        if not is_safe_command_name(command):
            return False
        if not isinstance(entries, list):
            return False
        if len(entries) > MAX_STATE_ARRAY_LENGTH:
            return False
        if not all(_is_valid_timestamp(ts, now) for ts in entries):
            return False

    return True


def cleanup_old_entries(state: Mapping[str, List[int]], now: int) -> RateLimitState:
    """Drop entries older than the retention age and cap each history."""
    cutoff = now - CLEANUP_AGE_MS
    cleaned: RateLimitState = {}

    for command, entries in state.items():
        recent = [ts for ts in entries if ts > cutoff][-MAX_ENTRIES_PER_COMMAND:]
        if recent:
            cleaned[command] = recent

    return cleaned


class RateLimiter:
    """Sliding-window admission control for CLI commands."""

    def __init__(
        self,
        config: Settings,
        reporter: Optional[SecurityEventReporter] = None,
        correlation: Optional[CorrelationIdProvider] = None,
        clock: Optional[Callable[[], int]] = None,
    ):
        self.config = config
        self.reporter = reporter
        self.correlation = correlation
        self.clock = clock or _epoch_ms
        self.limits: Mapping[str, RateLimitRule] = MappingProxyType(
            dict(config.rate_limits)
        )
        self.state_file = config.rate_limit_file
        self.lock_path = self.state_file.with_name(f"{self.state_file.name}.lock")
        self._lock = asyncio.Lock()

        logger.info(
            "Rate limiter initialized",
            commands=len(self.limits),
            state_file=sanitize_for_log(str(self.state_file), 200),
        )

    def get_limit(self, command: str) -> RateLimitRule:
        """Limit configured for ``command``, falling back to ``default``."""
        return self.limits.get(command) or self.limits[DEFAULT_RATE_LIMIT_KEY]

    async def _report(
        self,
        violation_type: SecurityViolationType,
        details: Dict[str, Any],
        context: Optional[Mapping[str, Any]] = None,
    ) -> None:
        if self.reporter is None:
            return
        await self.reporter.log_security_violation(violation_type, details, context)

    @contextmanager
    def _state_file_lock(self) -> Iterator[None]:
        """Hold the cross-process state lock, or run unlocked if it is unavailable."""
        with ExitStack() as stack:
            try:
                stack.enter_context(exclusive_lock(self.lock_path))
            except OSError as e:
                logger.warning(
                    "Could not lock rate limit state, continuing unlocked",
                    lock_file=sanitize_for_log(str(self.lock_path), 200),
                    error=sanitize_for_log(str(e), 200),
                )
            yield

    # State I/O

    async def load_state(self) -> RateLimitState:
        """Load persisted state; anything suspicious yields an empty state."""
        safe_path = sanitize_for_log(str(self.state_file), 200)
        try:
            if not self.state_file.exists():
                return {}
            raw = self.state_file.read_text(encoding="utf-8")
        except (OSError, UnicodeDecodeError) as e:
            logger.warning(
                "Could not load rate limit state, starting fresh",
                file=safe_path,
                error=sanitize_for_log(str(e), 200),
            )
            return {}

        state = safe_json_parse(raw, allow_proto_keys=True)

        pollution = detect_pollution(state)
        if pollution:
            logger.warning(
                "Prototype pollution detected in rate limit state",
                file=safe_path,
                pollution_type=pollution["type"],
                key=pollution["key"],
            )
            await self._report(
                SecurityViolationType.RATE_LIMIT_STATE_POLLUTION,
                {
                    "file": str(self.state_file),
                    "pollutionType": pollution["type"],
                    "details": pollution["key"],
                    "path": pollution["path"],
                },
            )
            return {}

        if not is_valid_rate_limit_state(state, self.clock()):
            logger.warning(
                "Rate limit state has invalid structure, starting fresh",
                file=safe_path,
            )
            await self._report(
                SecurityViolationType.RATE_LIMIT_STATE_INVALID,
                {"file": str(self.state_file)},
            )
            return {}

        return {
            command: [int(ts) for ts in entries] for command, entries in state.items()
        }

    async def save_state(self, state: Mapping[str, List[int]]) -> bool:
        """Persist ``state`` atomically and verify owner-only permissions.

        Returns:
            True only when the write succeeded and the mode was verified
        """
        try:
            payload = json.dumps(dict(state), indent=2).encode("utf-8")
            atomic_write_bytes(self.state_file, payload)
            ok, actual = harden_permissions(self.state_file)
        except OSError as e:
            logger.warning(
                "Could not save rate limit state",
                file=sanitize_for_log(str(self.state_file), 200),
                error=sanitize_for_log(str(e), 200),
            )
            return False

        if not ok:
            logger.warning(
                "Rate limit state permissions could not be restricted",
                file=sanitize_for_log(str(self.state_file), 200),
                expected_mode=oct(SECURE_FILE_MODE),
                actual_mode=oct(actual),
            )
            await self._report(
                SecurityViolationType.RATE_LIMIT_FILE_PERMISSION_MISMATCH,
                {
                    "file": str(self.state_file),
                    "expectedMode": oct(SECURE_FILE_MODE),
                    "actualMode": oct(actual),
                },
            )
            return False

        return True

    # Admission

    async def check_rate_limit(
        self, command: str, increment: bool = True
    ) -> RateLimitResult:
        """Decide whether ``command`` may run now.

        Args:
            command: Command name
            increment: Record this invocation when it is allowed

        Returns:
            RateLimitResult describing the decision
        """
        if not is_safe_command_name(command):
            raise SecurityError(
                f"Invalid command name: {sanitize_for_log(command, 100)}"
            )

        rule = self.get_limit(command)

        async with self._lock:
            with self._state_file_lock():
                state = await self.load_state()
                now = self.clock()
                window_start = now - rule.window_ms

                entries = [ts for ts in state.get(command, []) if ts > window_start]
                current_count = len(entries)
                allowed = current_count < rule.max

                retry_after_ms = 0
                if not allowed and entries:
                    retry_after_ms = max(0, min(entries) + rule.window_ms - now)

                if allowed and increment:
                    entries.append(now)

                state[command] = entries
                await self.save_state(cleanup_old_entries(state, now))

        result = RateLimitResult(
            allowed=allowed,
            command=command,
            current_count=current_count + 1 if allowed and increment else current_count,
            max=rule.max,
            window_ms=rule.window_ms,
            retry_after_ms=retry_after_ms,
            retry_after_sec=math.ceil(retry_after_ms / 1000),
        )

        if not allowed:
            logger.warning(
                "Rate limit exceeded",
                command=command,
                correlation_id=self.correlation.get() if self.correlation else None,
                current_count=result.current_count,
                max=result.max,
                retry_after_sec=result.retry_after_sec,
            )
        return result

    async def enforce_rate_limit(
        self, command: str, context: Optional[Mapping[str, Any]] = None
    ) -> RateLimitResult:
        """Like ``check_rate_limit`` but raise when the command is rejected.

        Raises:
            RateLimitError: Carrying the full decision
        """
        result = await self.check_rate_limit(command)
        if result.allowed:
            return result

        await self._report(
            SecurityViolationType.RATE_LIMIT_EXCEEDED,
            {
                "command": command,
                "attemptedCount": result.current_count + 1,
                "maxAllowed": result.max,
                "windowMs": result.window_ms,
                "retryAfterSec": result.retry_after_sec,
            },
            context,
        )
        raise RateLimitError(f"Rate limit exceeded for command '{command}'", result)

    async def get_rate_limit_status(self) -> Dict[str, Dict[str, Any]]:
        """Usage snapshot for every configured command. Read-only."""
        state = await self.load_state()
        now = self.clock()
        status: Dict[str, Dict[str, Any]] = {}

        for command, rule in self.limits.items():
            if command == DEFAULT_RATE_LIMIT_KEY:
                continue

            entries = [ts for ts in state.get(command, []) if ts > now - rule.window_ms]
            status[command] = {
                "limit": rule.max,
                "used": len(entries),
                "remaining": max(0, rule.max - len(entries)),
                "window_ms": rule.window_ms,
                "reset_time": (
                    _iso_from_ms(min(entries) + rule.window_ms) if entries else None
                ),
            }

        return status

    async def reset_rate_limits(
        self, command: Optional[str] = None, force: bool = False
    ) -> bool:
        """Clear history for one command, or for all when ``command`` is None.

        Raises:
            ConfirmationRequiredError: Unless ``force`` is True
            StatePersistenceError: If the state could not be rewritten with
                owner-only permissions
        """
        if not force:
            raise ConfirmationRequiredError(
                "Rate limit reset requires force=True - "
                "this is a security-sensitive operation"
            )

        async with self._lock:
            with self._state_file_lock():
                state = await self.load_state()
                if command:
                    state.pop(command, None)
                else:
                    state = {}
                saved = await self.save_state(state)

        if not saved:
            raise StatePersistenceError(
                "Failed to reset rate limits: state could not be saved securely"
            )

        await self._report(
            SecurityViolationType.RATE_LIMIT_RESET,
            {"command": command or "ALL", "resetBy": get_user_identifier()},
        )
        logger.info("Rate limits reset", command=command or "ALL")
        return True


def _summarize_arg(arg: Any) -> str:
    if isinstance(arg, (dict, list, tuple, set)) or hasattr(arg, "__dict__"):
        return "[options]"
    return sanitize_for_log(str(arg), 50)


def with_rate_limit(
    limiter: RateLimiter, command_name: str
) -> Callable[[Callable[..., Awaitable[T]]], Callable[..., Awaitable[T]]]:
    """Decorate an async handler so it is admitted before it runs."""

    def decorator(handler: Callable[..., Awaitable[T]]) -> Callable[..., Awaitable[T]]:
        @functools.wraps(handler)
        async def wrapper(*args: Any, **kwargs: Any) -> T:
            await limiter.enforce_rate_limit(
                command_name,
                {
                    "command": command_name,
                    "args": [_summarize_arg(arg) for arg in args],
                },
            )
            return await handler(*args, **kwargs)

        return wrapper

    return decorator
