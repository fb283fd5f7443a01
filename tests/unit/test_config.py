"""Test configuration loading and validation."""

import os
from pathlib import Path

import pytest
from pydantic import ValidationError

from cmdguard.config import RateLimitRule, Settings, create_test_config, load_config
from cmdguard.exceptions import ConfigurationError
from cmdguard.utils.constants import DEFAULT_RATE_LIMITS


@pytest.fixture(autouse=True)
def isolated_env(monkeypatch, tmp_path):
    """Run each test away from any real .env file or CMDGUARD_ variables."""
    monkeypatch.chdir(tmp_path)
    monkeypatch.delenv("ENVIRONMENT", raising=False)
    for name in ("HOME_DIR", "RATE_LIMITS", "LOG_LEVEL", "DEBUG", "VERBOSE"):
        monkeypatch.delenv(f"CMDGUARD_{name}", raising=False)


def test_settings_defaults():
    """Test default values."""
    settings = Settings(_env_file=None)

    assert settings.home_dir == Path.home() / ".cmdguard"
    assert settings.audit_max_log_bytes == 5 * 1024 * 1024
    assert settings.audit_max_files == 10
    assert settings.audit_max_entry_bytes == 10 * 1024
    assert settings.audit_verify_hours == 168
    assert settings.log_level == "INFO"
    assert settings.debug is False


def test_default_rate_limits_table():
    """Every built-in limit is available, including the fallback."""
    settings = Settings(_env_file=None)

    assert set(settings.rate_limits) == set(DEFAULT_RATE_LIMITS)
    assert settings.rate_limits["deploy"] == RateLimitRule(max=5, window_ms=300_000)
    assert settings.rate_limits["restore"].max == 3
    assert settings.rate_limits["default"].window_ms == 60_000


def test_derived_paths(tmp_path):
    """File locations hang off home_dir."""
    settings = Settings(_env_file=None, home_dir=str(tmp_path))

    assert settings.rate_limit_file == tmp_path / "rate-limits.json"
    assert settings.audit_dir == tmp_path / "audit"
    assert settings.audit_key_file == tmp_path / "audit" / ".audit.key"
    assert settings.audit_keys_dir == tmp_path / "audit" / "keys"


def test_home_dir_expands_user():
    """Tilde paths are expanded."""
    settings = Settings(_env_file=None, home_dir="~/guard-state")

    assert settings.home_dir == Path.home() / "guard-state"


def test_blank_home_dir_rejected():
    """An empty home_dir is a validation error."""
    with pytest.raises(ValidationError):
        Settings(_env_file=None, home_dir="   ")


def test_environment_variables(monkeypatch, tmp_path):
    """Settings are read from CMDGUARD_ variables."""
    monkeypatch.setenv("CMDGUARD_HOME_DIR", str(tmp_path / "state"))
    monkeypatch.setenv("CMDGUARD_LOG_LEVEL", "warning")
    monkeypatch.setenv(
        "CMDGUARD_RATE_LIMITS",
        '{"default": {"max": 2, "windowMs": 1000},'
        ' "deploy": {"max": 1, "window_ms": 5}}',
    )

    settings = Settings(_env_file=None)

    assert settings.home_dir == tmp_path / "state"
    assert settings.log_level == "WARNING"
    assert settings.rate_limits["default"] == RateLimitRule(max=2, window_ms=1000)
    assert settings.rate_limits["deploy"].window_ms == 5


def test_rate_limits_require_default():
    """A table without the fallback entry is rejected."""
    with pytest.raises(ValidationError) as exc_info:
        Settings(_env_file=None, rate_limits={"deploy": {"max": 1, "window_ms": 10}})

    assert "default" in str(exc_info.value)


@pytest.mark.parametrize(
    "name", ["__proto__", "bad name", "x" * 101, "a.b", "deploy\n"]
)
def test_rate_limits_reject_unsafe_names(name):
    """Command names must be safe to persist as state keys."""
    limits = {
        "default": {"max": 1, "window_ms": 10},
        name: {"max": 1, "window_ms": 10},
    }
    with pytest.raises(ValidationError):
        Settings(_env_file=None, rate_limits=limits)


def test_rate_limit_rule_bounds():
    """Limits must be positive."""
    with pytest.raises(ValidationError):
        RateLimitRule(max=0, window_ms=1000)
    with pytest.raises(ValidationError):
        RateLimitRule(max=1, window_ms=0)


def test_invalid_log_level():
    """Unknown log levels are rejected."""
    with pytest.raises(ValidationError):
        Settings(_env_file=None, log_level="chatty")


def test_create_test_config(tmp_path):
    """Test settings apply testing overrides and create home_dir."""
    home = tmp_path / "guard"
    settings = create_test_config(home_dir=str(home), audit_max_files=5)

    assert home.is_dir()
    assert settings.home_dir == home
    assert settings.audit_max_files == 5
    assert settings.audit_max_log_bytes == 64 * 1024
    assert settings.debug is True


def test_load_config_development(monkeypatch, tmp_path):
    """Development environment overrides are applied."""
    monkeypatch.setenv("CMDGUARD_HOME_DIR", str(tmp_path / "dev"))

    settings = load_config(env="development")

    assert settings.debug is True
    assert settings.log_level == "DEBUG"
    assert settings.home_dir == tmp_path / "dev"


def test_load_config_production_by_default(monkeypatch, tmp_path):
    """Without ENVIRONMENT the production profile is used."""
    monkeypatch.setenv("CMDGUARD_HOME_DIR", str(tmp_path / "prod"))
    monkeypatch.setenv("CMDGUARD_DEBUG", "true")

    settings = load_config()

    assert settings.debug is False
    assert settings.log_level == "INFO"


def test_load_config_reads_env_file(monkeypatch, tmp_path):
    """A config file is loaded before settings are built."""
    # load_dotenv writes into os.environ; keep that out of other tests
    monkeypatch.setattr(os, "environ", dict(os.environ))
    env_file = tmp_path / "guard.env"
    env_file.write_text(f"CMDGUARD_HOME_DIR={tmp_path / 'from-file'}\n")

    settings = load_config(env="production", config_file=env_file)

    assert settings.home_dir == tmp_path / "from-file"


def test_load_config_rejects_file_as_home_dir(monkeypatch, tmp_path):
    """home_dir must be a directory."""
    not_a_dir = tmp_path / "plain-file"
    not_a_dir.write_text("x")
    monkeypatch.setenv("CMDGUARD_HOME_DIR", str(not_a_dir))

    with pytest.raises(ConfigurationError):
        load_config(env="production")


def test_load_config_rejects_entry_larger_than_log(monkeypatch, tmp_path):
    """An entry cap above the rotation size is inconsistent."""
    monkeypatch.setenv("CMDGUARD_HOME_DIR", str(tmp_path))
    monkeypatch.setenv("CMDGUARD_AUDIT_MAX_LOG_BYTES", "1000")
    monkeypatch.setenv("CMDGUARD_AUDIT_MAX_ENTRY_BYTES", "2000")

    with pytest.raises(ConfigurationError):
        load_config(env="production")
