"""Test custom exceptions."""

import pytest

from cmdguard.exceptions import (
    CmdGuardError,
    ConfigurationError,
    ConfirmationRequiredError,
    InvalidConfigError,
    KeyStorageError,
    RateLimitError,
    SecurityError,
    StatePersistenceError,
    StorageError,
)
from cmdguard.security.rate_limiter import RateLimitResult


def test_base_exception():
    """Test base exception."""
    with pytest.raises(CmdGuardError):
        raise CmdGuardError("Test error")


def test_configuration_error():
    """Test configuration error inheritance."""
    with pytest.raises(CmdGuardError):
        raise ConfigurationError("Config error")

    with pytest.raises(ConfigurationError):
        raise InvalidConfigError("Bad value")


def test_security_error():
    """Test security error inheritance."""
    with pytest.raises(SecurityError):
        raise ConfirmationRequiredError("Confirm first")


def test_storage_errors():
    """Test storage error inheritance."""
    assert issubclass(StatePersistenceError, StorageError)
    assert issubclass(KeyStorageError, StorageError)
    assert issubclass(StorageError, CmdGuardError)


def test_rate_limit_error_carries_result():
    """RateLimitError exposes the decision it was raised for."""
    result = RateLimitResult(
        allowed=False,
        command="deploy",
        current_count=5,
        max=5,
        window_ms=300_000,
        retry_after_ms=12_500,
        retry_after_sec=13,
    )

    error = RateLimitError("Rate limit exceeded for command 'deploy'", result)

    assert isinstance(error, SecurityError)
    assert error.result is result
    assert error.code == "RATE_LIMIT_EXCEEDED"

    data = error.to_dict()
    assert data["error"] == "Rate limit exceeded for command 'deploy'"
    assert data["command"] == "deploy"
    assert data["current_count"] == 5
    assert data["max"] == 5
    assert data["retry_after_sec"] == 13
    assert data["timestamp"].endswith("+00:00")
