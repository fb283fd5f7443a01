"""Custom exceptions for cmdguard."""

from datetime import UTC, datetime
from typing import TYPE_CHECKING, Any, Dict

if TYPE_CHECKING:
    from .security.rate_limiter import RateLimitResult


class CmdGuardError(Exception):
    """Base exception for cmdguard."""


class ConfigurationError(CmdGuardError):
    """Configuration-related errors."""


class InvalidConfigError(ConfigurationError):
    """Configuration is invalid."""


class SecurityError(CmdGuardError):
    """Security-related errors."""


class RateLimitError(SecurityError):
    """Rate limit exceeded for a command.

    Carries the full admission decision so callers can tell the user which
    limit was hit and when to retry.
    """

    code = "RATE_LIMIT_EXCEEDED"

    def __init__(self, message: str, result: "RateLimitResult"):
        super().__init__(message)
        self.result = result
        self.timestamp = datetime.now(UTC).isoformat()

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for structured output."""
        return {
            "error": str(self),
            "code": self.code,
            "command": self.result.command,
            "current_count": self.result.current_count,
            "max": self.result.max,
            "retry_after_sec": self.result.retry_after_sec,
            "timestamp": self.timestamp,
        }


class ConfirmationRequiredError(SecurityError):
    """A security-sensitive action was invoked without explicit confirmation."""


class StorageError(CmdGuardError):
    """Storage-related errors."""


class StatePersistenceError(StorageError):
    """Persisted state could not be written."""


class KeyStorageError(StorageError):
    """Signing key material is missing or malformed."""
