"""Configuration management using Pydantic Settings.

Features:
- Environment variable loading (``CMDGUARD_`` prefix)
- Type validation
- Default values
- Computed file locations
- Environment-specific settings
"""

import re
from pathlib import Path
from typing import Any, Dict

from pydantic import AliasChoices, BaseModel, ConfigDict, Field, field_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from cmdguard.utils.constants import (
    AUDIT_DIRNAME,
    AUDIT_KEY_FILENAME,
    AUDIT_KEYS_DIRNAME,
    COMMAND_NAME_PATTERN,
    DEFAULT_AUDIT_MAX_ENTRY_BYTES,
    DEFAULT_AUDIT_MAX_FILES,
    DEFAULT_AUDIT_MAX_LOG_BYTES,
    DEFAULT_AUDIT_VERIFY_HOURS,
    DEFAULT_HOME_DIRNAME,
    DEFAULT_RATE_LIMIT_KEY,
    DEFAULT_RATE_LIMITS,
    POLLUTION_KEYS,
    RATE_LIMIT_FILENAME,
)


class RateLimitRule(BaseModel):
    """Sliding-window limit for a single command."""

    model_config = ConfigDict(frozen=True, populate_by_name=True)

    max: int = Field(..., ge=1, description="Admitted invocations per window")
    window_ms: int = Field(
        ...,
        ge=1,
        description="Window length in milliseconds",
        validation_alias=AliasChoices("window_ms", "windowMs"),
    )


def _default_rate_limits() -> Dict[str, RateLimitRule]:
    return {
        command: RateLimitRule(max=limit, window_ms=window)
        for command, (limit, window) in DEFAULT_RATE_LIMITS.items()
    }


class Settings(BaseSettings):
    """Application settings loaded from environment variables."""

    # Storage
    home_dir: Path = Field(
        default_factory=lambda: Path.home() / DEFAULT_HOME_DIRNAME,
        description="Per-user directory holding rate-limit state and audit logs",
    )

    # Rate limiting
    rate_limits: Dict[str, RateLimitRule] = Field(
        default_factory=_default_rate_limits,
        description="Per-command limits; the 'default' entry covers unlisted commands",
    )

    # Audit log
    audit_max_log_bytes: int = Field(
        DEFAULT_AUDIT_MAX_LOG_BYTES,
        description="Active audit log size that triggers rotation",
        gt=0,
    )
    audit_max_files: int = Field(
        DEFAULT_AUDIT_MAX_FILES,
        description="Number of rotated audit log files to keep",
        ge=1,
        le=100,
    )
    audit_max_entry_bytes: int = Field(
        DEFAULT_AUDIT_MAX_ENTRY_BYTES,
        description="Serialized size above which entry details are truncated",
        gt=0,
    )
    audit_verify_hours: int = Field(
        DEFAULT_AUDIT_VERIFY_HOURS,
        description="Default look-back window for integrity verification",
        gt=0,
    )

    # Monitoring
    log_level: str = Field("INFO", description="Logging level")
    verbose: bool = Field(False, description="Report non-critical warnings")

    # Development
    debug: bool = Field(False, description="Enable debug mode")

    model_config = SettingsConfigDict(
        env_prefix="CMDGUARD_",
        env_file=".env",
        env_file_encoding="utf-8",
        case_sensitive=False,
        extra="ignore",
        populate_by_name=True,
        validate_assignment=True,
    )

    @field_validator("home_dir", mode="before")
    @classmethod
    def expand_home_dir(cls, v: Any) -> Path:
        """Expand ``~`` and reject blank values."""
        if isinstance(v, str):
            if not v.strip():
                raise ValueError("home_dir must not be empty")
            v = Path(v.strip())
        return v.expanduser()  # type: ignore[no-any-return]

    @field_validator("rate_limits")
    @classmethod
    def validate_rate_limits(
        cls, v: Dict[str, RateLimitRule]
    ) -> Dict[str, RateLimitRule]:
        """Require a default rule and safe command names."""
        if DEFAULT_RATE_LIMIT_KEY not in v:
            raise ValueError("rate_limits must contain a 'default' entry")
        for command in v:
            if not re.fullmatch(COMMAND_NAME_PATTERN, command) or any(
                key in command for key in POLLUTION_KEYS
            ):
                raise ValueError(f"Invalid command name in rate_limits: {command!r}")
        return v

    @field_validator("log_level")
    @classmethod
    def validate_log_level(cls, v: Any) -> str:
        """Validate log level."""
        valid_levels = ["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"]
        if v.upper() not in valid_levels:
            raise ValueError(f"log_level must be one of {valid_levels}")
        return v.upper()  # type: ignore[no-any-return]

    @property
    def rate_limit_file(self) -> Path:
        """Persisted sliding-window state."""
        return self.home_dir / RATE_LIMIT_FILENAME

    @property
    def audit_dir(self) -> Path:
        """Directory holding the active and rotated audit logs."""
        return self.home_dir / AUDIT_DIRNAME

    @property
    def audit_key_file(self) -> Path:
        """Active signing key."""
        return self.audit_dir / AUDIT_KEY_FILENAME

    @property
    def audit_keys_dir(self) -> Path:
        """Archived signing keys kept for historical verification."""
        return self.audit_dir / AUDIT_KEYS_DIRNAME
