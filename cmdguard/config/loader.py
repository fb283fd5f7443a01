"""Configuration loading with environment detection."""

import os
from pathlib import Path
from typing import Any, Optional

import structlog
from dotenv import load_dotenv

from cmdguard.exceptions import ConfigurationError, InvalidConfigError

from .environments import DevelopmentConfig, ProductionConfig, TestingConfig
from .settings import Settings

logger = structlog.get_logger()


def load_config(
    env: Optional[str] = None, config_file: Optional[Path] = None
) -> Settings:
    """Load configuration based on environment.

    Args:
        env: Environment name (development, testing, production)
        config_file: Optional path to configuration file

    Returns:
        Configured Settings instance

    Raises:
        ConfigurationError: If configuration is invalid
    """
    env_file = config_file or Path(".env")
    if env_file.exists():
        logger.info("Loading .env file", path=str(env_file))
        load_dotenv(env_file)
    else:
        logger.debug("No .env file found", path=str(env_file))

    env = env or os.getenv("ENVIRONMENT", "production")
    logger.debug("Loading configuration", environment=env)

    try:
        settings = Settings()
        settings = _apply_environment_overrides(settings, env)
        _validate_config(settings)

        logger.debug(
            "Configuration loaded successfully",
            environment=env,
            debug=settings.debug,
            home_dir=str(settings.home_dir),
            rate_limited_commands=len(settings.rate_limits),
        )

        return settings

    except Exception as e:
        logger.error("Failed to load configuration", error=str(e), environment=env)
        raise ConfigurationError(f"Configuration loading failed: {e}") from e


def _apply_environment_overrides(settings: Settings, env: Optional[str]) -> Settings:
    """Apply environment-specific configuration overrides."""
    overrides = {}

    if env == "development":
        overrides = DevelopmentConfig.as_dict()
    elif env == "testing":
        overrides = TestingConfig.as_dict()
    elif env == "production":
        overrides = ProductionConfig.as_dict()
    else:
        logger.warning("Unknown environment, using default settings", environment=env)

    for key, value in overrides.items():
        if hasattr(settings, key):
            setattr(settings, key, value)
            logger.debug(
                "Applied environment override", key=key, value=value, environment=env
            )

    return settings


def _validate_config(settings: Settings) -> None:
    """Perform additional runtime validation."""
    home = settings.home_dir
    if home.exists():
        if not home.is_dir():
            raise InvalidConfigError(f"home_dir is not a directory: {home}")
        if not os.access(home, os.R_OK | os.W_OK | os.X_OK):
            raise InvalidConfigError(f"Cannot access home_dir: {home}")
    else:
        # Created lazily on first write; the nearest existing parent must be writable
        parent = home.parent
        while not parent.exists() and parent != parent.parent:
            parent = parent.parent
        if not os.access(parent, os.W_OK | os.X_OK):
            raise InvalidConfigError(f"Cannot create home_dir under: {parent}")

    if settings.audit_max_entry_bytes > settings.audit_max_log_bytes:
        raise InvalidConfigError(
            "audit_max_entry_bytes must not exceed audit_max_log_bytes"
        )


def create_test_config(**overrides: Any) -> Settings:
    """Create configuration for testing with optional overrides.

    Args:
        **overrides: Configuration values to override

    Returns:
        Settings instance configured for testing
    """
    test_values = TestingConfig.as_dict()
    test_values.update(overrides)

    Path(test_values["home_dir"]).mkdir(parents=True, exist_ok=True)

    return Settings(_env_file=None, **test_values)
