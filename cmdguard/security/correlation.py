"""Correlation IDs for tracing one command across audit and log output.

The provider is passed explicitly into the rate limiter and audit logger
instead of being looked up globally.
"""

import os
import re
import secrets
import time
from contextlib import contextmanager
from contextvars import ContextVar
from typing import Iterator, Optional, Protocol, Tuple

import structlog

from ..utils.constants import (
    CORRELATION_ID_ENV_VAR,
    CORRELATION_ID_MAX_LENGTH,
    CORRELATION_ID_MIN_LENGTH,
    CORRELATION_ID_PREFIX,
)
from .primitives import sanitize_for_log

logger = structlog.get_logger()

VALID_CORRELATION_ID = re.compile(r"[a-zA-Z0-9_.-]+")

_BASE36 = "0123456789abcdefghijklmnopqrstuvwxyz"


def to_base36(number: int) -> str:
    """Lowercase base-36 rendering of a non-negative integer."""
    digits = []
    while True:
        number, remainder = divmod(number, 36)
        digits.append(_BASE36[remainder])
        if number == 0:
            break
    return "".join(reversed(digits))


def generate_correlation_id() -> str:
    """Generate ``cg_<base36 ms>_<8 random chars>``."""
    timestamp = to_base36(time.time_ns() // 1_000_000)
    random_part = "".join(secrets.choice(_BASE36) for _ in range(8))
    return f"{CORRELATION_ID_PREFIX}_{timestamp}_{random_part}"


def validate_correlation_id(value: object) -> Tuple[bool, Optional[str]]:
    """Validate an externally supplied correlation ID.

    Returns:
        Tuple of (is_valid, error_message)
    """
    if not isinstance(value, str):
        return False, "Correlation ID must be a string"
    if len(value) < CORRELATION_ID_MIN_LENGTH:
        return False, f"Correlation ID too short (min {CORRELATION_ID_MIN_LENGTH})"
    if len(value) > CORRELATION_ID_MAX_LENGTH:
        return False, f"Correlation ID too long (max {CORRELATION_ID_MAX_LENGTH})"
    if not VALID_CORRELATION_ID.fullmatch(value):
        return False, "Correlation ID may only contain a-z, A-Z, 0-9, _, - and ."
    return True, None


def sanitize_correlation_id(value: Optional[str]) -> str:
    """Return ``value`` when valid, otherwise a freshly generated ID."""
    if not value:
        return generate_correlation_id()

    valid, error = validate_correlation_id(value)
    if valid:
        return value

    logger.warning(
        "Rejected correlation ID",
        correlation_id=sanitize_for_log(value, CORRELATION_ID_MAX_LENGTH),
        reason=error,
    )
    return generate_correlation_id()


class CorrelationIdProvider(Protocol):
    """Anything that can report the current correlation ID."""

    def get(self) -> Optional[str]: ...


class CorrelationContext:
    """Per-task correlation ID storage backed by ``contextvars``."""

    def __init__(self, name: str = "cmdguard_correlation_id"):
        self._var: ContextVar[Optional[str]] = ContextVar(name, default=None)

    def get(self) -> Optional[str]:
        """Current correlation ID, if one is set."""
        return self._var.get()

    def set(self, correlation_id: Optional[str] = None) -> str:
        """Set (sanitizing) or generate the current correlation ID."""
        value = sanitize_correlation_id(correlation_id)
        self._var.set(value)
        return value

    def clear(self) -> None:
        """Forget the current correlation ID."""
        self._var.set(None)

    @contextmanager
    def scope(self, correlation_id: Optional[str] = None) -> Iterator[str]:
        """Run a block with its own correlation ID, restoring the previous one."""
        token = self._var.set(sanitize_correlation_id(correlation_id))
        try:
            yield self._var.get()  # type: ignore[misc]
        finally:
            self._var.reset(token)

    def from_environment(self) -> str:
        """Adopt ``CMDGUARD_CORRELATION_ID`` (e.g. from CI) or generate one."""
        return self.set(os.getenv(CORRELATION_ID_ENV_VAR))

    def create_child(self, parent_id: Optional[str] = None) -> str:
        """Derive ``<parent>.<suffix>`` for a sub-operation."""
        base = parent_id or self.get() or generate_correlation_id()
        suffix = "".join(secrets.choice(_BASE36) for _ in range(4))
        return f"{base[: CORRELATION_ID_MAX_LENGTH - len(suffix) - 1]}.{suffix}"

    @staticmethod
    def root_of(correlation_id: str) -> str:
        """Strip child suffixes."""
        return correlation_id.split(".", 1)[0]
