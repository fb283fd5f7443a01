"""Pytest configuration and fixtures."""

import time

import pytest

from cmdguard.config import create_test_config
from cmdguard.security.audit import AuditContext, AuditLogger
from cmdguard.security.correlation import CorrelationContext
from cmdguard.security.rate_limiter import RateLimiter
from cmdguard.security.reporter import SecurityEventReporter


class FakeClock:
    """Controllable epoch-millisecond clock."""

    def __init__(self, start_ms=None):
        self.now_ms = start_ms if start_ms is not None else time.time_ns() // 1_000_000

    def __call__(self):
        return self.now_ms

    def advance(self, ms):
        self.now_ms += ms


@pytest.fixture
def clock():
    """Clock starting at the current time."""
    return FakeClock()


@pytest.fixture
def config(tmp_path):
    """Test settings rooted in a temporary home directory."""
    return create_test_config(home_dir=str(tmp_path / "cmdguard"))


@pytest.fixture
def correlation():
    return CorrelationContext()


@pytest.fixture
def audit_logger(config, correlation):
    return AuditLogger(config, correlation=correlation, context=AuditContext())


@pytest.fixture
def reporter(audit_logger):
    return SecurityEventReporter(audit_logger)


@pytest.fixture
def rate_limiter(config, reporter, correlation, clock):
    return RateLimiter(config, reporter=reporter, correlation=correlation, clock=clock)
