"""Security core for cmdguard.

This module provides:
- Sliding-window rate limiting with persisted, validated state
- Tamper-evident audit logging with HMAC-signed entries
- Hardened primitives for log output and JSON handling
- Correlation IDs shared by the rate limiter and audit log

Key Components:
- RateLimiter: Per-command admission control
- AuditLogger: Signed, rotating audit log with integrity verification
- SecurityEventReporter: Fan-out for security violations
- CorrelationContext: Per-task correlation ID provider
"""

from .audit import (
    AuditContext,
    AuditEventType,
    AuditLogger,
    IntegrityReport,
    SecurityViolationType,
    Severity,
    create_audit_entry,
    generate_entry_signature,
    sign_entry,
    verify_signature,
)
from .correlation import CorrelationContext, generate_correlation_id
from .rate_limiter import (
    RateLimiter,
    RateLimitResult,
    get_user_identifier,
    with_rate_limit,
)
from .reporter import SecurityEventReporter
from .signing_keys import SigningKeyRing

__all__ = [
    "AuditContext",
    "AuditEventType",
    "AuditLogger",
    "IntegrityReport",
    "SecurityViolationType",
    "Severity",
    "create_audit_entry",
    "generate_entry_signature",
    "sign_entry",
    "verify_signature",
    "CorrelationContext",
    "generate_correlation_id",
    "RateLimiter",
    "RateLimitResult",
    "get_user_identifier",
    "with_rate_limit",
    "SecurityEventReporter",
    "SigningKeyRing",
]
