"""Security event reporting.

Every subsystem reports violations through one reporter, which writes a
signed ``SECURITY_VIOLATION`` entry and mirrors it to the structured log.
Reporting is fire-and-forget: failures are logged, never raised.
"""

from typing import Any, Awaitable, Callable, Dict, List, Mapping, Optional, Union

import structlog

from .audit import AuditLogger, SecurityViolationType
from .primitives import safe_json_stringify, secure_log_string

logger = structlog.get_logger()

EventSink = Callable[[str, Dict[str, Any], Dict[str, Any]], Awaitable[None]]


class SecurityEventReporter:
    """Fan security events out to the audit log and any extra sinks."""

    def __init__(
        self,
        audit_logger: Optional[AuditLogger],
        sinks: Optional[List[EventSink]] = None,
    ):
        self.audit_logger = audit_logger
        self.sinks: List[EventSink] = list(sinks or [])

    def add_sink(self, sink: EventSink) -> None:
        """Register an additional async subscriber."""
        self.sinks.append(sink)

    async def log_security_violation(
        self,
        violation_type: Union[SecurityViolationType, str],
        details: Optional[Mapping[str, Any]] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Record one security event.

        Returns:
            True when the audit entry was written
        """
        violation = (
            violation_type.value
            if isinstance(violation_type, SecurityViolationType)
            else secure_log_string(violation_type, 100)
        )
        details = dict(details or {})
        context = dict(context or {})

        logger.warning(
            "Security violation",
            violation_type=violation,
            details=secure_log_string(safe_json_stringify(details), 500),
        )

        written = False
        if self.audit_logger is not None:
            try:
                written = await self.audit_logger.log_security_violation(
                    violation, details, context
                )
            except Exception as e:
                logger.error(
                    "Audit write for security event failed",
                    violation_type=violation,
                    error=secure_log_string(str(e), 200),
                )

        for sink in self.sinks:
            try:
                await sink(violation, details, context)
            except Exception as e:
                logger.error(
                    "Security event sink failed",
                    violation_type=violation,
                    sink=getattr(sink, "__name__", repr(sink)),
                    error=secure_log_string(str(e), 200),
                )

        return written
