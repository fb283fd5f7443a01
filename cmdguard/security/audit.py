"""Tamper-evident security audit log.

Features:
- HMAC-SHA256 signed entries, one JSON object per line
- Size-based rotation (``audit.log``, ``audit.1.log``, ...)
- Key ring so entries signed before a key rotation still verify
- Integrity scan across active and rotated files
- Query and summary helpers
"""

import asyncio
import hashlib
import hmac
import json
import math
import os
import re
import secrets
import socket
from dataclasses import dataclass, field
from datetime import UTC, datetime, timedelta
from enum import Enum
from pathlib import Path
from typing import Any, Callable, Dict, List, Mapping, Optional, Union

import structlog

from ..config.settings import Settings
from ..exceptions import KeyStorageError
from ..utils.constants import (
    AUDIT_DETAIL_MAX_DEPTH,
    AUDIT_ENTRY_VERSION,
    AUDIT_LOCK_FILENAME,
    AUDIT_LOG_BASENAME,
    HMAC_ALGORITHM,
)
from .correlation import CorrelationIdProvider, to_base36
from .file_guard import append_line, ensure_private_dir, exclusive_lock
from .primitives import (
    constant_time_compare,
    detect_pollution,
    is_pollution_key,
    safe_json_parse,
    sanitize_for_log,
    secure_log_string,
)
from .signing_keys import SigningKeyRing, key_id_for

logger = structlog.get_logger()

SIGNATURE_FIELDS = ("_signature", "_sigAlg")
HEX_SIGNATURE = re.compile(r"[0-9a-f]{64}")
AUDIT_LINE_MAX_DEPTH = 32
MAX_DETAIL_ITEMS = 100
TAMPERED_ERROR = "Invalid signature - entry may have been tampered with"
UNKNOWN_KEY_ERROR = "Invalid signature - unknown signing key"
POLLUTED_ERROR = "Invalid entry - contains blocklisted keys"


class AuditEventType(str, Enum):
    """Audit event vocabulary."""

    # Authentication
    AUTH_SUCCESS = "AUTH_SUCCESS"
    AUTH_FAILURE = "AUTH_FAILURE"
    AUTH_LOGOUT = "AUTH_LOGOUT"
    TOKEN_VALIDATION = "TOKEN_VALIDATION"

    # Configuration
    CONFIG_READ = "CONFIG_READ"
    CONFIG_WRITE = "CONFIG_WRITE"
    CONFIG_DELETE = "CONFIG_DELETE"

    # Deployment
    DEPLOY_START = "DEPLOY_START"
    DEPLOY_SUCCESS = "DEPLOY_SUCCESS"
    DEPLOY_FAILURE = "DEPLOY_FAILURE"
    DEPLOY_ROLLBACK = "DEPLOY_ROLLBACK"

    # Security
    SECURITY_VIOLATION = "SECURITY_VIOLATION"
    PATH_VALIDATION_FAILURE = "PATH_VALIDATION_FAILURE"
    COMMAND_REJECTED = "COMMAND_REJECTED"
    PERMISSION_DENIED = "PERMISSION_DENIED"
    AUDIT_INTEGRITY_FAILURE = "AUDIT_INTEGRITY_FAILURE"

    # Docker
    DOCKER_EXEC = "DOCKER_EXEC"
    DOCKER_COMPOSE = "DOCKER_COMPOSE"
    CONTAINER_ACCESS = "CONTAINER_ACCESS"

    # Data
    BACKUP_CREATE = "BACKUP_CREATE"
    BACKUP_RESTORE = "BACKUP_RESTORE"
    EXPORT_DATA = "EXPORT_DATA"
    LOG_ACCESS = "LOG_ACCESS"

    # System
    SERVICE_START = "SERVICE_START"
    SERVICE_STOP = "SERVICE_STOP"
    HEALTH_CHECK = "HEALTH_CHECK"


class Severity(str, Enum):
    DEBUG = "debug"
    INFO = "info"
    WARNING = "warning"
    ERROR = "error"
    CRITICAL = "critical"


class SecurityViolationType(str, Enum):
    """Subtypes recorded under ``SECURITY_VIOLATION`` entries."""

    RATE_LIMIT_EXCEEDED = "RATE_LIMIT_EXCEEDED"
    RATE_LIMIT_RESET = "RATE_LIMIT_RESET"
    RATE_LIMIT_STATE_POLLUTION = "RATE_LIMIT_STATE_POLLUTION"
    RATE_LIMIT_STATE_INVALID = "RATE_LIMIT_STATE_INVALID"
    RATE_LIMIT_FILE_PERMISSION_MISMATCH = "RATE_LIMIT_FILE_PERMISSION_MISMATCH"
    AUDIT_KEY_PERMISSION_MISMATCH = "AUDIT_KEY_PERMISSION_MISMATCH"
    THREAT_DETECTED = "THREAT_DETECTED"


EVENT_SEVERITY: Dict[AuditEventType, Severity] = {
    AuditEventType.AUTH_FAILURE: Severity.WARNING,
    AuditEventType.SECURITY_VIOLATION: Severity.ERROR,
    AuditEventType.PATH_VALIDATION_FAILURE: Severity.WARNING,
    AuditEventType.COMMAND_REJECTED: Severity.WARNING,
    AuditEventType.PERMISSION_DENIED: Severity.ERROR,
    AuditEventType.DEPLOY_FAILURE: Severity.ERROR,
    AuditEventType.AUDIT_INTEGRITY_FAILURE: Severity.CRITICAL,
}

CONFIG_EVENTS = {
    "read": AuditEventType.CONFIG_READ,
    "write": AuditEventType.CONFIG_WRITE,
    "delete": AuditEventType.CONFIG_DELETE,
}

DEPLOY_EVENTS = {
    "start": AuditEventType.DEPLOY_START,
    "success": AuditEventType.DEPLOY_SUCCESS,
    "failure": AuditEventType.DEPLOY_FAILURE,
    "rollback": AuditEventType.DEPLOY_ROLLBACK,
}

HIGH_RISK_COMMANDS = {
    "rm",
    "dd",
    "chmod",
    "chown",
    "sudo",
    "su",
    "passwd",
    "curl",
    "wget",
    "ssh",
    "scp",
    "rsync",
}

MEDIUM_RISK_COMMANDS = {"git", "npm", "pip", "docker", "kubectl", "make"}

# Context field -> (entry key, max length)
CONTEXT_FIELDS = {
    "user_id": ("userId", 100),
    "session_id": ("sessionId", 100),
    "command": ("command", 200),
    "source_ip": ("sourceIp", 50),
}


def _utc_now() -> datetime:
    return datetime.now(UTC)


def format_timestamp(moment: datetime) -> str:
    """ISO 8601 UTC with millisecond precision and a ``Z`` suffix."""
    return moment.astimezone(UTC).isoformat(timespec="milliseconds").replace(
        "+00:00", "Z"
    )


def parse_timestamp(value: Any) -> Optional[datetime]:
    """Parse an entry timestamp; ``None`` when it is not a valid ISO string."""
    if not isinstance(value, str):
        return None
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=UTC)
    return parsed


def generate_entry_id(moment: Optional[datetime] = None) -> str:
    """Generate ``cg-<base36 ms>-<8 hex>``."""
    millis = int((moment or _utc_now()).timestamp() * 1000)
    return f"cg-{to_base36(millis)}-{secrets.token_hex(4)}"


def _sanitize_value(value: Any, depth: int) -> Any:
    if isinstance(value, bool) or value is None:
        return value
    if isinstance(value, int):
        return value
    if isinstance(value, float):
        return value if math.isfinite(value) else str(value)
    if isinstance(value, Enum):
        return secure_log_string(str(value.value), 100)
    if isinstance(value, str):
        return secure_log_string(value, 500)
    if isinstance(value, Mapping):
        if depth >= AUDIT_DETAIL_MAX_DEPTH:
            return "[MaxDepth]"
        return sanitize_audit_details(value, depth + 1)
    if isinstance(value, (list, tuple, set, frozenset)):
        if depth >= AUDIT_DETAIL_MAX_DEPTH:
            return "[MaxDepth]"
        items = list(value)[:MAX_DETAIL_ITEMS]
        return [_sanitize_value(item, depth + 1) for item in items]
    return sanitize_for_log(str(value), 100)


def sanitize_audit_details(details: Any, depth: int = 0) -> Dict[str, Any]:
    """Copy ``details`` keeping only log-safe keys and values.

    Blocklisted keys are dropped, strings are sanitized and masked, nested
    containers are followed down to a fixed depth and anything else is
    rendered as a short string.
    """
    if not isinstance(details, Mapping):
        return {}

    sanitized: Dict[str, Any] = {}
    for key, value in details.items():
        if is_pollution_key(key):
            continue
        sanitized[sanitize_for_log(str(key), 100)] = _sanitize_value(value, depth)
    return sanitized


def sanitize_audit_context(context: Optional[Mapping[str, Any]]) -> Dict[str, str]:
    """Keep the known context fields, renamed to their entry keys."""
    sanitized: Dict[str, str] = {}
    if not context:
        return sanitized

    for field_name, (entry_key, max_length) in CONTEXT_FIELDS.items():
        value = context.get(field_name)
        if value is None or value == "":
            continue
        sanitized[entry_key] = sanitize_for_log(str(value), max_length)
    return sanitized


def create_audit_entry(
    event_type: Union[AuditEventType, str],
    details: Optional[Mapping[str, Any]] = None,
    context: Optional[Mapping[str, Any]] = None,
    *,
    correlation_id: Optional[str] = None,
    severity: Optional[Severity] = None,
    now: Optional[datetime] = None,
) -> Dict[str, Any]:
    """Build a fresh, unsigned audit entry."""
    moment = now or _utc_now()
    event = AuditEventType(event_type)

    entry: Dict[str, Any] = {
        "id": generate_entry_id(moment),
        "timestamp": format_timestamp(moment),
        "eventType": event.value,
        "severity": (severity or EVENT_SEVERITY.get(event, Severity.INFO)).value,
        "details": sanitize_audit_details(details or {}),
        "context": sanitize_audit_context(context),
        "metadata": {
            "version": AUDIT_ENTRY_VERSION,
            "hostname": sanitize_for_log(socket.gethostname(), 255),
            "pid": os.getpid(),
        },
    }
    if correlation_id:
        entry["correlationId"] = correlation_id
    return entry


def canonical_form(entry: Mapping[str, Any]) -> str:
    """Deterministic serialization of every field except the signature."""
    payload = {k: v for k, v in entry.items() if k not in SIGNATURE_FIELDS}
    return json.dumps(
        payload,
        sort_keys=True,
        separators=(",", ":"),
        ensure_ascii=False,
        default=str,
    )


def generate_entry_signature(entry: Mapping[str, Any], key: bytes) -> str:
    """HMAC-SHA256 hex digest of the entry's canonical form."""
    return hmac.new(
        key, canonical_form(entry).encode("utf-8"), hashlib.sha256
    ).hexdigest()


def sign_entry(entry: Mapping[str, Any], key: bytes) -> Dict[str, Any]:
    """Return a signed copy of ``entry``; the original is not modified."""
    signed = {k: v for k, v in entry.items() if k not in SIGNATURE_FIELDS}
    signed["_keyId"] = key_id_for(key)
    signed["_signature"] = generate_entry_signature(signed, key)
    signed["_sigAlg"] = HMAC_ALGORITHM
    return signed


def verify_signature(entry: Any, key: bytes) -> bool:
    """Check ``entry`` against ``key``. Never raises for malformed input."""
    if not isinstance(entry, Mapping):
        return False

    signature = entry.get("_signature")
    if not isinstance(signature, str) or not HEX_SIGNATURE.fullmatch(signature):
        return False
    if entry.get("_sigAlg", HMAC_ALGORITHM) != HMAC_ALGORITHM:
        return False

    try:
        expected = generate_entry_signature(entry, key)
    except (TypeError, ValueError):
        return False
    return constant_time_compare(expected, signature)


def serialize_entry(entry: Mapping[str, Any]) -> str:
    """One log line (without the trailing newline)."""
    return json.dumps(entry, separators=(",", ":"), ensure_ascii=False, default=str)


@dataclass
class AuditContext:
    """Mutable state shared by every audit operation of one session."""

    rotating: bool = False
    key_mismatch_reported: bool = False
    lock: asyncio.Lock = field(default_factory=asyncio.Lock)


@dataclass
class IntegrityReport:
    """Outcome of an integrity scan."""

    valid: bool = True
    total_entries: int = 0
    valid_signatures: int = 0
    invalid_signatures: int = 0
    unsigned_entries: int = 0
    files_checked: List[str] = field(default_factory=list)
    errors: List[Dict[str, Any]] = field(default_factory=list)

    def add_error(self, file: str, line: int, error: str, **extra: Any) -> None:
        self.errors.append({"file": file, "line": line, "error": error, **extra})

    def to_dict(self) -> Dict[str, Any]:
        """Convert to dictionary for JSON output."""
        return {
            "valid": self.valid,
            "totalEntries": self.total_entries,
            "validSignatures": self.valid_signatures,
            "invalidSignatures": self.invalid_signatures,
            "unsignedEntries": self.unsigned_entries,
            "filesChecked": list(self.files_checked),
            "errors": list(self.errors),
        }


class AuditLogger:
    """Append-only signed audit log.

    Write failures are logged and reported as ``False``; they never reach
    the operation being audited.
    """

    def __init__(
        self,
        config: Settings,
        correlation: Optional[CorrelationIdProvider] = None,
        context: Optional[AuditContext] = None,
        clock: Optional[Callable[[], datetime]] = None,
    ):
        self.config = config
        self.correlation = correlation
        self.context = context or AuditContext()
        self.clock = clock or _utc_now
        self.audit_dir = config.audit_dir
        self.log_path = self.audit_dir / f"{AUDIT_LOG_BASENAME}.log"
        self.lock_path = self.audit_dir / AUDIT_LOCK_FILENAME
        self.keyring = SigningKeyRing(config.audit_key_file, config.audit_keys_dir)

    # Keys and signatures

    def get_audit_signing_key(self) -> bytes:
        """Active signing key, created on first use."""
        return self.keyring.get_active_key()

    def sign_audit_entry(self, entry: Mapping[str, Any]) -> Dict[str, Any]:
        """Sign ``entry`` with the active key."""
        return sign_entry(entry, self.get_audit_signing_key())

    def verify_entry_signature(
        self, entry: Mapping[str, Any], key: Optional[bytes] = None
    ) -> bool:
        """Verify with ``key`` or, when omitted, with the key ring."""
        if key is not None:
            return verify_signature(entry, key)
        try:
            keys = self.keyring.all_keys()
        except (OSError, KeyStorageError) as e:
            logger.error(
                "Unable to load signing keys", error=sanitize_for_log(str(e), 200)
            )
            return False
        return self._check_signature(entry, keys) is None

    def _check_signature(
        self, entry: Mapping[str, Any], keys: Dict[str, bytes]
    ) -> Optional[str]:
        """Return an error message, or ``None`` when the signature is valid."""
        key_id = entry.get("_keyId")
        if key_id is not None:
            key = keys.get(key_id) if isinstance(key_id, str) else None
            if key is None:
                return UNKNOWN_KEY_ERROR
            return None if verify_signature(entry, key) else TAMPERED_ERROR

        if any(verify_signature(entry, key) for key in keys.values()):
            return None
        return TAMPERED_ERROR

    # Entry creation

    def create_entry(
        self,
        event_type: Union[AuditEventType, str],
        details: Optional[Mapping[str, Any]] = None,
        context: Optional[Mapping[str, Any]] = None,
        severity: Optional[Severity] = None,
    ) -> Dict[str, Any]:
        """Create an unsigned entry stamped with the current correlation ID."""
        correlation_id = self.correlation.get() if self.correlation else None
        return create_audit_entry(
            event_type,
            details,
            context,
            correlation_id=correlation_id,
            severity=severity,
            now=self.clock(),
        )

    def _fit_entry(self, entry: Dict[str, Any]) -> Dict[str, Any]:
        """Sign ``entry``, replacing oversized details before signing."""
        signed = self.sign_audit_entry(entry)
        size = len(serialize_entry(signed).encode("utf-8"))
        if size <= self.config.audit_max_entry_bytes:
            return signed

        trimmed = dict(entry)
        trimmed["details"] = {"_truncated": True, "_originalSize": size}
        trimmed["metadata"] = {
            **entry.get("metadata", {}),
            "warning": "Entry was truncated due to size",
        }
        logger.warning(
            "Audit entry truncated",
            event_type=entry.get("eventType"),
            original_size=size,
            max_size=self.config.audit_max_entry_bytes,
        )
        return self.sign_audit_entry(trimmed)

    # Files and rotation

    def rotated_path(self, index: int) -> Path:
        return self.audit_dir / f"{AUDIT_LOG_BASENAME}.{index}.log"

    def log_files(self) -> List[Path]:
        """Existing log files, most recent first."""
        candidates = [self.log_path] + [
            self.rotated_path(i) for i in range(1, self.config.audit_max_files + 1)
        ]
        return [path for path in candidates if path.is_file()]

    def _should_rotate(self) -> bool:
        try:
            return self.log_path.stat().st_size > self.config.audit_max_log_bytes
        except FileNotFoundError:
            return False

    def _rotate_logs(self) -> None:
        """Shift ``audit.N.log`` up by one and retire the oldest file."""
        if self.context.rotating:
            return

        self.context.rotating = True
        try:
            max_files = self.config.audit_max_files
            self.rotated_path(max_files).unlink(missing_ok=True)
            for index in range(max_files - 1, 0, -1):
                source = self.rotated_path(index)
                if source.exists():
                    os.replace(source, self.rotated_path(index + 1))
            if self.log_path.exists():
                os.replace(self.log_path, self.rotated_path(1))
            logger.info("Rotated audit log", max_files=max_files)
        finally:
            self.context.rotating = False

    def _append_locked(self, entry: Dict[str, Any]) -> None:
        """Rotate if needed, sign and append. Caller holds both locks."""
        if self._should_rotate():
            self._rotate_logs()

        signed = self._fit_entry(entry)
        self._report_key_permissions()
        append_line(self.log_path, serialize_entry(signed))

    def _report_key_permissions(self) -> None:
        actual = self.keyring.permission_mismatch
        if actual is None or self.context.key_mismatch_reported:
            return

        self.context.key_mismatch_reported = True
        violation = self.create_entry(
            AuditEventType.SECURITY_VIOLATION,
            {
                "violationType": SecurityViolationType.AUDIT_KEY_PERMISSION_MISMATCH,
                "file": self.config.audit_key_file.name,
                "expectedMode": "0o600",
                "actualMode": oct(actual),
            },
        )
        append_line(self.log_path, serialize_entry(self._fit_entry(violation)))

    async def write_entry(self, entry: Dict[str, Any]) -> bool:
        """Sign and append ``entry``.

        Returns:
            True when the entry was written
        """
        try:
            async with self.context.lock:
                ensure_private_dir(self.audit_dir)
                with exclusive_lock(self.lock_path):
                    self._append_locked(entry)
            return True
        except (OSError, KeyStorageError, TypeError, ValueError) as e:
            logger.error(
                "Failed to write audit entry",
                event_type=entry.get("eventType"),
                error=sanitize_for_log(str(e), 200),
            )
            return False

    # Writers

    async def log_audit(
        self,
        event_type: Union[AuditEventType, str],
        details: Optional[Mapping[str, Any]] = None,
        context: Optional[Mapping[str, Any]] = None,
        severity: Optional[Severity] = None,
    ) -> bool:
        """Create and write one entry.

        Returns:
            True when the entry was written; False for any failure,
            including an unknown event type
        """
        try:
            entry = self.create_entry(event_type, details, context, severity)
        except (TypeError, ValueError) as e:
            logger.error(
                "Failed to create audit entry",
                event_type=sanitize_for_log(str(event_type), 100),
                error=sanitize_for_log(str(e), 200),
            )
            return False
        return await self.write_entry(entry)

    async def log_security_violation(
        self,
        violation_type: Union[SecurityViolationType, str],
        details: Optional[Mapping[str, Any]] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Log security violation."""
        violation = (
            violation_type.value
            if isinstance(violation_type, SecurityViolationType)
            else str(violation_type)
        )
        return await self.log_audit(
            AuditEventType.SECURITY_VIOLATION,
            {"violationType": violation, **(details or {})},
            context,
        )

    async def log_command(
        self,
        command: str,
        details: Optional[Mapping[str, Any]] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Log command execution, with severity from the command's risk."""
        risk = self._assess_command_risk(command)
        severity = {"high": Severity.WARNING, "medium": Severity.INFO}.get(
            risk, Severity.DEBUG
        )
        return await self.log_audit(
            AuditEventType.DOCKER_EXEC,
            {"command": command, "risk": risk, **(details or {})},
            context,
            severity,
        )

    async def log_config_access(
        self, action: str, key: str, context: Optional[Mapping[str, Any]] = None
    ) -> bool:
        """Log a configuration read, write or delete."""
        event_type = CONFIG_EVENTS.get(action, AuditEventType.CONFIG_READ)
        return await self.log_audit(
            event_type, {"action": action, "key": sanitize_for_log(key, 100)}, context
        )

    async def log_deployment(
        self,
        status: str,
        details: Optional[Mapping[str, Any]] = None,
        context: Optional[Mapping[str, Any]] = None,
    ) -> bool:
        """Log a deployment start, success, failure or rollback."""
        event_type = DEPLOY_EVENTS.get(status, AuditEventType.DEPLOY_START)
        return await self.log_audit(
            event_type, {"status": status, **(details or {})}, context
        )

    def _assess_command_risk(self, command: str) -> str:
        """Assess risk level of command execution."""
        words = set(re.split(r"[\s/;|&]+", command.lower()))
        if words & HIGH_RISK_COMMANDS:
            return "high"
        if words & MEDIUM_RISK_COMMANDS:
            return "medium"
        return "low"

    # Reading

    def _read_lines(self, path: Path) -> List[str]:
        with path.open("r", encoding="utf-8", errors="replace") as handle:
            return [line for line in handle.read().split("\n") if line.strip()]

    def _parse_line(self, line: str) -> Optional[Any]:
        # Blocklisted keys are kept so the signature check sees the edit
        return safe_json_parse(
            line, max_depth=AUDIT_LINE_MAX_DEPTH, allow_proto_keys=True
        )

    async def query_audit_log(
        self,
        event_type: Optional[Union[AuditEventType, str]] = None,
        severity: Optional[Union[Severity, str]] = None,
        limit: int = 100,
        hours: float = 24,
    ) -> List[Dict[str, Any]]:
        """Entries matching the filters, newest first."""
        wanted_type = AuditEventType(event_type).value if event_type else None
        wanted_severity = Severity(severity).value if severity else None
        cutoff = self.clock() - timedelta(hours=hours)
        entries: List[Dict[str, Any]] = []

        try:
            for path in self.log_files():
                for line in self._read_lines(path):
                    entry = self._parse_line(line)
                    if not isinstance(entry, dict) or detect_pollution(entry):
                        continue
                    if wanted_type and entry.get("eventType") != wanted_type:
                        continue
                    if wanted_severity and entry.get("severity") != wanted_severity:
                        continue
                    moment = parse_timestamp(entry.get("timestamp"))
                    if moment is None or moment < cutoff:
                        continue
                    entries.append(entry)
        except OSError as e:
            logger.error(
                "Failed to query audit log", error=sanitize_for_log(str(e), 200)
            )
            return []

        entries.sort(key=lambda e: parse_timestamp(e["timestamp"]), reverse=True)
        return entries[:limit]

    async def get_security_summary(self, hours: float = 24) -> Dict[str, Any]:
        """Counts of recent events by severity and type."""
        now = self.clock()
        events = await self.query_audit_log(hours=hours, limit=1000)

        summary: Dict[str, Any] = {
            "total_events": len(events),
            "by_severity": {},
            "by_type": {},
            "security_violations": 0,
            "failed_authentications": 0,
            "top_violation_types": {},
            "time_range": {
                "from": format_timestamp(now - timedelta(hours=hours)),
                "to": format_timestamp(now),
            },
        }

        for event in events:
            severity = event.get("severity", Severity.INFO.value)
            summary["by_severity"][severity] = (
                summary["by_severity"].get(severity, 0) + 1
            )

            event_type = event.get("eventType", "unknown")
            summary["by_type"][event_type] = summary["by_type"].get(event_type, 0) + 1

            if event_type == AuditEventType.SECURITY_VIOLATION.value:
                summary["security_violations"] += 1
                violation = event.get("details", {}).get("violationType", "unknown")
                summary["top_violation_types"][violation] = (
                    summary["top_violation_types"].get(violation, 0) + 1
                )
            elif event_type == AuditEventType.AUTH_FAILURE.value:
                summary["failed_authentications"] += 1

        return summary

    # Integrity

    async def verify_audit_integrity(
        self, hours: Optional[float] = None, verbose: bool = False
    ) -> IntegrityReport:
        """Check every signature in the active and rotated logs.

        Args:
            hours: Only check entries newer than this many hours (all when None)
            verbose: Also list unsigned entries in ``errors``

        Returns:
            IntegrityReport; ``valid`` is False when any signature is invalid
        """
        report = IntegrityReport()
        cutoff = self.clock() - timedelta(hours=hours) if hours is not None else None

        try:
            keys = self.keyring.all_keys()
            for path in self.log_files():
                report.files_checked.append(path.name)
                for number, line in enumerate(self._read_lines(path), start=1):
                    self._verify_line(
                        report, path.name, number, line, keys, cutoff, verbose
                    )
        except (OSError, KeyStorageError) as e:
            report.valid = False
            report.add_error(
                "N/A", 0, f"Verification failed: {sanitize_for_log(str(e), 200)}"
            )
            logger.error(
                "Audit integrity verification failed",
                error=sanitize_for_log(str(e), 200),
            )
            return report

        report.valid = report.invalid_signatures == 0
        logger.info(
            "Audit integrity verified",
            valid=report.valid,
            total_entries=report.total_entries,
            invalid_signatures=report.invalid_signatures,
            unsigned_entries=report.unsigned_entries,
        )

        if report.invalid_signatures:
            await self.log_audit(
                AuditEventType.AUDIT_INTEGRITY_FAILURE,
                {
                    "invalidCount": report.invalid_signatures,
                    "totalChecked": report.total_entries,
                    "files": report.files_checked,
                },
            )
        return report

    def _verify_line(
        self,
        report: IntegrityReport,
        file_name: str,
        number: int,
        line: str,
        keys: Dict[str, bytes],
        cutoff: Optional[datetime],
        verbose: bool,
    ) -> None:
        entry = self._parse_line(line)
        if not isinstance(entry, dict):
            report.add_error(file_name, number, "Invalid JSON entry")
            return

        if cutoff is not None:
            moment = parse_timestamp(entry.get("timestamp"))
            if moment is not None and moment < cutoff:
                return

        report.total_entries += 1
        entry_id = sanitize_for_log(str(entry.get("id")), 100)

        # Written entries never carry blocklisted keys, signed or not
        pollution = detect_pollution(entry)
        if pollution:
            report.invalid_signatures += 1
            report.add_error(
                file_name,
                number,
                POLLUTED_ERROR,
                entryId=entry_id,
                path=sanitize_for_log(pollution["path"], 200),
            )
            return

        if "_signature" not in entry:
            report.unsigned_entries += 1
            if verbose:
                report.add_error(
                    file_name, number, "Entry is not signed", entryId=entry_id
                )
            return

        error = self._check_signature(entry, keys)
        if error is None:
            report.valid_signatures += 1
            return

        report.invalid_signatures += 1
        report.add_error(
            file_name,
            number,
            error,
            entryId=entry_id,
            timestamp=sanitize_for_log(str(entry.get("timestamp")), 64),
        )

    async def rotate_signing_key(self) -> bool:
        """Archive the active key, install a new one and record the rotation."""
        try:
            async with self.context.lock:
                ensure_private_dir(self.audit_dir)
                with exclusive_lock(self.lock_path):
                    previous_id, key_id = self.keyring.rotate()
                    self._append_locked(
                        self.create_entry(
                            AuditEventType.CONFIG_WRITE,
                            {
                                "action": "audit_key_rotation",
                                "previous_key_id": previous_id,
                                "key_id": key_id,
                            },
                        )
                    )
            return True
        except (OSError, KeyStorageError) as e:
            logger.error(
                "Failed to rotate signing key", error=sanitize_for_log(str(e), 200)
            )
            return False
