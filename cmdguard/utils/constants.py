"""Application-wide constants."""

# Version info
APP_NAME = "cmdguard"
APP_DESCRIPTION = "Admission control and tamper-evident audit logging for CLI commands"

# Filesystem layout (relative to the per-user home directory)
DEFAULT_HOME_DIRNAME = ".cmdguard"
RATE_LIMIT_FILENAME = "rate-limits.json"
AUDIT_DIRNAME = "audit"
AUDIT_LOG_BASENAME = "audit"
AUDIT_KEY_FILENAME = ".audit.key"
AUDIT_KEYS_DIRNAME = "keys"
AUDIT_LOCK_FILENAME = ".audit.lock"

# Owner read/write only
SECURE_FILE_MODE = 0o600
SECURE_DIR_MODE = 0o700

# Default rate limits: command -> (max invocations, window in ms)
DEFAULT_RATE_LIMITS = {
    # High-security commands
    "config-audit": (10, 60_000),
    "config-fix": (5, 60_000),
    "audit-verify": (5, 60_000),
    "security": (10, 60_000),
    "exec": (10, 60_000),
    "restore": (3, 300_000),
    # Deployment
    "deploy": (5, 300_000),
    "revive": (10, 60_000),
    # Update commands hit an external API
    "update": (10, 60_000),
    "update-version": (20, 60_000),
    # Data modification
    "cleanup": (5, 60_000),
    "import": (10, 60_000),
    # Read-only
    "status": (60, 60_000),
    "health": (60, 60_000),
    "logs": (30, 60_000),
    "validate": (30, 60_000),
    # Communication
    "chat": (20, 60_000),
    "default": (30, 60_000),
}
DEFAULT_RATE_LIMIT_KEY = "default"

# Rate limit state retention
MAX_ENTRIES_PER_COMMAND = 100
MAX_STATE_ARRAY_LENGTH = MAX_ENTRIES_PER_COMMAND * 2
CLEANUP_AGE_MS = 24 * 60 * 60 * 1000
MAX_CLOCK_SKEW_MS = 60_000
MAX_TIMESTAMP_AGE_MS = 365 * 24 * 60 * 60 * 1000
COMMAND_NAME_PATTERN = r"[a-zA-Z0-9_-]{1,100}"

# Keys that must never appear in persisted or parsed structures
POLLUTION_KEYS = ("__proto__", "constructor", "prototype")

# Audit log limits
DEFAULT_AUDIT_MAX_LOG_BYTES = 5 * 1024 * 1024
DEFAULT_AUDIT_MAX_FILES = 10
DEFAULT_AUDIT_MAX_ENTRY_BYTES = 10 * 1024
DEFAULT_AUDIT_VERIFY_HOURS = 168
AUDIT_ENTRY_VERSION = "1.1"
AUDIT_DETAIL_MAX_DEPTH = 5

# Signing
HMAC_ALGORITHM = "sha256"
SIGNING_KEY_BYTES = 32
KEY_ID_LENGTH = 16

# Sanitization limits
MAX_SAFE_LOG_LENGTH = 10_000
DEFAULT_LOG_FIELD_LENGTH = 1000
MAX_JSON_STRING_LENGTH = 10 * 1024 * 1024
DEFAULT_JSON_MAX_DEPTH = 100
DEFAULT_JSON_STRINGIFY_LENGTH = 100_000
MAX_OUTPUT_LINE_LENGTH = 10_000
MAX_OUTPUT_NEWLINES = 100

# Correlation IDs
CORRELATION_ID_ENV_VAR = "CMDGUARD_CORRELATION_ID"
CORRELATION_ID_MIN_LENGTH = 8
CORRELATION_ID_MAX_LENGTH = 64
CORRELATION_ID_PREFIX = "cg"

# Exit codes
EXIT_OK = 0
EXIT_FAILURE = 1
EXIT_RATE_LIMITED = 75  # EX_TEMPFAIL
