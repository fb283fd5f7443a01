"""Hardened primitives shared by the admission and audit layers.

Features:
- Log sanitization (log forging and terminal escape prevention)
- Sensitive value redaction
- Constant-time comparison
- Depth- and key-limited JSON parsing and serialization
- Terminal-safe output rendering
"""

import json
import re
from typing import Any, Dict, List, Optional, Union

import structlog

from ..utils.constants import (
    COMMAND_NAME_PATTERN,
    DEFAULT_JSON_MAX_DEPTH,
    DEFAULT_JSON_STRINGIFY_LENGTH,
    DEFAULT_LOG_FIELD_LENGTH,
    MAX_JSON_STRING_LENGTH,
    MAX_OUTPUT_LINE_LENGTH,
    MAX_OUTPUT_NEWLINES,
    MAX_SAFE_LOG_LENGTH,
    POLLUTION_KEYS,
)

logger = structlog.get_logger()

# Control characters that can forge log lines or corrupt terminals.
# Tab, LF and CR are handled separately; ESC is handled by the ANSI filters.
CONTROL_CHARACTERS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1a\x1c-\x1f\x7f-\x9f]")

NEWLINE_ESCAPES = {"\n": "\\n", "\r": "\\r"}
NEWLINE_CHARACTERS = re.compile(r"[\r\n]")

# Select Graphic Rendition (colors, bold, reset)
SGR_PATTERN = re.compile(r"\x1b\[[0-9;]*m")

# Any CSI sequence: ESC [ params intermediates final-byte
CSI_PATTERN = re.compile(r"\x1b\[[0-?]*[ -/]*[@-~]")

DANGEROUS_ANSI_PATTERNS = [
    re.compile(r"\x1b\][^\x07\x1b]*(?:\x07|\x1b\\|$)"),  # OSC: window title, colors
    re.compile(r"\x1bP.*?(?:\x1b\\|$)", re.DOTALL),  # DCS
    re.compile(r"\x1b_.*?(?:\x1b\\|$)", re.DOTALL),  # APC
    re.compile(r"\x1b\^.*?(?:\x1b\\|$)", re.DOTALL),  # PM
    re.compile(r"\x1bX.*?(?:\x1b\\|$)", re.DOTALL),  # SOS
    re.compile(r"\x1b(?!\[)[\x20-\x7e]?"),  # Two-byte escapes such as ESC c (reset)
    re.compile(r"\x07"),  # Bell
]

DANGEROUS_UNICODE = re.compile(
    r"[\u202a-\u202e"  # Bidi embeddings and overrides
    r"\u2066-\u2069"  # Bidi isolates
    r"\u200b-\u200d"  # Zero-width space and joiners
    r"\u2060-\u2064"  # Word joiner and invisible operators
    r"\ufeff]"  # Zero-width no-break space
)

SENSITIVE_PATTERNS = [
    (
        re.compile(r"\b[a-zA-Z_]*token[=:]\s*['\"]?[a-zA-Z0-9_\-]{8,}['\"]?", re.I),
        "token=[REDACTED]",
    ),
    (
        re.compile(
            r"\b[a-zA-Z_]*api[_-]?key[=:]\s*['\"]?[a-zA-Z0-9_\-]{8,}['\"]?", re.I
        ),
        "api_key=[REDACTED]",
    ),
    (
        re.compile(r"\b[a-zA-Z_]*password[=:]\s*['\"]?[^'\"\s]+['\"]?", re.I),
        "password=[REDACTED]",
    ),
    (
        re.compile(r"\b[a-zA-Z_]*secret[=:]\s*['\"]?[a-zA-Z0-9_\-]{8,}['\"]?", re.I),
        "secret=[REDACTED]",
    ),
    (re.compile(r"\bBearer\s+[a-zA-Z0-9_\-\.=]+", re.I), "Bearer [REDACTED]"),
    (re.compile(r"\bBasic\s+[a-zA-Z0-9+/=]+", re.I), "Basic [REDACTED]"),
]

PROTO_KEY_PATTERN = re.compile(
    r'"(' + "|".join(re.escape(key) for key in POLLUTION_KEYS) + r')"\s*:',
    re.IGNORECASE,
)

CIRCULAR_SENTINEL = "[Circular]"


# ---------------------------------------------------------------------------
# Log sanitization
# ---------------------------------------------------------------------------


def strip_dangerous_ansi(text: str) -> str:
    """Remove cursor, screen, title and device-control sequences.

    SGR color codes are kept; callers decide whether to drop them too.
    """
    if not isinstance(text, str):
        text = str(text)

    text = CSI_PATTERN.sub(
        lambda match: match.group(0) if SGR_PATTERN.fullmatch(match.group(0)) else "",
        text,
    )
    for pattern in DANGEROUS_ANSI_PATTERNS:
        text = pattern.sub("", text)
    return text


def strip_control_characters(text: str) -> str:
    """Remove non-printable control characters, keeping tab, LF and CR."""
    return CONTROL_CHARACTERS.sub("", text)


def strip_dangerous_unicode(text: str) -> str:
    """Remove bidirectional overrides and zero-width characters."""
    return DANGEROUS_UNICODE.sub("", text)


def _strip_escapes(text: str, preserve_colors: bool) -> str:
    text = strip_dangerous_ansi(text)
    if not preserve_colors:
        text = SGR_PATTERN.sub("", text)
        return text.replace("\x1b", "")
    # Keep only ESC bytes that open a preserved SGR code
    return re.sub(r"\x1b(?!\[[0-9;]*m)", "", text)


def sanitize_for_log(
    value: Any,
    max_length: int = DEFAULT_LOG_FIELD_LENGTH,
    preserve_colors: bool = False,
) -> str:
    """Make a value safe to embed in a single log line.

    Newlines and carriage returns become the two-character sequences
    ``\\n`` and ``\\r`` so a value can never start a forged log line.
    Tabs are kept. SGR color codes survive only when ``preserve_colors``
    is set by a trusted caller.
    """
    text = value if isinstance(value, str) else str(value)
    limit = max(0, min(max_length, MAX_SAFE_LOG_LENGTH))

    sanitized = text[:limit]
    sanitized = _strip_escapes(sanitized, preserve_colors)
    sanitized = strip_control_characters(sanitized)
    sanitized = NEWLINE_CHARACTERS.sub(
        lambda match: NEWLINE_ESCAPES[match.group(0)], sanitized
    )
    return sanitized[:limit]


def mask_sensitive_data(text: Any) -> Any:
    """Redact tokens, API keys, passwords, secrets and auth headers."""
    if not isinstance(text, str):
        return text

    masked = text
    for pattern, replacement in SENSITIVE_PATTERNS:
        masked = pattern.sub(replacement, masked)
    return masked


def secure_log_string(value: Any, max_length: int = DEFAULT_LOG_FIELD_LENGTH) -> str:
    """Sanitize and redact in one step."""
    return mask_sensitive_data(sanitize_for_log(value, max_length))


# ---------------------------------------------------------------------------
# Terminal output
# ---------------------------------------------------------------------------


def truncate_string(text: str, max_length: int, indicator: str = "...") -> str:
    """Truncate to ``max_length`` characters including the indicator."""
    if len(text) <= max_length:
        return text
    cut = max_length - len(indicator)
    if cut <= 0:
        return text[:max_length]
    return text[:cut] + indicator


def limit_newlines(text: str, max_newlines: int = MAX_OUTPUT_NEWLINES) -> str:
    """Keep at most ``max_newlines`` line breaks."""
    parts = text.split("\n")
    if len(parts) - 1 <= max_newlines:
        return text
    kept = parts[: max_newlines + 1]
    kept.append(f"[{len(parts) - len(kept)} more lines truncated]")
    return "\n".join(kept)


def sanitize_output(
    data: Any,
    preserve_colors: bool = False,
    mask_sensitive: bool = True,
    max_length: int = MAX_OUTPUT_LINE_LENGTH,
    max_newlines: int = MAX_OUTPUT_NEWLINES,
) -> str:
    """Render untrusted data for terminal display.

    Unlike ``sanitize_for_log`` this keeps real line breaks, but caps how
    many there are.
    """
    text = data if isinstance(data, str) else str(data)

    if mask_sensitive:
        text = mask_sensitive_data(text)

    text = _strip_escapes(text, preserve_colors)
    text = strip_control_characters(text)
    text = strip_dangerous_unicode(text)
    text = limit_newlines(text, max_newlines)
    return truncate_string(text, max_length)


# ---------------------------------------------------------------------------
# Comparison
# ---------------------------------------------------------------------------


def constant_time_compare(a: Union[str, bytes], b: Union[str, bytes]) -> bool:
    """Compare two secrets without short-circuiting on the first difference.

    Every position of the longer input is visited; the length check is
    folded in only after the loop.
    """
    if not isinstance(a, (str, bytes)) or not isinstance(b, (str, bytes)):
        return False

    left = a.encode("utf-8") if isinstance(a, str) else a
    right = b.encode("utf-8") if isinstance(b, str) else b

    result = 0
    for i in range(max(len(left), len(right))):
        x = left[i] if i < len(left) else 0
        y = right[i] if i < len(right) else 0
        result |= x ^ y

    return result == 0 and len(left) == len(right)


# ---------------------------------------------------------------------------
# Safe JSON
# ---------------------------------------------------------------------------


def is_pollution_key(key: Any) -> bool:
    """Check if a key is on the prototype-pollution blocklist."""
    return key in POLLUTION_KEYS


def detect_pollution(value: Any, path: str = "") -> Optional[Dict[str, str]]:
    """Find a blocklisted key anywhere in a parsed structure.

    Returns:
        ``{"type", "key", "path"}`` for the first hit, or None
    """
    if isinstance(value, dict):
        for key, item in value.items():
            if is_pollution_key(key):
                kind = "direct_key" if not path else "nested_key"
                return {"type": kind, "key": key, "path": path or "$"}
            found = detect_pollution(item, f"{path}.{key}" if path else str(key))
            if found:
                return found
    elif isinstance(value, list):
        for index, item in enumerate(value):
            found = detect_pollution(item, f"{path}[{index}]")
            if found:
                return found
    return None


def is_safe_command_name(command: Any) -> bool:
    """Validate a command name used as a persisted key."""
    if not isinstance(command, str):
        return False
    if any(key in command for key in POLLUTION_KEYS):
        return False
    return re.fullmatch(COMMAND_NAME_PATTERN, command) is not None


def get_json_depth(text: str) -> int:
    """Compute maximum nesting depth of raw JSON text without parsing it.

    Brackets inside string literals, including escaped quotes, are ignored.
    """
    max_depth = 0
    depth = 0
    in_string = False
    escape_next = False

    for char in text:
        if escape_next:
            escape_next = False
            continue
        if in_string:
            if char == "\\":
                escape_next = True
            elif char == '"':
                in_string = False
            continue
        if char == '"':
            in_string = True
        elif char in "{[":
            depth += 1
            max_depth = max(max_depth, depth)
        elif char in "}]":
            depth -= 1

    return max_depth


def has_proto_pollution_keys(text: str) -> bool:
    """Check raw JSON text for blocklisted object keys."""
    return PROTO_KEY_PATTERN.search(text) is not None


def _reject_constant(name: str) -> None:
    raise ValueError(f"Non-standard JSON constant: {name}")


def safe_json_parse(
    text: Any,
    max_depth: int = DEFAULT_JSON_MAX_DEPTH,
    allow_proto_keys: bool = False,
) -> Optional[Any]:
    """Parse JSON with depth, size and key limits.

    Returns None instead of raising on any rejection.
    """
    if not isinstance(text, str):
        return None

    if len(text) > MAX_JSON_STRING_LENGTH:
        return None

    # Depth is measured before parsing so deep input never reaches the parser
    depth = get_json_depth(text)
    if depth > max_depth:
        logger.debug("JSON rejected: nesting too deep", depth=depth, limit=max_depth)
        return None

    if not allow_proto_keys and has_proto_pollution_keys(text):
        logger.debug("JSON rejected: blocklisted key present")
        return None

    def _pairs_hook(pairs: List[tuple]) -> Dict[str, Any]:
        if allow_proto_keys:
            return dict(pairs)
        # Catches keys spelled with unicode escapes that the text scan missed
        return {key: value for key, value in pairs if not is_pollution_key(key)}

    try:
        return json.loads(
            text, object_pairs_hook=_pairs_hook, parse_constant=_reject_constant
        )
    except (ValueError, RecursionError):
        return None


def _prune(value: Any, ancestors: List[int]) -> Any:
    if isinstance(value, dict):
        if id(value) in ancestors:
            return CIRCULAR_SENTINEL
        ancestors.append(id(value))
        pruned = {
            str(key): _prune(item, ancestors)
            for key, item in value.items()
            if not is_pollution_key(str(key))
        }
        ancestors.pop()
        return pruned

    if isinstance(value, (list, tuple)):
        if id(value) in ancestors:
            return CIRCULAR_SENTINEL
        ancestors.append(id(value))
        pruned_list = [_prune(item, ancestors) for item in value]
        ancestors.pop()
        return pruned_list

    return value


def safe_json_stringify(
    value: Any, max_length: int = DEFAULT_JSON_STRINGIFY_LENGTH
) -> str:
    """Serialize without blocklisted keys, cycles or unbounded output."""
    try:
        result = json.dumps(
            _prune(value, []),
            default=str,
            ensure_ascii=False,
            separators=(",", ":"),
        )
    except (TypeError, ValueError, RecursionError):
        return json.dumps({"_error": "Stringification failed"})

    if len(result) > max_length:
        return json.dumps({"_truncated": True, "_originalSize": len(result)})

    return result
