from chainmind.security.redaction import (
    REDACTED,
    SENSITIVE_KEYS,
    redact_data,
    safe_repr,
    sanitize_mapping,
    sanitize_text,
)

__all__ = [
    "REDACTED",
    "SENSITIVE_KEYS",
    "redact_data",
    "safe_repr",
    "sanitize_mapping",
    "sanitize_text",
]
