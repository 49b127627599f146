"""Secret redaction for logs and diagnostics."""

from dsr.security.redaction import (
    REDACTED_VALUE,
    is_sensitive_key,
    mask_token,
    redact_text,
    redact_value,
)

__all__ = [
    "REDACTED_VALUE",
    "is_sensitive_key",
    "mask_token",
    "redact_text",
    "redact_value",
]
