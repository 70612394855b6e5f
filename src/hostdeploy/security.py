from __future__ import annotations

import re
import unicodedata
from dataclasses import dataclass
from typing import Any


MAX_STRING_LENGTH = 400

SECRET_VALUE_PATTERNS = [
    re.compile(r"\bsk-[A-Za-z0-9]{16,}\b"),
    re.compile(r"\bgh[pousr]_[A-Za-z0-9]{20,}\b"),
    re.compile(r"\bxox[baprs]-[A-Za-z0-9-]{20,}\b"),
    re.compile(r"\bAKIA[0-9A-Z]{16}\b"),
    re.compile(r"\bAIza[0-9A-Za-z\-_]{20,}\b"),
    re.compile(r"\b[A-Za-z0-9\-_]{16,}\.[A-Za-z0-9\-_]{16,}\.[A-Za-z0-9\-_]{16,}\b"),  # JWT-like
    re.compile(r"\b(?:Bearer|Token)\s+[A-Za-z0-9\-_\.]{16,}\b", re.IGNORECASE),
    re.compile(r"\b[A-Z0-9]{5}(?:-[A-Z0-9]{5}){4}\b"),  # product-key-like
    re.compile(r"(?:password|passwd|pwd|secret|apikey|api_key)\s*[=:]\s*\S+", re.IGNORECASE),
    re.compile(r"-----BEGIN (?:RSA|EC|OPENSSH|PRIVATE) KEY-----"),
]

SECRET_NAME_PATTERN = re.compile(r"(password|passwd|secret|token|apikey|api_key|license_?key|credential)", re.IGNORECASE)


def is_secret_like_text(text: str) -> bool:
    for pattern in SECRET_VALUE_PATTERNS:
        if pattern.search(text):
            return True
    return False


def is_secret_like_name(name: str) -> bool:
    """Registry value or field names whose data should never reach the log."""

    return bool(SECRET_NAME_PATTERN.search(name))


@dataclass(frozen=True)
class SanitizeStats:
    """Counts for redactions and truncations emitted during sanitization."""

    redacted_fields: int = 0
    truncated_fields: int = 0

    def __add__(self, other: "SanitizeStats") -> "SanitizeStats":
        return SanitizeStats(
            redacted_fields=self.redacted_fields + other.redacted_fields,
            truncated_fields=self.truncated_fields + other.truncated_fields,
        )


def _strip_control_chars(value: str) -> str:
    return "".join(ch for ch in value if not unicodedata.category(ch).startswith("C"))


def _sanitize_text(value: str) -> tuple[str, SanitizeStats]:
    cleaned = _strip_control_chars(value).strip()
    if is_secret_like_text(cleaned):
        return "[redacted]", SanitizeStats(redacted_fields=1)
    if len(cleaned) > MAX_STRING_LENGTH:
        return f"{cleaned[:MAX_STRING_LENGTH]}...[truncated]", SanitizeStats(truncated_fields=1)
    return cleaned, SanitizeStats()


def sanitize_event_data(data: Any) -> tuple[Any, SanitizeStats]:
    """Recursively sanitize log payloads for secrets, control characters, and size."""

    if isinstance(data, dict):
        sanitized: dict[str, Any] = {}
        stats = SanitizeStats()
        for item_key, value in data.items():
            key_text, key_stats = _sanitize_text(str(item_key))
            value_sanitized, value_stats = sanitize_event_data(value)
            sanitized[key_text] = value_sanitized
            stats = stats + key_stats + value_stats
        return sanitized, stats
    if isinstance(data, (list, tuple)):
        sanitized_items: list[Any] = []
        stats = SanitizeStats()
        for item in data:
            item_sanitized, item_stats = sanitize_event_data(item)
            sanitized_items.append(item_sanitized)
            stats = stats + item_stats
        return sanitized_items, stats
    if data is None or isinstance(data, (bool, int, float)):
        return data, SanitizeStats()
    if isinstance(data, (bytes, bytearray)):
        data = bytes(data).hex()
    return _sanitize_text(str(data))
