"""Strip credential-like fields from change payloads before they are logged."""

from __future__ import annotations

from typing import Any

# Case-insensitive substring match on field names. Over-matches (`keyword`)
# and misses differently named secrets.
SENSITIVE_FIELDS = ("password", "token", "secret", "key")


def is_sensitive(field_name: str) -> bool:
    lowered = field_name.lower()
    return any(marker in lowered for marker in SENSITIVE_FIELDS)


def strip_sensitive(data: Any) -> Any:
    """Return a copy of ``data`` with sensitive keys removed at every depth."""
    if isinstance(data, dict):
        return {
            key: strip_sensitive(value)
            for key, value in data.items()
            if not is_sensitive(str(key))
        }
    if isinstance(data, (list, tuple)):
        return [strip_sensitive(item) for item in data]
    return data
