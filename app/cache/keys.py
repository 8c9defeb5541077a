"""
Cache key construction.
"""
import hashlib
import re
from typing import Any

_WHITESPACE = re.compile(r"\s+")


def make_cache_key(resource: str, **params: Any) -> str:
    """
    Deterministic key from a resource name and the parameters that affect it.

    Parameters are sorted and None values dropped, so argument order and
    omitted optionals never split one logical resource into two keys.

        make_cache_key("calendar", tz="UTC", day="01-05-2026")
        -> "calendar:day=01-05-2026:tz=UTC"
    """
    parts = [resource]
    for name in sorted(params):
        value = params[name]
        if value is None:
            continue
        if isinstance(value, bool):
            value = int(value)
        parts.append(f"{name}={value}")
    return ":".join(parts)


def fingerprint(text: str, length: int = 16) -> str:
    """Short sha256 digest of whitespace-normalized, lowercased text."""
    normalized = _WHITESPACE.sub(" ", (text or "").strip().lower())
    return hashlib.sha256(normalized.encode("utf-8")).hexdigest()[:length]
