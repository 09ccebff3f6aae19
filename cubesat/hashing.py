"""Canonical JSON and content fingerprints."""

import hashlib
import json
import re
from typing import Any

FINGERPRINT_PATTERN = re.compile(r"^[0-9a-f]{64}$")


def canonical_json(value: Any) -> str:
    """Serialize to a stable JSON string (sorted keys, no whitespace).

    Raises:
        ValueError: ``value`` holds NaN or an infinity, which JSON cannot carry.
        TypeError: ``value`` holds a non-JSON type.
    """
    return json.dumps(
        value, sort_keys=True, separators=(",", ":"), ensure_ascii=False, allow_nan=False
    )


def content_hash(value: Any) -> str:
    """sha256 hex digest of the canonical JSON form of ``value``."""
    return hashlib.sha256(canonical_json(value).encode("utf-8")).hexdigest()


def is_fingerprint(value: Any) -> bool:
    return isinstance(value, str) and bool(FINGERPRINT_PATTERN.match(value))
