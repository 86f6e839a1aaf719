"""
Identity hashing: privacy-preserving join keys for donor email and phone.

Format:  {type_tag}{sha256_hex[:N]}
- type_tag → "em_" for email, "ph_" for phone (an email digest can never
             collide with a phone digest)
- sha256   → digest of the NORMALIZED value, hex-truncated for storage

Normalization:
- email → trimmed, lowercased, must contain "@" with text on both sides
- phone → digits only, last 10 kept (drops country code), fewer than 10 = invalid

Malformed input returns INVALID_HASH (""). Callers skip such records.
"""

import hashlib
import re

from app.config import get_settings

EMAIL_PREFIX = "em_"
PHONE_PREFIX = "ph_"
INVALID_HASH = ""

PHONE_DIGITS = 10

_NON_DIGITS = re.compile(r"\D")


def normalize_email(raw: str | None) -> str | None:
    if not raw or not isinstance(raw, str):
        return None
    value = raw.strip().lower()
    local, sep, domain = value.rpartition("@")
    if not sep or not local or not domain:
        return None
    return value


def normalize_phone(raw: str | int | None) -> str | None:
    if raw is None:
        return None
    digits = _NON_DIGITS.sub("", str(raw))
    if len(digits) < PHONE_DIGITS:
        return None
    return digits[-PHONE_DIGITS:]


def _digest(prefix: str, value: str) -> str:
    length = get_settings().identity_hash_length
    return prefix + hashlib.sha256(value.encode("utf-8")).hexdigest()[:length]


def hash_email(raw: str | None) -> str:
    normalized = normalize_email(raw)
    if normalized is None:
        return INVALID_HASH
    return _digest(EMAIL_PREFIX, normalized)


def hash_phone(raw: str | int | None) -> str:
    normalized = normalize_phone(raw)
    if normalized is None:
        return INVALID_HASH
    return _digest(PHONE_PREFIX, normalized)
