"""Reader identifier normalization and advertised-name matching."""

from __future__ import annotations

import re
import secrets
import string

DEVICE_ID_PREFIX = "ESP32_"

_TRAILING_ID_RE = re.compile(r"([A-Za-z0-9]{6})$")
_MAC_SUFFIX_RE = re.compile(r"\(([0-9A-F]{2}(?::[0-9A-F]{2}){5})\)$", re.IGNORECASE)
_ID_ALPHABET = string.ascii_uppercase + string.digits


def random_suffix() -> str:
    return "".join(secrets.choice(_ID_ALPHABET) for _ in range(6))


def to_device_id(raw: str) -> str:
    """Normalize anything that names a reader to ``ESP32_XXXXXX``."""
    stripped = re.sub(r"^ESP32_", "", raw.strip(), flags=re.IGNORECASE)
    if not stripped:
        return f"{DEVICE_ID_PREFIX}{random_suffix()}"
    match = _TRAILING_ID_RE.search(stripped)
    suffix = match.group(1) if match else stripped
    return f"{DEVICE_ID_PREFIX}{suffix.upper()[-6:]}"


def display_suffix(device_id: str) -> str:
    return to_device_id(device_id)[len(DEVICE_ID_PREFIX):]


def display_suffix_from_name(name: str, prefix: str = "PINME") -> str | None:
    """Extract the 6-char suffix from ``PINME-XXXXXX``/``PINMEXXXXXX``/``PINME-ESP32_XXXXXX``
    or, failing that, the last three bytes of a trailing ``(AA:BB:CC:DD:EE:FF)``."""
    name_re = re.compile(rf"{re.escape(prefix)}-?(?:ESP32_)?([A-Za-z0-9]{{6}})", re.IGNORECASE)
    match = name_re.search(name or "")
    if match:
        return match.group(1).upper()
    mac_match = _MAC_SUFFIX_RE.search(name or "")
    if mac_match:
        octets = mac_match.group(1).split(":")
        return "".join(octets[3:]).upper()
    return None


def is_reader_name(name: str, prefix: str = "PINME") -> bool:
    return bool(name) and prefix.lower() in name.lower()
