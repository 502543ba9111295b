"""Text command/notification contract spoken with the reader firmware."""

from __future__ import annotations

import json
import re
from dataclasses import dataclass
from enum import Enum

from pinmectl.core.model import WifiNetwork

WIFI_LIST = "WIFI_LIST"
WIFI_DISCONNECT = "WIFI_DISCONNECT"
HEARTBEAT_NOW = "HEARTBEAT_NOW"
PING = "PING"
DEV_INSECURE_ON = "DEV_INSECURE_ON"

DIRECT_COMMANDS = (WIFI_LIST, WIFI_DISCONNECT, HEARTBEAT_NOW, PING, DEV_INSECURE_ON)


def compact_json(payload: dict[str, object]) -> str:
    return json.dumps(payload, separators=(",", ":"), ensure_ascii=False)


def wifi_set_command(ssid: str, password: str) -> str:
    ssid = ssid.strip()
    if not ssid:
        raise ValueError("SSID must not be empty")
    return f"WIFI_SET {compact_json({'ssid': ssid, 'password': password.strip()})}"


def decode_notification(data: bytes | bytearray) -> str:
    return bytes(data).decode("utf-8", errors="replace").strip()


class NotificationKind(str, Enum):
    WIFI_LIST_BEGIN = "wifi_list_begin"
    WIFI_LIST_NONE = "wifi_list_none"
    WIFI_LIST_END = "wifi_list_end"
    WIFI_ITEM = "wifi_item"
    WIFI_OK = "wifi_ok"
    WIFI_STA_CONNECTED = "wifi_sta_connected"
    WIFI_BUSY = "wifi_busy"
    WIFI_AUTH_FAIL = "wifi_auth_fail"
    WIFI_FAIL = "wifi_fail"
    WIFI_DISCONNECTED = "wifi_disconnected"
    WIFI_AP_NOT_FOUND = "wifi_ap_not_found"
    WIFI_CONNECTING = "wifi_connecting"
    ACK_RX_LEN = "ack_rx_len"
    DATA_RECEIVED = "data_received"
    JWT_SAVED = "jwt_saved"
    ACK_JWT = "ack_jwt"
    ACK_PING = "ack_ping"
    TICK = "tick"
    UNRECOGNIZED = "unrecognized"


# Order matters: list frames carry arbitrary SSIDs and are anchored first;
# WIFI_AUTH_FAIL is checked before the generic failure patterns.
_PATTERNS: tuple[tuple[NotificationKind, re.Pattern[str]], ...] = (
    (NotificationKind.WIFI_LIST_BEGIN, re.compile(r"^WIFI_LIST_BEGIN\b", re.IGNORECASE)),
    (NotificationKind.WIFI_LIST_NONE, re.compile(r"^WIFI_LIST_NONE\b", re.IGNORECASE)),
    (NotificationKind.WIFI_LIST_END, re.compile(r"^WIFI_LIST_END\b", re.IGNORECASE)),
    (NotificationKind.WIFI_ITEM, re.compile(r"^WIFI_ITEM\s", re.IGNORECASE)),
    (NotificationKind.WIFI_OK, re.compile(r"WIFI_OK", re.IGNORECASE)),
    (NotificationKind.WIFI_STA_CONNECTED, re.compile(r"WIFI_STA_CONNECTED", re.IGNORECASE)),
    (NotificationKind.WIFI_BUSY, re.compile(r"WIFI_BUSY", re.IGNORECASE)),
    (NotificationKind.WIFI_AUTH_FAIL, re.compile(r"WIFI_AUTH_FAIL", re.IGNORECASE)),
    (NotificationKind.WIFI_FAIL, re.compile(r"WIFI_FAIL", re.IGNORECASE)),
    (NotificationKind.WIFI_DISCONNECTED, re.compile(r"WIFI_DISCONNECTED_REASON_(\w*)", re.IGNORECASE)),
    (NotificationKind.WIFI_AP_NOT_FOUND, re.compile(r"WIFI_AP_NOT_FOUND", re.IGNORECASE)),
    (NotificationKind.WIFI_CONNECTING, re.compile(r"WIFI_CONNECTING", re.IGNORECASE)),
    (NotificationKind.ACK_RX_LEN, re.compile(r"ACK_RX_LEN|ACK LEN", re.IGNORECASE)),
    (NotificationKind.DATA_RECEIVED, re.compile(r"DATA_RECEIVED", re.IGNORECASE)),
    (NotificationKind.JWT_SAVED, re.compile(r"JWT_SAVED", re.IGNORECASE)),
    (NotificationKind.ACK_JWT, re.compile(r"ACK_JWT", re.IGNORECASE)),
    (NotificationKind.ACK_PING, re.compile(r"ACK_PING", re.IGNORECASE)),
    (NotificationKind.TICK, re.compile(r"^tick\b", re.IGNORECASE)),
)


@dataclass(frozen=True)
class Notification:
    kind: NotificationKind
    text: str
    detail: str | None = None


def classify_notification(text: str) -> Notification:
    """Map a raw notification string onto a :class:`NotificationKind`. Total."""
    text = text.strip()
    for kind, pattern in _PATTERNS:
        match = pattern.search(text)
        if match is None:
            continue
        detail: str | None = None
        if kind is NotificationKind.WIFI_DISCONNECTED:
            detail = match.group(1) or None
        elif kind is NotificationKind.WIFI_ITEM:
            detail = text[match.end():]
        return Notification(kind=kind, text=text, detail=detail)
    return Notification(kind=NotificationKind.UNRECOGNIZED, text=text)


def parse_wifi_item(payload: str) -> WifiNetwork:
    """Parse the ``ssid|rssi|enc`` body of a ``WIFI_ITEM`` notification."""
    parts = payload.split("|")
    ssid = parts[0] if parts else ""
    try:
        rssi = int(parts[1]) if len(parts) > 1 else 0
    except ValueError:
        rssi = 0
    encryption = parts[2] if len(parts) > 2 else ""
    return WifiNetwork(ssid=ssid, rssi=rssi, encryption=encryption)


class WifiListCollector:
    """Accumulates one ``WIFI_LIST`` exchange.

    ``feed`` returns ``"rescan"`` when the device reported an empty list and
    one automatic re-scan is still allowed, ``"done"`` once the list is
    final, and ``None`` otherwise.
    """

    def __init__(self, *, allow_rescan: bool = True) -> None:
        self._items: dict[str, WifiNetwork] = {}
        self.reported_none = False
        self.finished = False
        self._rescan_available = allow_rescan

    @property
    def networks(self) -> list[WifiNetwork]:
        return sorted(self._items.values(), key=lambda n: n.rssi, reverse=True)

    def feed(self, note: Notification) -> str | None:
        if self.finished:
            return None
        if note.kind is NotificationKind.WIFI_LIST_BEGIN:
            self._items.clear()
            self.reported_none = False
            return None
        if note.kind is NotificationKind.WIFI_LIST_NONE:
            self.reported_none = True
            return None
        if note.kind is NotificationKind.WIFI_ITEM:
            network = parse_wifi_item(note.detail or "")
            self._items[network.ssid] = network
            return None
        if note.kind is NotificationKind.WIFI_LIST_END:
            if not self._items and self._rescan_available:
                self._rescan_available = False
                return "rescan"
            self.finished = True
            return "done"
        return None
