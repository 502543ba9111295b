"""Core data models used across config, service, and CLI."""

from __future__ import annotations

from dataclasses import dataclass, field


@dataclass(frozen=True)
class BackendSettings:
    url: str | None = None
    anon_key: str | None = None
    access_token: str | None = None
    owner_id: str | None = None
    ca_bundle: str | None = None
    tls_insecure: bool = False


@dataclass(frozen=True)
class BLESettings:
    service_uuid: str = "0000fff0-0000-1000-8000-00805f9b34fb"
    write_char_uuid: str = "0000fff1-0000-1000-8000-00805f9b34fb"
    notify_char_uuid: str = "0000fff2-0000-1000-8000-00805f9b34fb"
    device_id_char_uuids: tuple[str, ...] = (
        "0000fff3-0000-1000-8000-00805f9b34fb",
        "0000fff2-0000-1000-8000-00805f9b34fb",
    )
    name_prefix: str = "PINME"
    scan_timeout_s: float = 12.0
    connect_timeout_s: float = 10.0


@dataclass(frozen=True)
class ProvisioningTimings:
    wifi_result_timeout_s: float = 20.0
    busy_retry_delay_s: float = 1.2
    busy_retry_limit: int = 2
    fail_retry_delay_s: float = 2.0
    fail_retry_limit: int = 1
    token_timeout_s: float = 9.0
    online_poll_timeout_s: float = 20.0
    online_poll_interval_s: float = 2.0
    wifi_list_timeout_s: float = 12.0
    wifi_list_rescan_delay_s: float = 1.5
    chunk_size: int = 16


@dataclass(frozen=True)
class QualityRung:
    max_width: int
    quality: float


@dataclass(frozen=True)
class UploadSettings:
    bucket: str = "toy-photos"
    proxy_function: str = "upload-toy-photo"
    hedge_delay_s: float = 1.5
    direct_timeout_s: float = 10.0
    proxy_timeout_s: float = 20.0
    ladder: tuple[QualityRung, ...] = (QualityRung(720, 0.6), QualityRung(480, 0.5))


@dataclass(frozen=True)
class PinmeConfig:
    backend: BackendSettings = field(default_factory=BackendSettings)
    ble: BLESettings = field(default_factory=BLESettings)
    provisioning: ProvisioningTimings = field(default_factory=ProvisioningTimings)
    upload: UploadSettings = field(default_factory=UploadSettings)


@dataclass(frozen=True)
class DiscoveredDevice:
    address: str
    name: str
    rssi: int | None = None
    display_suffix: str | None = None


@dataclass(frozen=True)
class WifiNetwork:
    ssid: str
    rssi: int
    encryption: str


@dataclass(frozen=True)
class DeviceStatus:
    device_id: str
    status: str | None = None
    last_seen: str | None = None
    wifi_signal: float | None = None
    wifi_ssid: str | None = None

    @property
    def online(self) -> bool:
        if (self.status or "").lower() == "online":
            return True
        return self.wifi_signal is not None


@dataclass(frozen=True)
class ProvisioningResult:
    address: str
    device_id: str
    ssid: str
    token_issued: bool
    used_debug_token_route: bool
    online_confirmed: bool | None
    warnings: tuple[str, ...] = ()


@dataclass(frozen=True)
class UploadTask:
    data: bytes
    content_type: str
    owner_id: str
    filename: str | None = None


@dataclass(frozen=True)
class UploadResult:
    public_url: str
    path: str
    attempts: int
    degraded: QualityRung | None = None
