"""Stable public API for building tooling on top of pinmectl.

This module is the supported integration surface for third-party callers.
Avoid importing from private/internal modules unless intentionally depending on
non-stable internals.
"""

from __future__ import annotations

import asyncio
from pathlib import Path

from pinmectl.core.chunk import DEFAULT_CHUNK_SIZE, ChunkTag, encode_chunk_commands
from pinmectl.core.errors import (
    BackendError,
    ConfigLoadError,
    ConfigValidationError,
    DeviceBusyError,
    DeviceDiscoveryError,
    DeviceSelectionError,
    DeviceTimeoutError,
    HedgedRequestError,
    PinmeError,
    ProvisioningError,
    SessionStateError,
    TokenIssueError,
    TransportConnectError,
    TransportError,
    TransportSendError,
    TransportTimeoutError,
    UnsupportedCommandError,
    UploadError,
    UploadTimeoutError,
    WifiAuthError,
    WifiNetworkError,
)
from pinmectl.core.model import (
    DeviceStatus,
    DiscoveredDevice,
    PinmeConfig,
    ProvisioningResult,
    QualityRung,
    UploadResult,
    WifiNetwork,
)
from pinmectl.core.service import BackendFactory, Discoverer, LinkFactory, ProvisioningService
from pinmectl.core.upload import hedged_first_successful
from pinmectl.transports.base import DeviceLink
from pinmectl.transports.ble_gatt import BLEGATTLink

__all__ = [
    "PinmeError",
    "BackendError",
    "ConfigLoadError",
    "ConfigValidationError",
    "DeviceBusyError",
    "DeviceDiscoveryError",
    "DeviceSelectionError",
    "DeviceTimeoutError",
    "HedgedRequestError",
    "ProvisioningError",
    "SessionStateError",
    "TokenIssueError",
    "TransportError",
    "TransportConnectError",
    "TransportSendError",
    "TransportTimeoutError",
    "UnsupportedCommandError",
    "UploadError",
    "UploadTimeoutError",
    "WifiAuthError",
    "WifiNetworkError",
    "DeviceStatus",
    "DiscoveredDevice",
    "PinmeConfig",
    "ProvisioningResult",
    "QualityRung",
    "UploadResult",
    "WifiNetwork",
    "ChunkTag",
    "DeviceLink",
    "BLEGATTLink",
    "hedged_first_successful",
    "Client",
]


class Client:
    """Public client for interacting with pinmectl core capabilities.

    A `Client` instance wraps configuration loading, BLE discovery, reader
    provisioning and photo uploads behind a blocking API intended for
    scripts and simple frontends. Each call runs its own event loop; async
    callers should use :attr:`service` directly.
    """

    def __init__(
        self,
        *,
        config_path: Path | None = None,
        link_factory: LinkFactory | None = None,
        discover: Discoverer | None = None,
        backend_factory: BackendFactory | None = None,
    ) -> None:
        self._service = ProvisioningService(
            config_path=config_path,
            link_factory=link_factory,
            discover=discover,
            backend_factory=backend_factory,
        )

    @property
    def service(self) -> ProvisioningService:
        return self._service

    @property
    def config(self) -> PinmeConfig:
        return self._service.config

    @property
    def load_warnings(self) -> tuple[str, ...]:
        return self._service.load_warnings

    def scan(self, *, timeout_s: float | None = None, include_all: bool = False) -> list[DiscoveredDevice]:
        return asyncio.run(self._service.scan(timeout_s=timeout_s, include_all=include_all))

    def list_networks(self, address: str) -> list[WifiNetwork]:
        return asyncio.run(self._service.list_networks(address))

    def provision(
        self,
        address: str,
        *,
        ssid: str,
        password: str,
        confirm_online: bool = True,
    ) -> ProvisioningResult:
        return asyncio.run(
            self._service.provision(address, ssid, password, confirm_online=confirm_online)
        )

    def send_command(self, address: str, command: str, *, listen_s: float = 2.0) -> list[str]:
        return asyncio.run(self._service.send_command(address, command, listen_s=listen_s))

    def upload_photo(self, path: Path, *, owner_id: str | None = None) -> UploadResult:
        return asyncio.run(self._service.upload_photo(path, owner_id=owner_id))

    @staticmethod
    def preview_frames(tag: str, text: str, *, chunk_size: int = DEFAULT_CHUNK_SIZE) -> list[str]:
        """Return the exact frames that would be written for ``text`` under ``tag``."""
        return encode_chunk_commands(tag, text, chunk_size)
