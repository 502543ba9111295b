"""BLE GATT transport implementation."""

from __future__ import annotations

import asyncio
import logging

from bleak import BleakClient, BleakScanner
from bleak.exc import BleakError

from pinmectl.core.device_id import display_suffix_from_name, is_reader_name
from pinmectl.core.errors import (
    DeviceDiscoveryError,
    TransportConnectError,
    TransportSendError,
)
from pinmectl.core.model import BLESettings, DiscoveredDevice
from pinmectl.core.protocol import decode_notification
from pinmectl.transports.base import NotificationHandler

LOGGER = logging.getLogger(__name__)


async def discover_devices(
    settings: BLESettings,
    *,
    timeout_s: float | None = None,
    include_all: bool = False,
) -> list[DiscoveredDevice]:
    """Scan for readers; the scanner is stopped on every exit path, including cancellation."""
    timeout = settings.scan_timeout_s if timeout_s is None else timeout_s
    LOGGER.info("BLE scan: prefix=%s timeout=%.1fs", settings.name_prefix, timeout)

    try:
        async with BleakScanner() as scanner:
            await asyncio.sleep(timeout)
            found = list(scanner.discovered_devices_and_advertisement_data.values())
    except (BleakError, OSError) as exc:
        raise DeviceDiscoveryError(f"BLE scan failed: {exc}") from exc

    results: list[DiscoveredDevice] = []
    for device, adv in found:
        name = device.name or adv.local_name or ""
        if not include_all and not is_reader_name(name, settings.name_prefix):
            continue
        results.append(
            DiscoveredDevice(
                address=device.address,
                name=name or "<unknown-device>",
                rssi=adv.rssi,
                display_suffix=display_suffix_from_name(name, settings.name_prefix),
            )
        )

    results.sort(key=lambda d: d.rssi if d.rssi is not None else -999, reverse=True)
    return results


class BLEGATTLink:
    """Connection to one reader; use as an async context manager."""

    def __init__(
        self,
        address: str,
        settings: BLESettings | None = None,
        *,
        client: BleakClient | None = None,
    ) -> None:
        self.address = address
        self.settings = settings or BLESettings()
        self._client = client or BleakClient(address, timeout=self.settings.connect_timeout_s)
        self._write_lock = asyncio.Lock()
        self._notifying = False

    async def __aenter__(self) -> BLEGATTLink:
        await self.connect()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def connect(self) -> None:
        try:
            await self._client.connect()
        except (BleakError, asyncio.TimeoutError, OSError) as exc:
            raise TransportConnectError(f"BLE connect failed for {self.address}: {exc}") from exc
        if not self._client.is_connected:
            raise TransportConnectError(f"BLE connect failed for {self.address}")
        LOGGER.info("Connected to %s", self.address)

    async def close(self) -> None:
        await self.stop_notifications()
        try:
            await self._client.disconnect()
        except (BleakError, OSError) as exc:
            LOGGER.warning("BLE disconnect from %s failed: %s", self.address, exc)

    async def write_command(self, command: str) -> None:
        # The link does not tolerate pipelined writes; one in flight at a time.
        async with self._write_lock:
            LOGGER.debug("TX %s", command)
            try:
                await self._client.write_gatt_char(
                    self.settings.write_char_uuid,
                    command.encode("utf-8"),
                    response=True,
                )
            except (BleakError, asyncio.TimeoutError, OSError) as exc:
                raise TransportSendError(f"BLE write failed: {exc}") from exc

    async def start_notifications(self, handler: NotificationHandler) -> None:
        def _on_notify(_: object, data: bytearray) -> None:
            text = decode_notification(data)
            LOGGER.debug("RX %s", text)
            handler(text)

        try:
            await self._client.start_notify(self.settings.notify_char_uuid, _on_notify)
        except (BleakError, OSError) as exc:
            raise TransportConnectError(
                f"Could not subscribe to {self.settings.notify_char_uuid}: {exc}"
            ) from exc
        self._notifying = True

    async def stop_notifications(self) -> None:
        if not self._notifying:
            return
        self._notifying = False
        try:
            await self._client.stop_notify(self.settings.notify_char_uuid)
        except (BleakError, OSError) as exc:
            LOGGER.debug("stop_notify on %s failed: %s", self.address, exc)

    async def read_device_id(self) -> str | None:
        for uuid in self.settings.device_id_char_uuids:
            try:
                data = await self._client.read_gatt_char(uuid)
            except (BleakError, OSError) as exc:
                LOGGER.debug("Device id read from %s failed: %s", uuid, exc)
                continue
            text = decode_notification(data)
            if text:
                return text
        return None
