"""Service layer used by CLI and future UI frontends."""

from __future__ import annotations

import asyncio
import logging
import mimetypes
import re
from collections.abc import Awaitable, Callable
from contextlib import AbstractAsyncContextManager, AsyncExitStack
from pathlib import Path

import httpx

from pinmectl.core.backend import BackendClient
from pinmectl.core.config import LoadedConfig, load_config
from pinmectl.core.controller import ProvisioningController
from pinmectl.core.device_id import to_device_id
from pinmectl.core.errors import (
    BackendError,
    TransportTimeoutError,
    UnsupportedCommandError,
    UploadError,
)
from pinmectl.core.model import (
    BLESettings,
    DeviceStatus,
    DiscoveredDevice,
    ProvisioningResult,
    UploadResult,
    UploadTask,
    WifiNetwork,
)
from pinmectl.core.protocol import DIRECT_COMMANDS, WIFI_LIST, WifiListCollector, classify_notification
from pinmectl.core.upload import PhotoUploader
from pinmectl.transports.base import DeviceLink
from pinmectl.transports.ble_gatt import BLEGATTLink, discover_devices

LOGGER = logging.getLogger(__name__)

LinkFactory = Callable[[str], AbstractAsyncContextManager[DeviceLink]]
Discoverer = Callable[..., Awaitable[list[DiscoveredDevice]]]
BackendFactory = Callable[[], BackendClient]

_NON_ALNUM_RE = re.compile(r"[^A-Za-z0-9]")


class ProvisioningService:
    def __init__(
        self,
        *,
        config_path: Path | None = None,
        loaded: LoadedConfig | None = None,
        link_factory: LinkFactory | None = None,
        discover: Discoverer | None = None,
        backend_factory: BackendFactory | None = None,
    ) -> None:
        loaded = loaded or load_config(config_path)
        self.config = loaded.config
        self.load_warnings = loaded.warnings
        self._link_factory = link_factory or self._ble_link
        self._discover = discover or discover_devices
        self._backend_factory = backend_factory or (lambda: BackendClient(self.config.backend))

    def _ble_link(self, address: str) -> BLEGATTLink:
        return BLEGATTLink(address, self.config.ble)

    @property
    def ble(self) -> BLESettings:
        return self.config.ble

    async def scan(
        self,
        *,
        timeout_s: float | None = None,
        include_all: bool = False,
    ) -> list[DiscoveredDevice]:
        return await self._discover(self.ble, timeout_s=timeout_s, include_all=include_all)

    async def list_networks(self, address: str) -> list[WifiNetwork]:
        """Ask the reader for the Wi-Fi networks it can see.

        An empty first answer triggers one automatic re-scan. If the overall
        window closes without a final list, whatever arrived is returned; a
        window with no list at all is a :class:`TransportTimeoutError`.
        """
        timings = self.config.provisioning
        collector = WifiListCollector()
        outcomes: asyncio.Queue[str] = asyncio.Queue()

        def on_text(text: str) -> None:
            outcome = collector.feed(classify_notification(text))
            if outcome is not None:
                outcomes.put_nowait(outcome)

        async def _drain(link: DeviceLink) -> None:
            while True:
                outcome = await outcomes.get()
                if outcome == "done":
                    return
                LOGGER.info("Device reported no networks; re-scanning in %.1fs", timings.wifi_list_rescan_delay_s)
                await asyncio.sleep(timings.wifi_list_rescan_delay_s)
                await link.write_command(WIFI_LIST)

        async with self._link_factory(address) as link:
            await link.start_notifications(on_text)
            try:
                await link.write_command(WIFI_LIST)
                await asyncio.wait_for(_drain(link), timeout=timings.wifi_list_timeout_s)
            except asyncio.TimeoutError:
                if not collector.networks and not collector.reported_none:
                    raise TransportTimeoutError(
                        f"No Wi-Fi list from {address} within {timings.wifi_list_timeout_s:g}s"
                    ) from None
                LOGGER.warning("Wi-Fi list from %s incomplete; returning partial results", address)
            finally:
                await link.stop_notifications()

        return collector.networks

    async def _resolve_device_id(self, link: DeviceLink, warnings: list[str]) -> str:
        raw = await link.read_device_id()
        if raw:
            return to_device_id(raw)
        fallback = to_device_id(_NON_ALNUM_RE.sub("", link.address))
        message = f"Device id characteristic not readable; using {fallback} derived from {link.address}"
        LOGGER.warning(message)
        warnings.append(message)
        return fallback

    async def provision(
        self,
        address: str,
        ssid: str,
        password: str,
        *,
        confirm_online: bool = True,
    ) -> ProvisioningResult:
        """Join ``address`` to Wi-Fi and hand it backend credentials.

        Only the Wi-Fi join can fail this call. Problems after the join
        come back as ``warnings`` on the result.
        """
        warnings: list[str] = []
        async with AsyncExitStack() as stack:
            backend: BackendClient | None = None
            if self.config.backend.url:
                backend = await stack.enter_async_context(self._backend_factory())
            else:
                warnings.append("No backend URL configured; device will not receive backend credentials")

            link = await stack.enter_async_context(self._link_factory(address))
            device_id = await self._resolve_device_id(link, warnings)
            LOGGER.info("Provisioning %s (%s) onto %r", device_id, address, ssid)

            controller = ProvisioningController(link, device_id, config=self.config, backend=backend)
            async with controller:
                await controller.connect_wifi(ssid, password)
            warnings.extend(controller.warnings)

            online: bool | None = None
            if confirm_online and backend is not None:
                online = await self.confirm_online(device_id, backend)
                if not online:
                    warnings.append(
                        f"{device_id} did not report online within "
                        f"{self.config.provisioning.online_poll_timeout_s:g}s"
                    )

        return ProvisioningResult(
            address=address,
            device_id=device_id,
            ssid=ssid.strip(),
            token_issued=controller.token_issued,
            used_debug_token_route=controller.used_debug_token_route,
            online_confirmed=online,
            warnings=tuple(warnings),
        )

    async def confirm_online(self, device_id: str, backend: BackendClient) -> bool:
        """Poll the device record until it reports online. Advisory; never raises for backend errors."""
        timings = self.config.provisioning
        attempts = max(1, int(timings.online_poll_timeout_s // timings.online_poll_interval_s))
        for attempt in range(attempts):
            status: DeviceStatus | None = None
            try:
                status = await backend.get_device_status(device_id)
            except (BackendError, httpx.TimeoutException) as exc:
                LOGGER.debug("Status poll %d for %s failed: %s", attempt + 1, device_id, exc)
            if status is not None and status.online:
                LOGGER.info("%s is online (ssid=%s signal=%s)", device_id, status.wifi_ssid, status.wifi_signal)
                return True
            if attempt + 1 < attempts:
                await asyncio.sleep(timings.online_poll_interval_s)
        return False

    async def send_command(self, address: str, command: str, *, listen_s: float = 2.0) -> list[str]:
        """Write one direct command and return the notifications seen in the next ``listen_s``."""
        command = command.strip().upper()
        if command not in DIRECT_COMMANDS:
            allowed = ", ".join(DIRECT_COMMANDS)
            raise UnsupportedCommandError(f"Unsupported command '{command}'. Allowed: {allowed}")

        received: list[str] = []
        async with self._link_factory(address) as link:
            await link.start_notifications(received.append)
            try:
                await link.write_command(command)
                await asyncio.sleep(listen_s)
            finally:
                await link.stop_notifications()
        return received

    async def upload_photo(self, path: Path, *, owner_id: str | None = None) -> UploadResult:
        owner = owner_id or self.config.backend.owner_id
        if not owner:
            raise UploadError("An owner id is required (pass --owner or set PINME_OWNER_ID)")
        try:
            data = path.read_bytes()
        except OSError as exc:
            raise UploadError(f"Could not read {path}: {exc}") from exc
        content_type = mimetypes.guess_type(path.name)[0] or "image/jpeg"

        async with self._backend_factory() as backend:
            uploader = PhotoUploader(backend, self.config.upload)
            return await uploader.upload(UploadTask(data=data, content_type=content_type, owner_id=owner))
