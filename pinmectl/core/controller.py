"""Drives a :class:`ProvisioningSession` over a live :class:`DeviceLink`.

The session module decides; this module acts. Notifications are classified
and fed to the state machine synchronously from the link callback, so a
``WIFI_BUSY`` that lands while a write is still in flight is handled right
away. Timers are ``loop.call_later`` handles keyed by :class:`TimerKey` and
the notification subscription is released in :meth:`close` on every exit
path.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Coroutine, Iterable
from pathlib import Path
from typing import Any

import httpx

from pinmectl.core.backend import BackendClient
from pinmectl.core.chunk import ChunkTag, encode_chunk_commands
from pinmectl.core.errors import (
    BackendError,
    ConfigLoadError,
    PinmeError,
    SessionStateError,
    TokenIssueError,
    TransportError,
    provisioning_error_for,
)
from pinmectl.core.model import PinmeConfig
from pinmectl.core.protocol import (
    DEV_INSECURE_ON,
    HEARTBEAT_NOW,
    classify_notification,
    compact_json,
)
from pinmectl.core.session import (
    CancelTimer,
    Effect,
    ProvisioningSession,
    ReportFailure,
    ReportStatus,
    ScheduleTimer,
    SendCommand,
    StartCredentialPush,
    TimerKey,
    abort_attempt,
    begin_wifi,
    claim_heartbeat,
    mark_connected,
    mark_done,
    mark_pushing,
    on_notification,
    on_timer,
    teardown,
)
from pinmectl.transports.base import DeviceLink

LOGGER = logging.getLogger(__name__)


def read_ca_bundle(value: str) -> str:
    """Return PEM text given either the bundle itself or a path to it."""
    if "-----BEGIN" in value:
        return value
    return Path(value).expanduser().read_text(encoding="utf-8")


class ProvisioningController:
    """One provisioning session on one open link.

    Use as ``async with ProvisioningController(link, device_id, ...)`` and
    call :meth:`connect_wifi`. The Wi-Fi outcome is the only thing that can
    fail the call; everything after the join is collected in
    :attr:`warnings`.
    """

    def __init__(
        self,
        link: DeviceLink,
        device_id: str,
        *,
        config: PinmeConfig | None = None,
        backend: BackendClient | None = None,
    ) -> None:
        self.link = link
        self.config = config or PinmeConfig()
        self.backend = backend
        self.session = mark_connected(
            ProvisioningSession(device_id=device_id, timings=self.config.provisioning)
        )
        self.token_issued = False
        self.used_debug_token_route = False
        self._warnings: list[str] = []
        self._timers: dict[TimerKey, asyncio.TimerHandle] = {}
        self._tasks: set[asyncio.Task[Any]] = set()
        self._outcome: asyncio.Future[None] | None = None
        self._push_task: asyncio.Task[None] | None = None
        self._loop: asyncio.AbstractEventLoop | None = None
        self._subscribed = False

    @property
    def warnings(self) -> tuple[str, ...]:
        return tuple(self._warnings)

    async def __aenter__(self) -> ProvisioningController:
        await self.open()
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        await self.close()

    async def open(self) -> None:
        self._loop = asyncio.get_running_loop()
        await self.link.start_notifications(self.handle_notification)
        self._subscribed = True

    async def close(self) -> None:
        """Cancel timers and background work, then unsubscribe."""
        self.session, effects = teardown(self.session)
        self._execute(effects)
        for handle in self._timers.values():
            handle.cancel()
        self._timers.clear()

        if self._outcome is not None and not self._outcome.done():
            self._outcome.cancel()
        pending = [task for task in self._tasks if not task.done()]
        for task in pending:
            task.cancel()
        if pending:
            await asyncio.gather(*pending, return_exceptions=True)

        if self._subscribed:
            self._subscribed = False
            await self.link.stop_notifications()

    # Notification and timer inputs

    def handle_notification(self, text: str) -> None:
        note = classify_notification(text)
        LOGGER.debug("%s <- %s (%s)", self.session.device_id, note.text, note.kind.value)
        self.session, effects = on_notification(self.session, note)
        self._execute(effects)

    def _fire_timer(self, key: TimerKey) -> None:
        self._timers.pop(key, None)
        self.session, effects = on_timer(self.session, key)
        self._execute(effects)

    def _execute(self, effects: Iterable[Effect]) -> None:
        for effect in effects:
            if isinstance(effect, SendCommand):
                self._spawn(self._send(effect.command))
            elif isinstance(effect, ScheduleTimer):
                previous = self._timers.pop(effect.key, None)
                if previous is not None:
                    previous.cancel()
                self._timers[effect.key] = self._running_loop().call_later(
                    effect.delay_s, self._fire_timer, effect.key
                )
            elif isinstance(effect, CancelTimer):
                handle = self._timers.pop(effect.key, None)
                if handle is not None:
                    handle.cancel()
            elif isinstance(effect, StartCredentialPush):
                self._push_task = self._spawn(self._push_credentials())
                self._resolve()
            elif isinstance(effect, ReportStatus):
                LOGGER.log(effect.level, "%s: %s", self.session.device_id, effect.message)
            elif isinstance(effect, ReportFailure):
                LOGGER.error("%s: %s", self.session.device_id, effect.message)
                self._resolve(provisioning_error_for(effect.kind))

    def _running_loop(self) -> asyncio.AbstractEventLoop:
        if self._loop is None:
            raise SessionStateError("Controller is not open")
        return self._loop

    def _spawn(self, coro: Coroutine[Any, Any, Any]) -> asyncio.Task[Any]:
        if self._loop is None:
            coro.close()
            raise SessionStateError("Controller is not open")
        task = self._loop.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return task

    def _resolve(self, exc: BaseException | None = None) -> None:
        if self._outcome is None or self._outcome.done():
            return
        if exc is None:
            self._outcome.set_result(None)
        else:
            self._outcome.set_exception(exc)

    async def _send(self, command: str) -> None:
        try:
            await self.link.write_command(command)
        except TransportError as exc:
            LOGGER.warning("Write to %s failed: %s", self.link.address, exc)
            self.session, effects = abort_attempt(self.session)
            self._execute(effects)
            self._resolve(exc)

    # Public operation

    async def connect_wifi(self, ssid: str, password: str) -> None:
        """Send the Wi-Fi credentials and wait for the join plus the credential push.

        Raises a :class:`ProvisioningError` subclass on a terminal Wi-Fi
        failure or a :class:`TransportError` if the write itself failed; in
        the latter case the session is back in ``CONNECTED`` and the call
        may be repeated.
        """
        loop = self._running_loop()
        self.session, effects = begin_wifi(self.session, ssid, password)
        self._outcome = loop.create_future()
        self._execute(effects)
        await self._outcome
        if self._push_task is not None:
            await self._push_task

    # Post-join credential push

    def _warn(self, message: str) -> None:
        LOGGER.warning("%s: %s", self.session.device_id, message)
        self._warnings.append(message)

    async def _write_chunked(self, tag: ChunkTag, text: str) -> None:
        for command in encode_chunk_commands(tag, text, self.config.provisioning.chunk_size):
            await self.link.write_command(command)

    async def _push_network_config(self) -> None:
        settings = self.config.backend
        payload = {
            key: value
            for key, value in (("anon", settings.anon_key), ("supabase_url", settings.url))
            if value
        }
        if not payload:
            self._warn("No backend URL or API key configured; skipped network config push")
            return
        await self._write_chunked(ChunkTag.NETWORK_CONFIG, compact_json(payload))
        LOGGER.info("Pushed network config (%s)", ", ".join(payload))

    async def _request_token(self, *, debug: bool) -> str | None:
        if self.backend is None:
            raise TokenIssueError("No backend configured; device token not requested")
        return await asyncio.wait_for(
            self.backend.issue_device_token(self.session.device_id, debug=debug),
            timeout=self.config.provisioning.token_timeout_s,
        )

    async def _obtain_token(self) -> str:
        if self.backend is None:
            raise TokenIssueError("No backend configured; device token not requested")

        device_id = self.session.device_id
        owner_id = self.config.backend.owner_id
        if owner_id:
            try:
                await self.backend.upsert_device(device_id, owner_id=owner_id)
            except (BackendError, httpx.TimeoutException) as exc:
                self._warn(f"Could not register {device_id} before token request: {exc}")

        try:
            token = await self._request_token(debug=False)
        except (asyncio.TimeoutError, httpx.TimeoutException):
            LOGGER.warning("Token request for %s timed out; trying debug route", device_id)
        except BackendError as exc:
            if exc.status_code != 504:
                raise TokenIssueError(f"Token request failed: {exc}") from exc
            LOGGER.warning("Token request for %s hit a gateway timeout; trying debug route", device_id)
        else:
            if not token:
                raise TokenIssueError("Token response did not contain a token")
            return token

        try:
            token = await self._request_token(debug=True)
        except (asyncio.TimeoutError, httpx.TimeoutException) as exc:
            raise TokenIssueError("Debug token request timed out") from exc
        except BackendError as exc:
            raise TokenIssueError(f"Debug token request failed: {exc}") from exc
        if not token:
            raise TokenIssueError("Debug token response did not contain a token")
        self.used_debug_token_route = True
        return token

    async def _push_token(self) -> None:
        token = await self._obtain_token()
        await self._write_chunked(ChunkTag.AUTH_TOKEN, compact_json({"jwt": token}))
        self.token_issued = True
        LOGGER.info("Pushed device token (%d chars)", len(token))

    async def _push_tls(self) -> None:
        settings = self.config.backend
        if settings.ca_bundle:
            try:
                bundle = read_ca_bundle(settings.ca_bundle)
            except OSError as exc:
                raise ConfigLoadError(f"Could not read CA bundle: {exc}") from exc
            await self._write_chunked(ChunkTag.CERTIFICATE, bundle)
        if settings.tls_insecure:
            await self.link.write_command(DEV_INSECURE_ON)

    async def _push_credentials(self) -> None:
        self.session = mark_pushing(self.session)
        steps = (
            ("network config push", self._push_network_config),
            ("device token push", self._push_token),
            ("TLS settings push", self._push_tls),
        )
        for label, step in steps:
            try:
                await step()
            except PinmeError as exc:
                self._warn(f"{label} failed: {exc}")

        self.session, send_heartbeat = claim_heartbeat(self.session)
        if send_heartbeat:
            try:
                await self.link.write_command(HEARTBEAT_NOW)
            except TransportError as exc:
                self._warn(f"heartbeat request failed: {exc}")
        self.session = mark_done(self.session)
