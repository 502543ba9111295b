from __future__ import annotations

import asyncio
from collections import deque

import pytest

from pinmectl.core.errors import TransportSendError
from pinmectl.core.model import BackendSettings, DeviceStatus, PinmeConfig, ProvisioningTimings


class FakeLink:
    """In-memory reader: records writes and answers them with scripted notifications."""

    def __init__(self, address: str = "AA:BB:CC:DD:EE:FF", *, device_id: str | None = "esp32_abc123") -> None:
        self.address = address
        self.device_id = device_id
        self.writes: list[str] = []
        self.handler = None
        self.subscribes = 0
        self.unsubscribes = 0
        self.fail_writes = 0
        self._replies: dict[str, deque[tuple[str, ...]]] = {}

    def on(self, prefix: str, *notifications: str) -> FakeLink:
        """Queue one batch of notifications for the next write starting with ``prefix``."""
        self._replies.setdefault(prefix, deque()).append(notifications)
        return self

    def emit(self, text: str) -> None:
        if self.handler is not None:
            self.handler(text)

    async def __aenter__(self) -> FakeLink:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        return None

    async def write_command(self, command: str) -> None:
        await asyncio.sleep(0)
        if self.fail_writes:
            self.fail_writes -= 1
            raise TransportSendError("BLE write failed: link lost")
        self.writes.append(command)
        for prefix, batches in self._replies.items():
            if command.startswith(prefix) and batches:
                loop = asyncio.get_running_loop()
                for text in batches.popleft():
                    loop.call_soon(self.emit, text)
                break

    async def start_notifications(self, handler) -> None:
        self.subscribes += 1
        self.handler = handler

    async def stop_notifications(self) -> None:
        if self.handler is None:
            return
        self.unsubscribes += 1
        self.handler = None

    async def read_device_id(self) -> str | None:
        return self.device_id


class FakeBackend:
    def __init__(
        self,
        *,
        token: str | None = "device-token",
        debug_token: str | None = "debug-token",
        token_error: BaseException | None = None,
        token_delay_s: float = 0.0,
        statuses: list[DeviceStatus | None] | None = None,
    ) -> None:
        self.token = token
        self.debug_token = debug_token
        self.token_error = token_error
        self.token_delay_s = token_delay_s
        self.statuses = deque(statuses or [])
        self.token_calls: list[tuple[str, bool]] = []
        self.upserts: list[tuple[str, str]] = []
        self.closed = False

    async def __aenter__(self) -> FakeBackend:
        return self

    async def __aexit__(self, *exc_info: object) -> None:
        self.closed = True

    async def issue_device_token(self, device_id: str, *, debug: bool = False) -> str | None:
        self.token_calls.append((device_id, debug))
        if debug:
            return self.debug_token
        if self.token_delay_s:
            await asyncio.sleep(self.token_delay_s)
        if self.token_error is not None:
            raise self.token_error
        return self.token

    async def upsert_device(self, device_id: str, *, owner_id: str, name: str = "Toy Reader") -> None:
        self.upserts.append((device_id, owner_id))

    async def get_device_status(self, device_id: str) -> DeviceStatus | None:
        return self.statuses.popleft() if self.statuses else None


FAST_TIMINGS = ProvisioningTimings(
    wifi_result_timeout_s=0.5,
    busy_retry_delay_s=0.01,
    fail_retry_delay_s=0.01,
    token_timeout_s=0.1,
    online_poll_timeout_s=0.05,
    online_poll_interval_s=0.01,
    wifi_list_timeout_s=0.3,
    wifi_list_rescan_delay_s=0.01,
)


@pytest.fixture
def fake_link() -> FakeLink:
    return FakeLink()


@pytest.fixture
def fast_config() -> PinmeConfig:
    return PinmeConfig(
        backend=BackendSettings(
            url="https://project.example.co",
            anon_key="anon-key",
            owner_id="owner-1",
        ),
        provisioning=FAST_TIMINGS,
    )


@pytest.fixture
def make_link():
    return FakeLink


@pytest.fixture
def make_backend():
    return FakeBackend
