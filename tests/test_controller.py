from __future__ import annotations

import asyncio
import dataclasses
import json

import httpx
import pytest

from pinmectl.core.backend import BackendClient
from pinmectl.core.chunk import ChunkAssembler
from pinmectl.core.controller import ProvisioningController
from pinmectl.core.errors import (
    BackendError,
    DeviceBusyError,
    DeviceTimeoutError,
    SessionStateError,
    TransportSendError,
    WifiAuthError,
)
from pinmectl.core.session import ProvisioningState

WIFI_SET = 'WIFI_SET {"ssid":"Home","password":"pw"}'


def _payloads(writes: list[str]) -> dict[str, str]:
    assembler = ChunkAssembler()
    payloads: dict[str, str] = {}
    for command in writes:
        if "_BEGIN " in command or "_DATA " in command or command.endswith("_END"):
            done = assembler.feed(command)
            if done is not None:
                payloads[done[0]] = done[1]
    return payloads


@pytest.mark.asyncio
async def test_happy_path_pushes_config_token_and_heartbeat(fake_link, fast_config, make_backend) -> None:
    backend = make_backend()
    fake_link.on("WIFI_SET", "WIFI_CONNECTING", "WIFI_OK")

    async with ProvisioningController(fake_link, "ESP32_ABC123", config=fast_config, backend=backend) as controller:
        await controller.connect_wifi("Home", "pw")

    assert fake_link.writes[0] == WIFI_SET
    assert fake_link.writes[-1] == "HEARTBEAT_NOW"
    payloads = _payloads(fake_link.writes)
    assert json.loads(payloads["SUPA_CFG"]) == {"anon": "anon-key", "supabase_url": "https://project.example.co"}
    assert payloads["JWT_SET"] == '{"jwt":"device-token"}'
    assert "CA_SET" not in payloads
    assert backend.upserts == [("ESP32_ABC123", "owner-1")]
    assert controller.token_issued
    assert not controller.used_debug_token_route
    assert controller.warnings == ()
    assert controller.session.state is ProvisioningState.DONE
    assert fake_link.unsubscribes == 1


@pytest.mark.asyncio
async def test_duplicate_success_notifications_push_once(fake_link, fast_config, make_backend) -> None:
    fake_link.on("WIFI_SET", "WIFI_OK", "WIFI_STA_CONNECTED", "WIFI_OK")

    async with ProvisioningController(fake_link, "ESP32_ABC123", config=fast_config, backend=make_backend()) as controller:
        await controller.connect_wifi("Home", "pw")
        fake_link.emit("WIFI_OK")
        await asyncio.sleep(0.02)

    assert fake_link.writes.count("SUPA_CFG_END") == 1
    assert fake_link.writes.count("JWT_SET_END") == 1
    assert fake_link.writes.count("HEARTBEAT_NOW") == 1


@pytest.mark.asyncio
async def test_busy_is_retried_then_succeeds(fake_link, fast_config, make_backend) -> None:
    fake_link.on("WIFI_SET", "WIFI_BUSY").on("WIFI_SET", "WIFI_OK")

    async with ProvisioningController(fake_link, "ESP32_ABC123", config=fast_config, backend=make_backend()) as controller:
        await controller.connect_wifi("Home", "pw")

    assert fake_link.writes.count(WIFI_SET) == 2


@pytest.mark.asyncio
async def test_busy_beyond_ceiling_fails(fake_link, fast_config, make_backend) -> None:
    for _ in range(4):
        fake_link.on("WIFI_SET", "WIFI_BUSY")

    async with ProvisioningController(fake_link, "ESP32_ABC123", config=fast_config, backend=make_backend()) as controller:
        with pytest.raises(DeviceBusyError):
            await controller.connect_wifi("Home", "pw")

    assert fake_link.writes.count(WIFI_SET) == 3
    assert fake_link.unsubscribes == 1


@pytest.mark.asyncio
async def test_auth_failure_is_terminal(fake_link, fast_config, make_backend) -> None:
    fake_link.on("WIFI_SET", "WIFI_AUTH_FAIL")

    async with ProvisioningController(fake_link, "ESP32_ABC123", config=fast_config, backend=make_backend()) as controller:
        with pytest.raises(WifiAuthError, match="authentication"):
            await controller.connect_wifi("Home", "pw")
        await asyncio.sleep(0.05)

    assert fake_link.writes == [WIFI_SET]
    assert controller.session.state is ProvisioningState.FAILED
    assert fake_link.unsubscribes == 1


@pytest.mark.asyncio
async def test_silence_times_out(fake_link, fast_config, make_backend) -> None:
    config = dataclasses.replace(
        fast_config,
        provisioning=dataclasses.replace(fast_config.provisioning, wifi_result_timeout_s=0.05),
    )

    async with ProvisioningController(fake_link, "ESP32_ABC123", config=config, backend=make_backend()) as controller:
        with pytest.raises(DeviceTimeoutError):
            await controller.connect_wifi("Home", "pw")


@pytest.mark.asyncio
async def test_write_failure_leaves_session_retryable(fake_link, fast_config, make_backend) -> None:
    fake_link.fail_writes = 1
    fake_link.on("WIFI_SET", "WIFI_OK")

    async with ProvisioningController(fake_link, "ESP32_ABC123", config=fast_config, backend=make_backend()) as controller:
        with pytest.raises(TransportSendError):
            await controller.connect_wifi("Home", "pw")
        assert controller.session.state is ProvisioningState.CONNECTED
        assert controller.session.timers == frozenset()

        await controller.connect_wifi("Home", "pw")

    assert controller.session.state is ProvisioningState.DONE


@pytest.mark.asyncio
async def test_token_timeout_falls_back_to_debug_route(fake_link, fast_config, make_backend) -> None:
    backend = make_backend(token_delay_s=1.0)
    fake_link.on("WIFI_SET", "WIFI_OK")

    async with ProvisioningController(fake_link, "ESP32_ABC123", config=fast_config, backend=backend) as controller:
        await controller.connect_wifi("Home", "pw")

    assert backend.token_calls == [("ESP32_ABC123", False), ("ESP32_ABC123", True)]
    assert controller.used_debug_token_route
    assert _payloads(fake_link.writes)["JWT_SET"] == '{"jwt":"debug-token"}'


@pytest.mark.asyncio
async def test_gateway_timeout_falls_back_to_debug_route(fake_link, fast_config, make_backend) -> None:
    backend = make_backend(token_error=BackendError("HTTP 504", status_code=504))
    fake_link.on("WIFI_SET", "WIFI_OK")

    async with ProvisioningController(fake_link, "ESP32_ABC123", config=fast_config, backend=backend) as controller:
        await controller.connect_wifi("Home", "pw")

    assert controller.used_debug_token_route
    assert controller.token_issued


@pytest.mark.asyncio
async def test_token_failure_is_a_warning(fake_link, fast_config, make_backend) -> None:
    backend = make_backend(token_error=BackendError("HTTP 403", status_code=403))
    fake_link.on("WIFI_SET", "WIFI_OK")

    async with ProvisioningController(fake_link, "ESP32_ABC123", config=fast_config, backend=backend) as controller:
        await controller.connect_wifi("Home", "pw")

    assert backend.token_calls == [("ESP32_ABC123", False)]
    assert not controller.token_issued
    assert any("device token push failed" in w for w in controller.warnings)
    assert "JWT_SET" not in _payloads(fake_link.writes)
    assert fake_link.writes[-1] == "HEARTBEAT_NOW"
    assert controller.session.state is ProvisioningState.DONE


@pytest.mark.asyncio
async def test_without_backend_only_network_config_is_pushed(fake_link, fast_config) -> None:
    fake_link.on("WIFI_SET", "WIFI_OK")

    async with ProvisioningController(fake_link, "ESP32_ABC123", config=fast_config) as controller:
        await controller.connect_wifi("Home", "pw")

    assert "SUPA_CFG" in _payloads(fake_link.writes)
    assert not controller.token_issued
    assert len(controller.warnings) == 1


@pytest.mark.asyncio
async def test_ca_bundle_and_insecure_flag_follow_token(fake_link, fast_config, make_backend) -> None:
    pem = "-----BEGIN CERTIFICATE-----\nMIIB\n-----END CERTIFICATE-----"
    config = dataclasses.replace(
        fast_config,
        backend=dataclasses.replace(fast_config.backend, ca_bundle=pem, tls_insecure=True),
    )
    fake_link.on("WIFI_SET", "WIFI_OK")

    async with ProvisioningController(fake_link, "ESP32_ABC123", config=config, backend=make_backend()) as controller:
        await controller.connect_wifi("Home", "pw")

    assert _payloads(fake_link.writes)["CA_SET"] == pem
    tail = fake_link.writes[fake_link.writes.index("JWT_SET_END"):]
    assert tail[-2:] == ["DEV_INSECURE_ON", "HEARTBEAT_NOW"]
    assert "CA_SET_END" in tail


@pytest.mark.asyncio
async def test_close_mid_attempt_cancels_retry_and_unsubscribes(fake_link, fast_config, make_backend) -> None:
    config = dataclasses.replace(
        fast_config,
        provisioning=dataclasses.replace(fast_config.provisioning, busy_retry_delay_s=0.2),
    )
    fake_link.on("WIFI_SET", "WIFI_BUSY")
    controller = ProvisioningController(fake_link, "ESP32_ABC123", config=config, backend=make_backend())
    await controller.open()
    task = asyncio.create_task(controller.connect_wifi("Home", "pw"))
    await asyncio.sleep(0.05)

    await controller.close()
    with pytest.raises(asyncio.CancelledError):
        await task
    await asyncio.sleep(0.3)

    assert fake_link.writes == [WIFI_SET]
    assert controller.session.timers == frozenset()
    assert fake_link.unsubscribes == 1


@pytest.mark.asyncio
async def test_gateway_page_from_token_function_is_a_warning(fake_link, fast_config) -> None:
    def handler(request: httpx.Request) -> httpx.Response:
        if request.url.path.startswith("/functions/"):
            return httpx.Response(200, text="<html>gateway</html>")
        return httpx.Response(201)

    http = httpx.AsyncClient(base_url=fast_config.backend.url, transport=httpx.MockTransport(handler))
    fake_link.on("WIFI_SET", "WIFI_OK")

    async with BackendClient(fast_config.backend, client=http) as backend:
        async with ProvisioningController(fake_link, "ESP32_ABC123", config=fast_config, backend=backend) as controller:
            await controller.connect_wifi("Home", "pw")

    assert not controller.token_issued
    assert any("device token push failed" in w for w in controller.warnings)
    assert fake_link.writes[-1] == "HEARTBEAT_NOW"
    assert controller.session.state is ProvisioningState.DONE


@pytest.mark.asyncio
async def test_unopened_controller_refuses_to_run(fake_link, fast_config) -> None:
    controller = ProvisioningController(fake_link, "ESP32_ABC123", config=fast_config)

    with pytest.raises(SessionStateError, match="not open"):
        await controller.connect_wifi("Home", "pw")
    assert fake_link.writes == []
