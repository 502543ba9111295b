from __future__ import annotations

from typer.testing import CliRunner

from pinmectl import cli
from pinmectl.api import Client
from pinmectl.core.errors import UnsupportedCommandError, WifiAuthError
from pinmectl.core.model import DiscoveredDevice, ProvisioningResult, QualityRung, UploadResult, WifiNetwork


class FakeClient:
    preview_frames = staticmethod(Client.preview_frames)

    def __init__(self, *, config_path=None) -> None:
        self.config_path = config_path
        self.load_warnings = ()

    def scan(self, *, timeout_s=None, include_all=False):
        return [
            DiscoveredDevice(address="AA:BB:CC:DD:EE:FF", name="PINME-7F3A9C", rssi=-48, display_suffix="7F3A9C"),
        ]

    def list_networks(self, address):
        return [WifiNetwork(ssid="Home", rssi=-45, encryption="WPA2")]

    def provision(self, address, *, ssid, password, confirm_online=True):
        return ProvisioningResult(
            address=address,
            device_id="ESP32_7F3A9C",
            ssid=ssid,
            token_issued=True,
            used_debug_token_route=True,
            online_confirmed=True if confirm_online else None,
            warnings=("network config push failed: link lost",),
        )

    def send_command(self, address, command, *, listen_s=2.0):
        return ["ACK_PING"]

    def upload_photo(self, path, *, owner_id=None):
        return UploadResult(
            public_url="https://cdn.example/toy-photos/o/1.jpg",
            path="o/1.jpg",
            attempts=2,
            degraded=QualityRung(720, 0.6),
        )


runner = CliRunner()


def test_scan_command(monkeypatch):
    monkeypatch.setattr(cli, "Client", FakeClient)
    result = runner.invoke(cli.app, ["scan"])
    assert result.exit_code == 0
    assert "AA:BB:CC:DD:EE:FF PINME-7F3A9C [7F3A9C] -48 dBm" in result.stdout


def test_networks_command(monkeypatch):
    monkeypatch.setattr(cli, "Client", FakeClient)
    result = runner.invoke(cli.app, ["networks", "AA:BB:CC:DD:EE:FF"])
    assert result.exit_code == 0
    assert "Home" in result.stdout
    assert "-45 dBm" in result.stdout


def test_provision_command_prints_warnings(monkeypatch):
    monkeypatch.setattr(cli, "Client", FakeClient)
    result = runner.invoke(
        cli.app,
        ["provision", "AA:BB:CC:DD:EE:FF", "--ssid", "Home", "--password", "pw"],
    )
    assert result.exit_code == 0
    assert "Provisioned ESP32_7F3A9C" in result.stdout
    assert "token=issued (debug route)" in result.stdout
    assert "online=yes" in result.stdout
    assert "Warning: network config push failed" in result.stderr


def test_provision_without_online_check(monkeypatch):
    monkeypatch.setattr(cli, "Client", FakeClient)
    result = runner.invoke(
        cli.app,
        ["provision", "AA:BB:CC:DD:EE:FF", "--ssid", "Home", "--password", "pw", "--no-confirm-online"],
    )
    assert result.exit_code == 0
    assert "online=" not in result.stdout


def test_provision_error_is_clean(monkeypatch):
    class FailingClient(FakeClient):
        def provision(self, address, *, ssid, password, confirm_online=True):
            raise WifiAuthError()

    monkeypatch.setattr(cli, "Client", FailingClient)
    result = runner.invoke(
        cli.app,
        ["provision", "AA:BB:CC:DD:EE:FF", "--ssid", "Home", "--password", "bad"],
    )
    assert result.exit_code == 1
    assert "Error: Wi-Fi authentication failed" in result.stderr
    assert "Traceback" not in result.stdout
    assert "Traceback" not in result.stderr


def test_send_command(monkeypatch):
    monkeypatch.setattr(cli, "Client", FakeClient)
    result = runner.invoke(cli.app, ["send", "AA:BB:CC:DD:EE:FF", "ping"])
    assert result.exit_code == 0
    assert "Sent PING" in result.stdout
    assert "< ACK_PING" in result.stdout


def test_send_unsupported_command(monkeypatch):
    class StrictClient(FakeClient):
        def send_command(self, address, command, *, listen_s=2.0):
            raise UnsupportedCommandError("Unsupported command 'REBOOT'")

    monkeypatch.setattr(cli, "Client", StrictClient)
    result = runner.invoke(cli.app, ["send", "AA:BB:CC:DD:EE:FF", "reboot"])
    assert result.exit_code == 1
    assert "Error: Unsupported command 'REBOOT'" in result.stderr


def test_frames_command_is_offline():
    result = runner.invoke(cli.app, ["frames", "supa_cfg", "abcdefghijklmnopqrstuvwxyz"])
    assert result.exit_code == 0
    assert result.stdout.splitlines() == [
        "SUPA_CFG_BEGIN 26",
        "SUPA_CFG_DATA 0 abcdefghijklmnop",
        "SUPA_CFG_DATA 1 qrstuvwxyz",
        "SUPA_CFG_END",
    ]


def test_upload_command_reports_degradation(monkeypatch, tmp_path):
    monkeypatch.setattr(cli, "Client", FakeClient)
    result = runner.invoke(cli.app, ["upload", str(tmp_path / "toy.jpg"), "--owner", "o"])
    assert result.exit_code == 0
    assert "https://cdn.example/toy-photos/o/1.jpg" in result.stdout
    assert "reduced size 720px" in result.stderr


def test_load_warning_is_printed(monkeypatch):
    class WarnClient(FakeClient):
        def __init__(self, *, config_path=None) -> None:
            super().__init__(config_path=config_path)
            self.load_warnings = ("explicit.yaml overrides the packaged backend URL",)

    monkeypatch.setattr(cli, "Client", WarnClient)
    result = runner.invoke(cli.app, ["scan"])
    assert result.exit_code == 0
    assert "Warning: explicit.yaml overrides the packaged backend URL" in result.stderr


def test_unknown_log_level_is_rejected():
    result = runner.invoke(cli.app, ["--log-level", "chatty", "frames", "A", "b"])
    assert result.exit_code == 2
    assert "Unknown log level" in result.stderr
