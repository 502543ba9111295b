"""Typer CLI entrypoint."""

from __future__ import annotations

import logging
from pathlib import Path

import typer

from pinmectl.api import Client
from pinmectl.core.chunk import DEFAULT_CHUNK_SIZE
from pinmectl.core.errors import PinmeError

app = typer.Typer(help="Provision PINME RFID readers over BLE and upload photos to the backend")

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"


@app.callback()
def main(
    ctx: typer.Context,
    config: Path | None = typer.Option(None, "--config", help="Extra YAML config file"),
    log_level: str = typer.Option("WARNING", "--log-level", help="DEBUG, INFO, WARNING or ERROR"),
) -> None:
    level = getattr(logging, log_level.upper(), None)
    if not isinstance(level, int):
        typer.echo(f"Error: Unknown log level '{log_level}'", err=True)
        raise typer.Exit(code=2)
    logging.basicConfig(level=level, format=LOG_FORMAT)
    ctx.obj = {"config": config}


def _build_client(ctx: typer.Context) -> Client:
    config_path = (ctx.obj or {}).get("config")
    client = Client(config_path=config_path)
    for warning in getattr(client, "load_warnings", ()):
        typer.echo(f"Warning: {warning}", err=True)
    return client


@app.command("scan")
def scan(
    ctx: typer.Context,
    timeout: float | None = typer.Option(None, "--timeout", help="Scan duration in seconds"),
    show_all: bool = typer.Option(False, "--all", help="Include devices without the reader name prefix"),
) -> None:
    """Scan for nearby readers, strongest signal first."""
    try:
        client = _build_client(ctx)
        devices = client.scan(timeout_s=timeout, include_all=show_all)
        if not devices:
            typer.echo("No readers found")
            return

        for device in devices:
            rssi = f"{device.rssi} dBm" if device.rssi is not None else "?"
            suffix = device.display_suffix or "------"
            typer.echo(f"{device.address} {device.name} [{suffix}] {rssi}")
    except PinmeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("networks")
def networks(ctx: typer.Context, address: str) -> None:
    """List the Wi-Fi networks a reader can see."""
    try:
        client = _build_client(ctx)
        found = client.list_networks(address)
        if not found:
            typer.echo("No Wi-Fi networks reported")
            return

        for network in found:
            typer.echo(f"{network.ssid}  {network.rssi} dBm  {network.encryption}")
    except PinmeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None


@app.command("provision")
def provision(
    ctx: typer.Context,
    address: str,
    ssid: str = typer.Option(..., "--ssid", help="Wi-Fi network name"),
    password: str = typer.Option(..., "--password", prompt=True, hide_input=True, help="Wi-Fi password"),
    confirm_online: bool = typer.Option(
        True,
        "--confirm-online/--no-confirm-online",
        help="Poll the backend until the reader reports online",
    ),
) -> None:
    """Join a reader to Wi-Fi and push backend credentials."""
    if not ssid.strip():
        typer.echo("Error: SSID must not be empty", err=True)
        raise typer.Exit(code=1)
    try:
        client = _build_client(ctx)
        result = client.provision(address, ssid=ssid, password=password, confirm_online=confirm_online)
    except PinmeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None

    for warning in result.warnings:
        typer.echo(f"Warning: {warning}", err=True)
    typer.echo(f"Provisioned {result.device_id} ({result.address}) on '{result.ssid}'")
    token = "issued" if result.token_issued else "not issued"
    if result.used_debug_token_route:
        token += " (debug route)"
    typer.echo(f"token={token}")
    if result.online_confirmed is not None:
        typer.echo(f"online={'yes' if result.online_confirmed else 'no'}")


@app.command("send")
def send(
    ctx: typer.Context,
    address: str,
    command: str,
    listen: float = typer.Option(2.0, "--listen", help="Seconds to wait for notifications"),
) -> None:
    """Send one direct command (WIFI_LIST, PING, HEARTBEAT_NOW, ...) and print replies."""
    try:
        client = _build_client(ctx)
        replies = client.send_command(address, command, listen_s=listen)
    except PinmeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None

    typer.echo(f"Sent {command.strip().upper()} to {address}")
    for reply in replies:
        typer.echo(f"< {reply}")


@app.command("frames")
def frames(
    tag: str,
    text: str,
    chunk_size: int = typer.Option(DEFAULT_CHUNK_SIZE, "--chunk-size", min=1, help="Characters per DATA frame"),
) -> None:
    """Print the frames a payload would be written as. Works offline."""
    tag = tag.strip().upper()
    if not tag or any(ch.isspace() for ch in tag):
        typer.echo("Error: TAG must be a non-empty token without whitespace", err=True)
        raise typer.Exit(code=1)
    for frame in Client.preview_frames(tag, text, chunk_size=chunk_size):
        typer.echo(frame)


@app.command("upload")
def upload(
    ctx: typer.Context,
    path: Path,
    owner: str | None = typer.Option(None, "--owner", help="Owner id used as the storage folder"),
) -> None:
    """Upload a photo, degrading quality if the backend is slow."""
    try:
        client = _build_client(ctx)
        result = client.upload_photo(path, owner_id=owner)
    except PinmeError as exc:
        typer.echo(f"Error: {exc}", err=True)
        raise typer.Exit(code=1) from None

    if result.degraded is not None:
        typer.echo(
            f"Warning: uploaded at reduced size {result.degraded.max_width}px "
            f"after {result.attempts} attempts",
            err=True,
        )
    typer.echo(result.public_url)


def run() -> None:
    app()


if __name__ == "__main__":
    run()
