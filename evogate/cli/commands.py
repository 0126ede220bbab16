"""CLI commands for evogate."""

import base64
from pathlib import Path
from typing import Any

import httpx
import typer
from rich.console import Console
from rich.table import Table

from evogate import __logo__, __version__

app = typer.Typer(
    name="evogate",
    help=f"{__logo__} evogate - WhatsApp instance lifecycle gateway",
    no_args_is_help=True,
)

console = Console()

DATA_URL_MARKER = "base64,"


def version_callback(value: bool):
    if value:
        console.print(f"{__logo__} evogate v{__version__}")
        raise typer.Exit()


@app.callback()
def main(
    version: bool = typer.Option(
        None, "--version", callback=version_callback, is_eager=True
    ),
):
    """evogate - WhatsApp instance lifecycle gateway."""
    pass


# ============================================================================
# Onboard / Setup
# ============================================================================


@app.command()
def onboard(
    force: bool = typer.Option(False, "--force", "-f", help="Overwrite an existing config"),
):
    """Initialize evogate configuration."""
    from evogate.config.loader import get_config_path, save_config
    from evogate.config.schema import Config

    config_path = get_config_path()

    if config_path.exists() and not force:
        console.print(f"[yellow]Config already exists at {config_path}[/yellow]")
        if not typer.confirm("Overwrite?"):
            raise typer.Exit()

    config = Config()
    save_config(config, config_path)
    console.print(f"[green]✓[/green] Created config at {config_path}")

    console.print(f"\n{__logo__} evogate is ready!")
    console.print("\nNext steps:")
    console.print("  1. Start the API: [cyan]evogate serve[/cyan]")
    console.print("  2. Create an instance: [cyan]evogate instances create my-instance[/cyan]")
    console.print("  3. Fetch its QR code: [cyan]evogate instances qr my-instance --out qr.png[/cyan]")


@app.command()
def status():
    """Show evogate status."""
    from evogate.config.loader import get_config_path, load_config

    config_path = get_config_path()
    config = load_config()

    console.print(f"{__logo__} evogate Status\n")
    console.print(f"Config: {config_path} {'[green]✓[/green]' if config_path.exists() else '[red]✗[/red]'}")
    console.print(f"API: {config.gateway.base_url}")
    console.print(f"Transport: {config.transport.mode}")
    if config.transport.mode == "bridge":
        has_token = bool(config.transport.bridge_token)
        console.print(f"Bridge: {config.transport.bridge_url}")
        console.print(f"Bridge token: {'[green]✓[/green]' if has_token else '[dim]not set[/dim]'}")
    console.print(f"QR TTL: {config.instances.qr_ttl_seconds}s")
    console.print(f"Logged-out policy: {config.instances.logged_out_policy}")
    console.print(f"Telemetry: {config.telemetry.backend}")


# ============================================================================
# Server
# ============================================================================


@app.command()
def serve(
    host: str | None = typer.Option(None, "--host", help="Bind address (default from config)"),
    port: int | None = typer.Option(None, "--port", "-p", help="Port (default from config)"),
    verbose: bool = typer.Option(False, "--verbose", "-v", help="Verbose output"),
):
    """Run the HTTP API in the foreground."""
    from evogate.api.server import run_server
    from evogate.config.loader import load_config
    from evogate.utils.log import configure_logging

    config = load_config()
    configure_logging(config.logging, verbose=verbose)

    bind_host = host or config.gateway.host
    bind_port = port or config.gateway.port
    console.print(
        f"{__logo__} Starting evogate on {bind_host}:{bind_port} "
        f"(transport: {config.transport.mode})..."
    )
    run_server(config, host=bind_host, port=bind_port)


# ============================================================================
# Instance Commands
# ============================================================================


instances_app = typer.Typer(help="Manage instances on a running server")
app.add_typer(instances_app, name="instances")


def _base_url(url: str | None) -> str:
    if url:
        return url.rstrip("/")
    from evogate.config.loader import load_config

    return load_config().gateway.base_url


def _call(method: str, url: str | None, path: str, **kwargs: Any) -> Any:
    """Call the API and return the decoded body, exiting on any failure."""
    target = f"{_base_url(url)}{path}"
    try:
        with httpx.Client(timeout=30.0) as client:
            response = client.request(method, target, **kwargs)
    except httpx.HTTPError as e:
        console.print(f"[red]Request to {target} failed:[/red] {e}")
        raise typer.Exit(1)

    try:
        body = response.json()
    except ValueError:
        body = None

    if response.status_code >= 400:
        error = body.get("error") if isinstance(body, dict) else None
        if isinstance(error, dict):
            console.print(f"[red]{error.get('code', 'error')}:[/red] {error.get('message', '')}")
        else:
            console.print(f"[red]HTTP {response.status_code}[/red] {response.text}")
        raise typer.Exit(1)
    return body


def _state_style(status: str) -> str:
    return {
        "connected": "green",
        "qr_ready": "cyan",
        "connecting": "yellow",
        "error": "red",
    }.get(status, "dim")


UrlOption = typer.Option(None, "--url", "-u", help="API base URL (default from config)")


@instances_app.command("list")
def instances_list(url: str | None = UrlOption):
    """List instances."""
    instances = _call("GET", url, "/manager/fetchInstances")

    if not instances:
        console.print("No instances.")
        return

    table = Table(title="Instances")
    table.add_column("Name", style="cyan")
    table.add_column("Status")
    table.add_column("Created")
    table.add_column("Connected")

    for item in instances:
        status = item.get("status", "")
        style = _state_style(status)
        table.add_row(
            item.get("instanceName", ""),
            f"[{style}]{status}[/{style}]",
            item.get("createdAt") or "",
            item.get("connectedAt") or "",
        )

    console.print(table)


@instances_app.command("create")
def instances_create(
    name: str = typer.Argument(..., help="Instance name"),
    url: str | None = UrlOption,
):
    """Create an instance."""
    body = _call("POST", url, "/instance/create", json={"instanceName": name})
    instance = body.get("instance", {})
    console.print(f"[green]✓[/green] Created instance {instance.get('instanceName', name)}")


@instances_app.command("qr")
def instances_qr(
    name: str = typer.Argument(..., help="Instance name"),
    out: Path | None = typer.Option(None, "--out", "-o", help="Save the QR image as PNG"),
    show: bool = typer.Option(True, "--show/--no-show", help="Print the QR code in the terminal"),
    url: str | None = UrlOption,
):
    """Start pairing and fetch the current QR code."""
    from evogate.qr import render_ascii

    body = _call("GET", url, f"/instance/qrcode/{name}", params={"image": str(out is not None).lower()})
    code = body.get("code", "")

    if out is not None:
        data_url = body.get("qrcode") or ""
        if DATA_URL_MARKER not in data_url:
            console.print("[red]Server returned no QR image[/red]")
            raise typer.Exit(1)
        out.write_bytes(base64.b64decode(data_url.split(DATA_URL_MARKER, 1)[1]))
        console.print(f"[green]✓[/green] Saved QR code to {out}")

    if show and code:
        console.print(render_ascii(code), highlight=False)
    console.print(f"Expires at: {body.get('expiresAt')}")


@instances_app.command("state")
def instances_state(
    name: str = typer.Argument(..., help="Instance name"),
    url: str | None = UrlOption,
):
    """Show the connection state of an instance."""
    body = _call("GET", url, f"/instance/connectionState/{name}")
    instance = body.get("instance", {})
    status = instance.get("status", "")
    style = _state_style(status)
    console.print(f"{instance.get('instanceName', name)}: [{style}]{status}[/{style}] ({instance.get('state')})")
    if instance.get("reason"):
        console.print(f"Reason: {instance['reason']}")


@instances_app.command("send")
def instances_send(
    name: str = typer.Argument(..., help="Instance name"),
    number: str = typer.Option(..., "--to", "-t", help="Recipient phone number or JID"),
    text: str = typer.Option(..., "--text", "-m", help="Message text"),
    url: str | None = UrlOption,
):
    """Send a text message through a connected instance."""
    body = _call("POST", url, f"/message/sendText/{name}", json={"number": number, "text": text})
    key = body.get("key", {})
    console.print(f"[green]✓[/green] Message {key.get('id')} accepted for {key.get('remoteJid')}")


@instances_app.command("logout")
def instances_logout(
    name: str = typer.Argument(..., help="Instance name"),
    url: str | None = UrlOption,
):
    """Unlink the device of an instance."""
    _call("DELETE", url, f"/instance/logout/{name}")
    console.print(f"[green]✓[/green] Logged out {name}")


@instances_app.command("delete")
def instances_delete(
    name: str = typer.Argument(..., help="Instance name"),
    url: str | None = UrlOption,
):
    """Delete an instance."""
    _call("DELETE", url, f"/instance/delete/{name}")
    console.print(f"[green]✓[/green] Deleted {name}")


# ============================================================================
# QR Commands
# ============================================================================


qr_app = typer.Typer(help="Local QR rendering")
app.add_typer(qr_app, name="qr")


@qr_app.command("render")
def qr_render(
    payload: str = typer.Argument(..., help="Text to encode"),
    out: Path = typer.Option(..., "--out", "-o", help="Output PNG path"),
    width: int | None = typer.Option(None, "--width", "-w", help="Image width in pixels"),
):
    """Render a payload to a PNG file."""
    from dataclasses import replace

    from evogate.config.loader import load_config
    from evogate.core.errors import InvalidArgumentError
    from evogate.qr import QrImageEncoder, QrOptions

    qr_config = load_config().qr
    options = QrOptions(
        width=qr_config.width,
        margin=qr_config.margin,
        dark=qr_config.dark,
        light=qr_config.light,
    )
    if width is not None:
        options = replace(options, width=width)

    try:
        png = QrImageEncoder(options).encode(payload)
    except InvalidArgumentError as e:
        console.print(f"[red]{e.message}[/red]")
        raise typer.Exit(1)

    out.write_bytes(png)
    console.print(f"[green]✓[/green] Wrote {len(png)} bytes to {out}")


if __name__ == "__main__":
    app()
