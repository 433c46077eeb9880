"""vlessgate CLI - Command line interface."""

from __future__ import annotations

import asyncio
import json
import logging
import sys

import click
import structlog
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape
from rich.panel import Panel
from rich.table import Table

from vlessgate import __version__

console = Console()

BANNER = """
██╗   ██╗██╗     ███████╗███████╗███████╗ ██████╗  █████╗ ████████╗███████╗
██║   ██║██║     ██╔════╝██╔════╝██╔════╝██╔════╝ ██╔══██╗╚══██╔══╝██╔════╝
██║   ██║██║     █████╗  ███████╗███████╗██║  ███╗███████║   ██║   █████╗
╚██╗ ██╔╝██║     ██╔══╝  ╚════██║╚════██║██║   ██║██╔══██║   ██║   ██╔══╝
 ╚████╔╝ ███████╗███████╗███████║███████║╚██████╔╝██║  ██║   ██║   ███████╗
  ╚═══╝  ╚══════╝╚══════╝╚══════╝╚══════╝ ╚═════╝ ╚═╝  ╚═╝   ╚═╝   ╚══════╝
              Tunnel TCP through a WebSocket gateway
"""


@click.group()
def main():
    """vlessgate - Tunnel TCP through a WebSocket gateway."""


@main.command()
def version():
    """Show version information."""
    console.print(BANNER, style="cyan")
    console.print(f"Version: {__version__}")
    console.print(f"Python: {sys.version.split()[0]}")


@main.command()
@click.option("--server", "-s", default="127.0.0.1:8080", help="Gateway address (host:port or URL)")
@click.option("--user", envvar="VLESSGATE_ADMIN_USER", default=None, help="Admin username")
@click.option("--password", envvar="VLESSGATE_ADMIN_PASSWORD", default=None, help="Admin password")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def status(server: str, user: str | None, password: str | None, json_output: bool):
    """Show gateway health and active sessions."""
    import httpx

    base_url = server.rstrip("/") if "://" in server else f"http://{server}"
    auth = (user, password) if user and password else None
    try:
        with httpx.Client(timeout=5.0, auth=auth) as client:
            health = client.get(f"{base_url}/health").text.strip()
            stats_resp = client.get(f"{base_url}/stats")
            stats_resp.raise_for_status()
            stats = stats_resp.json()
    except (httpx.HTTPError, ValueError) as e:
        console.print(f"[red]Error connecting to gateway:[/red] {escape(str(e))}")
        sys.exit(1)

    if json_output:
        console.print_json(json.dumps({"health": health, "stats": stats}))
        return

    console.print(f"\n[bold]Gateway:[/bold] {escape(base_url)}")
    console.print(f"[bold]Status:[/bold] [green]{escape(health)}[/green]")
    console.print(
        f"[bold]Active Sessions:[/bold] {stats.get('active_sessions', 0)}"
        f"/{stats.get('max_sessions', 'N/A')}"
    )

    sessions = stats.get("sessions", [])
    if not sessions:
        console.print("\n[dim]No active sessions[/dim]")
        return

    table = Table()
    table.add_column("ID", style="dim")
    table.add_column("Peer", style="cyan")
    table.add_column("State")
    table.add_column("Destination")
    table.add_column("Up", justify="right")
    table.add_column("Down", justify="right")
    for session in sessions:
        table.add_row(
            session.get("id", ""),
            session.get("peer") or "-",
            session.get("state", ""),
            session.get("destination") or "-",
            _format_bytes(session.get("bytes_up", 0)),
            _format_bytes(session.get("bytes_down", 0)),
        )
    console.print(table)


@main.command()
@click.option("--uuid", "-u", envvar="UUID", required=True, help="Client identity (UUID)")
@click.option("--host", required=True, help="Public host of the gateway")
@click.option("--path", default="/", help="Tunnel path (default: /)")
@click.option("--port", type=int, default=443, help="Public TLS port (default: 443)")
def share(uuid: str, host: str, path: str, port: int):
    """Print client configuration for a gateway."""
    from vlessgate.core.config import canonical_uuid
    from vlessgate.server.pages import render_client_config

    try:
        uuid = canonical_uuid(uuid)
    except ValueError as e:
        raise click.BadParameter(str(e), param_hint="--uuid") from e
    click.echo(render_client_config(uuid, host, path, port))


@main.command()
@click.option("--server", "-s", "server_url", required=True, help="Gateway URL, e.g. ws://host:8080/")
@click.option("--uuid", "-u", envvar="UUID", required=True, help="Client identity (UUID)")
@click.option("--target", "-t", required=True, help="Destination host:port reached through the gateway")
@click.option("--listen", "-l", default="127.0.0.1:1080", help="Local bind address (default: 127.0.0.1:1080)")
@click.option("--timeout", type=float, default=10.0, help="Gateway connect timeout in seconds (default: 10)")
@click.option(
    "--response-header",
    is_flag=True,
    help="Strip the 2-byte tunnel response the gateway sends first",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default="info",
    help="Log level (default: info)",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def forward(
    server_url: str,
    uuid: str,
    target: str,
    listen: str,
    timeout: float,
    response_header: bool,
    log_level: str,
    verbose: bool,
):
    """Forward a local port to a destination through a gateway."""
    from vlessgate.client.tunnel import TunnelClient
    from vlessgate.core.config import ClientConfig
    from vlessgate.core.exceptions import format_error_for_user

    effective_log_level = "debug" if verbose else log_level
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, effective_log_level.upper())
        ),
    )

    target_host, target_port = _split_host_port(target, "--target")
    local_host, local_port = _split_host_port(listen, "--listen")

    try:
        config = ClientConfig(
            server_url=server_url,
            uuid=uuid,
            target_host=target_host,
            target_port=target_port,
            local_host=local_host,
            local_port=local_port,
            connect_timeout=timeout,
            expect_response_header=response_header,
        )
    except ValidationError as e:
        console.print(f"[red]Invalid options:[/red] {escape(str(e))}")
        raise SystemExit(2) from e

    console.print(BANNER, style="cyan")
    console.print(
        Panel(
            f"[bold]Listening:[/bold] [cyan]{local_host}:{local_port}[/cyan]\n"
            f"[bold]Gateway:[/bold] {server_url}\n"
            f"[bold]Target:[/bold] {target_host}:{target_port}",
            title="vlessgate",
            border_style="green",
        )
    )

    client = TunnelClient(config)
    try:
        asyncio.run(_run_client(client))
    except KeyboardInterrupt:
        console.print("[green]Forwarder stopped.[/green]")
    except Exception as e:
        console.print(f"[red]{escape(format_error_for_user(e))}[/red]")
        raise SystemExit(1) from e


async def _run_client(client) -> None:
    try:
        await client.run()
    finally:
        await client.close()


def _format_bytes(num_bytes: int | float) -> str:
    """Format bytes into human readable string."""
    value = float(num_bytes)
    for unit in ["B", "KB", "MB", "GB"]:
        if abs(value) < 1024.0:
            return f"{value:.1f} {unit}"
        value /= 1024.0
    return f"{value:.1f} TB"


def _split_host_port(value: str, option: str) -> tuple[str, int]:
    host, sep, port = value.rpartition(":")
    if not sep or not host or not port.isdigit():
        raise click.BadParameter(f"expected host:port, got {value!r}", param_hint=option)
    return host.strip("[]"), int(port)


if __name__ == "__main__":
    main()
