"""vlessgate server - Main entry point."""

from __future__ import annotations

import asyncio
import logging
from typing import Any

import click
import structlog
from pydantic import ValidationError
from rich.console import Console
from rich.markup import escape

from vlessgate.core.config import GatewayConfig, load_config_from_file
from vlessgate.server.gateway import GatewayServer

console = Console()

BANNER = """
██╗   ██╗██╗     ███████╗███████╗███████╗ ██████╗  █████╗ ████████╗███████╗
██║   ██║██║     ██╔════╝██╔════╝██╔════╝██╔════╝ ██╔══██╗╚══██╔══╝██╔════╝
██║   ██║██║     █████╗  ███████╗███████╗██║  ███╗███████║   ██║   █████╗
╚██╗ ██╔╝██║     ██╔══╝  ╚════██║╚════██║██║   ██║██╔══██║   ██║   ██╔══╝
 ╚████╔╝ ███████╗███████╗███████║███████║╚██████╔╝██║  ██║   ██║   ███████╗
  ╚═══╝  ╚══════╝╚══════╝╚══════╝╚══════╝ ╚═════╝ ╚═╝  ╚═╝   ╚═╝   ╚══════╝
                          WEBSOCKET GATEWAY
"""

LOG_LEVELS = ["debug", "info", "warning", "error"]


def configure_logging(level: str) -> None:
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper())),
    )


def build_config(config_file: str | None, overrides: dict[str, Any]) -> GatewayConfig:
    """Merge file values with CLI/env values; CLI/env wins."""
    values: dict[str, Any] = load_config_from_file(config_file) if config_file else {}
    values.update({key: value for key, value in overrides.items() if value is not None})
    return GatewayConfig(**values)


@click.command()
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file",
)
@click.option("--uuid", "-u", envvar="UUID", help="Client identity (UUID) accepted by the gateway")
@click.option("--host", default=None, help="Listen address (default: 0.0.0.0)")
@click.option("--port", "-p", type=int, envvar="PORT", default=None, help="Listen port (default: 8080)")
@click.option("--path", "tunnel_path", default=None, help="Tunnel upgrade path (default: /)")
@click.option(
    "--max-sessions",
    type=int,
    default=None,
    help="Maximum concurrent relay sessions (default: 1024)",
)
@click.option(
    "--connect-timeout",
    type=float,
    default=None,
    help="Destination connect timeout in seconds (default: 10)",
)
@click.option(
    "--handshake-timeout",
    type=float,
    default=None,
    help="Timeout for the upgrade request and tunnel header in seconds (default: 30)",
)
@click.option(
    "--response-header/--no-response-header",
    default=None,
    help="Send the 2-byte tunnel response before destination data",
)
@click.option("--public-host", default=None, help="Host shown in the client config text")
@click.option(
    "--admin-user",
    envvar="VLESSGATE_ADMIN_USER",
    default=None,
    help="Username for /stats and /metrics (enables admin auth)",
)
@click.option(
    "--admin-password",
    envvar="VLESSGATE_ADMIN_PASSWORD",
    default=None,
    help="Password for /stats and /metrics (enables admin auth)",
)
@click.option(
    "--log-level",
    type=click.Choice(LOG_LEVELS),
    default="info",
    help="Log level (default: info)",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def main(
    config_file: str | None,
    uuid: str | None,
    host: str | None,
    port: int | None,
    tunnel_path: str | None,
    max_sessions: int | None,
    connect_timeout: float | None,
    handshake_timeout: float | None,
    response_header: bool | None,
    public_host: str | None,
    admin_user: str | None,
    admin_password: str | None,
    log_level: str,
    verbose: bool,
):
    """Run the vlessgate WebSocket tunnel gateway."""
    console.print(BANNER, style="cyan")
    configure_logging("debug" if verbose else log_level)

    try:
        config = build_config(
            config_file,
            {
                "uuid": uuid,
                "host": host,
                "port": port,
                "tunnel_path": tunnel_path,
                "max_sessions": max_sessions,
                "connect_timeout": connect_timeout,
                "handshake_timeout": handshake_timeout,
                "response_header": response_header,
                "public_host": public_host,
                "admin_user": admin_user,
                "admin_password": admin_password,
            },
        )
    except (ValidationError, ValueError, FileNotFoundError) as e:
        console.print(f"[red]Invalid configuration:[/red] {escape(str(e))}")
        raise SystemExit(2) from e

    console.print(f"Listening on {config.host}:{config.port}", style="yellow")
    console.print(f"Tunnel path: {config.tunnel_path}", style="dim")
    console.print(f"Max sessions: {config.max_sessions}", style="dim")
    console.print(f"Connect timeout: {config.connect_timeout}s", style="dim")
    console.print(f"Client config: /{config.uuid}", style="dim")
    if config.admin_enabled:
        console.print(f"Admin endpoints: /stats, /metrics (user: {config.admin_user})", style="green")
    else:
        console.print(
            "Admin auth: disabled (set --admin-user and --admin-password to protect /stats, /metrics)",
            style="dim",
        )
    if not config.response_header:
        console.print("Response header: off (use --response-header for stock VLESS clients)", style="dim")

    try:
        asyncio.run(run_server(config))
    except KeyboardInterrupt:
        console.print("\nShutting down...", style="yellow")


async def run_server(config: GatewayConfig) -> None:
    """Run the gateway until cancelled."""
    server = GatewayServer(config)

    try:
        await server.start()
        console.print("Gateway started, press Ctrl+C to stop", style="green")

        await asyncio.Event().wait()
    finally:
        await server.stop()


if __name__ == "__main__":
    main()
