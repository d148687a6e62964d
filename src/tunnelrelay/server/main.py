"""Tunnel relay server - Main entry point."""

import asyncio
import logging
from typing import Any, TypeVar

import click
import structlog
from pydantic_settings import BaseSettings
from rich.console import Console

from tunnelrelay.core.config import RelayConfig, ServerConfig, TunnelRelayConfig
from tunnelrelay.relay.engine import TunnelRelay
from tunnelrelay.server.relay import RelayServer

console = Console()

SettingsT = TypeVar("SettingsT", bound=BaseSettings)

BANNER = """
████████╗██╗   ██╗███╗   ██╗███╗   ██╗███████╗██╗
╚══██╔══╝██║   ██║████╗  ██║████╗  ██║██╔════╝██║
   ██║   ██║   ██║██╔██╗ ██║██╔██╗ ██║█████╗  ██║
   ██║   ██║   ██║██║╚██╗██║██║╚██╗██║██╔══╝  ██║
   ██║   ╚██████╔╝██║ ╚████║██║ ╚████║███████╗███████╗
   ╚═╝    ╚═════╝ ╚═╝  ╚═══╝╚═╝  ╚═══╝╚══════╝╚══════╝
                    RELAY SERVER
"""


def _merge(
    model: type[SettingsT], base: BaseSettings, overrides: dict[str, Any]
) -> SettingsT:
    """Rebuild a settings model so overrides are validated like any other input."""
    values = base.model_dump()
    values.update({k: v for k, v in overrides.items() if v is not None})
    return model(**values)


def build_config(
    config_file: str | None = None,
    relay_overrides: dict[str, Any] | None = None,
    server_overrides: dict[str, Any] | None = None,
) -> TunnelRelayConfig:
    """Combine env vars, an optional config file and command-line overrides."""
    base = TunnelRelayConfig.from_file(config_file) if config_file else TunnelRelayConfig()
    return TunnelRelayConfig(
        relay=_merge(RelayConfig, base.relay, relay_overrides or {}),
        server=_merge(ServerConfig, base.server, server_overrides or {}),
    )


@click.command()
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file",
)
@click.option("--bind", "-b", envvar="TUNNELRELAY_BIND", help="HTTP bind address (default: 0.0.0.0:2427)")
@click.option("--static-dir", help="Directory with index.html and LICENSE.txt (default: web)")
@click.option(
    "--ttl",
    type=float,
    help="Tunnel time-to-live in minutes (default: 5)",
)
@click.option(
    "--expiry-interval",
    type=float,
    help="Minutes between expiry sweeps (default: 10)",
)
@click.option(
    "--rate-limit-rpm",
    type=float,
    help="Requests per minute per caller and per tunnel (default: 100)",
)
@click.option(
    "--rate-limit-burst",
    type=int,
    help="Burst allowance for rate limiting (default: 10)",
)
@click.option(
    "--rate-limit-cleanup",
    type=float,
    help="Minutes before idle rate limiters are evicted (default: 60)",
)
@click.option(
    "--sink-buffer",
    type=int,
    help="Pending updates buffered per stream subscriber (default: 16)",
)
@click.option(
    "--heartbeat",
    type=float,
    help="SSE heartbeat interval in seconds (default: 15)",
)
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"]),
    default="info",
    help="Log level (default: info)",
)
def main(
    config_file: str | None,
    bind: str | None,
    static_dir: str | None,
    ttl: float | None,
    expiry_interval: float | None,
    rate_limit_rpm: float | None,
    rate_limit_burst: int | None,
    rate_limit_cleanup: float | None,
    sink_buffer: int | None,
    heartbeat: float | None,
    log_level: str,
):
    """Run the tunnel relay server."""
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, log_level.upper())
        ),
    )

    console.print(BANNER, style="cyan")

    try:
        config = build_config(
            config_file,
            relay_overrides={
                "tunnel_ttl_minutes": ttl,
                "expiry_interval_minutes": expiry_interval,
                "rate_limit_rpm": rate_limit_rpm,
                "rate_limit_burst": rate_limit_burst,
                "rate_limit_cleanup_minutes": rate_limit_cleanup,
                "sink_buffer_size": sink_buffer,
            },
            server_overrides={
                "bind": bind,
                "static_dir": static_dir,
                "sse_heartbeat_interval": heartbeat,
            },
        )
    except ValueError as e:
        console.print(f"Invalid configuration: {e}", style="red")
        raise SystemExit(1) from e

    relay_config = config.relay
    console.print(f"Starting relay server on {config.server.bind}...", style="yellow")
    console.print(
        f"Tunnel TTL: {relay_config.tunnel_ttl_minutes} min, "
        f"swept every {relay_config.expiry_interval_minutes} min",
        style="dim",
    )
    console.print(
        f"Rate limit: {relay_config.rate_limit_rpm} req/min, burst: {relay_config.rate_limit_burst}",
        style="dim",
    )
    console.print(f"SSE heartbeat: {config.server.sse_heartbeat_interval}s", style="dim")

    asyncio.run(run_server(config))


async def run_server(config: TunnelRelayConfig):
    """Run the relay server."""
    server = RelayServer(config.server, TunnelRelay(config.relay))

    try:
        await server.start()
        console.print("Server started, press Ctrl+C to stop", style="green")

        await asyncio.Event().wait()
    except (KeyboardInterrupt, asyncio.CancelledError):
        console.print("\nShutting down...", style="yellow")
    finally:
        await server.stop()


if __name__ == "__main__":
    main()
