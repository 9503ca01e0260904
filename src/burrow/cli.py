"""Burrow CLI - Command line interface."""

from __future__ import annotations

import asyncio
import contextlib
import signal
import sys
from datetime import datetime

import click
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from burrow.core.config import DEFAULT_BROKER_HOST, DEFAULT_LOCAL_HOST

console = Console()

_shutdown_requested = False

BANNER = r"""
 _
| |__  _   _ _ __ _ __ _____      __
| '_ \| | | | '__| '__/ _ \ \ /\ / /
| |_) | |_| | |  | | | (_) \ V  V /
|_.__/ \__,_|_|  |_|  \___/ \_/\_/
      Expose localhost to the world
"""

PORT_OPTIONS = ("--port", "-p")


class PortArgumentGroup(click.Group):
    """Group that also takes the local port as a bare argument: `burrow 8080`.

    The first positional token before any subcommand is turned into --port
    when it is a number. An explicit --port wins over it.
    """

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        value_options = {
            opt
            for param in self.params
            if isinstance(param, click.Option) and not param.is_flag
            for opt in param.opts + param.secondary_opts
        }
        args = list(args)
        has_port = False
        i = 0
        while i < len(args):
            token = args[i]
            if token == "--":
                break
            if token.startswith("-"):
                if token in PORT_OPTIONS or token.startswith(("--port=", "-p")):
                    has_port = True
                i += 2 if token in value_options else 1
                continue
            if token.isdigit():
                args[i:i + 1] = [] if has_port else ["--port", token]
            break
        return super().parse_args(ctx, args)


@click.group(cls=PortArgumentGroup, invoke_without_command=True)
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file",
)
@click.option("--port", "-p", type=click.IntRange(1, 65535), help="Internal HTTP server port (also accepted as a bare argument)")
@click.option("--host", "-h", "broker_host", default=None, help=f"Upstream server (default: {DEFAULT_BROKER_HOST})")
@click.option("--subdomain", "-s", help="Request specific subdomain")
@click.option(
    "--local-host", "-l",
    default=None,
    help=f"Tunnel traffic to alternative localhost (default: {DEFAULT_LOCAL_HOST})",
)
@click.option("--local-https", is_flag=True, default=False, help="Connect to the local server over HTTPS")
@click.option("--open", "-o", "open_browser", is_flag=True, help="Open the tunnel URL in the browser")
@click.option("--print-requests", is_flag=True, help="Print incoming requests")
@click.option("--metrics-port", type=click.IntRange(1, 65535), default=None, help="Serve Prometheus metrics on this port")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.option(
    "--log-level",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="warning",
    help="Log level (default: warning, use --verbose for debug)",
)
@click.pass_context
def main(
    ctx: click.Context,
    config_file: str | None,
    port: int | None,
    broker_host: str | None,
    subdomain: str | None,
    local_host: str | None,
    local_https: bool,
    open_browser: bool,
    print_requests: bool,
    metrics_port: int | None,
    verbose: bool,
    log_level: str,
):
    """Burrow - expose localhost to the world.

    Examples:

        burrow --port 8080

        burrow --port 3000 --subdomain myapp

        burrow --port 8080 --open --print-requests

    Use 'burrow COMMAND --help' for more info on specific commands.
    """
    file_config: dict = {}
    if config_file:
        from burrow.core.config import flatten_config, load_config_from_file
        try:
            raw_config = load_config_from_file(config_file)
            file_config = flatten_config(raw_config)
            console.print(f"Loaded config from {config_file}", style="dim")
        except Exception as e:
            console.print(f"[red]Failed to load config: {e}[/red]")
            sys.exit(1)

    if broker_host is None:
        broker_host = file_config.get("host", DEFAULT_BROKER_HOST)
    if local_host is None:
        local_host = file_config.get("local_host", DEFAULT_LOCAL_HOST)
    if port is None and "port" in file_config:
        port = int(file_config["port"])
    if metrics_port is None and "metrics_port" in file_config:
        metrics_port = int(file_config["metrics_port"])
    if subdomain is None and "subdomain" in file_config:
        subdomain = file_config["subdomain"]
    if not local_https and file_config.get("local_https"):
        local_https = True

    ctx.ensure_object(dict)
    ctx.obj["config_file"] = config_file
    ctx.obj["file_config"] = file_config

    if ctx.invoked_subcommand is None:
        if port is None:
            console.print(BANNER, style="cyan")
            console.print("Usage: burrow --port 8080", style="yellow")
            console.print("       burrow 8080", style="yellow")
            console.print("       burrow --port 3000 --subdomain myapp", style="yellow")
            console.print("\nCommands:", style="bold")
            console.print("  burrow config   Show effective configuration", style="dim")
            console.print("  burrow version  Show version information", style="dim")
            return

        _run_tunnel_with_signal_handling(
            port,
            broker_host,
            subdomain,
            local_host,
            local_https,
            open_browser,
            print_requests,
            metrics_port,
            verbose,
            log_level,
        )


def _run_tunnel_with_signal_handling(
    port: int,
    broker_host: str,
    subdomain: str | None,
    local_host: str,
    local_https: bool,
    open_browser: bool,
    print_requests: bool,
    metrics_port: int | None,
    verbose: bool,
    log_level: str,
) -> None:
    """Run tunnel with proper signal handling for clean Ctrl+C shutdown."""
    global _shutdown_requested
    _shutdown_requested = False

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    main_task = loop.create_task(
        start_tunnel(
            port,
            broker_host,
            subdomain,
            local_host,
            local_https,
            open_browser,
            print_requests,
            metrics_port,
            verbose,
            log_level,
        )
    )

    def signal_handler(sig: int, frame: object) -> None:
        """Handle Ctrl+C signal."""
        global _shutdown_requested
        if _shutdown_requested:
            console.print("\n[red]Force shutdown![/red]")
            sys.exit(1)
        _shutdown_requested = True
        console.print("\n[yellow]Shutting down gracefully...[/yellow]")
        loop.call_soon_threadsafe(main_task.cancel)

    signal.signal(signal.SIGINT, signal_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal_handler)

    try:
        loop.run_until_complete(main_task)
    except asyncio.CancelledError:
        pass
    except KeyboardInterrupt:
        pass
    finally:
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()


def configure_logging(level: str) -> None:
    import logging

    import structlog

    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(getattr(logging, level.upper())),
    )


async def start_tunnel(
    port: int,
    broker_host: str = DEFAULT_BROKER_HOST,
    subdomain: str | None = None,
    local_host: str = DEFAULT_LOCAL_HOST,
    local_https: bool = False,
    open_browser: bool = False,
    print_requests: bool = False,
    metrics_port: int | None = None,
    verbose: bool = False,
    log_level: str = "warning",
) -> None:
    """Open a tunnel for a local port and print its events until closed.

    Args:
        port: Local port to forward traffic to
        broker_host: Broker base URL
        subdomain: Requested subdomain (optional)
        local_host: Local server host
        local_https: Use TLS toward the local server
        open_browser: Open the public URL in the default browser
        print_requests: Print a line per incoming request
        metrics_port: Serve Prometheus metrics on this port (optional)
        verbose: Enable verbose output
        log_level: Log level (debug, info, warning, error)
    """
    from burrow.api import open_url
    from burrow.client.events import Closed, ErrorEvent, IncomingRequest
    from burrow.client.tunnel import Tunnel
    from burrow.core.config import TunnelOptions
    from burrow.core.exceptions import BurrowError, format_error_for_user

    configure_logging("debug" if verbose else log_level)

    try:
        options = TunnelOptions(
            local_port=port,
            broker_host=broker_host,
            subdomain=subdomain,
            local_host=local_host,
            local_https=local_https,
        )
    except ValueError as e:
        console.print(f"[red]Invalid options:[/red] {e}")
        sys.exit(1)

    if metrics_port:
        from burrow.observability.metrics import start_metrics_server

        try:
            start_metrics_server(metrics_port)
        except OSError as e:
            console.print(f"[red]Failed to start metrics server on port {metrics_port}:[/red] {format_error_for_user(e)}")
            sys.exit(1)
        console.print(f"Metrics at http://127.0.0.1:{metrics_port}/metrics", style="dim")

    tunnel = Tunnel(options)
    console.print(f"Starting tunnel for {options.local_address}...", style="yellow")

    try:
        url = await tunnel.open()
        panel_content = (
            f"[green]Tunnel established![/green]\n\n"
            f"[bold]Public URL:[/bold] [cyan]{url}[/cyan]\n"
            f"[bold]Forwarding:[/bold] {options.local_address}"
        )
        console.print(Panel(panel_content, title="Burrow", border_style="green"))
        console.print("\nPress Ctrl+C to stop.\n", style="dim")

        if open_browser:
            open_url(url)

        async for event in tunnel.events():
            if isinstance(event, IncomingRequest):
                if print_requests:
                    stamp = datetime.now().strftime("%H:%M:%S")
                    console.print(f"[dim]{stamp}[/dim] [bold]{event.method}[/bold] {event.path}")
            elif isinstance(event, ErrorEvent):
                console.print(f"[red]Error:[/red] {format_error_for_user(event.error)}")
            elif isinstance(event, Closed):
                break
    except (KeyboardInterrupt, asyncio.CancelledError):
        await tunnel.close()
        console.print("[green]Tunnel closed.[/green]")
    except Exception as e:
        with contextlib.suppress(Exception):
            await tunnel.close()

        if isinstance(e, BurrowError):
            console.print(Panel(f"[red]{e.message}[/red]", title=f"Error: {e.code}", border_style="red"))
        else:
            console.print(
                Panel(
                    f"[red]{format_error_for_user(e)}[/red]",
                    title="Connection Error",
                    border_style="red",
                )
            )
        sys.exit(1)


@main.command("config")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
def show_config(json_output: bool):
    """Show the effective timeout and pool configuration.

    Values come from defaults, BURROW_* environment variables, and .env.
    """
    from burrow.core.config import BurrowConfig

    display = BurrowConfig().to_display_dict()

    if json_output:
        import json

        console.print(json.dumps(display, indent=2))
        return

    table = Table(title="Burrow configuration")
    table.add_column("Section", style="cyan")
    table.add_column("Setting")
    table.add_column("Value", justify="right")
    for section, values in display.items():
        for key, value in values.items():
            table.add_row(section, key, str(value))
    console.print(table)


@main.command()
def version():
    """Show version information."""
    from burrow import __version__

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


if __name__ == "__main__":
    main()
