"""singleport CLI - Command line interface."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from typing import Any

import click
import structlog
from rich.console import Console
from rich.panel import Panel
from rich.table import Table

from singleport.core.config import (
    DiscoveryConfig,
    KeepaliveConfig,
    ListenerConfig,
    ShareLinkConfig,
    SniffPolicy,
    flatten_config,
    load_config_from_file,
    section_overrides,
)
from singleport.core.exceptions import ConfigError, SingleportError, format_error_for_user

console = Console()

_shutdown_requested = False

BANNER = """
 ___ _           _                       _
/ __(_)_ _  __ _| |___ _ __  ___ _ _ ___| |_
\\__ \\ | ' \\/ _` | / -_) '_ \\/ _ \\ '_|_ /  _|
|___/_|_||_\\__, |_\\___| .__/\\___/_|  \\__\\__|
           |___/      |_|
        one port, two protocols
"""

_POLICY_CHOICE = click.Choice([p.value for p in SniffPolicy])


def configure_logging(log_level: str, verbose: bool = False) -> None:
    """Route structlog output through a level filter."""
    effective_log_level = "debug" if verbose else log_level
    structlog.configure(
        wrapper_class=structlog.make_filtering_bound_logger(
            getattr(logging, effective_log_level.upper())
        ),
    )


def _pick(overrides: dict[str, Any], model: type) -> dict[str, Any]:
    return {k: v for k, v in overrides.items() if k in model.model_fields}


def build_configs(
    file_config: dict[str, Any], cli_values: dict[str, Any]
) -> tuple[ListenerConfig, DiscoveryConfig, KeepaliveConfig, ShareLinkConfig]:
    """Merge config file values and CLI options on top of env/defaults.

    CLI options win over the file, the file wins over environment variables.
    """
    overrides = section_overrides(file_config)
    overrides.update({k: v for k, v in cli_values.items() if v is not None})
    return (
        ListenerConfig(**_pick(overrides, ListenerConfig)),
        DiscoveryConfig(**_pick(overrides, DiscoveryConfig)),
        KeepaliveConfig(**_pick(overrides, KeepaliveConfig)),
        ShareLinkConfig(**_pick(overrides, ShareLinkConfig)),
    )


@click.group(invoke_without_command=True)
@click.pass_context
def main(ctx: click.Context):
    """singleport - serve HTTP status and tunnel traffic on one public port.

    Examples:

        singleport serve --port 8080

        singleport serve --port 8080 --hostname tunnel.example.com

        singleport probe abc-123.trycloudflare.com

    Use 'singleport COMMAND --help' for more info on specific commands.
    """
    if ctx.invoked_subcommand is None:
        console.print(BANNER, style="cyan")
        console.print("Usage: singleport serve --port 8080", style="yellow")
        console.print("\nCommands:", style="bold")
        console.print("  singleport serve    Run the shared listener", style="dim")
        console.print("  singleport probe    Probe a public health endpoint once", style="dim")
        console.print("  singleport sniff    Classify captured bytes", style="dim")
        console.print("  singleport config   Show or validate configuration", style="dim")
        console.print("  singleport version  Show version information", style="dim")


@main.command()
@click.option(
    "--config", "-c",
    "config_file",
    type=click.Path(exists=True),
    help="Path to YAML or TOML config file",
)
@click.option("--host", "listen_host", help="Bind address (default: all interfaces)")
@click.option("--port", "-p", "listen_port", type=int, help="Public port (default: 8080)")
@click.option("--backend-host", help="Backend host (default: 127.0.0.1)")
@click.option("--backend-port", type=int, help="Backend port (default: public port + 1)")
@click.option("--policy", "sniff_policy", type=_POLICY_CHOICE, help="Classification policy (default: websocket-path)")
@click.option("--upgrade-path", help="Path marker of tunnel upgrades (default: /king)")
@click.option("--health-path", help="Health route (default: /health)")
@click.option("--metrics-path", help="Serve Prometheus metrics on this route")
@click.option(
    "--hostname",
    "fixed_hostname",
    envvar="SINGLEPORT_FIXED_HOSTNAME",
    help="Fixed public hostname (disables discovery and keepalive)",
)
@click.option("--artifact", "artifact_path", help="Tunnel agent log to scan (default: boot.log)")
@click.option("--poll-interval", type=float, help="Seconds between log scans (default: 2)")
@click.option("--max-retries", type=int, help="Log scans before giving up (default: 10)")
@click.option("--keepalive", "keepalive_interval", type=float, help="Seconds between keepalive probes (default: 30)")
@click.option("--link-uuid", envvar="SINGLEPORT_LINK_UUID", help="User id for the share link")
@click.option("--link-file", help="Write the share link to this file")
@click.option(
    "--log-level",
    "-l",
    type=click.Choice(["debug", "info", "warning", "error"], case_sensitive=False),
    default="info",
    help="Log level (default: info)",
)
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
def serve(config_file: str | None, log_level: str, verbose: bool, **options: Any):
    """Run the shared listener with hostname discovery and keepalive."""
    file_config: dict[str, Any] = {}
    if config_file:
        try:
            file_config = flatten_config(load_config_from_file(config_file))
            console.print(f"Loaded config from {config_file}", style="dim")
        except ConfigError as e:
            console.print(f"[red]Failed to load config: {e.message}[/red]")
            sys.exit(1)

    try:
        listener, discovery, keepalive, link = build_configs(file_config, options)
    except ValueError as e:
        console.print(f"[red]Invalid configuration:[/red] {e}")
        sys.exit(1)

    configure_logging(log_level, verbose)
    console.print(BANNER, style="cyan")
    console.print(
        f"Listening on {listener.listen_host or '*'}:{listener.listen_port}, "
        f"tunnel traffic -> {listener.backend_host}:{listener.effective_backend_port}",
        style="yellow",
    )
    console.print(
        f"Policy: {listener.sniff_policy.value} (upgrade path {listener.upgrade_path}), "
        f"health: {listener.health_path}",
        style="dim",
    )
    if discovery.fixed_hostname:
        console.print(f"Hostname: {discovery.fixed_hostname} (fixed, keepalive disabled)", style="dim")
    else:
        console.print(f"Hostname: discovering from {discovery.artifact_path}", style="dim")

    _run_with_signal_handling(listener, discovery, keepalive, link)


def _print_resolved(state: Any, link: str | None) -> None:
    from singleport.discovery.hostname import HostnameSource

    if state.source is HostnameSource.FALLBACK:
        console.print(
            Panel(
                f"[yellow]No tunnel hostname found, using {state.hostname}[/yellow]",
                title="singleport",
                border_style="yellow",
            )
        )
        return

    content = f"[bold]Public hostname:[/bold] [cyan]{state.hostname}[/cyan]"
    if link:
        content += f"\n[bold]Share link:[/bold] {link}"
    console.print(Panel(content, title="singleport", border_style="green"))


def _run_with_signal_handling(
    listener: ListenerConfig,
    discovery: DiscoveryConfig,
    keepalive: KeepaliveConfig,
    link: ShareLinkConfig,
) -> None:
    """Run the server with proper signal handling for clean Ctrl+C shutdown."""
    from singleport.server.main import SingleportServer

    global _shutdown_requested
    _shutdown_requested = False

    if sys.platform == "win32":
        asyncio.set_event_loop_policy(asyncio.WindowsSelectorEventLoopPolicy())

    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    async def _serve() -> None:
        server = SingleportServer(listener, discovery, keepalive, link, on_resolved=_print_resolved)
        await server.serve_forever()

    main_task = loop.create_task(_serve())

    def signal_handler(sig: int, frame: object) -> None:
        """Handle Ctrl+C signal."""
        global _shutdown_requested
        if _shutdown_requested:
            console.print("\n[red]Force shutdown![/red]")
            sys.exit(1)
        _shutdown_requested = True
        console.print("\n[yellow]Shutting down...[/yellow]")
        main_task.cancel()

    signal.signal(signal.SIGINT, signal_handler)
    if hasattr(signal, "SIGTERM"):
        signal.signal(signal.SIGTERM, signal_handler)

    exit_code = 0
    try:
        loop.run_until_complete(main_task)
    except (asyncio.CancelledError, KeyboardInterrupt):
        pass
    except SingleportError as e:
        console.print(Panel(f"[red]{e.message}[/red]", title=f"Error: {e.code}", border_style="red"))
        exit_code = 1
    finally:
        pending = asyncio.all_tasks(loop)
        for task in pending:
            task.cancel()
        if pending:
            loop.run_until_complete(asyncio.gather(*pending, return_exceptions=True))
        loop.close()

    if exit_code:
        sys.exit(exit_code)


@main.command()
@click.argument("target")
@click.option("--path", default="/health", help="Path to probe when TARGET is a bare hostname")
@click.option("--timeout", "-t", type=float, default=10.0, help="Request timeout in seconds (default: 10)")
def probe(target: str, path: str, timeout: float):
    """Probe a public health endpoint once, the way keepalive does.

    TARGET is a hostname (https is assumed) or a full URL. Exits 0 on a
    2xx response and 1 otherwise.
    """
    import httpx

    url = target if "://" in target else f"https://{target}"
    if url.split("://", 1)[1].find("/") == -1:
        url = f"{url}{path}"

    try:
        with httpx.Client(timeout=timeout, follow_redirects=False) as client:
            response = client.get(url)
    except httpx.HTTPError as e:
        console.print(f"[red]FAIL[/red] {url}: {format_error_for_user(e)}")
        sys.exit(1)

    if 200 <= response.status_code < 300:
        console.print(f"[green]OK[/green] {url} -> {response.status_code}")
        return
    console.print(f"[red]FAIL[/red] {url} -> {response.status_code}")
    sys.exit(1)


@main.command()
@click.argument("source", type=click.File("rb"), default="-")
@click.option("--policy", "sniff_policy", type=_POLICY_CHOICE, default=SniffPolicy.WEBSOCKET_PATH.value, help="Classification policy")
@click.option("--upgrade-path", default="/king", help="Path marker of tunnel upgrades")
def sniff(source: Any, sniff_policy: str, upgrade_path: str):
    """Classify captured connection bytes from SOURCE (default: stdin)."""
    from singleport.server.sniffer import classify

    data = source.read()
    if not data:
        console.print("[red]No bytes to classify[/red]")
        sys.exit(1)

    verdict = classify(data, SniffPolicy(sniff_policy), upgrade_path)
    console.print(f"{verdict.value}")


@main.group()
def config():
    """View and validate configuration settings.

    All settings can be configured via environment variables with the
    SINGLEPORT_ prefix.
    """
    pass


@config.command("show")
@click.option("--json", "json_output", is_flag=True, help="Output as JSON")
@click.option("--section", "-s", help="Show only specific section (listener, discovery, keepalive, link)")
def config_show(json_output: bool, section: str | None):
    """Show current configuration settings."""
    from singleport.core.config import get_config

    display = get_config().to_display_dict()

    if section:
        section = section.lower()
        if section not in display:
            console.print(f"[red]Unknown section:[/red] {section}")
            console.print(f"[dim]Available: {', '.join(display.keys())}[/dim]")
            sys.exit(1)
        display = {section: display[section]}

    if json_output:
        console.print(json.dumps(display, indent=2))
        return

    for section_name, settings in display.items():
        table = Table(title=section_name.title())
        table.add_column("Setting", style="cyan")
        table.add_column("Value", style="green")
        table.add_column("Env Variable", style="dim")

        for key, value in settings.items():
            value_str = str(value) if value is not None else "[dim]None[/dim]"
            table.add_row(key, value_str, f"SINGLEPORT_{key.upper()}")

        console.print(table)
        console.print()


@config.command("validate")
def config_validate():
    """Validate current configuration."""
    from singleport.core.config import clear_config, get_config

    clear_config()

    try:
        cfg = get_config()
        listener = cfg.listener
        discovery = cfg.discovery
        keepalive = cfg.keepalive

        errors = []
        warnings = []

        if listener.effective_backend_port == listener.listen_port:
            errors.append(f"backend_port ({listener.effective_backend_port}) must differ from listen_port")
        if not listener.upgrade_path.startswith("/"):
            errors.append(f"upgrade_path ({listener.upgrade_path}) must start with '/'")
        if not listener.health_path.startswith("/"):
            errors.append(f"health_path ({listener.health_path}) must start with '/'")
        if listener.metrics_path and listener.metrics_path == listener.health_path:
            errors.append("metrics_path must differ from health_path")
        if listener.sniff_policy is SniffPolicy.HTTP_MARKERS:
            warnings.append("http-markers policy routes any buffer containing 'GET ' or 'POST ' to HTTP")
        if discovery.poll_interval * discovery.max_retries < 5:
            warnings.append(
                f"discovery gives up after {discovery.poll_interval * discovery.max_retries:.1f}s, "
                "the tunnel agent may not have reported a hostname yet"
            )
        if keepalive.keepalive_interval < 5:
            warnings.append(f"keepalive_interval ({keepalive.keepalive_interval}s) is very short")

        if errors:
            console.print("[red bold]Configuration Errors:[/red bold]")
            for error in errors:
                console.print(f"  [red]x[/red] {error}")
            console.print()

        if warnings:
            console.print("[yellow bold]Configuration Warnings:[/yellow bold]")
            for warning in warnings:
                console.print(f"  [yellow]![/yellow] {warning}")
            console.print()

        if not errors and not warnings:
            console.print("[green]OK - Configuration is valid[/green]")
        elif not errors:
            console.print("[green]OK - Configuration is valid (with warnings)[/green]")
        else:
            console.print("[red]ERROR - Configuration has errors[/red]")
            sys.exit(1)

    except ValueError as e:
        console.print(f"[red]Configuration error:[/red] {e}")
        sys.exit(1)


@main.command()
def version():
    """Show version information."""
    from singleport import __version__

    console.print(BANNER, style="cyan")
    console.print(f"[bold]Version:[/bold] {__version__}")
    console.print(f"[bold]Python:[/bold] {sys.version}")


if __name__ == "__main__":
    main()
