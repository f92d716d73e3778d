"""Command-line interface for netquota."""

import asyncio
import logging
import sys
from collections.abc import Iterator
from contextlib import contextmanager
from datetime import datetime
from pathlib import Path
from typing import NoReturn, Optional

import click
from rich.console import Console
from rich.markup import escape
from rich.table import Table

from netquota.collectors import UniFiClient, UniFiConfig
from netquota.config import Config, find_config_file, load_config
from netquota.errors import InvariantViolation, QuotaError
from netquota.models import BlockReason, DeviceConfig
from netquota.policies import DeviceManager, EnforcementEngine, validate_schedules
from netquota.reports import build_usage_history, build_usage_summary
from netquota.storage import QuotaStore
from netquota.tracker import Poller, UsageAccumulator
from netquota.units import format_bytes, to_bytes

console = Console()

REASON_STYLES = {
    BlockReason.UNBLOCKED: "green",
    BlockReason.TIME_LIMIT: "yellow",
    BlockReason.DATA_LIMIT: "yellow",
    BlockReason.OUTSIDE_HOURS: "blue",
    BlockReason.MANUAL: "red",
}


def _fail(message: str) -> NoReturn:
    console.print(f"[red]Error: {escape(message)}[/red]")
    sys.exit(1)


def _setup_logging(verbose: bool) -> None:
    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.INFO,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def _format_reason(reason: BlockReason) -> str:
    style = REASON_STYLES.get(reason, "white")
    return f"[{style}]{reason.label}[/{style}]"


def _format_limit(used: str, limit: Optional[str]) -> str:
    return f"{used} / {limit}" if limit is not None else f"{used} / -"


def make_controller(cfg: Config) -> UniFiClient:
    """Build a controller client from config."""
    return UniFiClient(
        UniFiConfig(
            url=cfg.controller_url,
            username=cfg.controller_username,
            password=cfg.controller_password,
            site=cfg.controller_site,
            is_udm=cfg.controller_is_udm,
            verify_tls=cfg.controller_verify_tls,
            timeout=cfg.controller_timeout,
        )
    )


def sync_devices(store: QuotaStore, devices: list[DeviceConfig]) -> int:
    """Upsert devices declared in the config file into the store.

    Devices with malformed schedules are reported and skipped.

    Returns:
        Number of devices saved
    """
    saved = 0
    for device in devices:
        try:
            validate_schedules(device.schedules)
        except InvariantViolation as e:
            console.print(f"[yellow]Skipping device {device.display_name}: {escape(str(e))}[/yellow]")
            continue
        store.save_device_config(device)
        saved += 1
    return saved


@contextmanager
def _engine_session(ctx: click.Context) -> Iterator[EnforcementEngine]:
    """Open the store and a logged-in controller for one operator action."""
    cfg: Config = ctx.obj["config"]

    with QuotaStore(ctx.obj["db_path"]) as store, make_controller(cfg) as controller:
        controller.login()
        yield EnforcementEngine(store, controller)


@click.group()
@click.option(
    "--config",
    "-c",
    type=click.Path(exists=True, path_type=Path),
    default=None,
    help="Path to config file (default: searches standard locations)",
)
@click.option(
    "--db",
    type=click.Path(path_type=Path),
    default=None,
    help="Path to the DuckDB database file",
)
@click.pass_context
def main(ctx: click.Context, config: Path | None, db: Path | None) -> None:
    """netquota - Per-device network time and data quotas."""
    ctx.ensure_object(dict)

    cfg = load_config(config)
    ctx.obj["config"] = cfg

    # CLI --db overrides config file
    if db is not None:
        cfg.db_path = db

    cfg.db_path.parent.mkdir(parents=True, exist_ok=True)
    ctx.obj["db_path"] = cfg.db_path

    config_path = config or find_config_file()
    if config_path:
        ctx.obj["config_path"] = config_path


@main.command()
@click.option("--interval", type=float, default=None, help="Poll interval in seconds (default: 30)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output (debug logging)")
@click.pass_context
def run(ctx: click.Context, interval: float | None, verbose: bool) -> None:
    """Poll the controller and enforce quotas until interrupted."""
    cfg: Config = ctx.obj["config"]
    poll_interval = interval if interval is not None else cfg.poll_interval

    _setup_logging(verbose)

    if "config_path" in ctx.obj:
        console.print(f"[dim]Config: {ctx.obj['config_path']}[/dim]")

    store = QuotaStore(ctx.obj["db_path"])
    controller = make_controller(cfg)

    try:
        with store.session():
            synced = sync_devices(store, cfg.devices)
        if synced:
            console.print(f"[cyan]Synced {synced} devices from config[/cyan]")

        controller.login()
    except QuotaError as e:
        controller.close()
        _fail(str(e))

    # Connected per cycle by the poller

    engine = EnforcementEngine(store, controller)
    accumulator = UsageAccumulator(store, poll_interval, cfg.activity_min_bytes)
    poller = Poller(store, controller, engine, accumulator, interval_seconds=poll_interval)

    console.print(
        f"[green]Polling {cfg.controller_url} (site {cfg.controller_site}) "
        f"every {poll_interval:g}s[/green]"
    )
    console.print("[dim]Press Ctrl+C to stop[/dim]")

    try:
        asyncio.run(poller.run_forever())
    except KeyboardInterrupt:
        pass
    finally:
        controller.close()
        store.close()
        console.print(f"[green]Stopped after {poller.cycles} cycles[/green]")


@main.command()
@click.option("--verbose", "-v", is_flag=True, help="Verbose output (debug logging)")
@click.pass_context
def poll(ctx: click.Context, verbose: bool) -> None:
    """Run a single polling cycle."""
    cfg: Config = ctx.obj["config"]
    _setup_logging(verbose)

    try:
        with _engine_session(ctx) as engine:
            sync_devices(engine.store, cfg.devices)
            accumulator = UsageAccumulator(engine.store, cfg.poll_interval, cfg.activity_min_bytes)
            poller = Poller(engine.store, engine.controller, engine, accumulator, cfg.poll_interval)
            stats = poller.poll_once()
    except QuotaError as e:
        _fail(str(e))

    if not stats.completed:
        _fail("Polling cycle did not complete (see log)")

    console.print(
        f"[green]Managed: {stats.managed}, connected: {stats.connected}, "
        f"blocked: {stats.blocked}, errors: {stats.errors}[/green]"
    )


@main.command()
@click.option("--all", "show_all", is_flag=True, help="Include offline clients known to the controller")
@click.pass_context
def clients(ctx: click.Context, show_all: bool) -> None:
    """Show clients reported by the controller."""
    cfg: Config = ctx.obj["config"]

    try:
        with make_controller(cfg) as controller:
            controller.login()
            client_list = (
                controller.list_known_clients() if show_all else controller.list_connected_clients()
            )
    except QuotaError as e:
        _fail(str(e))

    if not client_list:
        console.print("[yellow]No clients reported[/yellow]")
        return

    manager = DeviceManager(cfg.devices)

    table = Table(title="Controller Clients")
    table.add_column("MAC")
    table.add_column("Name")
    table.add_column("IP")
    table.add_column("Sent", justify="right")
    table.add_column("Received", justify="right")
    table.add_column("Link")
    table.add_column("Last seen")
    table.add_column("Managed")
    table.add_column("Blocked")

    for client in sorted(client_list, key=lambda c: c.display_name.lower()):
        table.add_row(
            client.mac,
            client.display_name[:30],
            client.ip or "",
            format_bytes(client.tx_bytes),
            format_bytes(client.rx_bytes),
            "wired" if client.is_wired else "wireless",
            client.last_seen.astimezone().strftime("%Y-%m-%d %H:%M") if client.last_seen else "",
            "yes" if manager.is_managed(client.mac) else "",
            "[red]yes[/red]" if client.blocked else "",
        )

    console.print(table)


@main.command()
@click.pass_context
def devices(ctx: click.Context) -> None:
    """Show managed devices and their current state."""
    try:
        with QuotaStore(ctx.obj["db_path"], read_only=True) as store:
            configs = store.list_device_configs()
            states = store.list_device_states()
    except QuotaError as e:
        _fail(str(e))

    if not configs:
        console.print("[yellow]No managed devices. Declare devices in the config file and run 'netquota run'.[/yellow]")
        return

    table = Table(title="Managed Devices")
    table.add_column("MAC")
    table.add_column("Name")
    table.add_column("Enabled")
    table.add_column("Block outside")
    table.add_column("Schedules", justify="right")
    table.add_column("State")

    for config in configs:
        state = states.get(config.mac)
        reason = state.blocked_reason if state else BlockReason.UNBLOCKED
        table.add_row(
            config.mac,
            config.name,
            "yes" if config.enabled else "[dim]no[/dim]",
            "yes" if config.block_outside else "",
            str(len(config.schedules)),
            _format_reason(reason),
        )

    console.print(table)


@main.command()
@click.argument("mac", required=False)
@click.pass_context
def usage(ctx: click.Context, mac: str | None) -> None:
    """Show today's usage for one or all managed devices."""
    now = datetime.now()

    try:
        with QuotaStore(ctx.obj["db_path"], read_only=True) as store:
            if mac:
                config = store.get_device_config(mac)
                if config is None:
                    _fail(f"Device {mac} is not managed")
                configs = [config]
            else:
                configs = store.list_device_configs()
            summaries = [build_usage_summary(store, config, now) for config in configs]
    except QuotaError as e:
        _fail(str(e))

    if not summaries:
        console.print("[yellow]No managed devices[/yellow]")
        return

    table = Table(title=f"Usage for {now.strftime('%Y-%m-%d')}")
    table.add_column("Device")
    table.add_column("Window")
    table.add_column("Minutes", justify="right")
    table.add_column("Data", justify="right")
    table.add_column("Remaining", justify="right")
    table.add_column("Status")

    for summary in summaries:
        name = summary.name or summary.mac
        if not summary.blocks:
            table.add_row(name, "[dim]no usage yet[/dim]", "", "", "", "")
            continue

        for block in summary.blocks:
            limit_bytes = format_bytes(block.limit_bytes) if block.limit_bytes is not None else None
            limit_minutes = str(block.limit_minutes) if block.limit_minutes is not None else None

            remaining = ""
            status = "[dim]completed[/dim]" if block.completed else ""
            current = summary.current_block
            if block.active and current is not None:
                parts = []
                if current.remaining_minutes is not None:
                    parts.append(f"{current.remaining_minutes} min")
                if current.remaining_bytes is not None:
                    parts.append(format_bytes(current.remaining_bytes))
                remaining = ", ".join(parts) or "unlimited"
                status = _format_reason(current.blocked_reason)

            table.add_row(
                name,
                f"{block.start_time}-{block.end_time}",
                _format_limit(str(block.used_minutes), limit_minutes),
                _format_limit(format_bytes(block.used_bytes), limit_bytes),
                remaining,
                status,
            )
            name = ""

    console.print(table)


@main.command()
@click.argument("mac")
@click.option("--days", type=int, default=30, help="Days to look back")
@click.pass_context
def history(ctx: click.Context, mac: str, days: int) -> None:
    """Show daily usage history for a device."""
    try:
        with QuotaStore(ctx.obj["db_path"], read_only=True) as store:
            entries = build_usage_history(store, mac, days, datetime.now())
    except QuotaError as e:
        _fail(str(e))

    if not entries:
        console.print(f"[yellow]No usage recorded for {mac} in the last {days} days[/yellow]")
        return

    table = Table(title=f"Usage History for {mac} (last {days}d)")
    table.add_column("Date")
    table.add_column("Minutes", justify="right")
    table.add_column("Data", justify="right")
    table.add_column("Windows", justify="right")

    for entry in entries:
        table.add_row(
            entry.date.strftime("%Y-%m-%d"),
            str(entry.total_minutes),
            format_bytes(entry.total_bytes),
            str(len(entry.blocks)),
        )

    console.print(table)


@main.command()
@click.argument("mac")
@click.pass_context
def block(ctx: click.Context, mac: str) -> None:
    """Block a device until it is manually unblocked."""
    try:
        with _engine_session(ctx) as engine:
            changed = engine.manual_block(mac)
    except QuotaError as e:
        _fail(str(e))

    if changed:
        console.print(f"[green]Blocked {mac}[/green]")
    else:
        console.print(f"[yellow]{mac} is already manually blocked[/yellow]")


@main.command()
@click.argument("mac")
@click.pass_context
def unblock(ctx: click.Context, mac: str) -> None:
    """Clear any block on a device, including a manual one."""
    try:
        with _engine_session(ctx) as engine:
            changed = engine.manual_unblock(mac)
    except QuotaError as e:
        _fail(str(e))

    if changed:
        console.print(f"[green]Unblocked {mac}[/green]")
    else:
        console.print(f"[yellow]{mac} was not blocked[/yellow]")


@main.command()
@click.argument("mac")
@click.pass_context
def remove(ctx: click.Context, mac: str) -> None:
    """Stop managing a device (usage history is kept)."""
    try:
        with _engine_session(ctx) as engine:
            deleted = engine.remove_device(mac)
    except QuotaError as e:
        _fail(str(e))

    if deleted:
        console.print(f"[green]Removed {mac}[/green]")
    else:
        console.print(f"[yellow]{mac} was not managed (ensured unblocked)[/yellow]")


@main.command("bonus-time")
@click.argument("mac")
@click.argument("minutes", type=click.IntRange(min=1))
@click.pass_context
def bonus_time(ctx: click.Context, mac: str, minutes: int) -> None:
    """Grant extra minutes in the device's current time block."""
    try:
        with _engine_session(ctx) as engine:
            reason = engine.add_bonus_time(mac, minutes)
    except QuotaError as e:
        _fail(str(e))

    console.print(f"[green]Added {minutes} minutes to {mac}[/green] (now {_format_reason(reason)})")


@main.command("bonus-data")
@click.argument("mac")
@click.argument("amount", type=click.IntRange(min=1))
@click.option(
    "--unit",
    type=click.Choice(["bytes", "KB", "MB", "GB"], case_sensitive=False),
    default="MB",
    help="Unit of AMOUNT (default: MB)",
)
@click.pass_context
def bonus_data(ctx: click.Context, mac: str, amount: int, unit: str) -> None:
    """Grant extra data in the device's current time block."""
    num_bytes = to_bytes(amount, unit)

    try:
        with _engine_session(ctx) as engine:
            reason = engine.add_bonus_data(mac, num_bytes)
    except QuotaError as e:
        _fail(str(e))

    console.print(
        f"[green]Added {format_bytes(num_bytes)} to {mac}[/green] (now {_format_reason(reason)})"
    )


if __name__ == "__main__":
    main()
