"""CLI for famcal: migrations, one-shot syncs, health checks, and the sync poller."""

from __future__ import annotations

import asyncio
import json
import signal
import sys
from pathlib import Path
from typing import Any

import click

from famcal.config import ConfigError, FamcalConfig, load_config
from famcal.core.logging import configure_logging
from famcal.errors import CalendarError
from famcal.migrations import run_migrations
from famcal.runtime import CalendarRuntime
from famcal.sync.engine import SyncResult

config_option = click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, path_type=Path),
    default=Path("."),
    show_default=True,
    help="famcal.toml, or a directory containing one",
)


def _load(config_path: Path) -> FamcalConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    configure_logging(config.logging.level, config.logging.format, config.logging.log_root)
    return config


def _echo_json(payload: Any) -> None:
    click.echo(json.dumps(payload, indent=2, sort_keys=True, default=str))


@click.group()
@click.version_option(version="0.1.0")
def cli() -> None:
    """famcal: family shared calendars with Google and iCal sync."""


@cli.command()
@config_option
def migrate(config_path: Path) -> None:
    """Apply database migrations (postgres backend only)."""
    config = _load(config_path)
    if config.database.backend != "postgres" or not config.database.url:
        click.echo("Migrations only apply to the postgres backend", err=True)
        sys.exit(1)
    asyncio.run(run_migrations(config.database.url))
    click.echo("Migrations applied")


@cli.command()
@config_option
@click.option("--calendar", "calendar_id", default=None, help="Sync only this calendar")
def sync(config_path: Path, calendar_id: str | None) -> None:
    """Run one sync pass for one calendar, or for every linked calendar."""
    config = _load(config_path)
    failed = asyncio.run(_sync_once(config, calendar_id))
    if failed:
        sys.exit(1)


async def _sync_once(config: FamcalConfig, calendar_id: str | None) -> bool:
    runtime = CalendarRuntime.from_config(config)
    await runtime.start(poll=False)
    try:
        if calendar_id is not None:
            try:
                result = await runtime.sync.sync_calendar(calendar_id)
            except CalendarError as exc:
                _echo_json({calendar_id: exc.to_dict()})
                return True
            _echo_json({calendar_id: result.to_dict() if result else "already running"})
            return False

        outcome = await runtime.sync.sync_all()
        report: dict[str, Any] = {}
        failed = False
        for cal_id, item in outcome.items():
            if isinstance(item, SyncResult):
                report[cal_id] = item.to_dict()
            elif isinstance(item, CalendarError):
                report[cal_id] = item.to_dict()
                failed = True
            elif isinstance(item, Exception):
                report[cal_id] = {"error": str(item)}
                failed = True
            else:
                report[cal_id] = "already running"
        _echo_json(report)
        return failed
    finally:
        await runtime.shutdown()


@cli.command()
@config_option
def health(config_path: Path) -> None:
    """Print a health report; exits non-zero when unhealthy."""
    config = _load(config_path)
    report = asyncio.run(_health_once(config))
    _echo_json(report)
    if report["status"] != "healthy":
        sys.exit(1)


async def _health_once(config: FamcalConfig) -> dict[str, Any]:
    runtime = CalendarRuntime.from_config(config)
    await runtime.start(poll=False)
    try:
        return await runtime.health()
    finally:
        await runtime.shutdown()


@cli.command()
@config_option
@click.option(
    "--interval",
    type=int,
    default=None,
    help="Seconds between passes (defaults to [sync] interval_seconds)",
)
def poll(config_path: Path, interval: int | None) -> None:
    """Run the background sync poller until interrupted."""
    config = _load(config_path)
    if interval is not None:
        config.sync.interval_seconds = interval
    click.echo(f"Sync poller running every {config.sync.interval_seconds}s")
    asyncio.run(_poll_forever(config))


async def _poll_forever(config: FamcalConfig) -> None:
    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    runtime = CalendarRuntime.from_config(config)
    await runtime.start(poll=True)
    try:
        await shutdown_event.wait()
    finally:
        await runtime.shutdown()


def main() -> None:
    cli()
