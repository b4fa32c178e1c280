"""CLI for the TimeLedger calendar sync engine."""

from __future__ import annotations

import asyncio
import json
import logging
import signal
import sys
from pathlib import Path

import click

from timeledger import __version__
from timeledger.config import ConfigError, SyncEngineConfig, load_config
from timeledger.core.logging import configure_logging
from timeledger.core.metrics import init_metrics
from timeledger.errors import CalendarSyncError
from timeledger.models import Provider

logger = logging.getLogger(__name__)


def _load(config_path: Path | None) -> SyncEngineConfig:
    try:
        config = load_config(config_path)
    except ConfigError as exc:
        click.echo(f"Configuration error: {exc}", err=True)
        sys.exit(1)
    log_root = Path(config.logging.log_root) if config.logging.log_root else None
    configure_logging(level=config.logging.level, fmt=config.logging.format, log_root=log_root)
    init_metrics("timeledger")
    return config


def _run(coro) -> None:
    try:
        asyncio.run(coro)
    except CalendarSyncError as exc:
        click.echo(f"Error: {exc.message}", err=True)
        sys.exit(1)


@click.group()
@click.version_option(version=__version__)
@click.option(
    "--config",
    "config_path",
    type=click.Path(exists=True, dir_okay=False, path_type=Path),
    default=None,
    help="Path to timeledger.toml (defaults to $TIMELEDGER_CONFIG or ./timeledger.toml)",
)
@click.pass_context
def cli(ctx: click.Context, config_path: Path | None) -> None:
    """TimeLedger: two-way sync between local events and external calendars."""
    ctx.ensure_object(dict)
    ctx.obj["config_path"] = config_path


@cli.command("init-db")
@click.pass_context
def init_db(ctx: click.Context) -> None:
    """Create the database (if missing) and the sync tables."""
    config = _load(ctx.obj["config_path"])
    _run(_init_db(config))
    click.echo("Database schema is up to date")


@cli.command()
@click.option("--user", "user_id", required=True, help="User id to sync")
@click.option(
    "--provider",
    type=click.Choice([p.value for p in Provider]),
    default=None,
    help="Sync only this provider",
)
@click.pass_context
def sync(ctx: click.Context, user_id: str, provider: str | None) -> None:
    """Run one sync for a user and print the outcomes."""
    config = _load(ctx.obj["config_path"])
    _run(_sync(config, user_id, Provider(provider) if provider else None))


@cli.command()
@click.option("--user", "user_id", required=True, help="User id to inspect")
@click.pass_context
def status(ctx: click.Context, user_id: str) -> None:
    """Show calendar connection status for a user."""
    config = _load(ctx.obj["config_path"])
    _run(_status(config, user_id))


@cli.command()
@click.pass_context
def poll(ctx: click.Context) -> None:
    """Run the periodic sync scheduler until interrupted."""
    config = _load(ctx.obj["config_path"])
    _run(_poll(config))


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Bind address")
@click.option("--port", type=int, default=8000, show_default=True, help="Bind port")
@click.option("--with-scheduler", is_flag=True, help="Also run the periodic sync poller")
@click.pass_context
def serve(ctx: click.Context, host: str, port: int, with_scheduler: bool) -> None:
    """Serve the sync HTTP API with uvicorn."""
    import uvicorn

    from timeledger.api.app import create_app

    config = _load(ctx.obj["config_path"])
    app = create_app(config, run_scheduler=with_scheduler)
    uvicorn.run(app, host=host, port=port, log_config=None)


# ---------------------------------------------------------------------------
# Async implementations
# ---------------------------------------------------------------------------


async def _init_db(config: SyncEngineConfig) -> None:
    from timeledger.db import Database
    from timeledger.storage import ensure_schema

    database = Database.from_config(config.database)
    await database.provision()
    pool = await database.connect()
    try:
        await ensure_schema(pool)
    finally:
        await database.close()


async def _sync(config: SyncEngineConfig, user_id: str, provider: Provider | None) -> None:
    from timeledger.engine import SyncEngine

    engine = await SyncEngine.open(config)
    try:
        summary = await engine.orchestrator.sync_user(
            user_id, providers=[provider] if provider else None
        )
    finally:
        await engine.aclose()

    if not summary.outcomes:
        click.echo(f"No calendar connections for user {user_id}")
        return
    for outcome in summary.outcomes:
        counts = ", ".join(f"{kind}={n}" for kind, n in outcome.counts.items() if n)
        click.echo(f"{outcome.provider.value}: {outcome.status} ({counts or 'no changes'})")
        for issue in outcome.issues:
            uid = f" [{issue.uid}]" if issue.uid else ""
            click.echo(f"  - {issue.kind.value}{uid}: {issue.message}")
    if not summary.succeeded:
        sys.exit(2)


async def _status(config: SyncEngineConfig, user_id: str) -> None:
    from timeledger.engine import SyncEngine

    engine = await SyncEngine.open(config)
    try:
        statuses = await engine.orchestrator.status(user_id)
    finally:
        await engine.aclose()
    click.echo(json.dumps([s.model_dump(mode="json") for s in statuses], indent=2))


async def _poll(config: SyncEngineConfig) -> None:
    from timeledger.engine import SyncEngine

    loop = asyncio.get_running_loop()
    shutdown_event = asyncio.Event()

    def _signal_handler() -> None:
        click.echo("\nShutting down...")
        shutdown_event.set()

    for sig in (signal.SIGINT, signal.SIGTERM):
        loop.add_signal_handler(sig, _signal_handler)

    engine = await SyncEngine.open(config)
    try:
        await engine.scheduler.start()
        click.echo(f"Sync poller running every {config.sync.interval_minutes} minute(s)")
        await shutdown_event.wait()
    finally:
        await engine.aclose()


def main() -> None:
    cli(obj={})
