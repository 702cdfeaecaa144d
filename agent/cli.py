"""Admin CLI for the scheduled job engine."""

from __future__ import annotations

import asyncio
import os
import sys
from datetime import datetime, timezone

import click

# Ensure shared package is importable
sys.path.insert(0, os.path.join(os.path.dirname(__file__), "shared"))


def run_async(coro):
    """Run an async function in a new event loop."""
    return asyncio.run(coro)


@click.group()
def cli():
    """Scheduled job engine administration CLI."""
    pass


# --- Setup ---


@cli.command()
def setup():
    """Run database migrations."""
    click.echo("Running database migrations...")
    _run_migrations()
    click.echo("Setup complete.")


def _run_migrations():
    """Run Alembic migrations using the Python API."""
    from alembic import command
    from alembic.config import Config

    # Look for alembic.ini in /app (Docker) or alongside this script (local)
    for candidate in ["/app/alembic.ini", os.path.join(os.path.dirname(__file__), "alembic.ini")]:
        if os.path.exists(candidate):
            alembic_cfg = Config(candidate)
            script_dir = os.path.join(os.path.dirname(candidate), "alembic")
            if os.path.isdir(script_dir):
                alembic_cfg.set_main_option("script_location", script_dir)
            db_url = os.environ.get("DATABASE_URL")
            if db_url:
                alembic_cfg.set_main_option("sqlalchemy.url", db_url)
            command.upgrade(alembic_cfg, "head")
            return

    click.echo("  Warning: alembic.ini not found, skipping migrations.")


# --- Job Management ---


@cli.group()
def jobs():
    """Scheduled job commands."""
    pass


@jobs.command("list")
@click.option("--owner", "owner_id", required=True, help="Owner (assistant) ID")
@click.option(
    "--status",
    default="active",
    type=click.Choice(["active", "paused", "completed", "cancelled", "all"]),
)
@click.option(
    "--kind",
    "job_kind",
    default=None,
    type=click.Choice(["reminder", "one_time", "recurring", "follow_up"]),
)
def list_jobs(owner_id, status, job_kind):
    """List an owner's scheduled jobs, soonest first."""
    run_async(_list_jobs(owner_id, status, job_kind))


async def _list_jobs(owner_id, status, job_kind):
    from shared.database import get_engine

    tools = _make_tools()
    try:
        rows = await tools.list_jobs(status=status, job_kind=job_kind, owner_id=owner_id)
    finally:
        await get_engine().dispose()

    if not rows:
        click.echo("No scheduled jobs found.")
        return

    for j in rows:
        schedule = j["cron_expression"] or j["run_at"]
        click.echo(f"{j['job_id']} | {j['status']} | {j['job_kind']} | {j['title']}")
        click.echo(f"  Schedule: {schedule} ({j['timezone']})")
        click.echo(f"  Next run: {j['next_run_local'] or '-'}")
        if j["last_outcome"]:
            click.echo(f"  Last run: {j['last_outcome']} at {j['last_run_at']}")
        if j["last_error"]:
            click.echo(f"  Last error: {j['last_error']}")


@jobs.command("cancel")
@click.option("--owner", "owner_id", required=True, help="Owner (assistant) ID")
@click.argument("job_id")
def cancel_job(owner_id, job_id):
    """Cancel a scheduled job."""
    run_async(_cancel_job(owner_id, job_id))


async def _cancel_job(owner_id, job_id):
    from modules.scheduler.errors import NotFoundError
    from shared.database import get_engine

    tools = _make_tools()
    try:
        result = await tools.cancel_job(job_id, owner_id=owner_id)
    except NotFoundError as e:
        click.echo(f"Error: {e}")
        return
    finally:
        await get_engine().dispose()
    click.echo(result["message"])


@jobs.command("next-run")
@click.argument("cron_expression")
@click.option("--tz", "tz_name", default="UTC", help="IANA timezone name")
@click.option("--count", default=5, help="Number of occurrences to show")
@click.option("--after", default=None, help="ISO instant to start from (default: now)")
def next_run(cron_expression, tz_name, count, after):
    """Preview the next occurrences of a cron expression."""
    from modules.scheduler.errors import InvalidScheduleError
    from modules.scheduler.recurrence import resolve_timezone, upcoming_runs
    from modules.scheduler.tools import parse_instant

    try:
        start = parse_instant(after, "after") if after else datetime.now(timezone.utc)
        runs = upcoming_runs(cron_expression, tz_name, start, count)
    except InvalidScheduleError as e:
        raise click.ClickException(str(e))

    tz = resolve_timezone(tz_name)
    for run in runs:
        click.echo(f"{run.isoformat()}  ({run.astimezone(tz).isoformat()})")


def _make_tools():
    from modules.scheduler.recurrence import RecurrenceEvaluator
    from modules.scheduler.store import JobStore
    from modules.scheduler.tools import SchedulerTools
    from shared.config import get_settings
    from shared.database import get_session_factory

    settings = get_settings()
    store = JobStore(get_session_factory(), RecurrenceEvaluator(settings.scheduler_horizon_years))
    return SchedulerTools(store, settings)


# --- Worker ---


@cli.group()
def worker():
    """Dispatcher commands."""
    pass


@worker.command("tick")
def worker_tick():
    """Run a single dispatch pass and exit."""
    run_async(_worker(loop=False))


@worker.command("run")
def worker_run():
    """Run the dispatcher loop in the foreground."""
    run_async(_worker(loop=True))


async def _worker(loop: bool):
    from modules.scheduler.worker import create_dispatcher, scheduler_loop
    from shared.config import get_settings
    from shared.database import get_engine, get_session_factory
    from shared.redis import close_redis, get_redis

    settings = get_settings()
    dispatcher = create_dispatcher(settings, get_session_factory(), get_redis())
    try:
        if loop:
            await scheduler_loop(dispatcher, settings.scheduler_poll_interval_seconds)
        else:
            claimed = await dispatcher.process_due_jobs()
            click.echo(f"Dispatched {claimed} job(s).")
    finally:
        await close_redis()
        await get_engine().dispose()


if __name__ == "__main__":
    cli()
