"""Command-line interface for the sync engine server.

Commands:
- serve: Run the HTTP server with queue workers and maintenance scheduler
- purge-tombstones: Hard-delete tombstones older than the retention period
- jobs failed: List permanently failed queue jobs
- jobs retry: Requeue a failed job
"""

from __future__ import annotations

import os
import sys
from pathlib import Path

import click

from syncengine import __version__
from syncengine.core.types import JobNotFoundError
from syncengine.server.database import Database

DB_PATH_HELP = "Path to database file (default: SYNCENGINE_DB_PATH or ./syncengine.db)."


def _resolve_db_path(db_path: str | None) -> Path:
    return Path(db_path or os.environ.get("SYNCENGINE_DB_PATH", "syncengine.db"))


def _open_existing_db(db_path: str | None) -> Database:
    """Open the server database, exiting if it was never created."""
    db_file = _resolve_db_path(db_path)
    if not db_file.exists():
        click.echo(f"Error: Database not found: {db_file}", err=True)
        click.echo("Make sure the server has been run at least once.", err=True)
        sys.exit(1)
    return Database(db_file)


@click.group()
@click.version_option(version=__version__)
def cli() -> None:
    """SyncEngine - Offline-sync reconciliation server."""


@cli.command()
@click.option("--host", default="127.0.0.1", show_default=True, help="Interface to bind.")
@click.option("--port", "-p", type=int, default=8000, show_default=True, help="Port to bind.")
@click.option("--db-path", type=click.Path(), default=None, help=DB_PATH_HELP)
@click.option("--workers", type=int, default=None, help="Queue worker threads (default: 2).")
def serve(host: str, port: int, db_path: str | None, workers: int | None) -> None:
    """Run the sync server.

    Settings not given as options are read from SYNCENGINE_* environment
    variables.
    """
    import uvicorn

    if db_path:
        os.environ["SYNCENGINE_DB_PATH"] = db_path
    if workers is not None:
        os.environ["SYNCENGINE_WORKERS"] = str(workers)

    click.echo(f"Starting SyncEngine server on http://{host}:{port}")
    uvicorn.run("syncengine.server.app:app_factory", factory=True, host=host, port=port)


@cli.command("purge-tombstones")
@click.option(
    "--older-than-days",
    "-d",
    type=int,
    default=None,
    help="Delete tombstones older than N days (default: SYNCENGINE_TOMBSTONE_RETENTION_DAYS or 30).",
)
@click.option("--db-path", type=click.Path(), default=None, help=DB_PATH_HELP)
def purge_tombstones_cmd(older_than_days: int | None, db_path: str | None) -> None:
    """Purge deleted rows older than the retention period.

    Clients that have not synced within the retention period will no longer
    see these deletions in their deltas.

    Examples:

        # Purge using server defaults (30 days)
        syncengine purge-tombstones

        # Purge tombstones older than 7 days
        syncengine purge-tombstones --older-than-days 7
    """
    from syncengine.server.entities import create_registry
    from syncengine.server.scheduler import purge_tombstones

    default_days = int(os.environ.get("SYNCENGINE_TOMBSTONE_RETENTION_DAYS", "30"))
    days = older_than_days if older_than_days is not None else default_days

    db = _open_existing_db(db_path)
    click.echo(f"Database: {db.path}")
    click.echo(f"Purging tombstones older than {days} days...")

    try:
        purged = purge_tombstones(create_registry(db), days)
        total = sum(purged.values())
        if total > 0:
            for entity_type, count in purged.items():
                if count:
                    click.echo(f"  {entity_type}: {count}")
            click.echo(f"Purged {total} tombstones.")
        else:
            click.echo("No tombstones to purge.")
    finally:
        db.close()


@cli.group()
def jobs() -> None:
    """Retry queue commands."""


@jobs.command("failed")
@click.option("--limit", "-n", type=int, default=100, show_default=True, help="Maximum jobs to list.")
@click.option("--db-path", type=click.Path(), default=None, help=DB_PATH_HELP)
def jobs_failed(limit: int, db_path: str | None) -> None:
    """List jobs that exhausted their attempts."""
    from syncengine.server.queue import RetryQueue

    db = _open_existing_db(db_path)
    try:
        failed = RetryQueue(db).list_failed(limit=limit)
        if not failed:
            click.echo("No failed jobs.")
            return
        for job in failed:
            click.echo(
                f"{job.id}\t{job.name}\tattempts={job.attempts}/{job.max_attempts}\t"
                f"failed_at={job.updated_at.isoformat()}\t{job.last_error or ''}"
            )
    finally:
        db.close()


@jobs.command("retry")
@click.argument("job_id", type=int)
@click.option("--db-path", type=click.Path(), default=None, help=DB_PATH_HELP)
def jobs_retry(job_id: int, db_path: str | None) -> None:
    """Requeue the failed job JOB_ID.

    A running server picks it up on its next poll.
    """
    from syncengine.server.queue import RetryQueue

    db = _open_existing_db(db_path)
    try:
        job = RetryQueue(db).retry(job_id)
    except JobNotFoundError as e:
        click.echo(f"Error: {e}", err=True)
        sys.exit(1)
    finally:
        db.close()
    click.echo(f"Job {job.id} ({job.name}) requeued.")


if __name__ == "__main__":
    cli()
