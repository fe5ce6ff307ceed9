"""
Rail CLI - operator tooling for wagon-state ingestion

Commands:
    rail-cli normalize "7478-035-6980"        # Print the canonical index
    rail-cli stats --file wagons.csv          # Index statistics over a CSV
    rail-cli import --file wagons.csv         # Run a CSV batch import now
    rail-cli init-db                          # Apply the bundled schema
    rail-cli setup-queues                     # Declare broker topology
    rail-cli publish --file update.json       # Publish one wagon update

Exit Codes:
    0 - Success
    1 - Invalid input (bad index, missing file, invalid payload)
    2 - Processing failed (database, broker, job failed or cancelled)
"""

from __future__ import annotations

import asyncio
import json
import sys
from importlib import resources
from pathlib import Path
from typing import Optional

import click

from railyard.config import configure_logging, get_settings
from railyard.core.cache import InMemoryCache
from railyard.core.errors import MessageValidationError, TrainIndexValidationError
from railyard.db import close_db_pool, init_db_pool
from railyard.indexing.statistics import IndexStatistics, collect_statistics
from railyard.indexing.train_index import normalize as normalize_index
from railyard.ingest.csv_batch import BatchIngestionEngine
from railyard.ingest.jobs import JobState, JobStatus
from railyard.ingest.ledger import IdempotencyLedger
from railyard.ingest.pipeline import IngestionPipeline, validate_message
from railyard.ingest.stats_cache import DerivedCacheInvalidator
from railyard.ingest.store import PostgresRailStore, apply_schema
from workers.broker import BrokerConnection
from workers.settings import BrokerSettings

EXIT_OK = 0
EXIT_INVALID = 1
EXIT_FAILED = 2


@click.group()
@click.option("--verbose", "-v", is_flag=True, help="Log at DEBUG level")
def cli(verbose: bool) -> None:
    """Rail CLI - train index and wagon ingestion utility."""
    settings = get_settings()
    if verbose:
        settings = settings.model_copy(update={"LOG_LEVEL": "DEBUG"})
    configure_logging(settings)


# =============================================================================
# normalize / stats (offline)
# =============================================================================


@cli.command()
@click.argument("raw_index")
def normalize(raw_index: str) -> None:
    """Normalize a raw train index."""
    try:
        click.echo(normalize_index(raw_index))
    except TrainIndexValidationError as e:
        click.secho(f"Index validation error: {e}", fg="red", err=True)
        sys.exit(EXIT_INVALID)


def print_statistics(stats: IndexStatistics) -> None:
    click.echo("=== CSV STATISTICS ===")
    click.echo()
    click.echo(f"Total records:   {stats.total_records}")
    click.echo(f"Valid indexes:   {stats.valid_records}")
    click.echo(f"Invalid indexes: {stats.invalid_records}")
    click.echo(f"Empty records:   {stats.empty_records}")

    if stats.valid_records:
        click.echo()
        click.echo("=== TOP FORMATION STATIONS ===")
        for station, count in stats.top_formation_stations(5):
            click.echo(f"{station}: {count} trains")
        click.echo()
        click.echo("=== TOP DESTINATION STATIONS ===")
        for station, count in stats.top_destination_stations(5):
            click.echo(f"{station}: {count} trains")
        click.echo()
        click.echo("=== NORMALIZATION EXAMPLES ===")
        for raw, normalized in stats.examples(5):
            click.echo(f"{raw} -> {normalized}")

    if stats.invalid_records:
        click.echo()
        click.echo("=== INVALID INDEXES ===")
        for raw in stats.invalid_indexes[:10]:
            click.echo(f"'{raw}'")
        if len(stats.invalid_indexes) > 10:
            click.echo(f"... and {len(stats.invalid_indexes) - 10} more")


@cli.command()
@click.option("--file", "file_path", required=True, type=click.Path(path_type=Path))
def stats(file_path: Path) -> None:
    """Show train index statistics for a CSV file."""
    if not file_path.is_file():
        click.secho(f"File '{file_path}' not found", fg="red", err=True)
        sys.exit(EXIT_INVALID)
    try:
        text = file_path.read_text(encoding="utf-8-sig")
    except (OSError, UnicodeDecodeError) as e:
        click.secho(f"Failed to read file: {e}", fg="red", err=True)
        sys.exit(EXIT_INVALID)
    print_statistics(collect_statistics(text))


# =============================================================================
# import / init-db (database)
# =============================================================================


def print_job(status: JobStatus) -> None:
    result = status.result
    color = {JobState.COMPLETED: "green", JobState.CANCELLED: "yellow"}.get(status.status, "red")
    click.secho(f"Job {status.job_id}: {status.status.value}", fg=color)
    if result is None:
        return
    click.echo(f"  {result.message}")
    click.echo(f"  Processed:  {result.processed_records}")
    click.echo(f"  Valid:      {result.valid_records}")
    click.echo(f"  Invalid:    {result.invalid_records}")
    click.echo(f"  Duplicates: {result.duplicate_records}")
    for error in result.errors:
        click.echo(f"  - {error}")


async def _run_import(file_path: Path) -> JobStatus:
    settings = get_settings()
    pool = await init_db_pool(settings)
    try:
        store = PostgresRailStore(pool, lock_timeout_ms=settings.DB_LOCK_TIMEOUT_MS)
        cache = InMemoryCache()
        pipeline = IngestionPipeline(
            store=store,
            ledger=IdempotencyLedger(cache, ttl_seconds=settings.PROCESSED_EVENT_CACHE_TTL),
            invalidator=DerivedCacheInvalidator(cache, ttl_seconds=settings.TRAIN_STATS_CACHE_TTL),
        )
        engine = BatchIngestionEngine(store, pipeline, error_limit=settings.BATCH_ERROR_LIMIT)
        with file_path.open("rb") as stream:
            job_id = engine.submit(stream)
        status = await engine.wait(job_id)
        if status is None:
            raise RuntimeError(f"Job {job_id} is not tracked")
        return status
    finally:
        await close_db_pool()


@cli.command(name="import")
@click.option("--file", "file_path", required=True, type=click.Path(path_type=Path))
def import_csv(file_path: Path) -> None:
    """Import a CSV of wagon updates and wait for the job to finish."""
    if not file_path.is_file():
        click.secho(f"File '{file_path}' not found", fg="red", err=True)
        sys.exit(EXIT_INVALID)
    try:
        status = asyncio.run(_run_import(file_path))
    except Exception as e:
        click.secho(f"Import failed: {e}", fg="red", err=True)
        sys.exit(EXIT_FAILED)
    print_job(status)
    sys.exit(EXIT_OK if status.status is JobState.COMPLETED else EXIT_FAILED)


async def _init_db() -> None:
    ddl = resources.files("railyard").joinpath("sql/schema.sql").read_text(encoding="utf-8")
    pool = await init_db_pool()
    try:
        await apply_schema(pool, ddl)
    finally:
        await close_db_pool()


@cli.command(name="init-db")
def init_db() -> None:
    """Create the trains, wagons and processed_events tables."""
    try:
        asyncio.run(_init_db())
    except Exception as e:
        click.secho(f"Schema setup failed: {e}", fg="red", err=True)
        sys.exit(EXIT_FAILED)
    click.secho("Schema applied", fg="green")


# =============================================================================
# setup-queues / publish (broker)
# =============================================================================


async def _with_broker(action: str, payload: Optional[dict] = None) -> Optional[str]:
    broker = BrokerConnection(BrokerSettings.from_settings(get_settings()))
    try:
        if action == "setup":
            await broker.declare_topology()
            return None
        if action != "publish" or payload is None:
            raise ValueError(f"Unsupported broker action: {action}")
        return await broker.publish(payload)
    finally:
        await broker.close()


@cli.command(name="setup-queues")
def setup_queues() -> None:
    """Declare exchanges, queues and dead-letter bindings."""
    try:
        asyncio.run(_with_broker("setup"))
    except Exception as e:
        click.secho(f"Queue setup failed: {e}", fg="red", err=True)
        sys.exit(EXIT_FAILED)
    click.secho("Queues and exchanges configured", fg="green")


@cli.command()
@click.option(
    "--file",
    "file_path",
    type=click.Path(path_type=Path),
    help="JSON file with one wagon update; reads stdin when omitted",
)
def publish(file_path: Optional[Path]) -> None:
    """Validate and publish one wagon update to the queue."""
    try:
        raw = file_path.read_text(encoding="utf-8") if file_path else sys.stdin.read()
        message = validate_message(json.loads(raw))
    except (OSError, ValueError, MessageValidationError) as e:
        click.secho(f"Invalid wagon update: {e}", fg="red", err=True)
        sys.exit(EXIT_INVALID)

    try:
        message_id = asyncio.run(
            _with_broker("publish", message.model_dump(mode="json", by_alias=True))
        )
    except Exception as e:
        click.secho(f"Publish failed: {e}", fg="red", err=True)
        sys.exit(EXIT_FAILED)
    click.echo(f"Published {message.event_id} as message {message_id}")


if __name__ == "__main__":
    cli()
