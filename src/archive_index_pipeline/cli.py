"""Command-line entry points for finding-aid imports and index maintenance."""

from __future__ import annotations

import json
from collections.abc import Callable
from pathlib import Path
from typing import Optional
from uuid import UUID

import structlog
import typer

from archive_index_pipeline.config import Settings, load_settings
from archive_index_pipeline.coordinator import ImportRunCoordinator, import_document
from archive_index_pipeline.db import PostgresConfig, connect
from archive_index_pipeline.events import IndexSwappedEvent
from archive_index_pipeline.index_schema import IndexNames
from archive_index_pipeline.log import configure_logging
from archive_index_pipeline.meilisearch import MeilisearchClient
from archive_index_pipeline.migrations.runner import apply_migrations
from archive_index_pipeline.models import IN_PROGRESS_RUN_STATUSES, ImportRun
from archive_index_pipeline.nats_publisher import publish_event_sync
from archive_index_pipeline.repositories.runs import IllegalTransitionError, RunRepository
from archive_index_pipeline.sink import IndexSink
from archive_index_pipeline.trigram import sanitize_query
from archive_index_pipeline.walker import WalkerOptions

app = typer.Typer(help="Finding-aid import pipeline")
logger = structlog.get_logger(__name__)


def _settings() -> Settings:
    settings = load_settings()
    configure_logging(settings.log_level, json=settings.log_json)
    return settings


def _client(settings: Settings) -> MeilisearchClient:
    return MeilisearchClient(
        base_url=settings.meilisearch_host,
        api_key=settings.meilisearch_api_key,
        timeout_s=settings.http_timeout_s,
        max_retries=settings.http_max_retries,
        retry_backoff_s=settings.http_retry_backoff_s,
    )


def _sink(settings: Settings, names: IndexNames) -> IndexSink:
    return IndexSink(
        _client(settings),
        names,
        upsert_batch_size=settings.upsert_batch_size,
        task_timeout_s=settings.task_timeout_s,
    )


def _walker_options(settings: Settings) -> WalkerOptions:
    return WalkerOptions(
        source_id_prefix=settings.source_id_prefix,
        file_slice_size=settings.file_slice_size,
        flush_threshold=settings.flush_threshold,
    )


def _notifier(settings: Settings) -> Callable[[IndexSwappedEvent], None]:
    def notify(event: IndexSwappedEvent) -> None:
        if not settings.nats_url:
            logger.info("cache.invalidate", keys=event.invalidated_cache_keys, published=False)
            return
        publish_event_sync(settings.nats_url, settings.cache_invalidation_subject, event)
        logger.info("cache.invalidate", keys=event.invalidated_cache_keys, published=True)

    return notify


def _run_payload(run: ImportRun) -> dict[str, object]:
    return {
        "run_id": str(run.run_id),
        "status": run.status,
        "total_files": run.total_files,
        "completed_files": run.completed_files,
        "progress_percent": run.progress_percent,
        "total_records_imported": run.total_records_imported,
        "current_file": run.current_file,
        "error_message": run.error_message,
        "started_at": run.started_at.isoformat() if run.started_at else None,
        "finished_at": run.finished_at.isoformat() if run.finished_at else None,
    }


def _execute(settings: Settings, runs: RunRepository, run_id: UUID) -> None:
    live_names = IndexNames(env=settings.index_env)
    coordinator = ImportRunCoordinator(
        runs=runs,
        live=_sink(settings, live_names),
        shadow=_sink(settings, live_names.shadow()),
        data_dir=settings.data_dir,
        walker_options=_walker_options(settings),
        poll_interval_s=settings.swap_poll_interval_s,
        swap_timeout_s=settings.swap_timeout_s,
        on_swapped=_notifier(settings),
    )
    try:
        run = coordinator.run(run_id)
    except Exception as e:
        typer.echo(f"Import run {run_id} failed: {type(e).__name__}: {e}", err=True)
        raise typer.Exit(code=1) from e
    typer.echo(json.dumps(_run_payload(run)))


@app.command()
def migrate() -> None:
    """Create or update the run-state tables."""
    settings = _settings()
    config = PostgresConfig.from_settings(settings)
    applied = apply_migrations(config.build_dsn(), schema=config.schema)
    typer.echo(f"Applied {len(applied)} migration(s)")


@app.command()
def start() -> None:
    """Start a full reimport into shadow indices and swap them live."""
    settings = _settings()
    config = PostgresConfig.from_settings(settings)
    with connect(config.build_dsn(), schema=config.schema) as conn:
        runs = RunRepository(conn)
        active = runs.active_runs()
        if active:
            typer.echo(f"Import run {active[0].run_id} is still {active[0].status}", err=True)
            raise typer.Exit(code=1)
        run = runs.create_run()
        typer.echo(f"Created import run {run.run_id}")
        _execute(settings, runs, run.run_id)


@app.command()
def resume(
    run_id: str,
    force: bool = typer.Option(False, "--force", help="Take over a run still marked in progress."),
) -> None:
    """Resume a failed or interrupted run from its checkpoint."""
    settings = _settings()
    config = PostgresConfig.from_settings(settings)
    target = UUID(run_id)
    with connect(config.build_dsn(), schema=config.schema) as conn:
        runs = RunRepository(conn)
        run = runs.get_run(target)
        if run is None:
            typer.echo(f"Import run {run_id} not found", err=True)
            raise typer.Exit(code=1)
        others = [r for r in runs.active_runs() if r.run_id != target]
        if others:
            typer.echo(f"Import run {others[0].run_id} is still {others[0].status}", err=True)
            raise typer.Exit(code=1)
        if run.status in IN_PROGRESS_RUN_STATUSES and not force:
            typer.echo(
                f"Import run {run_id} is still {run.status}; pass --force if its worker is gone",
                err=True,
            )
            raise typer.Exit(code=1)
        _execute(settings, runs, target)


@app.command()
def cancel(run_id: str) -> None:
    """Request cancellation; the run stops at the next document boundary."""
    settings = _settings()
    config = PostgresConfig.from_settings(settings)
    with connect(config.build_dsn(), schema=config.schema) as conn:
        try:
            run = RunRepository(conn).cancel(UUID(run_id))
        except (LookupError, IllegalTransitionError) as e:
            typer.echo(str(e), err=True)
            raise typer.Exit(code=1) from e
    typer.echo(json.dumps(_run_payload(run)))


@app.command()
def status(run_id: Optional[str] = typer.Argument(None)) -> None:
    """Show one run, or the most recent runs."""
    settings = _settings()
    config = PostgresConfig.from_settings(settings)
    with connect(config.build_dsn(), schema=config.schema) as conn:
        runs = RunRepository(conn)
        if run_id:
            run = runs.get_run(UUID(run_id))
            if run is None:
                typer.echo(f"Import run {run_id} not found", err=True)
                raise typer.Exit(code=1)
            typer.echo(json.dumps(_run_payload(run)))
            return
        for run in runs.list_recent():
            typer.echo(json.dumps(_run_payload(run)))


@app.command("import-file")
def import_file(path: Path) -> None:
    """Import one finding aid directly into the live indices."""
    settings = _settings()
    sink = _sink(settings, IndexNames(env=settings.index_env))
    result = import_document(path, sink, options=_walker_options(settings))
    typer.echo(
        json.dumps(
            {
                "filename": result.filename,
                "outcome": result.outcome,
                "nodes": result.nodes,
                "files": result.files,
                "origins": result.origins,
            }
        )
    )


@app.command()
def sanitize(query: str) -> None:
    """Print the trigram match expression for a free-text query."""
    typer.echo(sanitize_query(query))


if __name__ == "__main__":
    app()
