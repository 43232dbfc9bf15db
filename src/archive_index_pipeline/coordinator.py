from __future__ import annotations

from collections.abc import Callable
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from time import monotonic, sleep
from uuid import UUID, uuid4

import httpx
import structlog

from archive_index_pipeline.events import IndexSwappedEvent
from archive_index_pipeline.meilisearch import MeilisearchError
from archive_index_pipeline.models import (
    IN_PROGRESS_RUN_STATUSES,
    RUN_CANCELLED,
    RUN_COMPLETED,
    RUN_IMPORTING,
    RUN_PREPARING,
    RUN_SWAPPING,
    ImportRun,
)
from archive_index_pipeline.repositories.runs import IllegalTransitionError, RunRepository
from archive_index_pipeline.sink import IndexSink
from archive_index_pipeline.walker import (
    IdentityCache,
    TreeWalker,
    WalkerOptions,
    WalkProgress,
    WalkResult,
)

logger = structlog.get_logger(__name__)

DEFAULT_FLUSH_THRESHOLD = 5000


class ImportRunError(RuntimeError):
    pass


def discover_documents(data_dir: Path) -> list[Path]:
    """Finding aids in lexicographic filename order."""
    return sorted((p for p in data_dir.glob("*.xml") if p.is_file()), key=lambda p: p.name)


def import_document(
    path: Path,
    sink: IndexSink,
    *,
    options: WalkerOptions | None = None,
) -> WalkResult:
    """
    Imports a single finding aid straight into `sink` with a private identity
    cache. Safe to run next to other per-document imports.
    """
    options = options or WalkerOptions()
    if options.flush_threshold is None:
        options = replace(options, flush_threshold=DEFAULT_FLUSH_THRESHOLD)

    walker = TreeWalker(IdentityCache(), options=options, flush=sink.write)
    result = walker.walk_path(path)
    remaining = walker.drain()
    if len(remaining):
        sink.write(remaining)
    logger.info(
        "import.document.completed",
        filename=result.filename,
        outcome=result.outcome,
        nodes=result.nodes,
        files=result.files,
        origins=result.origins,
    )
    return result


class ImportRunCoordinator:
    """
    Runs a full reimport into shadow indices and swaps them live.

    pending -> preparing -> importing -> swapping -> completed; any state may
    fail, pre-swap states may be cancelled. Only one coordinator may run at a
    time since the shadow index names are global.
    """

    def __init__(
        self,
        *,
        runs: RunRepository,
        live: IndexSink,
        shadow: IndexSink,
        data_dir: Path,
        walker_options: WalkerOptions | None = None,
        poll_interval_s: float = 5.0,
        swap_timeout_s: float = 3600.0,
        on_swapped: Callable[[IndexSwappedEvent], None] | None = None,
    ):
        self._runs = runs
        self._live = live
        self._shadow = shadow
        self._data_dir = data_dir
        # Batches go to the shadow indices only at document boundaries.
        self._walker_options = replace(walker_options or WalkerOptions(), flush_threshold=None)
        self._poll_interval_s = poll_interval_s
        self._swap_timeout_s = swap_timeout_s
        self._on_swapped = on_swapped

    def run(self, run_id: UUID) -> ImportRun:
        run = self._get(run_id)
        if run.status in (RUN_CANCELLED, RUN_COMPLETED):
            logger.info("import.run.not_started", run_id=str(run_id), status=run.status)
            return run
        if run.status in IN_PROGRESS_RUN_STATUSES:
            # A previous worker died mid-run; go through failed so the resume is recorded.
            run = self._runs.fail(run_id, f"Interrupted while {run.status}")
            logger.warning("import.run.interrupted", run_id=str(run_id), completed_files=run.completed_files)

        bound = logger.bind(run_id=str(run_id))
        try:
            if not self._prepare(run):
                return self._get(run_id)
            if not self._import(run_id):
                return self._get(run_id)
            if not self._wait_for_indexing(run_id):
                return self._get(run_id)
            self._swap(run_id)
        except Exception as e:
            bound.exception("import.run.failed")
            self._fail(run_id, e)
            raise

        self._cleanup(run_id)
        completed = self._runs.complete(run_id)
        bound.info(
            "import.run.completed",
            files=completed.completed_files,
            records=completed.total_records_imported,
            elapsed_s=completed.elapsed(),
        )
        return completed

    def _get(self, run_id: UUID) -> ImportRun:
        run = self._runs.get_run(run_id)
        if run is None:
            raise ImportRunError(f"Import run {run_id} not found")
        return run

    def _enter(self, run_id: UUID, status: str) -> bool:
        """False when the run was cancelled underneath us."""
        try:
            self._runs.update_status(run_id, status)
        except IllegalTransitionError:
            if self._get(run_id).status == RUN_CANCELLED:
                logger.info("import.run.cancelled", run_id=str(run_id), before=status)
                return False
            raise
        logger.info("import.run.status", run_id=str(run_id), status=status)
        return True

    def _fail(self, run_id: UUID, error: Exception) -> None:
        run = self._runs.get_run(run_id)
        if run is None or run.status in (RUN_CANCELLED, RUN_COMPLETED):
            return
        self._runs.fail(run_id, f"{type(error).__name__}: {error}")

    def _prepare(self, run: ImportRun) -> bool:
        if not self._enter(run.run_id, RUN_PREPARING):
            return False
        if run.completed_filenames:
            logger.info(
                "import.run.resuming",
                run_id=str(run.run_id),
                completed_files=len(run.completed_filenames),
            )
            return True
        self._shadow.delete_indexes()
        self._shadow.create_indexes()
        self._shadow.configure_indexes()
        return True

    def _import(self, run_id: UUID) -> bool:
        if not self._enter(run_id, RUN_IMPORTING):
            return False

        documents = discover_documents(self._data_dir)
        self._runs.set_total_files(run_id, len(documents))
        done = set(self._get(run_id).completed_filenames)

        progress = WalkProgress()
        walker = TreeWalker(IdentityCache(), options=self._walker_options, progress=progress)

        for path in documents:
            if self._get(run_id).status == RUN_CANCELLED:
                logger.info("import.run.cancelled", run_id=str(run_id), next_file=path.name)
                return False
            if path.name in done:
                continue

            self._runs.set_current_file(run_id, path.name)
            result = walker.walk_path(path)
            batches = walker.drain()
            if len(batches):
                self._shadow.write(batches)
            run = self._runs.mark_file_completed(run_id, path.name, records=result.records)
            logger.info(
                "import.document.completed",
                run_id=str(run_id),
                filename=path.name,
                outcome=result.outcome,
                records=result.records,
                completed_files=run.completed_files,
                total_files=run.total_files,
                total_records=run.total_records_imported,
            )

        if self._get(run_id).status == RUN_CANCELLED:
            logger.info("import.run.cancelled", run_id=str(run_id), before=RUN_SWAPPING)
            return False
        return True

    def _wait_for_indexing(self, run_id: UUID) -> bool:
        if not self._enter(run_id, RUN_SWAPPING):
            return False
        self._runs.set_current_file(run_id, None)

        deadline = monotonic() + self._swap_timeout_s
        while self._shadow.is_indexing():
            if monotonic() >= deadline:
                raise ImportRunError(f"Shadow indices still indexing after {self._swap_timeout_s}s")
            sleep(self._poll_interval_s)
        return True

    def _swap(self, run_id: UUID) -> None:
        # A swap fails when either side is missing, e.g. on the very first import.
        self._live.ensure_indexes()
        task_uid = self._live.swap_with(self._shadow)
        if task_uid is None:
            raise ImportRunError("Index swap did not return a task")
        outcome = self._live.wait_for_task(task_uid, timeout_s=self._swap_timeout_s)
        if not outcome.succeeded:
            raise ImportRunError(f"Index swap {outcome.status}: {outcome.error or ''}".strip())
        logger.info("import.run.swapped", run_id=str(run_id), indexes=list(self._live.names.all()))

    def _cleanup(self, run_id: UUID) -> None:
        # The shadow names now hold the previous generation.
        try:
            self._shadow.delete_indexes()
        except (MeilisearchError, httpx.HTTPError) as e:
            logger.warning("import.run.cleanup_failed", run_id=str(run_id), error=str(e))

        if self._on_swapped is None:
            return
        event = IndexSwappedEvent(
            event_id=uuid4(),
            run_id=run_id,
            live_indexes=list(self._live.names.all()),
            records_imported=self._get(run_id).total_records_imported,
            swapped_at=datetime.now(UTC),
        )
        try:
            self._on_swapped(event)
        except Exception:
            logger.exception("import.run.notify_failed", run_id=str(run_id))
