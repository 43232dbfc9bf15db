from __future__ import annotations

import pytest

from archive_index_pipeline.models import (
    RUN_CANCELLED,
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_IMPORTING,
    RUN_PENDING,
    RUN_PREPARING,
    RUN_SWAPPING,
)
from archive_index_pipeline.repositories.runs import IllegalTransitionError, RunRepository


def test_run_lifecycle_and_checkpoint(conn) -> None:  # noqa: ANN001
    runs = RunRepository(conn)
    run = runs.create_run()
    assert run.status == RUN_PENDING
    assert run.completed_filenames == ()
    assert run in runs.active_runs()

    started = runs.update_status(run.run_id, RUN_PREPARING)
    assert started.started_at is not None
    runs.update_status(run.run_id, RUN_IMPORTING)
    runs.set_total_files(run.run_id, 2)
    runs.set_current_file(run.run_id, "a.xml")
    assert runs.get_run(run.run_id).current_file == "a.xml"

    marked = runs.mark_file_completed(run.run_id, "a.xml", records=3)
    assert marked.completed_filenames == ("a.xml",)
    assert marked.current_file is None
    # Marking the same document twice does not double count.
    again = runs.mark_file_completed(run.run_id, "a.xml", records=3)
    assert (again.completed_files, again.total_records_imported) == (1, 3)
    marked = runs.mark_file_completed(run.run_id, "b.xml", records=4)
    assert marked.completed_filenames == ("a.xml", "b.xml")
    assert marked.total_records_imported == 7
    assert marked.progress_percent == 100.0

    runs.update_status(run.run_id, RUN_SWAPPING)
    done = runs.complete(run.run_id)
    assert done.status == RUN_COMPLETED
    assert done.finished_at is not None
    assert run.run_id not in {r.run_id for r in runs.active_runs()}


def test_illegal_transitions_are_rejected(conn) -> None:  # noqa: ANN001
    runs = RunRepository(conn)
    run = runs.create_run()
    with pytest.raises(IllegalTransitionError):
        runs.update_status(run.run_id, RUN_SWAPPING)
    # The connection is still usable after a rejected transition.
    assert runs.get_run(run.run_id).status == RUN_PENDING


def test_failed_run_resumes_and_clears_error(conn) -> None:  # noqa: ANN001
    runs = RunRepository(conn)
    run = runs.create_run()
    runs.update_status(run.run_id, RUN_PREPARING)
    failed = runs.fail(run.run_id, "RuntimeError: boom")
    assert failed.status == RUN_FAILED
    assert failed.error_message == "RuntimeError: boom"
    assert failed.finished_at is not None

    resumed = runs.update_status(run.run_id, RUN_PREPARING)
    assert resumed.error_message is None
    assert resumed.finished_at is None
    assert resumed.started_at == failed.started_at


def test_cancel_only_before_swap(conn) -> None:  # noqa: ANN001
    runs = RunRepository(conn)
    run = runs.create_run()
    cancelled = runs.cancel(run.run_id)
    assert cancelled.status == RUN_CANCELLED
    with pytest.raises(IllegalTransitionError):
        runs.cancel(run.run_id)
    with pytest.raises(IllegalTransitionError):
        runs.fail(run.run_id, "late failure")

    swapping = runs.create_run()
    for status in (RUN_PREPARING, RUN_IMPORTING, RUN_SWAPPING):
        runs.update_status(swapping.run_id, status)
    with pytest.raises(IllegalTransitionError):
        runs.cancel(swapping.run_id)


def test_unknown_run(conn) -> None:  # noqa: ANN001
    from uuid import uuid4

    runs = RunRepository(conn)
    assert runs.get_run(uuid4()) is None
    with pytest.raises(LookupError):
        runs.mark_file_completed(uuid4(), "a.xml", records=1)
