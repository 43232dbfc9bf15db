from __future__ import annotations

import json
from uuid import UUID, uuid4

import psycopg

from archive_index_pipeline.models import (
    ACTIVE_RUN_STATUSES,
    RUN_CANCELLED,
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_PENDING,
    ImportRun,
    can_transition,
)

_COLUMNS = """
  run_id, status, total_files, completed_files, total_records_imported,
  current_file, error_message, completed_filenames,
  started_at, finished_at, created_at, updated_at
"""


class IllegalTransitionError(RuntimeError):
    pass


def _row_to_run(row: tuple) -> ImportRun:
    filenames = row[7]
    if isinstance(filenames, str):
        filenames = json.loads(filenames)
    return ImportRun(
        run_id=row[0] if isinstance(row[0], UUID) else UUID(str(row[0])),
        status=row[1],
        total_files=row[2] or 0,
        completed_files=row[3] or 0,
        total_records_imported=row[4] or 0,
        current_file=row[5],
        error_message=row[6],
        completed_filenames=tuple(filenames or ()),
        started_at=row[8],
        finished_at=row[9],
        created_at=row[10],
        updated_at=row[11],
    )


class RunRepository:
    def __init__(self, conn: psycopg.Connection):
        self._conn = conn

    def create_run(self, run_id: UUID | None = None) -> ImportRun:
        row = self._conn.execute(
            f"""
            insert into import_runs(run_id, status)
            values (%s::uuid, %s)
            returning {_COLUMNS}
            """,
            (str(run_id or uuid4()), RUN_PENDING),
        ).fetchone()
        self._conn.commit()
        return _row_to_run(row)

    def get_run(self, run_id: UUID) -> ImportRun | None:
        row = self._conn.execute(
            f"select {_COLUMNS} from import_runs where run_id=%s::uuid",
            (str(run_id),),
        ).fetchone()
        if not row:
            return None
        return _row_to_run(row)

    def list_recent(self, limit: int = 10) -> list[ImportRun]:
        rows = self._conn.execute(
            f"select {_COLUMNS} from import_runs order by created_at desc limit %s",
            (limit,),
        ).fetchall()
        return [_row_to_run(r) for r in rows]

    def active_runs(self) -> list[ImportRun]:
        rows = self._conn.execute(
            f"select {_COLUMNS} from import_runs where status = any(%s) order by created_at",
            (list(ACTIVE_RUN_STATUSES),),
        ).fetchall()
        return [_row_to_run(r) for r in rows]

    def _locked_status(self, run_id: UUID) -> str:
        row = self._conn.execute(
            "select status from import_runs where run_id=%s::uuid for update",
            (str(run_id),),
        ).fetchone()
        if not row:
            self._conn.rollback()
            raise LookupError(f"Import run {run_id} not found")
        return row[0]

    def update_status(self, run_id: UUID, status: str) -> ImportRun:
        current = self._locked_status(run_id)
        if current != status and not can_transition(current, status):
            self._conn.rollback()
            raise IllegalTransitionError(f"Import run {run_id}: {current} -> {status} is not allowed")
        row = self._conn.execute(
            f"""
            update import_runs set
              status = %s,
              error_message = case when %s::text = 'preparing' then null else error_message end,
              started_at = coalesce(started_at, case when %s::text = 'preparing' then now() end),
              finished_at = case when %s::text = any(%s::text[]) then now() else null end,
              updated_at = now()
            where run_id=%s::uuid
            returning {_COLUMNS}
            """,
            (
                status,
                status,
                status,
                status,
                [RUN_COMPLETED, RUN_FAILED, RUN_CANCELLED],
                str(run_id),
            ),
        ).fetchone()
        self._conn.commit()
        return _row_to_run(row)

    def set_total_files(self, run_id: UUID, total_files: int) -> None:
        self._conn.execute(
            "update import_runs set total_files=%s, updated_at=now() where run_id=%s::uuid",
            (total_files, str(run_id)),
        )
        self._conn.commit()

    def set_current_file(self, run_id: UUID, filename: str | None) -> None:
        self._conn.execute(
            "update import_runs set current_file=%s, updated_at=now() where run_id=%s::uuid",
            (filename, str(run_id)),
        )
        self._conn.commit()

    def mark_file_completed(self, run_id: UUID, filename: str, *, records: int) -> ImportRun:
        """
        Appends `filename` to the checkpoint under a row lock. Marking the same
        file twice does not count its records twice.
        """
        row = self._conn.execute(
            """
            select completed_filenames, total_records_imported
            from import_runs
            where run_id=%s::uuid
            for update
            """,
            (str(run_id),),
        ).fetchone()
        if not row:
            self._conn.rollback()
            raise LookupError(f"Import run {run_id} not found")

        filenames = list(row[0] or [])
        total_records = row[1] or 0
        if filename not in filenames:
            filenames.append(filename)
            total_records += records

        updated = self._conn.execute(
            f"""
            update import_runs set
              completed_filenames = %s::jsonb,
              completed_files = %s,
              total_records_imported = %s,
              current_file = null,
              updated_at = now()
            where run_id=%s::uuid
            returning {_COLUMNS}
            """,
            (json.dumps(filenames), len(filenames), total_records, str(run_id)),
        ).fetchone()
        self._conn.commit()
        return _row_to_run(updated)

    def complete(self, run_id: UUID) -> ImportRun:
        self.set_current_file(run_id, None)
        return self.update_status(run_id, RUN_COMPLETED)

    def fail(self, run_id: UUID, message: str) -> ImportRun:
        current = self._locked_status(run_id)
        if current in (RUN_COMPLETED, RUN_CANCELLED):
            self._conn.rollback()
            raise IllegalTransitionError(f"Import run {run_id}: {current} -> {RUN_FAILED} is not allowed")
        row = self._conn.execute(
            f"""
            update import_runs set
              status = %s, error_message = %s, finished_at = now(), updated_at = now()
            where run_id=%s::uuid
            returning {_COLUMNS}
            """,
            (RUN_FAILED, message, str(run_id)),
        ).fetchone()
        self._conn.commit()
        return _row_to_run(row)

    def cancel(self, run_id: UUID) -> ImportRun:
        current = self._locked_status(run_id)
        if not can_transition(current, RUN_CANCELLED):
            self._conn.rollback()
            raise IllegalTransitionError(f"Import run {run_id}: {current} -> {RUN_CANCELLED} is not allowed")
        row = self._conn.execute(
            f"""
            update import_runs set
              status = %s, current_file = null, finished_at = now(), updated_at = now()
            where run_id=%s::uuid
            returning {_COLUMNS}
            """,
            (RUN_CANCELLED, str(run_id)),
        ).fetchone()
        self._conn.commit()
        return _row_to_run(row)
