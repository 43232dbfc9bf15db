from __future__ import annotations

import json
import os
import re
import uuid
from collections.abc import Generator
from dataclasses import replace
from datetime import UTC, datetime
from pathlib import Path
from typing import Any
from uuid import UUID

import httpx
import psycopg
import pytest

from archive_index_pipeline.db import connect
from archive_index_pipeline.index_schema import IndexNames
from archive_index_pipeline.meilisearch import MeilisearchClient
from archive_index_pipeline.migrations.runner import apply_migrations
from archive_index_pipeline.models import (
    RUN_CANCELLED,
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_PREPARING,
    ImportRun,
    can_transition,
)
from archive_index_pipeline.repositories.runs import IllegalTransitionError
from archive_index_pipeline.sink import IndexSink

_FILTER_TERM_RE = re.compile(r"(\w+)\s*=\s*'((?:[^'\\]|\\.)*)'")


class FakeMeilisearch:
    """
    In-memory stand-in for the Meilisearch HTTP API. Every task finishes
    immediately; documents are stored per index uid. The next `busy_polls`
    stats requests report the index as still indexing.
    """

    def __init__(self) -> None:
        self.indexes: dict[str, dict[str, dict[str, Any]]] = {}
        self.settings: dict[str, dict[str, Any]] = {}
        self.tasks: dict[int, dict[str, Any]] = {}
        self.requests: list[tuple[str, str]] = []
        self.indexing_polls = 0
        self.busy_polls = 0

    def _task(self, kind: str, *, uid: str | None = None, error: str | None = None) -> httpx.Response:
        task_uid = len(self.tasks) + 1
        task: dict[str, Any] = {
            "uid": task_uid,
            "indexUid": uid,
            "type": kind,
            "status": "failed" if error else "succeeded",
        }
        if error:
            task["error"] = {"code": error, "message": error}
        self.tasks[task_uid] = task
        return httpx.Response(202, json={"taskUid": task_uid, "indexUid": uid, "status": "enqueued"})

    def handle(self, request: httpx.Request) -> httpx.Response:
        method = request.method
        path = request.url.path
        self.requests.append((method, path))
        body = json.loads(request.content) if request.content else None
        parts = [p for p in path.split("/") if p]

        if parts == ["indexes"] and method == "POST":
            uid = body["uid"]
            if uid in self.indexes:
                return self._task("indexCreation", uid=uid, error="index_already_exists")
            self.indexes[uid] = {}
            return self._task("indexCreation", uid=uid)

        if parts == ["swap-indexes"] and method == "POST":
            for swap in body:
                a, b = swap["indexes"]
                if a not in self.indexes or b not in self.indexes:
                    return self._task("indexSwap", error="index_not_found")
            for swap in body:
                a, b = swap["indexes"]
                self.indexes[a], self.indexes[b] = self.indexes[b], self.indexes[a]
                self.settings[a], self.settings[b] = self.settings.get(b, {}), self.settings.get(a, {})
            return self._task("indexSwap")

        if parts[:1] == ["tasks"] and len(parts) == 2:
            task = self.tasks.get(int(parts[1]))
            if task is None:
                return httpx.Response(404, json={"code": "task_not_found"})
            return httpx.Response(200, json=task)

        if parts[:1] != ["indexes"] or len(parts) < 2:
            return httpx.Response(404, json={"code": "not_found"})

        uid = parts[1]
        rest = parts[2:]

        if not rest and method == "GET":
            if uid not in self.indexes:
                return httpx.Response(404, json={"code": "index_not_found"})
            return httpx.Response(200, json={"uid": uid, "primaryKey": "id"})

        if not rest and method == "DELETE":
            if uid not in self.indexes:
                return self._task("indexDeletion", uid=uid, error="index_not_found")
            del self.indexes[uid]
            self.settings.pop(uid, None)
            return self._task("indexDeletion", uid=uid)

        if rest == ["settings"] and method == "PATCH":
            self.indexes.setdefault(uid, {})
            self.settings.setdefault(uid, {}).update(body)
            return self._task("settingsUpdate", uid=uid)

        if rest == ["stats"] and method == "GET":
            if uid not in self.indexes:
                return httpx.Response(404, json={"code": "index_not_found"})
            self.indexing_polls += 1
            busy = self.busy_polls > 0
            if busy:
                self.busy_polls -= 1
            return httpx.Response(200, json={"numberOfDocuments": len(self.indexes[uid]), "isIndexing": busy})

        if rest == ["documents"] and method == "POST":
            docs = self.indexes.setdefault(uid, {})
            for doc in body:
                docs[doc["id"]] = doc
            return self._task("documentAdditionOrUpdate", uid=uid)

        if rest == ["documents"] and method == "DELETE":
            self.indexes.get(uid, {}).clear()
            return self._task("documentDeletion", uid=uid)

        if len(rest) == 2 and rest[0] == "documents":
            docs = self.indexes.get(uid, {})
            if method == "GET":
                if rest[1] not in docs:
                    return httpx.Response(404, json={"code": "document_not_found"})
                return httpx.Response(200, json=docs[rest[1]])
            if method == "DELETE":
                docs.pop(rest[1], None)
                return self._task("documentDeletion", uid=uid)

        if rest == ["search"] and method == "POST":
            return self._search(uid, body or {})

        return httpx.Response(405, json={"code": "method_not_allowed"})

    def _search(self, uid: str, body: dict[str, Any]) -> httpx.Response:
        if uid not in self.indexes:
            return httpx.Response(404, json={"code": "index_not_found"})
        query = (body.get("q") or "").lower()
        hits = [d for d in self.indexes[uid].values() if _matches(d, query) and _passes(d, body.get("filter"))]

        facets: dict[str, dict[str, int]] = {}
        for name in body.get("facets") or []:
            counts: dict[str, int] = {}
            for d in hits:
                values = d.get(name)
                for v in values if isinstance(values, list) else [values]:
                    if v is not None:
                        counts[str(v)] = counts.get(str(v), 0) + 1
            facets[name] = counts

        for spec in reversed(body.get("sort") or []):
            field, _, direction = spec.partition(":")
            hits.sort(key=lambda d: str(d.get(field) or ""), reverse=direction == "desc")

        payload: dict[str, Any] = {"query": body.get("q"), "facetDistribution": facets}
        if "page" in body or "hitsPerPage" in body:
            page = body.get("page", 1)
            per_page = body.get("hitsPerPage", 20)
            start = (page - 1) * per_page
            payload["hits"] = hits[start : start + per_page]
            payload["page"] = page
            payload["hitsPerPage"] = per_page
            payload["totalHits"] = len(hits)
            payload["totalPages"] = -(-len(hits) // per_page) if per_page else 0
        else:
            payload["hits"] = hits[:20]
            payload["estimatedTotalHits"] = len(hits)
        return httpx.Response(200, json=payload)


def _matches(doc: dict[str, Any], query: str) -> bool:
    if not query:
        return True
    return any(isinstance(v, str) and query in v.lower() for v in doc.values())


def _passes(doc: dict[str, Any], expression: Any) -> bool:
    if not expression:
        return True
    for field, raw in _FILTER_TERM_RE.findall(str(expression)):
        value = raw.replace("\\'", "'").replace("\\\\", "\\")
        actual = doc.get(field)
        if isinstance(actual, list):
            if value not in [str(a) for a in actual]:
                return False
        elif str(actual) != value:
            return False
    return True


@pytest.fixture()
def meili() -> FakeMeilisearch:
    return FakeMeilisearch()


@pytest.fixture()
def meili_client(meili: FakeMeilisearch) -> MeilisearchClient:
    return MeilisearchClient(
        base_url="http://meili.test",
        api_key="test-key",
        max_retries=0,
        transport=httpx.MockTransport(meili.handle),
    )


@pytest.fixture()
def live_sink(meili_client: MeilisearchClient) -> IndexSink:
    return IndexSink(meili_client, IndexNames(env="test"), task_timeout_s=1.0)


@pytest.fixture()
def shadow_sink(meili_client: MeilisearchClient) -> IndexSink:
    return IndexSink(meili_client, IndexNames(env="test").shadow(), task_timeout_s=1.0)


@pytest.fixture(scope="session")
def pg_dsn() -> str:
    dsn = os.environ.get("PG_DSN")
    if not dsn:
        pytest.skip("PG_DSN not set; skipping DB integration tests")
    return dsn


@pytest.fixture(scope="session")
def pg_schema(pg_dsn: str) -> Generator[str, None, None]:
    schema = f"test_{uuid.uuid4().hex[:10]}"
    apply_migrations(pg_dsn, schema=schema)
    yield schema
    with psycopg.connect(pg_dsn) as conn:
        conn.execute(f'drop schema if exists "{schema}" cascade')
        conn.commit()


@pytest.fixture()
def conn(pg_dsn: str, pg_schema: str) -> Generator[psycopg.Connection, None, None]:
    with connect(pg_dsn, schema=pg_schema) as c:
        yield c


class FakeRunRepository:
    """Same contract as RunRepository, kept in memory."""

    def __init__(self) -> None:
        self.runs: dict[UUID, ImportRun] = {}

    def _save(self, run_id: UUID, **changes: Any) -> ImportRun:
        if run_id not in self.runs:
            raise LookupError(f"Import run {run_id} not found")
        run = replace(self.runs[run_id], updated_at=datetime.now(UTC), **changes)
        self.runs[run_id] = run
        return run

    def create_run(self, run_id: UUID | None = None, **fields: Any) -> ImportRun:
        now = datetime.now(UTC)
        run = ImportRun(run_id=run_id or uuid.uuid4(), created_at=now, updated_at=now, **fields)
        self.runs[run.run_id] = run
        return run

    def get_run(self, run_id: UUID) -> ImportRun | None:
        return self.runs.get(run_id)

    def list_recent(self, limit: int = 10) -> list[ImportRun]:
        return sorted(self.runs.values(), key=lambda r: r.created_at, reverse=True)[:limit]

    def active_runs(self) -> list[ImportRun]:
        return [r for r in self.runs.values() if r.is_active]

    def update_status(self, run_id: UUID, status: str) -> ImportRun:
        run = self.runs[run_id]
        if run.status != status and not can_transition(run.status, status):
            raise IllegalTransitionError(f"{run.status} -> {status}")
        now = datetime.now(UTC)
        changes: dict[str, Any] = {"status": status}
        if status == RUN_PREPARING:
            changes["error_message"] = None
            changes["started_at"] = run.started_at or now
        changes["finished_at"] = now if status in (RUN_COMPLETED, RUN_FAILED, RUN_CANCELLED) else None
        return self._save(run_id, **changes)

    def set_total_files(self, run_id: UUID, total_files: int) -> None:
        self._save(run_id, total_files=total_files)

    def set_current_file(self, run_id: UUID, filename: str | None) -> None:
        self._save(run_id, current_file=filename)

    def mark_file_completed(self, run_id: UUID, filename: str, *, records: int) -> ImportRun:
        run = self.runs[run_id]
        if filename in run.completed_filenames:
            return self._save(run_id, current_file=None)
        filenames = (*run.completed_filenames, filename)
        return self._save(
            run_id,
            completed_filenames=filenames,
            completed_files=len(filenames),
            total_records_imported=run.total_records_imported + records,
            current_file=None,
        )

    def complete(self, run_id: UUID) -> ImportRun:
        self.set_current_file(run_id, None)
        return self.update_status(run_id, RUN_COMPLETED)

    def fail(self, run_id: UUID, message: str) -> ImportRun:
        if self.runs[run_id].status in (RUN_COMPLETED, RUN_CANCELLED):
            raise IllegalTransitionError(f"{self.runs[run_id].status} -> {RUN_FAILED}")
        return self._save(run_id, status=RUN_FAILED, error_message=message, finished_at=datetime.now(UTC))

    def cancel(self, run_id: UUID) -> ImportRun:
        if not can_transition(self.runs[run_id].status, RUN_CANCELLED):
            raise IllegalTransitionError(f"{self.runs[run_id].status} -> {RUN_CANCELLED}")
        return self._save(run_id, status=RUN_CANCELLED, current_file=None, finished_at=datetime.now(UTC))


@pytest.fixture()
def runs() -> FakeRunRepository:
    return FakeRunRepository()


FINANZEN_EAD = """<?xml version="1.0" encoding="UTF-8"?>
<ead xmlns="urn:isbn:1-931666-22-9" xmlns:xlink="http://www.w3.org/1999/xlink">
  <eadheader><eadid>DE-1958_finanzen</eadid></eadheader>
  <archdesc level="fonds" type="inventory">
    <did><unittitle>Bestand B 126</unittitle></did>
    <dsc>
      <c level="fonds" id="DE-1958_finanzen">
        <did>
          <unittitle>Bundesministerium der Finanzen</unittitle>
          <unitid>B 126</unitid>
          <unitdate>1949-1998</unitdate>
          <physdesc><extent>12000 Akten</extent></physdesc>
          <origination label="Provenienz">Bundesministerium der Finanzen</origination>
        </did>
        <scopecontent><p>Haushalts- und Finanzpolitik des Bundes.</p></scopecontent>
        <c level="series" id="DE-1958_haushalt">
          <did><unittitle>Haushalt</unittitle></did>
          <c level="file" id="DE-1958_file-1">
            <did>
              <unittitle>Haushaltsplan 1959</unittitle>
              <unitid type="call number">BArch B 126/1234</unitid>
              <unitdate normal="1959-01-01/1959-12-31">1959</unitdate>
              <physloc>Koblenz</physloc>
              <langmaterial><language langcode="ger">Deutsch</language></langmaterial>
              <origination label="Provenienz">Bundesministerium der Finanzen</origination>
            </did>
            <scopecontent encodinganalog="summary"><p>Enthält: Entwürfe</p></scopecontent>
            <otherfindaid><p><extref xlink:href="https://invenio.example/file-1">Invenio</extref></p></otherfindaid>
          </c>
          <c level="file" id="DE-1958_file-2">
            <did>
              <unittitle>Haushaltsvollzug</unittitle>
              <unitid type="call number">B 126/1235</unitid>
              <unitdate normal="1040-01-01/1941-12-31">1940-1941</unitdate>
              <origination label="Provenienz">Bundesministerium der Finanzen</origination>
            </did>
          </c>
        </c>
        <c level="series">
          <did><unittitle>Allgemeines</unittitle></did>
          <c level="file">
            <did>
              <unittitle>DK 107/11126 Korrespondenz mit dem Ministerium</unittitle>
              <unitdate normal="1650-03-01">1650</unitdate>
              <origination label="Provenienz">Reichsfinanzministerium</origination>
            </did>
          </c>
        </c>
      </c>
    </dsc>
  </archdesc>
</ead>
"""

REICHSKANZLEI_EAD = """<?xml version="1.0" encoding="UTF-8"?>
<ead>
  <archdesc level="fonds" type="inventory">
    <dsc>
      <c level="fonds" id="DE-1958_reichskanzlei">
        <did><unittitle>Reichskanzlei</unittitle><unitid>R 43</unitid></did>
        <c level="series">
          <did><unittitle>Akten</unittitle></did>
          <c level="file">
            <did><unittitle>Vorakte</unittitle></did>
          </c>
          <c level="series" id="DE-1958_akten">
            <did><unittitle>Akten</unittitle></did>
            <c level="file" id="DE-1958_file-3">
              <did>
                <unittitle>Kabinettsprotokolle</unittitle>
                <unitid type="call number">BArch R 43/1</unitid>
                <unitdate normal="1933-01-30/1933-12-31">1933</unitdate>
                <origination>Reichskanzlei</origination>
              </did>
            </c>
          </c>
        </c>
        <c level="series" id="DE-1958_reichskanzlei-heading">
          <did><unittitle>R 43 Reichskanzlei</unittitle></did>
          <c level="file" id="DE-1958_file-4">
            <did><unittitle>Personalakten</unittitle></did>
          </c>
        </c>
      </c>
    </dsc>
  </archdesc>
</ead>
"""

COLLECTION_EAD = """<?xml version="1.0" encoding="UTF-8"?>
<ead>
  <archdesc level="collection" type="collection">
    <dsc>
      <c level="fonds" id="DE-1958_sammlung">
        <did><unittitle>Sammlung</unittitle></did>
        <c level="file" id="DE-1958_file-9"><did><unittitle>Plakat</unittitle></did></c>
      </c>
    </dsc>
  </archdesc>
</ead>
"""


@pytest.fixture()
def finanzen_ead() -> bytes:
    return FINANZEN_EAD.encode("utf-8")


@pytest.fixture()
def reichskanzlei_ead() -> bytes:
    return REICHSKANZLEI_EAD.encode("utf-8")


@pytest.fixture()
def collection_ead() -> bytes:
    return COLLECTION_EAD.encode("utf-8")


@pytest.fixture()
def data_dir(tmp_path: Path) -> Path:
    """Two inventories (6 file records), one non-inventory, one broken document."""
    d = tmp_path / "data"
    d.mkdir()
    (d / "a_finanzen.xml").write_text(FINANZEN_EAD, encoding="utf-8")
    (d / "b_reichskanzlei.xml").write_text(REICHSKANZLEI_EAD, encoding="utf-8")
    (d / "c_collection.xml").write_text(COLLECTION_EAD, encoding="utf-8")
    (d / "d_broken.xml").write_text("<ead><archdesc type=", encoding="utf-8")
    (d / "notes.txt").write_text("not a finding aid", encoding="utf-8")
    return d
