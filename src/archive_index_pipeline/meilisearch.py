from __future__ import annotations

from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from time import monotonic, sleep
from typing import Any

import httpx
import structlog

logger = structlog.get_logger(__name__)

TASK_SUCCEEDED = "succeeded"
TASK_FAILED = "failed"
TASK_CANCELED = "canceled"
TASK_TIMED_OUT = "timed_out"
TASK_CANCELLED_BY_CALLER = "cancelled"

_FINISHED_TASK_STATUSES = {TASK_SUCCEEDED, TASK_FAILED, TASK_CANCELED}


class MeilisearchError(RuntimeError):
    def __init__(self, message: str, *, status_code: int | None = None, path: str | None = None, body: str = ""):
        super().__init__(message)
        self.status_code = status_code
        self.path = path
        self.body = body


@dataclass(frozen=True)
class TaskOutcome:
    task_uid: int
    status: str
    error: dict[str, Any] | None = None
    task: dict[str, Any] | None = None

    @property
    def succeeded(self) -> bool:
        return self.status == TASK_SUCCEEDED


@dataclass(frozen=True)
class IndexStats:
    number_of_documents: int
    is_indexing: bool


@dataclass(frozen=True)
class SearchResult:
    hits: list[dict[str, Any]]
    total: int
    facet_distribution: dict[str, dict[str, int]] = field(default_factory=dict)
    page: int | None = None
    total_pages: int | None = None
    exact: bool = False


def _task_uid(payload: Any) -> int | None:
    if not isinstance(payload, dict):
        return None
    uid = payload.get("taskUid", payload.get("uid"))
    return uid if isinstance(uid, int) else None


@dataclass(frozen=True)
class MeilisearchClient:
    base_url: str
    api_key: str | None = None
    timeout_s: float = 120.0
    max_retries: int = 5
    retry_backoff_s: float = 1.0
    transport: httpx.BaseTransport | None = None

    def _headers(self) -> dict[str, str]:
        if not self.api_key:
            return {}
        return {"Authorization": f"Bearer {self.api_key}"}

    def _client(self) -> httpx.Client:
        return httpx.Client(
            base_url=self.base_url.rstrip("/"),
            headers=self._headers(),
            timeout=self.timeout_s,
            transport=self.transport,
        )

    def request(
        self,
        method: str,
        path: str,
        *,
        json: Any = None,
        params: dict[str, Any] | None = None,
        allow_statuses: Sequence[int] = (),
    ) -> Any:
        """
        Sends one request, retrying connection-level failures with exponential
        backoff. HTTP error responses are not retried.
        """
        if self.max_retries < 0:
            raise ValueError("max_retries must be >= 0")

        attempt = 0
        while True:
            try:
                with self._client() as client:
                    resp = client.request(method, path, json=json, params=params)
                break
            except httpx.TransportError as e:
                if attempt >= self.max_retries:
                    raise
                wait = self.retry_backoff_s * (2**attempt)
                attempt += 1
                logger.warning(
                    "meilisearch.retry",
                    method=method,
                    path=path,
                    error=type(e).__name__,
                    attempt=attempt,
                    max_retries=self.max_retries,
                    wait_s=wait,
                )
                sleep(wait)

        if resp.status_code in allow_statuses:
            return None
        if resp.status_code >= 400:
            logger.error("meilisearch.error", method=method, path=path, status=resp.status_code)
            raise MeilisearchError(
                f"Meilisearch request failed: {method} {path} -> {resp.status_code}",
                status_code=resp.status_code,
                path=path,
                body=resp.text,
            )
        if not resp.content:
            return None
        return resp.json()

    # -- Index lifecycle --

    def create_index(self, uid: str, *, primary_key: str = "id") -> int | None:
        return _task_uid(self.request("POST", "/indexes", json={"uid": uid, "primaryKey": primary_key}))

    def get_index(self, uid: str) -> dict[str, Any] | None:
        return self.request("GET", f"/indexes/{uid}", allow_statuses=(404,))

    def delete_index(self, uid: str) -> int | None:
        """Returns None when the index does not exist."""
        return _task_uid(self.request("DELETE", f"/indexes/{uid}", allow_statuses=(404,)))

    def update_settings(self, uid: str, settings: dict[str, Any]) -> int | None:
        return _task_uid(self.request("PATCH", f"/indexes/{uid}/settings", json=settings))

    def index_stats(self, uid: str) -> IndexStats:
        data = self.request("GET", f"/indexes/{uid}/stats") or {}
        return IndexStats(
            number_of_documents=int(data.get("numberOfDocuments") or 0),
            is_indexing=bool(data.get("isIndexing")),
        )

    def swap_indexes(self, pairs: Sequence[tuple[str, str]]) -> int | None:
        body = [{"indexes": [a, b]} for a, b in pairs]
        return _task_uid(self.request("POST", "/swap-indexes", json=body))

    # -- Documents --

    def add_documents(self, uid: str, documents: list[dict[str, Any]]) -> int | None:
        if not documents:
            return None
        return _task_uid(
            self.request("POST", f"/indexes/{uid}/documents", json=documents, params={"primaryKey": "id"})
        )

    def delete_document(self, uid: str, document_id: str) -> int | None:
        return _task_uid(self.request("DELETE", f"/indexes/{uid}/documents/{document_id}"))

    def delete_all_documents(self, uid: str) -> int | None:
        return _task_uid(self.request("DELETE", f"/indexes/{uid}/documents"))

    def get_document(self, uid: str, document_id: str) -> dict[str, Any] | None:
        if not document_id:
            return None
        return self.request("GET", f"/indexes/{uid}/documents/{document_id}", allow_statuses=(404,))

    def search(
        self,
        uid: str,
        query: str = "",
        *,
        filter: str | list[Any] | None = None,
        sort: list[str] | None = None,
        facets: list[str] | None = None,
        page: int | None = None,
        hits_per_page: int | None = None,
    ) -> SearchResult:
        body: dict[str, Any] = {"q": query}
        if filter:
            body["filter"] = filter
        if sort:
            body["sort"] = sort
        if facets:
            body["facets"] = facets
        if page is not None:
            body["page"] = page
        if hits_per_page is not None:
            body["hitsPerPage"] = hits_per_page

        data = self.request("POST", f"/indexes/{uid}/search", json=body) or {}
        hits = data.get("hits")
        if not isinstance(hits, list):
            raise MeilisearchError("Unexpected Meilisearch search response shape", path=f"/indexes/{uid}/search")
        exact = "totalHits" in data
        total = data.get("totalHits") if exact else data.get("estimatedTotalHits")
        return SearchResult(
            hits=hits,
            total=int(total or 0),
            facet_distribution=data.get("facetDistribution") or {},
            page=data.get("page"),
            total_pages=data.get("totalPages"),
            exact=exact,
        )

    # -- Tasks --

    def get_task(self, task_uid: int) -> dict[str, Any]:
        return self.request("GET", f"/tasks/{task_uid}") or {}

    def wait_for_task(
        self,
        task_uid: int,
        *,
        timeout_s: float = 600.0,
        poll_interval_s: float = 0.5,
        should_cancel: Callable[[], bool] | None = None,
    ) -> TaskOutcome:
        """
        Polls a task until it finishes. Never raises on time-out; the outcome
        says what happened.
        """
        deadline = monotonic() + timeout_s
        while True:
            task = self.get_task(task_uid)
            status = task.get("status")
            if status in _FINISHED_TASK_STATUSES:
                return TaskOutcome(task_uid=task_uid, status=status, error=task.get("error"), task=task)
            if should_cancel is not None and should_cancel():
                return TaskOutcome(task_uid=task_uid, status=TASK_CANCELLED_BY_CALLER, task=task)
            if monotonic() >= deadline:
                return TaskOutcome(task_uid=task_uid, status=TASK_TIMED_OUT, task=task)
            sleep(poll_interval_s)
