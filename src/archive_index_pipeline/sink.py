from __future__ import annotations

import re
from collections.abc import Callable, Sequence
from dataclasses import dataclass, field
from typing import Any

import structlog

from archive_index_pipeline.index_schema import IndexNames
from archive_index_pipeline.meilisearch import MeilisearchClient, MeilisearchError, SearchResult, TaskOutcome
from archive_index_pipeline.models import ArchiveFile, ArchiveNode, Origin
from archive_index_pipeline.walker import DrainedBatches

logger = structlog.get_logger(__name__)

DEFAULT_UPSERT_BATCH_SIZE = 5000

_DOCUMENT_ID_RE = re.compile(r"[A-Za-z0-9_-]{1,511}")


class RecordValidationError(ValueError):
    pass


def _validate_id(value: object, *, what: str) -> None:
    if not isinstance(value, str) or not _DOCUMENT_ID_RE.fullmatch(value):
        raise RecordValidationError(f"{what} has an invalid id: {value!r}")


def node_documents(records: Sequence[ArchiveNode]) -> list[dict[str, Any]]:
    docs = []
    for r in records:
        if not isinstance(r, ArchiveNode):
            raise RecordValidationError(f"Expected ArchiveNode, got {type(r).__name__}")
        _validate_id(r.id, what="ArchiveNode")
        if r.parent_node_id is not None:
            _validate_id(r.parent_node_id, what=f"ArchiveNode {r.id} parent")
        if r.ancestors and r.ancestors[-1].id != r.parent_node_id:
            raise RecordValidationError(f"ArchiveNode {r.id}: ancestor chain does not end at its parent")
        docs.append(r.to_document())
    return docs


def file_documents(records: Sequence[ArchiveFile]) -> list[dict[str, Any]]:
    docs = []
    for r in records:
        if not isinstance(r, ArchiveFile):
            raise RecordValidationError(f"Expected ArchiveFile, got {type(r).__name__}")
        _validate_id(r.id, what="ArchiveFile")
        _validate_id(r.archive_node_id, what=f"ArchiveFile {r.id} node")
        docs.append(r.to_document())
    return docs


def origin_documents(records: Sequence[Origin]) -> list[dict[str, Any]]:
    docs = []
    for r in records:
        if not isinstance(r, Origin):
            raise RecordValidationError(f"Expected Origin, got {type(r).__name__}")
        _validate_id(r.id, what="Origin")
        if not r.name:
            raise RecordValidationError(f"Origin {r.id} has no name")
        docs.append(r.to_document())
    return docs


@dataclass
class WriteReceipt:
    task_uids: list[int] = field(default_factory=list)
    nodes: int = 0
    files: int = 0
    origins: int = 0
    deleted: int = 0


class IndexSink:
    """
    Writes node/file/origin records into one generation (live or shadow) of the
    search indices and reads them back. Upserts are idempotent by id.
    """

    def __init__(
        self,
        client: MeilisearchClient,
        names: IndexNames,
        *,
        upsert_batch_size: int = DEFAULT_UPSERT_BATCH_SIZE,
        task_timeout_s: float = 600.0,
    ):
        if upsert_batch_size <= 0:
            raise ValueError("upsert_batch_size must be > 0")
        self.client = client
        self.names = names
        self._upsert_batch_size = upsert_batch_size
        self._task_timeout_s = task_timeout_s

    # -- Writes --

    def _add(self, uid: str, documents: list[dict[str, Any]]) -> list[int]:
        uids: list[int] = []
        for start in range(0, len(documents), self._upsert_batch_size):
            task_uid = self.client.add_documents(uid, documents[start : start + self._upsert_batch_size])
            if task_uid is not None:
                uids.append(task_uid)
        return uids

    def upsert_nodes(self, records: Sequence[ArchiveNode]) -> list[int]:
        return self._add(self.names.node_index, node_documents(records))

    def upsert_files(self, records: Sequence[ArchiveFile]) -> list[int]:
        return self._add(self.names.file_index, file_documents(records))

    def upsert_origins(self, records: Sequence[Origin]) -> list[int]:
        return self._add(self.names.origin_index, origin_documents(records))

    def delete_node(self, node_id: str) -> int | None:
        return self.client.delete_document(self.names.node_index, node_id)

    def write(self, batches: DrainedBatches, *, wait: bool = True) -> WriteReceipt:
        receipt = WriteReceipt()
        receipt.task_uids += self.upsert_nodes(batches.nodes)
        receipt.task_uids += self.upsert_files(batches.files)
        receipt.task_uids += self.upsert_origins(batches.origins)
        for node_id in batches.deleted_node_ids:
            task_uid = self.delete_node(node_id)
            if task_uid is not None:
                receipt.task_uids.append(task_uid)
        receipt.nodes = len(batches.nodes)
        receipt.files = len(batches.files)
        receipt.origins = len(batches.origins)
        receipt.deleted = len(batches.deleted_node_ids)
        if wait:
            for task_uid in receipt.task_uids:
                self.ensure_task(task_uid)
        logger.debug(
            "sink.write",
            file_index=self.names.file_index,
            nodes=receipt.nodes,
            files=receipt.files,
            origins=receipt.origins,
            deleted=receipt.deleted,
        )
        return receipt

    def delete_all(self) -> None:
        for uid in self.names.all():
            task_uid = self.client.delete_all_documents(uid)
            if task_uid is not None:
                self.ensure_task(task_uid)

    # -- Index lifecycle --

    def create_indexes(self) -> None:
        for uid in self.names.all():
            logger.info("sink.index.create", index=uid)
            task_uid = self.client.create_index(uid)
            if task_uid is not None:
                self.ensure_task(task_uid)

    def configure_indexes(self) -> None:
        for uid, schema in self.names.with_schemas():
            logger.info("sink.index.configure", index=uid)
            task_uid = self.client.update_settings(uid, schema.to_settings())
            if task_uid is not None:
                self.ensure_task(task_uid)

    def ensure_indexes(self) -> list[str]:
        """Creates and configures whichever indices do not exist yet."""
        created: list[str] = []
        for uid, schema in self.names.with_schemas():
            if self.client.get_index(uid) is not None:
                continue
            logger.info("sink.index.create", index=uid)
            task_uid = self.client.create_index(uid)
            if task_uid is not None:
                self.ensure_task(task_uid)
            task_uid = self.client.update_settings(uid, schema.to_settings())
            if task_uid is not None:
                self.ensure_task(task_uid)
            created.append(uid)
        return created

    def delete_indexes(self) -> None:
        for uid in self.names.all():
            logger.info("sink.index.delete", index=uid)
            task_uid = self.client.delete_index(uid)
            if task_uid is not None:
                self.wait_for_task(task_uid)

    def is_indexing(self) -> bool:
        return any(self.client.index_stats(uid).is_indexing for uid in self.names.all())

    def swap_with(self, other: IndexSink) -> int | None:
        """One atomic swap of all three index pairs."""
        pairs = list(zip(self.names.all(), other.names.all(), strict=True))
        return self.client.swap_indexes(pairs)

    def wait_for_task(
        self,
        task_uid: int,
        *,
        timeout_s: float | None = None,
        should_cancel: Callable[[], bool] | None = None,
    ) -> TaskOutcome:
        return self.client.wait_for_task(
            task_uid,
            timeout_s=self._task_timeout_s if timeout_s is None else timeout_s,
            should_cancel=should_cancel,
        )

    def ensure_task(self, task_uid: int, *, timeout_s: float | None = None) -> TaskOutcome:
        outcome = self.wait_for_task(task_uid, timeout_s=timeout_s)
        if not outcome.succeeded:
            raise MeilisearchError(f"Meilisearch task {task_uid} {outcome.status}: {outcome.error or ''}".strip())
        return outcome

    # -- Reads --

    def search_files(self, query: str = "", **options: Any) -> SearchResult:
        return self.client.search(self.names.file_index, query, **options)

    def search_nodes(self, query: str = "", **options: Any) -> SearchResult:
        return self.client.search(self.names.node_index, query, **options)

    def search_origins(self, query: str = "", **options: Any) -> SearchResult:
        return self.client.search(self.names.origin_index, query, **options)

    def get_file(self, file_id: str) -> dict[str, Any] | None:
        return self.client.get_document(self.names.file_index, file_id)

    def get_node(self, node_id: str) -> dict[str, Any] | None:
        return self.client.get_document(self.names.node_index, node_id)

    def get_origin(self, origin_id: str) -> dict[str, Any] | None:
        return self.client.get_document(self.names.origin_index, origin_id)

    def root_nodes(self, *, page: int = 1, per_page: int = 50, letter: str | None = None) -> SearchResult:
        filters = ["level = 'fonds'"]
        if letter:
            filters.append(f"first_letter = {quote_filter_value(letter)}")
        return self.search_nodes(
            "",
            filter=" AND ".join(filters),
            sort=["name:asc"],
            page=page,
            hits_per_page=per_page,
        )

    def fonds_letters(self) -> list[str]:
        result = self.search_nodes("", filter="level = 'fonds'", facets=["first_letter"], hits_per_page=0)
        return sorted((result.facet_distribution.get("first_letter") or {}).keys())

    def origin_letters(self) -> list[str]:
        result = self.search_origins("", facets=["first_letter"], hits_per_page=0)
        return sorted((result.facet_distribution.get("first_letter") or {}).keys())

    def stats(self) -> dict[str, int]:
        return {
            "files": self.client.index_stats(self.names.file_index).number_of_documents,
            "nodes": self.client.index_stats(self.names.node_index).number_of_documents,
            "origins": self.client.index_stats(self.names.origin_index).number_of_documents,
        }

    def count_files(self) -> int:
        return self.search_files("", hits_per_page=0).total


def quote_filter_value(value: str) -> str:
    escaped = value.replace("\\", "\\\\").replace("'", "\\'")
    return f"'{escaped}'"
