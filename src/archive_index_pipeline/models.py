from __future__ import annotations

from dataclasses import dataclass, field
from datetime import UTC, date, datetime, time
from typing import Any
from uuid import UUID

from archive_index_pipeline.dates import decade_of, period_of
from archive_index_pipeline.util import first_letter, is_provisional_id, unitid_prefix


@dataclass(frozen=True)
class AncestorRef:
    id: str
    name: str | None = None
    unitid: str | None = None

    def to_document(self) -> dict[str, Any]:
        return {"id": self.id, "name": self.name, "unitid": self.unitid}


@dataclass(frozen=True)
class OriginRef:
    name: str
    label: str | None = None


@dataclass
class ArchiveNode:
    """
    A hierarchy node (fonds, series, sub-group).

    Mutable: the walker may rename a provisional id to a real one or fill gaps
    from a merged duplicate before the node is flushed.
    """

    id: str
    name: str | None = None
    level: str | None = None
    unitid: str | None = None
    unitdate: str | None = None
    physdesc: dict[str, str] | None = None
    langmaterial: str | None = None
    origination: list[OriginRef] = field(default_factory=list)
    repository: dict[str, str] | None = None
    scopecontent: str | None = None
    relatedmaterial: str | None = None
    prefercite: str | None = None
    parent_node_id: str | None = None
    ancestors: list[AncestorRef] = field(default_factory=list)

    @property
    def provisional(self) -> bool:
        return is_provisional_id(self.id)

    def ref(self) -> AncestorRef:
        return AncestorRef(id=self.id, name=self.name, unitid=self.unitid)

    def fill_gaps_from(self, other: ArchiveNode) -> None:
        """Existing values win; empty fields are taken from `other`."""
        for name in (
            "name",
            "level",
            "unitid",
            "unitdate",
            "physdesc",
            "langmaterial",
            "repository",
            "scopecontent",
            "relatedmaterial",
            "prefercite",
            "parent_node_id",
        ):
            if not getattr(self, name) and getattr(other, name):
                setattr(self, name, getattr(other, name))
        if not self.origination and other.origination:
            self.origination = list(other.origination)
        if not self.ancestors and other.ancestors:
            self.ancestors = list(other.ancestors)

    def to_document(self) -> dict[str, Any]:
        fonds = self.ancestors[0] if self.ancestors else None
        return {
            "id": self.id,
            "name": self.name,
            "level": self.level,
            "unitid": self.unitid,
            "unitdate": self.unitdate,
            "physdesc": self.physdesc,
            "langmaterial": self.langmaterial,
            "origination": [{"name": o.name, "label": o.label} for o in self.origination],
            "repository": self.repository,
            "scopecontent": self.scopecontent,
            "relatedmaterial": self.relatedmaterial,
            "prefercite": self.prefercite,
            "parent_node_id": self.parent_node_id,
            "parents": [a.to_document() for a in self.ancestors],
            "ancestor_ids": [a.id for a in self.ancestors],
            "depth": len(self.ancestors),
            "provisional": self.provisional,
            "first_letter": first_letter(self.name),
            "fonds_unitid_prefix": unitid_prefix(fonds.unitid if fonds else self.unitid),
        }


def _unix(d: date | None) -> int | None:
    if d is None:
        return None
    return int(datetime.combine(d, time.min, tzinfo=UTC).timestamp())


def _iso(d: date | None) -> str | None:
    return d.isoformat() if d else None


@dataclass(frozen=True)
class ArchiveFile:
    """A leaf ("file"-level) record with a denormalized ancestor snapshot."""

    id: str
    archive_node_id: str
    title: str | None = None
    call_number: str | None = None
    source_date_text: str | None = None
    source_date_start: date | None = None
    source_date_end: date | None = None
    source_date_start_uncorrected: date | None = None
    source_date_end_uncorrected: date | None = None
    location: str | None = None
    language_code: str | None = None
    summary: str | None = None
    link: str | None = None
    ancestors: tuple[AncestorRef, ...] = ()
    origins: tuple[OriginRef, ...] = ()
    origin_ids: tuple[str, ...] = ()

    @property
    def fonds(self) -> AncestorRef | None:
        return self.ancestors[0] if self.ancestors else None

    def to_document(self) -> dict[str, Any]:
        fonds = self.fonds
        year = self.source_date_start.year if self.source_date_start else None
        period, period_span = period_of(year) if year is not None else (None, None)
        return {
            "id": self.id,
            "archive_node_id": self.archive_node_id,
            "title": self.title,
            "call_number": self.call_number,
            "summary": self.summary,
            "source_date_text": self.source_date_text,
            "source_date_start": _iso(self.source_date_start),
            "source_date_end": _iso(self.source_date_end),
            "source_date_start_uncorrected": _iso(self.source_date_start_uncorrected),
            "source_date_end_uncorrected": _iso(self.source_date_end_uncorrected),
            "source_date_start_unix": _unix(self.source_date_start),
            "source_date_end_unix": _unix(self.source_date_end),
            "location": self.location,
            "language_code": self.language_code,
            "link": self.link,
            "parents": [a.to_document() for a in self.ancestors],
            "parent_names": " ".join(a.name for a in self.ancestors if a.name),
            "ancestor_ids": [a.id for a in self.ancestors],
            "depth": len(self.ancestors),
            "fonds_id": fonds.id if fonds else None,
            "fonds_name": fonds.name if fonds else None,
            "fonds_unitid": fonds.unitid if fonds else None,
            "fonds_unitid_prefix": unitid_prefix(fonds.unitid) if fonds else None,
            "decade": decade_of(year) if year is not None else None,
            "period": period,
            "period_span": period_span,
            "origin_ids": list(self.origin_ids),
            "origin_names": [o.name for o in self.origins],
        }


@dataclass(frozen=True)
class Origin:
    id: str
    name: str
    label: str | None = None

    def to_document(self) -> dict[str, Any]:
        return {
            "id": self.id,
            "name": self.name,
            "label": self.label,
            "first_letter": first_letter(self.name),
        }


RUN_PENDING = "pending"
RUN_PREPARING = "preparing"
RUN_IMPORTING = "importing"
RUN_SWAPPING = "swapping"
RUN_COMPLETED = "completed"
RUN_FAILED = "failed"
RUN_CANCELLED = "cancelled"

RUN_STATUSES = (
    RUN_PENDING,
    RUN_PREPARING,
    RUN_IMPORTING,
    RUN_SWAPPING,
    RUN_COMPLETED,
    RUN_FAILED,
    RUN_CANCELLED,
)
IN_PROGRESS_RUN_STATUSES = (RUN_PREPARING, RUN_IMPORTING, RUN_SWAPPING)
ACTIVE_RUN_STATUSES = (RUN_PENDING, *IN_PROGRESS_RUN_STATUSES)

RUN_TRANSITIONS: dict[str, frozenset[str]] = {
    RUN_PENDING: frozenset({RUN_PREPARING, RUN_FAILED, RUN_CANCELLED}),
    RUN_PREPARING: frozenset({RUN_IMPORTING, RUN_FAILED, RUN_CANCELLED}),
    RUN_IMPORTING: frozenset({RUN_SWAPPING, RUN_FAILED, RUN_CANCELLED}),
    RUN_SWAPPING: frozenset({RUN_COMPLETED, RUN_FAILED}),
    RUN_COMPLETED: frozenset(),
    # A failed run resumes from its checkpoint.
    RUN_FAILED: frozenset({RUN_PREPARING}),
    RUN_CANCELLED: frozenset(),
}


def can_transition(current: str, target: str) -> bool:
    return target in RUN_TRANSITIONS.get(current, frozenset())


@dataclass(frozen=True)
class ImportRun:
    run_id: UUID
    status: str = RUN_PENDING
    total_files: int = 0
    completed_files: int = 0
    total_records_imported: int = 0
    current_file: str | None = None
    error_message: str | None = None
    completed_filenames: tuple[str, ...] = ()
    started_at: datetime | None = None
    finished_at: datetime | None = None
    created_at: datetime | None = None
    updated_at: datetime | None = None

    @property
    def is_active(self) -> bool:
        return self.status in ACTIVE_RUN_STATUSES

    @property
    def progress_percent(self) -> float:
        if not self.total_files:
            return 0.0
        return round(self.completed_files / self.total_files * 100, 1)

    def elapsed(self, now: datetime | None = None) -> float | None:
        if self.started_at is None:
            return None
        end = self.finished_at or now or datetime.now(UTC)
        return (end - self.started_at).total_seconds()
