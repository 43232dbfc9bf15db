from __future__ import annotations

from datetime import datetime
from uuid import UUID

from pydantic import BaseModel, Field

# Derived read-side caches that go stale when a new index generation goes live.
INVALIDATED_CACHE_KEYS = (
    "browse/tab_counts",
    "browse/fonds_letters",
    "browse/origin_letters",
    "archive_files/decade_counts",
    "origins/with_file_counts",
)


class IndexSwappedEvent(BaseModel):
    event_id: UUID
    event_type: str = Field(default="archive.index.swapped")
    run_id: UUID
    live_indexes: list[str]
    records_imported: int
    invalidated_cache_keys: list[str] = Field(default_factory=lambda: list(INVALIDATED_CACHE_KEYS))
    swapped_at: datetime
