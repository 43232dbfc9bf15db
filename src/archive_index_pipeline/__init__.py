from archive_index_pipeline.config import Settings, load_settings
from archive_index_pipeline.coordinator import ImportRunCoordinator, ImportRunError, import_document
from archive_index_pipeline.dates import UnitDate, correct_date_range, parse_unit_date
from archive_index_pipeline.index_schema import IndexNames
from archive_index_pipeline.meilisearch import MeilisearchClient, MeilisearchError, TaskOutcome
from archive_index_pipeline.models import ArchiveFile, ArchiveNode, ImportRun, Origin
from archive_index_pipeline.sink import IndexSink, RecordValidationError
from archive_index_pipeline.trigram import TrigramIndex, sanitize_query
from archive_index_pipeline.walker import IdentityCache, TreeWalker, WalkerOptions, WalkResult

__all__ = [
    "__version__",
    "ArchiveFile",
    "ArchiveNode",
    "IdentityCache",
    "ImportRun",
    "ImportRunCoordinator",
    "ImportRunError",
    "IndexNames",
    "IndexSink",
    "MeilisearchClient",
    "MeilisearchError",
    "Origin",
    "RecordValidationError",
    "Settings",
    "TaskOutcome",
    "TreeWalker",
    "TrigramIndex",
    "UnitDate",
    "WalkResult",
    "WalkerOptions",
    "correct_date_range",
    "import_document",
    "load_settings",
    "parse_unit_date",
    "sanitize_query",
]

__version__ = "0.1.0"
