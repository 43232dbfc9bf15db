from archive_index_pipeline.repositories.runs import IllegalTransitionError, RunRepository

__all__ = [
    "IllegalTransitionError",
    "RunRepository",
]
