"""Background jobs: the SQLite job queue and index-file scheduling."""

from .index_file import INDEX_FILE_QUEUE, IndexFilePayload, IndexFileScheduler
from .queue import Job, JobOptions, SQLiteJobQueue, WorkOptions

__all__ = [
    "INDEX_FILE_QUEUE",
    "IndexFilePayload",
    "IndexFileScheduler",
    "Job",
    "JobOptions",
    "SQLiteJobQueue",
    "WorkOptions",
]
