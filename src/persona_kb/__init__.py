"""Per-character knowledge base: indexing pipeline, job scheduling and retrieval."""

__version__ = "0.1.0"
