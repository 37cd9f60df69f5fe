"""Exceptions raised by the knowledge base services."""


class KnowledgeBaseError(Exception):
    """Base exception for knowledge base errors."""

    def __init__(self, message: str, http_status: int = 500):
        self.message = message
        self.http_status = http_status
        super().__init__(message)


class KBFileNotFound(KnowledgeBaseError):
    def __init__(self, file_id: str):
        super().__init__(f"Knowledge base file '{file_id}' not found", 404)
        self.file_id = file_id


class MemoryItemNotFound(KnowledgeBaseError):
    def __init__(self, item_id: str):
        super().__init__(f"Memory item '{item_id}' not found", 404)
        self.item_id = item_id


class FeedbackForbidden(KnowledgeBaseError):
    def __init__(self, item_id: str):
        super().__init__(f"Not allowed to modify memory item '{item_id}'", 403)


class InvalidUpload(KnowledgeBaseError):
    def __init__(self, message: str):
        super().__init__(message, 400)


class InvalidStatusTransition(KnowledgeBaseError):
    def __init__(self, file_id: str, status: str, action: str):
        super().__init__(
            f"Cannot {action} file '{file_id}' while its status is '{status}'", 409
        )


class EmbeddingError(KnowledgeBaseError):
    """An embedding call failed after exhausting its retry budget."""

    def __init__(self, message: str):
        super().__init__(message, 503)


class EnqueueError(KnowledgeBaseError):
    """The job queue refused or failed to accept a job."""

    def __init__(self, message: str):
        super().__init__(message, 503)


class IndexingJobError(KnowledgeBaseError):
    """Raised by the job handler when indexing returns a failed result."""

    def __init__(self, file_id: str, message: str):
        super().__init__(message, 500)
        self.file_id = file_id
