"""
Main knowledge base manager interface.

Coordinates file storage, the memory item store, the indexing orchestrator and
the job scheduler behind the operations the HTTP routes expose.
"""

import uuid
from typing import List, Optional, Protocol, Union

from loguru import logger

from ..config_manager.knowledge_base import RagConfig, format_file_size
from .errors import InvalidStatusTransition, InvalidUpload, KBFileNotFound
from .indexing import IndexingOrchestrator
from .memory_store import MemoryStore
from .models import (
    FileStatus,
    KBStats,
    KnowledgeBaseFile,
    KnowledgeBaseFileDetail,
    ReindexResult,
    UploadResult,
)
from .storage_manager import FileStorage, get_mime_type

REINDEX_PRIORITY = 10
REINDEX_IN_PROGRESS_MESSAGE = "Reindex already in progress"


class IndexScheduler(Protocol):
    async def enqueue_index_file(
        self, file_id: str, user_id: str, priority: int = 0
    ) -> str: ...


def parse_tags(tags: Union[str, List[str], None]) -> List[str]:
    """Parse a comma-separated string (or list) into trimmed, non-empty tags."""
    if tags is None:
        return []
    raw = tags.split(",") if isinstance(tags, str) else tags
    return [t.strip() for t in raw if t and t.strip()]


class KnowledgeBaseManager:
    """
    High-level manager for knowledge base files.

    Indexing runs through the job scheduler when one is configured, otherwise
    inline in the caller's request.
    """

    def __init__(
        self,
        store: MemoryStore,
        storage: FileStorage,
        orchestrator: IndexingOrchestrator,
        config: RagConfig,
        scheduler: Optional[IndexScheduler] = None,
    ):
        """
        Initialize the knowledge base manager.

        Args:
            store: Memory item store
            storage: File byte storage
            orchestrator: Indexing orchestrator used for inline indexing
            config: RAG configuration (upload limits)
            scheduler: Optional job scheduler for background indexing
        """
        self.store = store
        self.storage = storage
        self.orchestrator = orchestrator
        self.config = config
        self.scheduler = scheduler

        logger.info(
            f"🧠 Knowledge Base Manager initialized "
            f"({'queued' if scheduler else 'inline'} indexing)"
        )

    async def _get_owned_file(self, file_id: str, user_id: str) -> KnowledgeBaseFile:
        kb_file = await self.store.get_file(file_id, user_id=user_id)
        if kb_file is None:
            raise KBFileNotFound(file_id)
        return kb_file

    async def upload_file(
        self,
        user_id: str,
        file_name: str,
        content: bytes,
        character_id: Optional[str] = None,
        tags: Union[str, List[str], None] = None,
    ) -> UploadResult:
        """
        Store an uploaded file and start indexing it.

        Args:
            user_id: Uploading user
            file_name: Original filename
            content: File content as bytes
            character_id: Character whose knowledge base receives the file
            tags: Comma-separated string or list of tags

        Returns:
            UploadResult with the file record and either the job id (queued)
            or the indexing result (inline)

        Raises:
            InvalidUpload: If the file is empty or too large
            EnqueueError: If the indexing job could not be queued; the record
                and stored bytes are removed again
        """
        if not file_name:
            raise InvalidUpload("Filename is required")
        if not content:
            raise InvalidUpload("File is empty")

        max_size = self.config.upload.max_file_size_bytes
        if len(content) > max_size:
            raise InvalidUpload(f"File size exceeds limit ({format_file_size(max_size)})")

        stored = await self.storage.store(
            user_id, character_id or "personal", content, file_name
        )
        kb_file = KnowledgeBaseFile(
            id=str(uuid.uuid4()),
            user_id=user_id,
            character_id=character_id,
            file_name=stored.original_name,
            file_type=get_mime_type(stored.original_name),
            file_size_bytes=stored.size_bytes,
            storage_path=stored.path,
            status=FileStatus.PENDING.value,
            tags=parse_tags(tags),
        )

        await self.store.create_file(kb_file)

        if self.scheduler is None:
            logger.info(f"📤 Uploaded '{file_name}' for user '{user_id}', indexing inline")
            indexing = await self.orchestrator.index_file(kb_file.id)
            refreshed = await self.store.get_file(kb_file.id) or kb_file
            return UploadResult(file=refreshed, indexing=indexing)

        # The record is committed before enqueueing so a fast worker can see it.
        try:
            job_id = await self.scheduler.enqueue_index_file(kb_file.id, user_id)
        except Exception:
            await self.store.delete_file(kb_file.id)
            await self.storage.delete(stored.path)
            raise

        logger.info(f"📤 Uploaded '{file_name}' for user '{user_id}', job {job_id}")
        return UploadResult(file=kb_file, job_id=job_id)

    async def get_file(self, file_id: str, user_id: str) -> KnowledgeBaseFileDetail:
        """Fetch a user's file together with its current chunk count."""
        kb_file = await self._get_owned_file(file_id, user_id)
        chunk_count = await self.store.count_source_items("file", file_id)
        return KnowledgeBaseFileDetail(**kb_file.model_dump(), chunk_count=chunk_count)

    async def list_files(
        self, user_id: str, character_id: Optional[str] = None
    ) -> List[KnowledgeBaseFile]:
        return await self.store.list_files(user_id, character_id)

    async def pause_file(self, file_id: str, user_id: str) -> KnowledgeBaseFile:
        """
        Exclude a ready or failed file from retrieval.

        Raises:
            KBFileNotFound: If the user has no such file
            InvalidStatusTransition: If the file is pending, indexing or paused
        """
        kb_file = await self._get_owned_file(file_id, user_id)
        paused = await self.store.pause_file(file_id)
        if paused is None:
            raise InvalidStatusTransition(file_id, kb_file.status, "pause")
        logger.info(f"⏸️ Paused file '{file_id}' (was {paused.status_before_pause})")
        return paused

    async def resume_file(self, file_id: str, user_id: str) -> KnowledgeBaseFile:
        """Restore a paused file to the status it had before pausing."""
        kb_file = await self._get_owned_file(file_id, user_id)
        resumed = await self.store.resume_file(file_id)
        if resumed is None:
            raise InvalidStatusTransition(file_id, kb_file.status, "resume")
        logger.info(f"▶️ Resumed file '{file_id}' -> {resumed.status}")
        return resumed

    async def reindex_file(self, file_id: str, user_id: str) -> ReindexResult:
        """
        Queue a file for re-indexing unless work is already in flight.

        The status is moved to `pending` with a compare-and-swap inside a
        transaction that also enqueues the job; if enqueueing fails the
        transaction rolls back and the original status is kept.

        Returns:
            ReindexResult with the new job id, the inline IndexResult when no
            scheduler is configured, or a message and the unchanged record when
            a reindex is already in progress

        Raises:
            KBFileNotFound: If the user has no such file
            EnqueueError: If the job could not be queued
        """
        await self._get_owned_file(file_id, user_id)

        if self.scheduler is None:
            async with self.store.transaction() as conn:
                claimed = await self.store.claim_for_reindex(file_id, conn)
            if claimed is None:
                current = await self._get_owned_file(file_id, user_id)
                return ReindexResult(file=current, message=REINDEX_IN_PROGRESS_MESSAGE)
            indexing = await self.orchestrator.index_file(file_id)
            return ReindexResult(
                file=await self._get_owned_file(file_id, user_id), indexing=indexing
            )

        async with self.store.transaction() as conn:
            claimed = await self.store.claim_for_reindex(file_id, conn)
            if claimed is None:
                current = await self.store.get_file(file_id, conn=conn)
                logger.info(f"🔁 Reindex of '{file_id}' skipped, already in progress")
                return ReindexResult(file=current, message=REINDEX_IN_PROGRESS_MESSAGE)

            job_id = await self.scheduler.enqueue_index_file(
                file_id, user_id, priority=REINDEX_PRIORITY
            )

        logger.info(f"🔁 Reindex of '{file_id}' queued as job {job_id}")
        return ReindexResult(file=claimed, job_id=job_id)

    async def update_tags(
        self, file_id: str, user_id: str, tags: List[str]
    ) -> KnowledgeBaseFile:
        """Replace a file's tags. Already indexed chunks keep their old tags until reindex."""
        await self._get_owned_file(file_id, user_id)
        updated = await self.store.update_file_tags(file_id, parse_tags(tags))
        if updated is None:
            raise KBFileNotFound(file_id)
        return updated

    async def delete_file(self, file_id: str, user_id: str, hard: bool = False) -> int:
        """
        Delete a file.

        A soft delete pauses the file. A hard delete removes its memory items,
        its stored bytes and its record.

        Returns:
            Number of memory items deleted (0 for a soft delete)
        """
        kb_file = await self._get_owned_file(file_id, user_id)

        if not hard:
            await self.pause_file(file_id, user_id)
            return 0

        async with self.store.transaction() as conn:
            deleted_chunks = await self.store.delete_source_items("file", file_id, conn=conn)
            await self.store.delete_file(file_id, conn=conn)
        await self.storage.delete(kb_file.storage_path)

        logger.info(f"🗑️ Deleted file '{file_id}' and {deleted_chunks} memory items")
        return deleted_chunks

    async def get_stats(self, character_id: str) -> KBStats:
        return await self.store.character_stats(character_id)
