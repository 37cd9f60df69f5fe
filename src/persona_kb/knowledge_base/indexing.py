"""
Indexing pipeline for knowledge base files.

`IndexingOrchestrator.index_file` chunks a stored file, embeds every chunk and
atomically replaces the file's memory items, driving the file status through
pending -> indexing -> ready/failed. Expected failures come back as an
`IndexResult` with `success=False`; nothing is raised to the caller.
"""

from __future__ import annotations

import asyncio
import uuid
from typing import Optional

import aiosqlite
from loguru import logger

from .embedding import Embedder
from .errors import EmbeddingError
from .ingestion import DocumentProcessor
from .memory_store import MemoryStore
from .models import (
    EmbeddedChunk,
    FileStatus,
    IndexResult,
    KnowledgeBaseFile,
    MemoryItem,
    TextChunk,
)

CANCELLED_ERROR = "Operation cancelled"
FILE_NOT_FOUND_ERROR = "File not found"
NO_TEXT_ERROR = "No text content extracted"
ALL_CHUNKS_FAILED_ERROR = "All chunks failed to embed"


class _Cancelled(Exception):
    pass


def _failure(file_id: str, error: str, total_chunks: int = 0) -> IndexResult:
    return IndexResult(
        file_id=file_id,
        success=False,
        chunks_created=0,
        total_chunks=total_chunks,
        error=error,
    )


class IndexingOrchestrator:
    """
    Coordinates chunking, embedding and persistence for one file at a time.

    Safe to run concurrently for different files. For the same file, the
    reindex status guard in the manager keeps a second run from starting.
    """

    def __init__(
        self,
        store: MemoryStore,
        processor: DocumentProcessor,
        embedder: Embedder,
        concurrency: int = 2,
    ):
        """
        Initialize the orchestrator.

        Args:
            store: Memory item store holding files and memory items
            processor: Extracts and chunks file text
            embedder: Embedding client used for the availability probe and chunks
            concurrency: Maximum number of embedding calls in flight
        """
        self.store = store
        self.processor = processor
        self.embedder = embedder
        self.concurrency = max(1, concurrency)

    async def index_file(
        self, file_id: str, cancel_event: Optional[asyncio.Event] = None
    ) -> IndexResult:
        """
        Index a single knowledge base file.

        Args:
            file_id: Knowledge base file id
            cancel_event: Set by the caller (e.g. worker shutdown) to abort
                cooperatively; nothing is written after cancellation

        Returns:
            IndexResult with the number of created and total chunks
        """

        def cancelled() -> bool:
            return cancel_event is not None and cancel_event.is_set()

        if cancelled():
            return _failure(file_id, CANCELLED_ERROR)

        total_chunks = 0
        try:
            kb_file = await self.store.get_file(file_id)
            if kb_file is None:
                logger.warning(f"⚠️ Indexing skipped, file '{file_id}' not found")
                return _failure(file_id, FILE_NOT_FOUND_ERROR)

            if cancelled():
                return _failure(file_id, CANCELLED_ERROR)

            status = await self.embedder.check_embedding_availability()
            if not status.available:
                reason = status.error or "No provider configured"
                logger.error(f"❌ Embedding service unavailable for '{file_id}': {reason}")
                await self.store.update_file_status(file_id, FileStatus.FAILED.value)
                return _failure(file_id, f"Embedding service unavailable: {reason}")

            await self.store.update_file_status(file_id, FileStatus.INDEXING.value)
            logger.info(f"📚 Indexing '{kb_file.file_name}' ({file_id})")

            if cancelled():
                raise _Cancelled()

            chunks = await self.processor.process_file(
                kb_file.storage_path, kb_file.file_type
            )
            total_chunks = len(chunks)

            if not chunks:
                await self.store.update_file_status(file_id, FileStatus.FAILED.value)
                return _failure(file_id, NO_TEXT_ERROR)

            embedded = await self._embed_chunks(chunks, cancelled)

            if not embedded:
                logger.error(f"❌ All {total_chunks} chunks failed to embed for '{file_id}'")
                await self.store.update_file_status(file_id, FileStatus.FAILED.value)
                return _failure(file_id, ALL_CHUNKS_FAILED_ERROR, total_chunks)

            if cancelled():
                raise _Cancelled()

            items = [self._to_memory_item(kb_file, e) for e in embedded]
            async with self.store.transaction() as conn:
                created = await self.store.replace_source_items(
                    "file", file_id, items, conn=conn
                )
                await self.store.update_file_status(
                    file_id, FileStatus.READY.value, conn=conn
                )

        except _Cancelled:
            logger.warning(f"⚠️ Indexing of '{file_id}' cancelled")
            await self.mark_failed(file_id)
            return _failure(file_id, CANCELLED_ERROR, total_chunks)
        except Exception as e:
            logger.exception(f"❌ Indexing of '{file_id}' failed: {e}")
            await self.mark_failed(file_id)
            return _failure(file_id, str(e) or e.__class__.__name__, total_chunks)

        failed = total_chunks - created
        if failed:
            logger.warning(f"⚠️ {failed}/{total_chunks} chunks failed for file '{file_id}'")
        logger.info(
            f"✅ Indexed '{kb_file.file_name}': {created}/{total_chunks} chunks stored"
        )

        return IndexResult(
            file_id=file_id,
            success=True,
            chunks_created=created,
            total_chunks=total_chunks,
        )

    async def _embed_chunks(self, chunks: list[TextChunk], cancelled) -> list[EmbeddedChunk]:
        """Embed chunks with bounded concurrency, dropping chunks that fail."""
        semaphore = asyncio.Semaphore(self.concurrency)

        async def _embed(chunk: TextChunk) -> Optional[EmbeddedChunk]:
            async with semaphore:
                if cancelled():
                    raise _Cancelled()
                try:
                    result = await self.embedder.generate_embedding(chunk.content)
                except EmbeddingError as e:
                    logger.warning(f"⚠️ Failed to embed chunk {chunk.index}: {e}")
                    return None
                return EmbeddedChunk(chunk=chunk, result=result)

        tasks = [asyncio.create_task(_embed(c)) for c in chunks]
        try:
            results = await asyncio.gather(*tasks)
        finally:
            # a cancellation stops the chunks still queued on the semaphore
            for task in tasks:
                task.cancel()
            await asyncio.gather(*tasks, return_exceptions=True)
        return [r for r in results if r is not None]

    @staticmethod
    def _to_memory_item(kb_file: KnowledgeBaseFile, embedded: EmbeddedChunk) -> MemoryItem:
        chunk = embedded.chunk
        return MemoryItem(
            id=str(uuid.uuid4()),
            owner_type=kb_file.owner_type,
            owner_id=kb_file.owner_id,
            source_type="file",
            source_id=kb_file.id,
            content=chunk.content,
            embedding=embedded.result.embedding,
            tags=list(kb_file.tags),
            chunk_index=chunk.index,
            start_char=chunk.start_char,
            end_char=chunk.end_char,
            embedding_provider=embedded.result.provider,
            embedding_model=embedded.result.model,
        )

    async def mark_failed(self, file_id: str) -> None:
        """Best-effort status update after an error."""
        try:
            await self.store.update_file_status(file_id, FileStatus.FAILED.value)
        except aiosqlite.Error as e:
            logger.error(f"❌ Could not mark '{file_id}' as failed: {e}")
