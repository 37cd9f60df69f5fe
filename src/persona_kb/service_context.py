"""
Wiring of the knowledge base services.

One `ServiceContext` is built per process (API server or worker) and passed to
whatever needs the services; nothing is kept in module-level globals.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from loguru import logger

from .config_manager import KBSettings, RagConfig, load_rag_config
from .jobs.index_file import IndexFileScheduler
from .jobs.queue import SQLiteJobQueue
from .knowledge_base import (
    DocumentProcessor,
    EmbeddingClient,
    IndexingOrchestrator,
    KnowledgeBaseManager,
    LocalFileStorage,
    MemoryFeedbackService,
    MemoryRetriever,
    MemoryStore,
    TextChunker,
)


@dataclass
class ServiceContext:
    config: RagConfig
    store: MemoryStore
    storage: LocalFileStorage
    embedder: EmbeddingClient
    orchestrator: IndexingOrchestrator
    queue: SQLiteJobQueue
    scheduler: IndexFileScheduler
    manager: KnowledgeBaseManager
    retriever: MemoryRetriever
    feedback: MemoryFeedbackService

    @classmethod
    def create(
        cls,
        config: Optional[RagConfig] = None,
        database_path: Optional[Path] = None,
        queue_database_path: Optional[Path] = None,
        storage_path: Optional[Path] = None,
        embedder: Optional[EmbeddingClient] = None,
        use_job_queue: bool = True,
        settings: Optional[KBSettings] = None,
    ) -> "ServiceContext":
        """
        Build every service from configuration.

        Args:
            config: RAG config; loaded from YAML when omitted
            database_path: SQLite file for files and memory items
            queue_database_path: SQLite file for the job queue
            storage_path: Root directory for uploaded bytes
            embedder: Embedding client override (tests)
            use_job_queue: Index through the job queue instead of inline
            settings: Environment settings; read once here when omitted

        Returns:
            A ready-to-initialize ServiceContext
        """
        settings = settings or KBSettings()
        config = config or load_rag_config(settings=settings)
        store = MemoryStore(database_path or settings.kb_database_path)
        storage = LocalFileStorage(storage_path or settings.kb_storage_path)
        embedder = embedder or EmbeddingClient(config.embedding, settings=settings)
        processor = DocumentProcessor(
            storage,
            TextChunker(config.chunking.chunk_size, config.chunking.chunk_overlap),
        )
        orchestrator = IndexingOrchestrator(
            store, processor, embedder, concurrency=config.embedding.concurrency
        )
        queue = SQLiteJobQueue(queue_database_path or settings.kb_queue_database_path)
        scheduler = IndexFileScheduler(queue, orchestrator)
        manager = KnowledgeBaseManager(
            store,
            storage,
            orchestrator,
            config,
            scheduler=scheduler if use_job_queue else None,
        )

        return cls(
            config=config,
            store=store,
            storage=storage,
            embedder=embedder,
            orchestrator=orchestrator,
            queue=queue,
            scheduler=scheduler,
            manager=manager,
            retriever=MemoryRetriever(store, embedder, config.retrieval),
            feedback=MemoryFeedbackService(store),
        )

    async def initialize(self) -> None:
        await self.store.initialize()
        await self.queue.start()
        logger.info("✅ Service context initialized")

    async def close(self) -> None:
        self.scheduler.shutdown()
        await self.queue.stop()
        await self.embedder.close()
