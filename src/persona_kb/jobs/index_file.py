"""
Index-file jobs.

Upload and reindex requests enqueue a job here instead of indexing inline; a
worker process picks the job up and runs the indexing orchestrator.
"""

from __future__ import annotations

import asyncio
from typing import List, Optional, Protocol

from loguru import logger
from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from ..knowledge_base.errors import EnqueueError, IndexingJobError
from ..knowledge_base.models import IndexResult
from .queue import FailedJobHook, Job, JobHandler, JobOptions, WorkOptions

INDEX_FILE_QUEUE = "index-file"
DEFAULT_JOB_TIMEOUT_SECONDS = 2 * 60

INDEX_JOB_RETRY_LIMIT = 3
INDEX_JOB_RETRY_DELAY_SECONDS = 30
INDEX_JOB_EXPIRE_IN_SECONDS = 60 * 60


class JobQueue(Protocol):
    async def send(
        self, name: str, data: dict, options: Optional[JobOptions] = None
    ) -> str: ...

    async def work(
        self,
        name: str,
        options: Optional[WorkOptions] = None,
        handler: Optional[JobHandler] = None,
        on_failed: Optional[FailedJobHook] = None,
    ) -> str: ...


class FileIndexer(Protocol):
    async def index_file(
        self, file_id: str, cancel_event: Optional[asyncio.Event] = None
    ) -> IndexResult: ...

    async def mark_failed(self, file_id: str) -> None: ...


class IndexFilePayload(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    file_id: str
    user_id: str


class IndexFileScheduler:
    """
    Enqueues index-file jobs and handles them on the worker side.

    The orchestrator reports failures as data; `handle_index_file` turns a
    failed result into an exception so the queue records the failure and
    retries the job.
    """

    def __init__(
        self,
        queue: JobQueue,
        orchestrator: Optional[FileIndexer] = None,
        job_timeout_seconds: float = DEFAULT_JOB_TIMEOUT_SECONDS,
    ):
        """
        Initialize the scheduler.

        Args:
            queue: Job queue used to send and receive jobs
            orchestrator: Indexing orchestrator; only needed on the worker side
            job_timeout_seconds: Per-job time limit for the worker
        """
        self.queue = queue
        self.orchestrator = orchestrator
        self.job_timeout_seconds = job_timeout_seconds
        self._shutdown = asyncio.Event()

    async def enqueue_index_file(
        self, file_id: str, user_id: str, priority: int = 0
    ) -> str:
        """
        Enqueue a file indexing job.

        Args:
            file_id: Knowledge base file id
            user_id: Owning user id
            priority: Higher priority jobs are processed first

        Returns:
            The job id

        Raises:
            EnqueueError: If the queue rejected the job
        """
        payload = IndexFilePayload(file_id=file_id, user_id=user_id)
        options = JobOptions(
            priority=priority,
            retry_limit=INDEX_JOB_RETRY_LIMIT,
            retry_delay=INDEX_JOB_RETRY_DELAY_SECONDS,
            expire_in_seconds=INDEX_JOB_EXPIRE_IN_SECONDS,
        )

        try:
            job_id = await self.queue.send(
                INDEX_FILE_QUEUE, payload.model_dump(by_alias=True), options
            )
        except Exception as e:
            logger.error(
                f"❌ Failed to enqueue index job for file '{file_id}', user '{user_id}': {e}"
            )
            raise EnqueueError(f"Failed to enqueue indexing job: {e}") from e

        if not job_id:
            raise EnqueueError("Job queue did not return a job id")

        logger.info(f"📬 Enqueued job {job_id} for file '{file_id}' (priority={priority})")
        return job_id

    async def handle_index_file(
        self, job: Job, cancel_event: Optional[asyncio.Event] = None
    ) -> IndexResult:
        """
        Run indexing for one job.

        Raises:
            IndexingJobError: When indexing reports a failure, so the queue
                retries the job
        """
        if self.orchestrator is None:
            raise RuntimeError("IndexFileScheduler has no orchestrator")

        payload = IndexFilePayload.model_validate(job.data)
        logger.info(
            f"⚙️ Processing job {job.id} for file '{payload.file_id}' (user: {payload.user_id})"
        )

        result = await self.orchestrator.index_file(payload.file_id, cancel_event)
        if not result.success:
            logger.error(f"❌ Job {job.id} failed: {result.error}")
            raise IndexingJobError(payload.file_id, result.error or "Indexing failed")

        logger.info(f"✅ Job {job.id} completed: {result.chunks_created} chunks created")
        return result

    async def _handle_batch(self, jobs: List[Job]) -> None:
        for job in jobs:
            try:
                await asyncio.wait_for(
                    self.handle_index_file(job, self._shutdown),
                    timeout=self.job_timeout_seconds,
                )
            except asyncio.TimeoutError:
                # Not re-raised: the job is completed instead of retried.
                logger.error(
                    f"⏱️ Job {job.id} timed out after {self.job_timeout_seconds}s, not retrying"
                )
                await self.orchestrator.mark_failed(job.data.get("fileId", ""))

    async def _handle_failed_job(self, job: Job) -> None:
        # Covers jobs the orchestrator never finished, e.g. after a worker crash
        file_id = job.data.get("fileId")
        if file_id and self.orchestrator is not None:
            logger.warning(f"⚠️ Job {job.id} gave up, marking file '{file_id}' as failed")
            await self.orchestrator.mark_failed(file_id)

    async def register_index_file_handler(self) -> str:
        """
        Subscribe the index-file handler to the queue.

        Returns:
            Worker id from the queue
        """
        worker_id = await self.queue.work(
            INDEX_FILE_QUEUE,
            WorkOptions(batch_size=1, polling_interval_seconds=2),
            self._handle_batch,
            on_failed=self._handle_failed_job,
        )
        logger.info(f"👷 Handler registered for queue: {INDEX_FILE_QUEUE}")
        return worker_id

    def shutdown(self) -> None:
        """Signal in-flight indexing to stop at its next cancellation check."""
        self._shutdown.set()
