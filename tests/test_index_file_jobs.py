"""Unit tests for index-file job scheduling and handling."""

from __future__ import annotations

import asyncio
import time
import unittest
from pathlib import Path
import sys
from unittest.mock import AsyncMock


PROJECT_ROOT = Path(__file__).resolve().parents[1]
SRC_DIR = PROJECT_ROOT / "src"
if str(SRC_DIR) not in sys.path:
    sys.path.insert(0, str(SRC_DIR))


def _job(file_id: str = "f1", user_id: str = "u1"):
    from persona_kb.jobs.queue import Job

    now = time.time()
    return Job(
        id="job-1",
        name="index-file",
        data={"fileId": file_id, "userId": user_id},
        state="active",
        expire_in_seconds=3600,
        created_on=now,
        start_after=now,
    )


class TestEnqueueIndexFile(unittest.IsolatedAsyncioTestCase):
    async def test_sends_payload_with_retry_options(self) -> None:
        from persona_kb.jobs.index_file import IndexFileScheduler
        from persona_kb.jobs.queue import JobOptions

        queue = AsyncMock()
        queue.send.return_value = "job-123"
        scheduler = IndexFileScheduler(queue)

        job_id = await scheduler.enqueue_index_file("f1", "u1", priority=5)

        self.assertEqual(job_id, "job-123")
        queue.send.assert_awaited_once_with(
            "index-file",
            {"fileId": "f1", "userId": "u1"},
            JobOptions(priority=5, retry_limit=3, retry_delay=30, expire_in_seconds=3600),
        )

    async def test_priority_defaults_to_zero(self) -> None:
        from persona_kb.jobs.index_file import IndexFileScheduler

        queue = AsyncMock()
        queue.send.return_value = "job-1"

        await IndexFileScheduler(queue).enqueue_index_file("f1", "u1")

        options = queue.send.await_args.args[2]
        self.assertEqual(options.priority, 0)

    async def test_queue_failure_raises_enqueue_error(self) -> None:
        from persona_kb.jobs.index_file import IndexFileScheduler
        from persona_kb.knowledge_base.errors import EnqueueError

        queue = AsyncMock()
        queue.send.side_effect = ConnectionError("queue down")

        with self.assertRaises(EnqueueError) as ctx:
            await IndexFileScheduler(queue).enqueue_index_file("f1", "u1")
        self.assertIn("queue down", ctx.exception.message)

    async def test_missing_job_id_raises_enqueue_error(self) -> None:
        from persona_kb.jobs.index_file import IndexFileScheduler
        from persona_kb.knowledge_base.errors import EnqueueError

        queue = AsyncMock()
        queue.send.return_value = None

        with self.assertRaises(EnqueueError):
            await IndexFileScheduler(queue).enqueue_index_file("f1", "u1")


class TestHandleIndexFile(unittest.IsolatedAsyncioTestCase):
    async def test_successful_result_is_returned(self) -> None:
        from persona_kb.jobs.index_file import IndexFileScheduler
        from persona_kb.knowledge_base.models import IndexResult

        orchestrator = AsyncMock()
        orchestrator.index_file.return_value = IndexResult(
            file_id="f1", success=True, chunks_created=2, total_chunks=2
        )
        scheduler = IndexFileScheduler(AsyncMock(), orchestrator)

        result = await scheduler.handle_index_file(_job())

        self.assertTrue(result.success)
        self.assertEqual(orchestrator.index_file.await_args.args[0], "f1")

    async def test_failed_result_raises_so_the_queue_retries(self) -> None:
        from persona_kb.jobs.index_file import IndexFileScheduler
        from persona_kb.knowledge_base.errors import IndexingJobError
        from persona_kb.knowledge_base.models import IndexResult

        orchestrator = AsyncMock()
        orchestrator.index_file.return_value = IndexResult(
            file_id="f1", success=False, total_chunks=2, error="All chunks failed to embed"
        )
        scheduler = IndexFileScheduler(AsyncMock(), orchestrator)

        with self.assertRaises(IndexingJobError) as ctx:
            await scheduler.handle_index_file(_job())
        self.assertEqual(ctx.exception.message, "All chunks failed to embed")
        self.assertEqual(ctx.exception.file_id, "f1")

    async def test_register_subscribes_with_batch_size_one(self) -> None:
        from persona_kb.jobs.index_file import IndexFileScheduler
        from persona_kb.jobs.queue import WorkOptions

        queue = AsyncMock()
        queue.work.return_value = "index-file:abc"
        scheduler = IndexFileScheduler(queue, AsyncMock())

        worker_id = await scheduler.register_index_file_handler()

        self.assertEqual(worker_id, "index-file:abc")
        name, options, handler = queue.work.await_args.args
        self.assertEqual(name, "index-file")
        self.assertEqual(options, WorkOptions(batch_size=1, polling_interval_seconds=2))
        self.assertTrue(callable(handler))
        self.assertEqual(
            queue.work.await_args.kwargs["on_failed"], scheduler._handle_failed_job
        )

    async def test_timeout_marks_file_failed_without_raising(self) -> None:
        from persona_kb.jobs.index_file import IndexFileScheduler

        async def slow_index(file_id, cancel_event=None):
            await asyncio.sleep(5)

        orchestrator = AsyncMock()
        orchestrator.index_file.side_effect = slow_index
        scheduler = IndexFileScheduler(AsyncMock(), orchestrator, job_timeout_seconds=0.05)

        await scheduler._handle_batch([_job()])

        orchestrator.mark_failed.assert_awaited_once_with("f1")

    async def test_shutdown_sets_the_cancel_signal(self) -> None:
        from persona_kb.jobs.index_file import IndexFileScheduler
        from persona_kb.knowledge_base.models import IndexResult

        orchestrator = AsyncMock()
        orchestrator.index_file.return_value = IndexResult(file_id="f1", success=True)
        scheduler = IndexFileScheduler(AsyncMock(), orchestrator)

        scheduler.shutdown()
        await scheduler.handle_index_file(_job(), scheduler._shutdown)

        cancel_event = orchestrator.index_file.await_args.args[1]
        self.assertTrue(cancel_event.is_set())

class TestAbandonedJobs(unittest.IsolatedAsyncioTestCase):
    """A worker that dies mid-job must not leave the file stuck in `indexing`."""

    async def asyncSetUp(self) -> None:
        import tempfile

        from persona_kb.jobs.queue import SQLiteJobQueue

        self._tmp = tempfile.TemporaryDirectory()
        self.queue = SQLiteJobQueue(Path(self._tmp.name) / "jobs.db")
        await self.queue.start()

    async def asyncTearDown(self) -> None:
        await self.queue.stop()
        self._tmp.cleanup()

    async def abandon(self, job_id: str, retry_count: int) -> None:
        import aiosqlite

        async with aiosqlite.connect(self.queue.db_path) as conn:
            await conn.execute(
                "UPDATE jobs SET started_on = started_on - 7200, retry_count = ? WHERE id = ?",
                (retry_count, job_id),
            )
            await conn.commit()

    async def test_exhausted_job_marks_file_failed(self) -> None:
        from persona_kb.jobs.index_file import INDEX_FILE_QUEUE, IndexFileScheduler

        orchestrator = AsyncMock()
        scheduler = IndexFileScheduler(self.queue, orchestrator)
        job_id = await scheduler.enqueue_index_file("f1", "u1")
        await scheduler.register_index_file_handler()
        await self.queue.stop()

        # claimed by a worker that never reports back
        [claimed] = await self.queue.fetch(INDEX_FILE_QUEUE)
        await self.abandon(claimed.id, retry_count=3)

        self.assertEqual(await self.queue.fetch(INDEX_FILE_QUEUE), [])
        job = await self.queue.get_job(job_id)
        self.assertEqual(job.state, "failed")
        self.assertEqual(job.output, {"error": "Job expired"})
        orchestrator.mark_failed.assert_awaited_once_with("f1")

    async def test_job_with_budget_left_is_retried(self) -> None:
        from persona_kb.jobs.index_file import INDEX_FILE_QUEUE, IndexFileScheduler

        orchestrator = AsyncMock()
        scheduler = IndexFileScheduler(self.queue, orchestrator)
        job_id = await scheduler.enqueue_index_file("f1", "u1")

        await self.queue.fetch(INDEX_FILE_QUEUE)
        await self.abandon(job_id, retry_count=0)
        await self.queue.fetch(INDEX_FILE_QUEUE)

        job = await self.queue.get_job(job_id)
        self.assertEqual((job.state, job.retry_count), ("retry", 1))
        orchestrator.mark_failed.assert_not_awaited()



if __name__ == "__main__":
    unittest.main()
