"""
Durable job queue backed by SQLite.

Implements the small queue contract the job modules rely on:
`send(name, data, options) -> job_id`, `work(name, options, handler)` and
`stop()`. Jobs are claimed with a single `UPDATE ... RETURNING`, so several
worker processes can poll the same database and each job is delivered once.
"""

from __future__ import annotations

import asyncio
import json
import time
import uuid
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, List, Optional

import aiosqlite
from loguru import logger
from pydantic import BaseModel, Field

_SCHEMA = """
CREATE TABLE IF NOT EXISTS jobs (
    id TEXT PRIMARY KEY,
    name TEXT NOT NULL,
    data TEXT NOT NULL,
    state TEXT NOT NULL DEFAULT 'created',
    priority INTEGER NOT NULL DEFAULT 0,
    retry_limit INTEGER NOT NULL DEFAULT 0,
    retry_delay INTEGER NOT NULL DEFAULT 0,
    retry_count INTEGER NOT NULL DEFAULT 0,
    expire_in_seconds INTEGER NOT NULL,
    created_on REAL NOT NULL,
    start_after REAL NOT NULL,
    started_on REAL,
    completed_on REAL,
    output TEXT
);
CREATE INDEX IF NOT EXISTS jobs_fetch_idx ON jobs (name, state, priority, created_on);
"""

_JOB_COLUMNS = (
    "id, name, data, state, priority, retry_limit, retry_delay, retry_count, "
    "expire_in_seconds, created_on, start_after, started_on, completed_on, output"
)


class JobOptions(BaseModel):
    """Per-job options given to `send`."""

    priority: int = 0
    retry_limit: int = 0
    retry_delay: int = 0
    expire_in_seconds: int = 15 * 60


class WorkOptions(BaseModel):
    """Options for a `work` subscription."""

    batch_size: int = Field(default=1, ge=1)
    polling_interval_seconds: float = Field(default=2.0, gt=0)


class Job(BaseModel):
    id: str
    name: str
    data: Dict[str, Any]
    state: str
    priority: int = 0
    retry_limit: int = 0
    retry_delay: int = 0
    retry_count: int = 0
    expire_in_seconds: int
    created_on: float
    start_after: float
    started_on: Optional[float] = None
    completed_on: Optional[float] = None
    output: Optional[Dict[str, Any]] = None


JobHandler = Callable[[List[Job]], Awaitable[None]]
FailedJobHook = Callable[[Job], Awaitable[None]]

EXPIRED_ERROR = "Job expired"


def _row_to_job(row: aiosqlite.Row) -> Job:
    data = dict(row)
    data["data"] = json.loads(data["data"])
    data["output"] = json.loads(data["output"]) if data["output"] else None
    return Job.model_validate(data)


async def _first_row(cursor: aiosqlite.Cursor) -> Optional[aiosqlite.Row]:
    # Draining the cursor finishes RETURNING statements before commit.
    rows = await cursor.fetchall()
    return rows[0] if rows else None


class SQLiteJobQueue:
    """
    Polling job queue with priorities, retries and expiry.

    A failing handler puts its jobs back in `retry` state after `retry_delay`
    seconds until `retry_limit` is used up, then marks them `failed`. An active
    job older than `expire_in_seconds` is failed the same way on the next
    fetch. Waiting jobs never expire.
    """

    def __init__(self, db_path: str | Path):
        """
        Initialize the queue.

        Args:
            db_path: SQLite database used for the jobs table
        """
        self.db_path = Path(db_path)
        self.db_path.parent.mkdir(parents=True, exist_ok=True)
        self._started = False
        self._stop_event = asyncio.Event()
        self._workers: Dict[str, asyncio.Task] = {}
        self._failure_hooks: Dict[str, FailedJobHook] = {}

    async def _open(self) -> aiosqlite.Connection:
        conn = await aiosqlite.connect(self.db_path, timeout=30)
        conn.row_factory = aiosqlite.Row
        await conn.execute("PRAGMA busy_timeout = 30000")
        return conn

    async def start(self) -> None:
        """Create the jobs table; safe to call more than once."""
        if self._started:
            return
        conn = await self._open()
        try:
            await conn.execute("PRAGMA journal_mode = WAL")
            await conn.executescript(_SCHEMA)
            await conn.commit()
        finally:
            await conn.close()
        self._started = True
        self._stop_event.clear()
        logger.info(f"📬 Job queue started at: {self.db_path}")

    async def send(
        self, name: str, data: Dict[str, Any], options: Optional[JobOptions] = None
    ) -> str:
        """
        Add a job to a queue.

        Args:
            name: Queue name
            data: JSON-serializable payload
            options: Priority, retry and expiry options

        Returns:
            The new job id
        """
        await self.start()
        options = options or JobOptions()
        job_id = str(uuid.uuid4())
        now = time.time()

        conn = await self._open()
        try:
            await conn.execute(
                "INSERT INTO jobs (id, name, data, priority, retry_limit, retry_delay, "
                "expire_in_seconds, created_on, start_after) "
                "VALUES (?, ?, ?, ?, ?, ?, ?, ?, ?)",
                (
                    job_id,
                    name,
                    json.dumps(data),
                    options.priority,
                    options.retry_limit,
                    options.retry_delay,
                    options.expire_in_seconds,
                    now,
                    now,
                ),
            )
            await conn.commit()
        finally:
            await conn.close()
        return job_id

    async def fetch(self, name: str, batch_size: int = 1) -> List[Job]:
        """
        Claim up to `batch_size` runnable jobs, highest priority first.

        Active jobs that have run longer than their `expire_in_seconds` (their
        worker died or hung) are failed first, which schedules a retry while
        budget remains.

        Returns:
            The claimed jobs, now in `active` state
        """
        await self.start()
        now = time.time()
        given_up: List[Job] = []
        conn = await self._open()
        try:
            await conn.execute("BEGIN IMMEDIATE")
            cursor = await conn.execute(
                "SELECT id FROM jobs WHERE name = ? AND state = 'active' "
                "AND started_on + expire_in_seconds < ?",
                (name, now),
            )
            for row in await cursor.fetchall():
                logger.warning(f"⏰ Job {row['id']} in '{name}' expired while active")
                job = await self._fail_active(conn, row["id"], EXPIRED_ERROR, now)
                if job is not None:
                    given_up.append(job)

            cursor = await conn.execute(
                "UPDATE jobs SET state = 'active', started_on = ? "
                "WHERE id IN ("
                "  SELECT id FROM jobs WHERE name = ? AND state IN ('created', 'retry') "
                "  AND start_after <= ? ORDER BY priority DESC, created_on LIMIT ?"
                f") RETURNING {_JOB_COLUMNS}",
                (now, name, now, batch_size),
            )
            rows = await cursor.fetchall()
            await conn.commit()
        finally:
            await conn.close()

        for job in given_up:
            await self._notify_failed(job)

        jobs = [_row_to_job(row) for row in rows]
        jobs.sort(key=lambda j: (-j.priority, j.created_on))
        return jobs

    async def complete(self, job_id: str, output: Optional[Dict[str, Any]] = None) -> None:
        conn = await self._open()
        try:
            await conn.execute(
                "UPDATE jobs SET state = 'completed', completed_on = ?, output = ? "
                "WHERE id = ? AND state = 'active'",
                (time.time(), json.dumps(output) if output else None, job_id),
            )
            await conn.commit()
        finally:
            await conn.close()

    async def fail(self, job_id: str, error: str) -> None:
        """Schedule a retry if the job has budget left, otherwise mark it failed."""
        conn = await self._open()
        try:
            job = await self._fail_active(conn, job_id, error, time.time())
            await conn.commit()
        finally:
            await conn.close()
        if job is not None:
            await self._notify_failed(job)

    async def _fail_active(
        self, conn: aiosqlite.Connection, job_id: str, error: str, now: float
    ) -> Optional[Job]:
        """Move an active job to `retry` or `failed`; returns the job if it failed for good."""
        output = json.dumps({"error": error})
        cursor = await conn.execute(
            "UPDATE jobs SET state = 'retry', retry_count = retry_count + 1, "
            "start_after = ? + retry_delay, output = ? "
            "WHERE id = ? AND state = 'active' AND retry_count < retry_limit "
            "RETURNING retry_count, retry_limit",
            (now, output, job_id),
        )
        row = await _first_row(cursor)
        if row is not None:
            logger.warning(
                f"🔁 Job {job_id} will retry ({row['retry_count']}/{row['retry_limit']}): {error}"
            )
            return None

        cursor = await conn.execute(
            "UPDATE jobs SET state = 'failed', completed_on = ?, output = ? "
            f"WHERE id = ? AND state = 'active' RETURNING {_JOB_COLUMNS}",
            (now, output, job_id),
        )
        row = await _first_row(cursor)
        if row is None:
            return None
        logger.error(f"❌ Job {job_id} failed permanently: {error}")
        return _row_to_job(row)

    async def _notify_failed(self, job: Job) -> None:
        hook = self._failure_hooks.get(job.name)
        if hook is None:
            return
        try:
            await hook(job)
        except Exception as e:
            logger.error(f"❌ Failure hook for job {job.id} raised: {e}")

    async def get_job(self, job_id: str) -> Optional[Job]:
        await self.start()
        conn = await self._open()
        try:
            cursor = await conn.execute(
                f"SELECT {_JOB_COLUMNS} FROM jobs WHERE id = ?", (job_id,)
            )
            row = await _first_row(cursor)
        finally:
            await conn.close()
        return _row_to_job(row) if row else None

    async def work(
        self,
        name: str,
        options: Optional[WorkOptions] = None,
        handler: Optional[JobHandler] = None,
        on_failed: Optional[FailedJobHook] = None,
    ) -> str:
        """
        Subscribe a handler to a queue.

        The handler receives a batch of jobs. If it returns, the batch is
        completed; if it raises, every job in the batch is failed (and retried
        according to its options). `on_failed` is awaited once for each job of
        this queue that fails for good, including jobs that expired while active.

        Returns:
            Worker id
        """
        if handler is None:
            raise ValueError("A handler is required")
        await self.start()
        options = options or WorkOptions()
        if on_failed is not None:
            self._failure_hooks[name] = on_failed
        worker_id = f"{name}:{uuid.uuid4().hex[:8]}"
        self._workers[worker_id] = asyncio.create_task(
            self._poll(name, options, handler), name=worker_id
        )
        logger.info(
            f"👷 Worker {worker_id} polling '{name}' every "
            f"{options.polling_interval_seconds}s (batch_size={options.batch_size})"
        )
        return worker_id

    async def _poll(self, name: str, options: WorkOptions, handler: JobHandler) -> None:
        while not self._stop_event.is_set():
            try:
                jobs = await self.fetch(name, options.batch_size)
            except aiosqlite.Error as e:
                logger.error(f"❌ Failed to fetch jobs from '{name}': {e}")
                jobs = []

            if jobs:
                await self._run_batch(jobs, handler)
                continue

            try:
                await asyncio.wait_for(
                    self._stop_event.wait(), timeout=options.polling_interval_seconds
                )
            except asyncio.TimeoutError:
                pass

    async def _run_batch(self, jobs: List[Job], handler: JobHandler) -> None:
        try:
            await handler(jobs)
        except Exception as e:
            for job in jobs:
                await self.fail(job.id, str(e) or e.__class__.__name__)
            return
        for job in jobs:
            await self.complete(job.id)

    async def stop(self, graceful: bool = True, timeout: float = 30.0) -> None:
        """
        Stop all workers.

        Args:
            graceful: Let in-flight batches finish (up to `timeout` seconds)
            timeout: Seconds to wait before cancelling workers
        """
        self._stop_event.set()
        tasks = list(self._workers.values())
        self._workers.clear()
        self._started = False
        if not tasks:
            return

        if graceful:
            _, pending = await asyncio.wait(tasks, timeout=timeout)
        else:
            pending = set(tasks)
        for task in pending:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        logger.info(f"🛑 Job queue stopped ({len(tasks)} worker(s))")
