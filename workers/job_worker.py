"""
Background ingestion workers.

- WorkerPool          fixed number of asyncio workers, started once.
- worker loop         asks the queue for pending ids every POLL_INTERVAL s
                      (or as soon as wake() is called) and tries to claim one.
- process_job()       runs the pipeline for a claimed job and records the
                      terminal state.

A worker owns a job only after queue.claim() returned True for it; losing a
claim race just moves the worker on to the next pending id.
"""

import asyncio
import logging
import os

from ingest.pipeline import IngestPipeline
from models.job import Completed, Failed, JobResult
from workers.queue import JobQueue

logger = logging.getLogger(__name__)

WORKER_COUNT: int = int(os.getenv("WORKER_COUNT", "2"))
POLL_INTERVAL: float = float(os.getenv("POLL_INTERVAL", "3"))
RECORD_ATTEMPTS: int = 3
RECORD_BACKOFF: float = 0.5


async def _record(queue: JobQueue, job_id: str, result: JobResult) -> JobResult | None:
    """
    Write the terminal state for *job_id*, retrying the status write a few
    times. A completion that still cannot be stored is recorded as a failure
    so the job does not stay in processing.

    Returns the outcome actually stored, or None when nothing was written.
    """
    last_exc = None
    for attempt in range(1, RECORD_ATTEMPTS + 1):
        try:
            if isinstance(result, Completed):
                recorded = await queue.complete(job_id, result.response)
            else:
                recorded = await queue.fail(job_id, result.error)
            return result if recorded else None
        except Exception as exc:
            last_exc = exc
            logger.warning(
                "Could not record job result",
                extra={"job_id": job_id, "attempt": attempt, "error": str(exc)},
            )
            if attempt < RECORD_ATTEMPTS:
                await asyncio.sleep(RECORD_BACKOFF * attempt)

    if isinstance(result, Completed):
        fallback = Failed(f"worker: storage: could not record result: {last_exc}")
        try:
            return fallback if await queue.fail(job_id, fallback.error) else None
        except Exception as exc:
            logger.error("Could not record job failure", extra={"job_id": job_id, "error": str(exc)})

    logger.error("Job left in processing", extra={"job_id": job_id, "error": str(last_exc)})
    return None


async def process_job(queue: JobQueue, pipeline: IngestPipeline, job_id: str) -> JobResult | None:
    try:
        job = await queue.get(job_id)
        if job is None:
            logger.error("Claimed job vanished", extra={"job_id": job_id})
            return None

        logger.info("Job started", extra={"job_id": job_id, "source_url": job.request.source_url})
        result = await pipeline.run(job_id, job.request)
    except Exception as exc:
        logger.error("Job crashed", extra={"job_id": job_id, "error": str(exc)}, exc_info=True)
        result = Failed(f"internal: error: {exc}")

    recorded = await _record(queue, job_id, result)
    if recorded is None:
        logger.warning("Job no longer processing, result dropped", extra={"job_id": job_id})
        return result
    if isinstance(recorded, Completed):
        logger.info("Job completed", extra={"job_id": job_id, "video_id": recorded.response.get("video_id")})
    else:
        logger.info("Job failed", extra={"job_id": job_id, "error": recorded.error})
    return recorded


class WorkerPool:
    """
    Usage:
        pool = WorkerPool(queue, pipeline, size=4)
        pool.start()
        ...
        pool.wake()         # new work was submitted
        ...
        await pool.stop()   # returns once in-flight jobs are terminal
    """

    def __init__(
        self,
        queue: JobQueue,
        pipeline: IngestPipeline,
        size: int = WORKER_COUNT,
        poll_interval: float = POLL_INTERVAL,
    ) -> None:
        if size < 1:
            raise ValueError("WorkerPool size must be at least 1")
        self.queue = queue
        self.pipeline = pipeline
        self.size = size
        self.poll_interval = poll_interval
        self.in_flight: set[str] = set()
        self._wake = asyncio.Event()
        self._stopping = False
        self._tasks: list[asyncio.Task] = []

    @property
    def running(self) -> bool:
        return bool(self._tasks) and not self._stopping

    def start(self) -> None:
        if self._tasks:
            raise RuntimeError("WorkerPool already started")
        self._tasks = [
            asyncio.create_task(self._worker(n), name=f"ingest-worker-{n}")
            for n in range(self.size)
        ]
        logger.info("Worker pool started", extra={"size": self.size})

    def wake(self) -> None:
        self._wake.set()

    async def stop(self) -> None:
        self._stopping = True
        self._wake.set()
        await asyncio.gather(*self._tasks)
        logger.info("Worker pool stopped")

    async def _next_job(self) -> str | None:
        for job_id in await self.queue.pending_ids(limit=self.size * 4):
            if self._stopping:
                return None
            if await self.queue.claim(job_id):
                return job_id
            logger.debug("Claim lost", extra={"job_id": job_id})
        return None

    async def _idle(self) -> None:
        try:
            await asyncio.wait_for(self._wake.wait(), timeout=self.poll_interval)
        except asyncio.TimeoutError:
            pass
        if not self._stopping:
            self._wake.clear()

    async def _worker(self, n: int) -> None:
        logger.info("Worker started", extra={"worker": n})
        while not self._stopping:
            try:
                job_id = await self._next_job()
            except Exception as exc:
                logger.error("Worker poll error", extra={"worker": n, "error": str(exc)}, exc_info=True)
                job_id = None

            if job_id is None:
                await self._idle()
                continue

            self.in_flight.add(job_id)
            try:
                await process_job(self.queue, self.pipeline, job_id)
            except Exception as exc:
                logger.error(
                    "Worker job error", extra={"worker": n, "job_id": job_id, "error": str(exc)}, exc_info=True
                )
            finally:
                self.in_flight.discard(job_id)
