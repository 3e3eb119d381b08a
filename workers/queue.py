"""
Queue interface the gateway and worker pool talk to.

SQLiteJobQueue is the production backend (a status column on the jobs
table). InMemoryJobQueue keeps the same contract in process memory.
"""

import uuid
from abc import ABC, abstractmethod
from dataclasses import replace
from datetime import datetime, timezone

from db import database
from models.job import (
    COMPLETED,
    FAILED,
    PENDING,
    PROCESSING,
    Completed,
    Failed,
    Job,
    ScrapeRequest,
)

STALE_JOB_ERROR = "worker: interrupted: server restarted before the job finished"


class JobQueue(ABC):
    @abstractmethod
    async def create(self, request: ScrapeRequest) -> str: ...

    @abstractmethod
    async def get(self, job_id: str) -> Job | None: ...

    @abstractmethod
    async def pending_ids(self, limit: int = 20) -> list[str]: ...

    @abstractmethod
    async def claim(self, job_id: str) -> bool:
        """pending -> processing; True for exactly one caller."""

    @abstractmethod
    async def complete(self, job_id: str, response: dict) -> bool: ...

    @abstractmethod
    async def fail(self, job_id: str, error: str) -> bool: ...

    @abstractmethod
    async def recover_stale(self) -> list[str]:
        """Fail jobs left in 'processing' by a previous process."""


class SQLiteJobQueue(JobQueue):
    async def create(self, request: ScrapeRequest) -> str:
        return await database.create_job(request)

    async def get(self, job_id: str) -> Job | None:
        return await database.get_job(job_id)

    async def pending_ids(self, limit: int = 20) -> list[str]:
        return await database.get_pending_job_ids(limit)

    async def claim(self, job_id: str) -> bool:
        return await database.claim_job(job_id)

    async def complete(self, job_id: str, response: dict) -> bool:
        return await database.complete_job(job_id, response)

    async def fail(self, job_id: str, error: str) -> bool:
        return await database.fail_job(job_id, error)

    async def recover_stale(self) -> list[str]:
        return await database.fail_processing_jobs(STALE_JOB_ERROR)


class InMemoryJobQueue(JobQueue):
    # No awaits between check and write, so each transition is atomic
    # with respect to other coroutines on the loop.

    def __init__(self) -> None:
        self._jobs: dict[str, Job] = {}

    async def create(self, request: ScrapeRequest) -> str:
        job_id = uuid.uuid4().hex
        while job_id in self._jobs:
            job_id = uuid.uuid4().hex
        now = datetime.now(timezone.utc).isoformat()
        self._jobs[job_id] = Job(job_id, request, PENDING, created_at=now, updated_at=now)
        return job_id

    async def get(self, job_id: str) -> Job | None:
        job = self._jobs.get(job_id)
        return replace(job) if job else None

    async def pending_ids(self, limit: int = 20) -> list[str]:
        return [j.job_id for j in self._jobs.values() if j.status == PENDING][:limit]

    def _move(self, job_id: str, from_status: str, to_status: str, result=None) -> bool:
        job = self._jobs.get(job_id)
        if job is None or job.status != from_status:
            return False
        job.status = to_status
        job.result = result
        job.updated_at = datetime.now(timezone.utc).isoformat()
        return True

    async def claim(self, job_id: str) -> bool:
        return self._move(job_id, PENDING, PROCESSING)

    async def complete(self, job_id: str, response: dict) -> bool:
        return self._move(job_id, PROCESSING, COMPLETED, Completed(response))

    async def fail(self, job_id: str, error: str) -> bool:
        return self._move(job_id, PROCESSING, FAILED, Failed(error))

    async def recover_stale(self) -> list[str]:
        stale = [j.job_id for j in self._jobs.values() if j.status == PROCESSING]
        for job_id in stale:
            self._move(job_id, PROCESSING, FAILED, Failed(STALE_JOB_ERROR))
        return stale
