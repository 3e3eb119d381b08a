"""
Reference client for the ingestion API: submit a job, then poll its status
every `interval` seconds until it is terminal or `max_attempts` polls have
been spent. Running out of attempts is reported as gave_up, not as a
failure; the job may still finish server-side.
"""

import asyncio
import logging
from dataclasses import dataclass
from typing import Optional

import httpx

logger = logging.getLogger(__name__)

DEFAULT_INTERVAL = 2.0
DEFAULT_MAX_ATTEMPTS = 150

_IN_PROGRESS = ("pending", "processing")


class SubmitRejected(Exception):
    """The gateway refused the submission (validation error)."""


@dataclass
class PollResult:
    job_id: str
    status: str
    attempts: int
    response: Optional[dict] = None
    error: Optional[str] = None
    gave_up: bool = False

    @property
    def succeeded(self) -> bool:
        return self.status == "completed"


class JobPoller:
    def __init__(
        self,
        base_url: str = "http://localhost:5060",
        interval: float = DEFAULT_INTERVAL,
        max_attempts: int = DEFAULT_MAX_ATTEMPTS,
        client: httpx.AsyncClient | None = None,
    ) -> None:
        if max_attempts < 1:
            raise ValueError("max_attempts must be at least 1")
        self.interval = interval
        self.max_attempts = max_attempts
        self._client = client or httpx.AsyncClient(base_url=base_url, timeout=10.0)

    async def __aenter__(self) -> "JobPoller":
        return self

    async def __aexit__(self, *_) -> None:
        await self._client.aclose()

    async def submit(self, source_url: str, **fields) -> str:
        payload = {"source_url": source_url, **{k: v for k, v in fields.items() if v is not None}}
        resp = await self._client.post("/api/scrape", json=payload)
        if resp.status_code == 400:
            raise SubmitRejected(resp.json().get("detail", resp.text))
        resp.raise_for_status()
        return resp.json()["job_id"]

    async def status(self, job_id: str) -> dict:
        resp = await self._client.get(f"/api/jobs/{job_id}")
        resp.raise_for_status()
        return resp.json()

    async def wait(self, job_id: str) -> PollResult:
        body: dict = {"status": "pending"}
        for attempt in range(1, self.max_attempts + 1):
            await asyncio.sleep(self.interval)
            body = await self.status(job_id)
            logger.info("Job status", extra={"job_id": job_id, "status": body["status"],
                                             "attempt": attempt})
            if body["status"] not in _IN_PROGRESS:
                return PollResult(
                    job_id=job_id,
                    status=body["status"],
                    attempts=attempt,
                    response=body.get("response"),
                    error=body.get("error"),
                )

        logger.warning("Gave up polling", extra={"job_id": job_id, "attempts": self.max_attempts})
        return PollResult(job_id, body["status"], self.max_attempts, gave_up=True)

    async def submit_and_wait(self, source_url: str, **fields) -> PollResult:
        job_id = await self.submit(source_url, **fields)
        return await self.wait(job_id)
