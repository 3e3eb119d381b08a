import json
import os
import uuid
from datetime import datetime, timezone

import aiosqlite

from models.job import COMPLETED, FAILED, PENDING, PROCESSING, Completed, Failed, Job, ScrapeRequest
from models.video import Video

DB_PATH = os.getenv("DB_PATH", "ingest.db")

# Seconds a connection waits on a locked database before raising
BUSY_TIMEOUT = float(os.getenv("DB_BUSY_TIMEOUT", "30"))

MAX_ID_ATTEMPTS = 5

# response/error are mutually exclusive and only present once terminal
_CREATE_JOBS = """
CREATE TABLE IF NOT EXISTS jobs (
    job_id     TEXT PRIMARY KEY,
    request    TEXT NOT NULL,
    status     TEXT NOT NULL DEFAULT 'pending',
    response   TEXT,
    error      TEXT,
    created_at TEXT NOT NULL,
    updated_at TEXT NOT NULL,
    CHECK (
        (status IN ('pending', 'processing') AND response IS NULL AND error IS NULL)
        OR (status = 'completed' AND response IS NOT NULL AND error IS NULL)
        OR (status = 'failed' AND error IS NOT NULL AND response IS NULL)
    )
)
"""

_CREATE_JOBS_STATUS_IDX = """
CREATE INDEX IF NOT EXISTS jobs_status_idx ON jobs (status, created_at)
"""

_CREATE_VIDEOS = """
CREATE TABLE IF NOT EXISTS videos (
    id            INTEGER PRIMARY KEY AUTOINCREMENT,
    title         TEXT    NOT NULL,
    description   TEXT,
    s3_key        TEXT    NOT NULL UNIQUE,
    thumbnail_url TEXT,
    uploaded_by   INTEGER,
    upload_date   TEXT    NOT NULL,
    tags          TEXT    NOT NULL DEFAULT '[]',
    view_count    INTEGER NOT NULL DEFAULT 0,
    duration      INTEGER
)
"""


class JobIdCollisionError(Exception):
    """Raised when no free job id could be generated."""


def _now() -> str:
    return datetime.now(timezone.utc).isoformat()


def _new_job_id() -> str:
    return uuid.uuid4().hex


def _connect() -> aiosqlite.Connection:
    return aiosqlite.connect(DB_PATH, timeout=BUSY_TIMEOUT)


async def init_db() -> None:
    async with _connect() as db:
        await db.execute("PRAGMA journal_mode=WAL")
        await db.execute(_CREATE_JOBS)
        await db.execute(_CREATE_JOBS_STATUS_IDX)
        await db.execute(_CREATE_VIDEOS)
        await db.commit()


def _row_to_job(row: aiosqlite.Row) -> Job:
    result = None
    if row["status"] == COMPLETED:
        result = Completed(json.loads(row["response"]))
    elif row["status"] == FAILED:
        result = Failed(row["error"])
    return Job(
        job_id=row["job_id"],
        request=ScrapeRequest.from_dict(json.loads(row["request"])),
        status=row["status"],
        result=result,
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


# ── Jobs ──────────────────────────────────────────────────────────────────────

async def create_job(request: ScrapeRequest, new_id=_new_job_id) -> str:
    """
    Insert a pending job and return its id. The row is committed before
    this returns, so the id is immediately resolvable.
    """
    payload = json.dumps(request.to_dict())
    async with _connect() as db:
        for _ in range(MAX_ID_ATTEMPTS):
            job_id = new_id()
            now = _now()
            try:
                await db.execute(
                    """
                    INSERT INTO jobs (job_id, request, status, created_at, updated_at)
                    VALUES (?, ?, 'pending', ?, ?)
                    """,
                    (job_id, payload, now, now),
                )
            except aiosqlite.IntegrityError:
                continue  # id already taken
            await db.commit()
            return job_id
    raise JobIdCollisionError(f"No free job id after {MAX_ID_ATTEMPTS} attempts")


async def get_job(job_id: str) -> Job | None:
    async with _connect() as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            "SELECT * FROM jobs WHERE job_id = ?", (job_id,)
        ) as cur:
            row = await cur.fetchone()
            return _row_to_job(row) if row else None


async def get_pending_job_ids(limit: int = 20) -> list[str]:
    async with _connect() as db:
        async with db.execute(
            "SELECT job_id FROM jobs WHERE status = ? ORDER BY created_at ASC LIMIT ?",
            (PENDING, limit),
        ) as cur:
            return [r[0] for r in await cur.fetchall()]


async def _transition(job_id: str, from_status: str, to_status: str,
                      response: dict | None = None, error: str | None = None) -> bool:
    async with _connect() as db:
        cur = await db.execute(
            """
            UPDATE jobs
            SET status = ?, response = ?, error = ?, updated_at = ?
            WHERE job_id = ? AND status = ?
            """,
            (
                to_status,
                json.dumps(response) if response is not None else None,
                error,
                _now(),
                job_id,
                from_status,
            ),
        )
        await db.commit()
        return cur.rowcount == 1


async def claim_job(job_id: str) -> bool:
    """pending -> processing. True for exactly one caller per job."""
    return await _transition(job_id, PENDING, PROCESSING)


async def complete_job(job_id: str, response: dict) -> bool:
    return await _transition(job_id, PROCESSING, COMPLETED, response=response)


async def fail_job(job_id: str, error: str) -> bool:
    return await _transition(job_id, PROCESSING, FAILED, error=error)


async def fail_processing_jobs(error: str) -> list[str]:
    """Mark every job stuck in 'processing' as failed. Returns their ids."""
    async with _connect() as db:
        async with db.execute(
            "SELECT job_id FROM jobs WHERE status = ?", (PROCESSING,)
        ) as cur:
            stale = [r[0] for r in await cur.fetchall()]
        await db.executemany(
            """
            UPDATE jobs SET status = 'failed', error = ?, updated_at = ?
            WHERE job_id = ? AND status = 'processing'
            """,
            [(error, _now(), job_id) for job_id in stale],
        )
        await db.commit()
    return stale


# ── Videos ────────────────────────────────────────────────────────────────────

async def insert_video(
    title: str,
    description: str | None,
    s3_key: str,
    thumbnail_url: str | None,
    uploaded_by: int | None,
    tags: list[str],
    duration: int | None = None,
) -> Video:
    """
    Single-statement insert. Raises aiosqlite.IntegrityError when s3_key
    already exists.
    """
    upload_date = _now()
    async with _connect() as db:
        cur = await db.execute(
            """
            INSERT INTO videos
                (title, description, s3_key, thumbnail_url, uploaded_by,
                 upload_date, tags, duration)
            VALUES (?, ?, ?, ?, ?, ?, ?, ?)
            """,
            (
                title,
                description,
                s3_key,
                thumbnail_url,
                uploaded_by,
                upload_date,
                json.dumps(tags),
                duration,
            ),
        )
        await db.commit()
        video_id = cur.lastrowid
    return Video(
        id=video_id,
        title=title,
        s3_key=s3_key,
        description=description,
        thumbnail_url=thumbnail_url,
        uploaded_by=uploaded_by,
        upload_date=upload_date,
        tags=list(tags),
        view_count=0,
        duration=duration,
    )


async def get_video(video_id: int) -> Video | None:
    async with _connect() as db:
        db.row_factory = aiosqlite.Row
        async with db.execute(
            "SELECT * FROM videos WHERE id = ?", (video_id,)
        ) as cur:
            row = await cur.fetchone()
    if not row:
        return None
    data = dict(row)
    data["tags"] = json.loads(data["tags"])
    return Video(**data)


async def get_video_by_key(s3_key: str) -> Video | None:
    async with _connect() as db:
        async with db.execute(
            "SELECT id FROM videos WHERE s3_key = ?", (s3_key,)
        ) as cur:
            row = await cur.fetchone()
    return await get_video(row[0]) if row else None
