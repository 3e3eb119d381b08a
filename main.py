"""
Video ingestion service: main entry point.

Server mode (--server) starts:
    • Structured JSON logging
    • SQLite DB init + recovery of jobs interrupted by a previous run
    • Worker pool (background asyncio tasks)
    • FastAPI HTTP server (submit / status / health)

One-shot mode (--url) runs the pipeline once for a single URL, without the
job table, and exits non-zero on failure.
"""

import argparse
import asyncio
import json
import logging
import os
import sys
import uuid
from contextlib import asynccontextmanager
from typing import Optional

import uvicorn
from dotenv import load_dotenv

load_dotenv()  # must run before any module-level os.getenv() calls

from fastapi import FastAPI, HTTPException, Request
from fastapi.encoders import jsonable_encoder
from fastapi.exceptions import RequestValidationError
from fastapi.responses import JSONResponse
from pydantic import AliasChoices, AnyHttpUrl, BaseModel, Field, TypeAdapter, ValidationError

from db.database import init_db
from ingest.downloader import YtDlpDownloader
from ingest.errors import IngestError
from ingest.pipeline import IngestPipeline
from models.job import Completed, ScrapeRequest
from workers.job_worker import POLL_INTERVAL, WORKER_COUNT, WorkerPool
from workers.queue import JobQueue, SQLiteJobQueue


# ── Structured JSON logging ────────────────────────────────────────────────────

class _JSONFormatter(logging.Formatter):
    """One JSON object per log line, machine-readable and grep-friendly."""

    _SKIP = frozenset({
        "name", "msg", "args", "levelname", "levelno", "pathname", "filename",
        "module", "exc_info", "exc_text", "stack_info", "lineno", "funcName",
        "created", "msecs", "relativeCreated", "thread", "threadName",
        "processName", "process", "message", "taskName",
    })

    def format(self, record: logging.LogRecord) -> str:
        record.message = record.getMessage()
        out: dict = {
            "ts":     self.formatTime(record, "%Y-%m-%dT%H:%M:%S"),
            "level":  record.levelname,
            "logger": record.name,
            "msg":    record.message,
        }
        if record.exc_info:
            out["exc"] = self.formatException(record.exc_info)
        # Bubble up any extra= fields passed by callers
        for k, v in record.__dict__.items():
            if k not in self._SKIP:
                out[k] = v
        return json.dumps(out, default=str)


def setup_logging(level: str = "INFO") -> None:
    handler = logging.StreamHandler()
    handler.setFormatter(_JSONFormatter())
    root = logging.getLogger()
    root.handlers.clear()
    root.addHandler(handler)
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    for name in ("uvicorn", "uvicorn.error", "uvicorn.access"):
        logging.getLogger(name).handlers = []
        logging.getLogger(name).propagate = True


setup_logging(os.getenv("LOG_LEVEL", "INFO"))
logger = logging.getLogger(__name__)

RECOVER_STALE_JOBS: bool = os.getenv("RECOVER_STALE_JOBS", "true").lower() == "true"

_http_url = TypeAdapter(AnyHttpUrl)


# ── Request / response bodies ──────────────────────────────────────────────────

class ScrapeBody(BaseModel):
    # validated by hand so a missing/malformed URL is a 400, not a 422
    source_url: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("source_url", "youtube_url")
    )
    title: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[list[str]] = None
    user_id: Optional[int] = None


class SearchBody(BaseModel):
    query: str = Field(min_length=1)
    max_results: int = Field(default=10, ge=1, le=50)
    user_id: Optional[int] = None


def _validate_source_url(value: Optional[str]) -> str:
    if not value or not value.strip():
        raise HTTPException(status_code=400, detail="source_url is required")
    try:
        _http_url.validate_python(value.strip())
    except ValidationError:
        raise HTTPException(status_code=400, detail=f"source_url is not a valid URL: {value!r}")
    return value.strip()


# ── App factory ────────────────────────────────────────────────────────────────

def create_app(
    queue: JobQueue | None = None,
    pipeline: IngestPipeline | None = None,
    start_workers: bool = True,
    worker_count: int = WORKER_COUNT,
    poll_interval: float = POLL_INTERVAL,
) -> FastAPI:
    queue = queue or SQLiteJobQueue()
    pipeline = pipeline or IngestPipeline()
    pool = WorkerPool(queue, pipeline, size=worker_count, poll_interval=poll_interval)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if isinstance(queue, SQLiteJobQueue):
            await init_db()
            logger.info("Database ready")
        if RECOVER_STALE_JOBS:
            stale = await queue.recover_stale()
            if stale:
                logger.warning("Failed interrupted jobs", extra={"job_ids": stale})

        if start_workers:
            pool.start()

        yield

        logger.info("Shutting down")
        if start_workers:
            await pool.stop()

    app = FastAPI(title="Video Ingestion Service", version="0.1.0", lifespan=lifespan)
    app.state.queue = queue
    app.state.pool = pool

    @app.exception_handler(RequestValidationError)
    async def _bad_request(request: Request, exc: RequestValidationError):
        return JSONResponse(status_code=400, content={"detail": jsonable_encoder(exc.errors())})

    @app.get("/api/status")
    async def health():
        return {"status": "running"}

    @app.post("/api/scrape", status_code=202)
    async def submit(body: ScrapeBody):
        source_url = _validate_source_url(body.source_url)
        request = ScrapeRequest(
            source_url=source_url,
            title=body.title,
            description=body.description,
            tags=body.tags,
            user_id=body.user_id,
        )
        job_id = await queue.create(request)
        pool.wake()
        logger.info("Job submitted", extra={"job_id": job_id, "source_url": source_url})
        return {"job_id": job_id}

    @app.post("/api/search", status_code=202)
    async def search(body: SearchBody):
        try:
            urls = await pipeline.downloader.search(body.query, body.max_results)
        except IngestError as exc:
            logger.error("Search failed", extra={"query": body.query, "error": str(exc)})
            raise HTTPException(status_code=502, detail=f"Search failed: {exc.message}")

        job_ids = []
        for url in urls:
            job_ids.append(await queue.create(
                ScrapeRequest(source_url=url, tags=[body.query], user_id=body.user_id)
            ))
        pool.wake()
        logger.info("Search submitted", extra={"query": body.query, "jobs": len(job_ids)})
        return {"job_ids": job_ids}

    @app.get("/api/jobs/{job_id}")
    async def job_status(job_id: str):
        job = await queue.get(job_id)
        if not job:
            raise HTTPException(status_code=404, detail="Job not found")
        return job.to_status()

    return app


app = create_app()


# ── One-shot mode ──────────────────────────────────────────────────────────────

async def run_once(url: str, user_id: Optional[int] = None, cookies: Optional[str] = None) -> int:
    await init_db()
    downloader = YtDlpDownloader(cookies_file=cookies) if cookies else None
    pipeline = IngestPipeline(downloader=downloader)
    result = await pipeline.run(uuid.uuid4().hex, ScrapeRequest(source_url=url, user_id=user_id))
    if isinstance(result, Completed):
        logger.info("Video scraped", extra={"video_id": result.response["video_id"]})
        return 0
    logger.error("Failed to scrape video", extra={"error": result.error})
    return 1


# ── Entry point ────────────────────────────────────────────────────────────────

def main(argv: Optional[list[str]] = None) -> int:
    parser = argparse.ArgumentParser(description="Video ingestion service")
    parser.add_argument("-s", "--server", action="store_true", help="run the HTTP API server")
    parser.add_argument("-u", "--url", help="ingest a single URL and exit")
    parser.add_argument("-i", "--user-id", type=int, help="uploader id for --url")
    parser.add_argument("-c", "--cookies", help="cookies file for yt-dlp")
    args = parser.parse_args(argv)

    if args.server:
        uvicorn.run(
            "main:app",
            host=os.getenv("HOST", "0.0.0.0"),
            port=int(os.getenv("PORT", "5060")),
            reload=False,
            log_config=None,   # let our handler take over
        )
        return 0
    if args.url:
        return asyncio.run(run_once(args.url, args.user_id, args.cookies))

    logger.error("No URL provided. Use --url to ingest one video or --server to run the API.")
    return 1


if __name__ == "__main__":
    sys.exit(main())
