"""
Per-job ingestion pipeline: download -> upload -> metadata write.

run() never raises for a stage failure; it returns Completed or Failed.
The temporary working directory is removed on every exit path.
"""

import logging
import os
import tempfile
from pathlib import Path

from ingest.downloader import DownloadedAsset, YtDlpDownloader
from ingest.errors import IngestError
from ingest.metadata import MetadataWriter
from ingest.storage import ObjectUploader, thumbnail_key, video_key
from models.job import Completed, Failed, JobResult, ScrapeRequest

logger = logging.getLogger(__name__)

DOWNLOAD_DIR: str | None = os.getenv("DOWNLOAD_DIR") or None


class IngestPipeline:
    def __init__(
        self,
        downloader: YtDlpDownloader | None = None,
        uploader: ObjectUploader | None = None,
        writer: MetadataWriter | None = None,
        download_dir: str | None = DOWNLOAD_DIR,
    ) -> None:
        self.downloader = downloader or YtDlpDownloader()
        self.uploader = uploader or ObjectUploader()
        self.writer = writer or MetadataWriter()
        self.download_dir = download_dir
        if download_dir:
            os.makedirs(download_dir, exist_ok=True)

    async def _upload_thumbnail(self, job_id: str, asset: DownloadedAsset) -> str | None:
        if asset.thumbnail_path is None:
            return None
        try:
            return await self.uploader.upload(
                asset.thumbnail_path, thumbnail_key(job_id, asset.thumbnail_path)
            )
        except IngestError as exc:
            logger.warning("Thumbnail upload failed", extra={"job_id": job_id, "error": str(exc)})
            return None

    async def _ingest(self, job_id: str, request: ScrapeRequest, workdir: Path) -> dict:
        asset = await self.downloader.download(request.source_url, workdir)

        key = await self.uploader.upload(asset.path, video_key(job_id, asset.path))
        thumb = await self._upload_thumbnail(job_id, asset)

        try:
            video = await self.writer.write(request, asset, key, thumb)
        except IngestError as exc:
            if exc.category != "conflict":
                # nothing references the new objects
                await self.uploader.delete(key)
                if thumb:
                    await self.uploader.delete(thumb)
            raise

        return {
            "video_id":      video.id,
            "title":         video.title,
            "storage_key":   video.s3_key,
            "thumbnail_url": video.thumbnail_url,
        }

    async def run(self, job_id: str, request: ScrapeRequest) -> JobResult:
        try:
            with tempfile.TemporaryDirectory(prefix=f"ingest-{job_id}-", dir=self.download_dir) as tmp:
                response = await self._ingest(job_id, request, Path(tmp))
        except IngestError as exc:
            logger.error(
                "Pipeline failed",
                extra={"job_id": job_id, "stage": exc.stage, "category": exc.category,
                       "error": exc.message},
            )
            return Failed(str(exc))
        return Completed(response)
