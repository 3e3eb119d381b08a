import logging

import aiosqlite

from db.database import insert_video
from ingest.downloader import DownloadedAsset
from ingest.errors import METADATA, StorageError
from models.job import ScrapeRequest
from models.video import Video

logger = logging.getLogger(__name__)


class MetadataWriter:
    """Creates the permanent video record once the asset is stored."""

    async def write(
        self,
        request: ScrapeRequest,
        asset: DownloadedAsset,
        storage_key: str,
        thumbnail_key: str | None = None,
    ) -> Video:
        title = request.title or asset.title
        description = request.description or f"Scraped from {request.source_url}"
        if request.tags is not None:
            tags = list(request.tags)
        else:
            tags = [asset.extractor.lower()] if asset.extractor else []

        try:
            video = await insert_video(
                title=title,
                description=description,
                s3_key=storage_key,
                thumbnail_url=thumbnail_key,
                uploaded_by=request.user_id,
                tags=tags,
                duration=asset.duration,
            )
        except aiosqlite.IntegrityError:
            raise StorageError(
                METADATA, f"storage key {storage_key} already exists", category="conflict"
            )
        except aiosqlite.Error as exc:
            raise StorageError(METADATA, f"failed to insert video: {exc}")

        logger.info("Video record created", extra={"video_id": video.id, "s3_key": storage_key})
        return video
