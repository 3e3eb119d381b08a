import asyncio

import pytest

from conftest import FakeDownloader, FakeUploader
from ingest.errors import METADATA, DownloadError, DownloadTimeoutError, StorageError
from ingest.metadata import MetadataWriter
from ingest.pipeline import IngestPipeline
from models.job import Completed, Failed, ScrapeRequest

URL = "https://www.youtube.com/watch?v=abc123"


def _pipeline(downloader, uploader, writer=None):
    return IngestPipeline(downloader=downloader, uploader=uploader, writer=writer or MetadataWriter())


def test_success_creates_video_and_cleans_up(db, fake_downloader, fake_uploader):
    pipeline = _pipeline(fake_downloader, fake_uploader)
    result = asyncio.run(pipeline.run("j1", ScrapeRequest(source_url=URL, user_id=1)))

    assert isinstance(result, Completed)
    assert result.response["storage_key"] == "videos/j1.mp4"
    assert result.response["thumbnail_url"] == "thumbnails/j1.jpg"
    assert set(fake_uploader.objects) == {"videos/j1.mp4", "thumbnails/j1.jpg"}

    video = asyncio.run(db.get_video(result.response["video_id"]))
    assert video.title == "Fake clip"
    assert video.description == f"Scraped from {URL}"
    assert video.tags == ["youtube"]
    assert video.uploaded_by == 1
    assert video.duration == 42
    assert video.view_count == 0

    assert not fake_downloader.workdirs[0].exists()


def test_caller_fields_override_extracted(db, fake_downloader, fake_uploader):
    request = ScrapeRequest(source_url=URL, title="Mine", description="desc", tags=[])
    result = asyncio.run(_pipeline(fake_downloader, fake_uploader).run("j2", request))

    video = asyncio.run(db.get_video(result.response["video_id"]))
    assert (video.title, video.description, video.tags) == ("Mine", "desc", [])


def test_download_timeout_fails_without_video(db, fake_uploader):
    downloader = FakeDownloader(error=DownloadTimeoutError("yt-dlp exceeded 600s"))
    result = asyncio.run(_pipeline(downloader, fake_uploader).run("j3", ScrapeRequest(source_url=URL)))

    assert isinstance(result, Failed)
    assert result.error == "download: timeout: yt-dlp exceeded 600s"
    assert fake_uploader.objects == {}
    assert asyncio.run(db.get_video_by_key("videos/j3.mp4")) is None
    assert not downloader.workdirs[0].exists()


def test_network_failure_keeps_category(db, fake_uploader):
    downloader = FakeDownloader(error=DownloadError("Unable to download webpage", category="network"))
    result = asyncio.run(_pipeline(downloader, fake_uploader).run("j4", ScrapeRequest(source_url=URL)))

    assert result.error.startswith("download: network: ")


def test_upload_failure_fails_without_video(db, fake_downloader):
    uploader = FakeUploader(fail_keys=("videos/",))
    result = asyncio.run(_pipeline(fake_downloader, uploader).run("j5", ScrapeRequest(source_url=URL)))

    assert isinstance(result, Failed)
    assert result.error.startswith("upload: storage: ")
    assert asyncio.run(db.get_video_by_key("videos/j5.mp4")) is None
    assert not fake_downloader.workdirs[0].exists()


def test_thumbnail_failure_is_not_fatal(db, fake_downloader):
    uploader = FakeUploader(fail_keys=("thumbnails/",))
    result = asyncio.run(_pipeline(fake_downloader, uploader).run("j6", ScrapeRequest(source_url=URL)))

    assert isinstance(result, Completed)
    assert result.response["thumbnail_url"] is None


def test_duplicate_storage_key_is_a_conflict(db, fake_downloader, fake_uploader):
    asyncio.run(db.insert_video("existing", None, "videos/j7.mp4", None, None, []))
    result = asyncio.run(_pipeline(fake_downloader, fake_uploader).run("j7", ScrapeRequest(source_url=URL)))

    assert isinstance(result, Failed)
    assert result.error.startswith("metadata: conflict: ")
    # the existing record keeps its object
    assert "videos/j7.mp4" not in fake_uploader.deleted
    assert asyncio.run(db.get_video_by_key("videos/j7.mp4")).title == "existing"


def test_metadata_failure_removes_uploaded_objects(fake_downloader, fake_uploader):
    class BrokenWriter:
        async def write(self, *args, **kwargs):
            raise StorageError(METADATA, "failed to insert video: disk I/O error")

    pipeline = _pipeline(fake_downloader, fake_uploader, BrokenWriter())
    result = asyncio.run(pipeline.run("j8", ScrapeRequest(source_url=URL)))

    assert result.error == "metadata: storage: failed to insert video: disk I/O error"
    assert sorted(fake_uploader.deleted) == ["thumbnails/j8.jpg", "videos/j8.mp4"]
    assert fake_uploader.objects == {}


def test_workdir_removed_when_stage_raises_unexpectedly(fake_downloader):
    class ExplodingUploader:
        async def upload(self, path, key):
            raise RuntimeError("bug")

    pipeline = _pipeline(fake_downloader, ExplodingUploader())
    with pytest.raises(RuntimeError):
        asyncio.run(pipeline.run("j9", ScrapeRequest(source_url=URL)))
    assert not fake_downloader.workdirs[0].exists()
