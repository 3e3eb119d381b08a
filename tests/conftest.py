import asyncio
import os
import sys
from pathlib import Path

import pytest

# Add the project root to the Python path so tests import the flat packages
sys.path.insert(0, os.path.dirname(os.path.dirname(os.path.abspath(__file__))))

from db import database
from ingest.downloader import DownloadedAsset
from ingest.errors import UPLOAD, StorageError


@pytest.fixture
def db(tmp_path, monkeypatch):
    """Fresh SQLite file per test."""
    monkeypatch.setattr(database, "DB_PATH", str(tmp_path / "ingest.db"))
    asyncio.run(database.init_db())
    return database


class FakeDownloader:
    """Writes a small media file (and optional thumbnail) into the workdir."""

    def __init__(self, error=None, title="Fake clip", extractor="Youtube",
                 thumbnail=True, delay=0.0, search_results=None):
        self.error = error
        self.title = title
        self.extractor = extractor
        self.thumbnail = thumbnail
        self.delay = delay
        self.search_results = search_results or []
        self.workdirs: list[Path] = []
        self.calls: list[str] = []

    async def download(self, url: str, workdir: Path) -> DownloadedAsset:
        self.calls.append(url)
        self.workdirs.append(workdir)
        media = workdir / "abc123.mp4"
        media.write_bytes(b"\x00" * 1024)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        thumb = None
        if self.thumbnail:
            thumb = workdir / "abc123.jpg"
            thumb.write_bytes(b"\xff\xd8")
        return DownloadedAsset(
            path=media,
            title=self.title,
            source_id="abc123",
            extractor=self.extractor,
            duration=42,
            thumbnail_path=thumb,
        )

    async def search(self, query: str, max_results: int = 10) -> list[str]:
        return self.search_results[:max_results]


class FakeUploader:
    """In-memory object store with the ObjectUploader interface."""

    def __init__(self, fail_keys=()):
        self.objects: dict[str, bytes] = {}
        self.deleted: list[str] = []
        self.fail_keys = fail_keys

    async def upload(self, path: Path, key: str) -> str:
        if any(key.startswith(prefix) for prefix in self.fail_keys):
            raise StorageError(UPLOAD, f"failed to upload {key}: bucket unavailable")
        self.objects[key] = path.read_bytes()
        return key

    async def delete(self, key: str) -> None:
        self.deleted.append(key)
        self.objects.pop(key, None)


@pytest.fixture
def fake_downloader():
    return FakeDownloader()


@pytest.fixture
def fake_uploader():
    return FakeUploader()
