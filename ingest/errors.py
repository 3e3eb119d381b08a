"""
Classified pipeline failures.

Every failure a pipeline stage can produce carries the stage it happened in
and a category, so a failed job's error string reads e.g.

    download: timeout: yt-dlp exceeded 600s
    upload: storage: object size mismatch for videos/abc.mp4
    metadata: conflict: storage key videos/abc.mp4 already exists
"""

DOWNLOAD = "download"
UPLOAD = "upload"
METADATA = "metadata"


class IngestError(Exception):
    category = "error"

    def __init__(self, stage: str, message: str, category: str | None = None):
        super().__init__(message)
        self.stage = stage
        self.message = message
        if category is not None:
            self.category = category

    def __str__(self) -> str:
        return f"{self.stage}: {self.category}: {self.message}"


class UnsupportedSourceError(IngestError):
    category = "unsupported"

    def __init__(self, message: str):
        super().__init__(DOWNLOAD, message)


class DownloadError(IngestError):
    """Network or extraction failure reported by the download tool."""

    def __init__(self, message: str, category: str = "extraction"):
        super().__init__(DOWNLOAD, message, category)


class DownloadTimeoutError(IngestError):
    category = "timeout"

    def __init__(self, message: str):
        super().__init__(DOWNLOAD, message)


class StorageError(IngestError):
    """Object upload or metadata write failure, including key conflicts."""

    def __init__(self, stage: str, message: str, category: str = "storage"):
        super().__init__(stage, message, category)
