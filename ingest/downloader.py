"""
Downloader adapter around the yt-dlp tool.

Each job runs exactly one `yt-dlp` subprocess which downloads the media and
its thumbnail into a caller-owned working directory and prints the info
JSON on stdout. The subprocess is killed once DOWNLOAD_TIMEOUT elapses and
the job fails with a timeout-classified error.
"""

import asyncio
import json
import logging
import os
import sys
from dataclasses import dataclass
from functools import lru_cache
from pathlib import Path
from urllib.parse import urlparse

from yt_dlp.extractor import gen_extractor_classes

from ingest.errors import DownloadError, DownloadTimeoutError, UnsupportedSourceError

logger = logging.getLogger(__name__)

DOWNLOAD_TIMEOUT: float = float(os.getenv("DOWNLOAD_TIMEOUT", "600"))
SEARCH_TIMEOUT: float = float(os.getenv("SEARCH_TIMEOUT", "60"))
YTDLP_COOKIES: str = os.getenv("YTDLP_COOKIES", "")
YTDLP_FORMAT: str = os.getenv("YTDLP_FORMAT", "best[ext=mp4]/best")

# Command prefix for the extraction tool
YTDLP_COMMAND: list[str] = [sys.executable, "-m", "yt_dlp"]

_THUMB_EXTS = (".jpg", ".jpeg", ".png", ".webp")
_SKIP_EXTS = (".part", ".ytdl", ".json", ".tmp")

# stderr fragments that point at the network rather than the URL itself
_NETWORK_MARKERS = (
    "unable to download webpage",
    "unable to download video data",
    "http error 5",
    "http error 429",
    "timed out",
    "connection reset",
    "connection refused",
    "temporary failure in name resolution",
    "name or service not known",
    "network is unreachable",
    "getaddrinfo failed",
)


@dataclass
class DownloadedAsset:
    path: Path
    title: str
    source_id: str | None = None
    extractor: str | None = None
    duration: int | None = None
    thumbnail_path: Path | None = None

    @property
    def size(self) -> int:
        return self.path.stat().st_size


@lru_cache(maxsize=1)
def _extractors() -> tuple:
    return tuple(ie for ie in gen_extractor_classes() if ie.ie_key() != "Generic")


def is_supported(url: str) -> bool:
    """True when a dedicated (non-generic) yt-dlp extractor handles *url*."""
    if urlparse(url).scheme not in ("http", "https"):
        return False
    return any(ie.suitable(url) for ie in _extractors())


def classify_failure(stderr: str) -> str:
    lowered = stderr.lower()
    if any(marker in lowered for marker in _NETWORK_MARKERS):
        return "network"
    return "extraction"


def _last_error_line(stderr: str) -> str:
    lines = [ln.strip() for ln in stderr.splitlines() if ln.strip()]
    for line in reversed(lines):
        if line.startswith("ERROR:"):
            return line[len("ERROR:"):].strip()
    return lines[-1] if lines else "yt-dlp exited without output"


async def _run_tool(args: list[str], timeout: float) -> tuple[int, str, str]:
    proc = await asyncio.create_subprocess_exec(
        *YTDLP_COMMAND, *args,
        stdout=asyncio.subprocess.PIPE,
        stderr=asyncio.subprocess.PIPE,
    )
    try:
        out, err = await asyncio.wait_for(proc.communicate(), timeout=timeout)
    except asyncio.TimeoutError:
        proc.kill()
        await proc.wait()
        raise DownloadTimeoutError(f"yt-dlp exceeded {timeout:g}s")
    return proc.returncode, out.decode("utf-8", "replace"), err.decode("utf-8", "replace")


def _find_media(workdir: Path, info: dict) -> tuple[Path, Path | None]:
    media, thumb = [], None
    for p in sorted(workdir.iterdir()):
        if not p.is_file() or p.suffix.lower() in _SKIP_EXTS:
            continue
        if p.suffix.lower() in _THUMB_EXTS:
            thumb = p
        else:
            media.append(p)
    if not media:
        raise DownloadError(f"no media file produced for {info.get('webpage_url') or 'source'}")
    # merged/remuxed output is the largest file left behind
    return max(media, key=lambda p: p.stat().st_size), thumb


class YtDlpDownloader:
    """
    Usage:
        downloader = YtDlpDownloader()
        asset = await downloader.download(url, workdir)
    """

    def __init__(
        self,
        timeout: float = DOWNLOAD_TIMEOUT,
        cookies_file: str = YTDLP_COOKIES,
        fmt: str = YTDLP_FORMAT,
    ) -> None:
        self.timeout = timeout
        self.cookies_file = cookies_file or None
        self.fmt = fmt

    def _base_args(self) -> list[str]:
        args = ["--no-progress", "--no-warnings"]
        if self.cookies_file:
            args += ["--cookies", self.cookies_file]
        return args

    async def download(self, url: str, workdir: Path) -> DownloadedAsset:
        if not is_supported(url):
            raise UnsupportedSourceError(f"unsupported source: {url}")

        args = self._base_args() + [
            "--no-playlist",
            "--dump-json",
            "--no-simulate",
            "--write-thumbnail",
            "-f", self.fmt,
            "-o", str(workdir / "%(id)s.%(ext)s"),
            url,
        ]
        logger.info("Download started", extra={"url": url, "timeout": self.timeout})
        code, out, err = await _run_tool(args, self.timeout)

        if code != 0:
            message = _last_error_line(err)
            if "unsupported url" in message.lower():
                raise UnsupportedSourceError(message)
            raise DownloadError(message, category=classify_failure(err))

        try:
            info = json.loads(out.strip().splitlines()[-1])
        except (IndexError, json.JSONDecodeError) as exc:
            raise DownloadError(f"unreadable yt-dlp metadata: {exc}")

        path, thumb = _find_media(workdir, info)
        duration = info.get("duration")
        asset = DownloadedAsset(
            path=path,
            title=info.get("title") or info.get("id") or path.stem,
            source_id=info.get("id"),
            extractor=info.get("extractor_key") or info.get("extractor"),
            duration=int(duration) if duration else None,
            thumbnail_path=thumb,
        )
        logger.info(
            "Download finished",
            extra={"url": url, "file": path.name, "bytes": asset.size},
        )
        return asset

    async def search(self, query: str, max_results: int = 10) -> list[str]:
        """Return watch URLs for the top *max_results* YouTube hits of *query*."""
        args = self._base_args() + [
            "--flat-playlist",
            "--dump-json",
            f"ytsearch{max_results}:{query}",
        ]
        code, out, err = await _run_tool(args, SEARCH_TIMEOUT)
        if code != 0:
            raise DownloadError(_last_error_line(err), category=classify_failure(err))

        urls = []
        for line in out.splitlines():
            if not line.strip():
                continue
            try:
                entry = json.loads(line)
            except json.JSONDecodeError as exc:
                raise DownloadError(f"unreadable yt-dlp search output: {exc}")
            if entry.get("id"):
                urls.append(f"https://www.youtube.com/watch?v={entry['id']}")
        return urls
