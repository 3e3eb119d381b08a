from dataclasses import dataclass
from typing import Optional, Union

PENDING = "pending"
PROCESSING = "processing"
COMPLETED = "completed"
FAILED = "failed"

TERMINAL = frozenset({COMPLETED, FAILED})


@dataclass
class ScrapeRequest:
    source_url: str
    title: Optional[str] = None
    description: Optional[str] = None
    tags: Optional[list[str]] = None
    user_id: Optional[int] = None

    def to_dict(self) -> dict:
        return {
            "source_url":  self.source_url,
            "title":       self.title,
            "description": self.description,
            "tags":        self.tags,
            "user_id":     self.user_id,
        }

    @classmethod
    def from_dict(cls, data: dict) -> "ScrapeRequest":
        return cls(
            source_url=data["source_url"],
            title=data.get("title"),
            description=data.get("description"),
            tags=data.get("tags"),
            user_id=data.get("user_id"),
        )


@dataclass(frozen=True)
class Completed:
    response: dict


@dataclass(frozen=True)
class Failed:
    error: str


JobResult = Union[Completed, Failed]


@dataclass
class Job:
    job_id: str
    request: ScrapeRequest
    status: str          # pending | processing | completed | failed
    result: Optional[JobResult] = None
    created_at: Optional[str] = None
    updated_at: Optional[str] = None

    @property
    def response(self) -> Optional[dict]:
        return self.result.response if isinstance(self.result, Completed) else None

    @property
    def error(self) -> Optional[str]:
        return self.result.error if isinstance(self.result, Failed) else None

    def to_status(self) -> dict:
        """Public view served by GET /api/jobs/{job_id}."""
        out: dict = {"job_id": self.job_id, "status": self.status}
        if self.response is not None:
            out["response"] = self.response
        if self.error is not None:
            out["error"] = self.error
        out["created_at"] = self.created_at
        out["updated_at"] = self.updated_at
        return out
