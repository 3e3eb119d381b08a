from dataclasses import dataclass, field
from typing import Optional


@dataclass
class Video:
    id: int
    title: str
    s3_key: str
    description: Optional[str] = None
    thumbnail_url: Optional[str] = None
    uploaded_by: Optional[int] = None
    upload_date: Optional[str] = None
    tags: list[str] = field(default_factory=list)
    view_count: int = 0
    duration: Optional[int] = None
