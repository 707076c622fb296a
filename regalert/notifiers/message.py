from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime


@dataclass
class NotificationMessage:
    title: str
    summary: str
    category: str
    score: int
    confidence: str
    url: str
    source: str
    published: datetime
    content_variant: str | None
    manufacturer: str | None = None
    device: str | None = None
    reasons: list[str] = field(default_factory=list)
    digest_items: list[dict] = field(default_factory=list)
