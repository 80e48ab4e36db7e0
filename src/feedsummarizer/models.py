from __future__ import annotations

import time
from dataclasses import dataclass, field
from typing import Any

ATTR_PROCESSED = "ai-processed"
ATTR_SUMMARY = "ai-summary"
ATTR_TAGS = "ai-tags"
ATTR_HTML = "ollama-summarizer-html"

DEFAULT_SELECTOR = "article"


@dataclass(frozen=True)
class Feed:
    id: int
    url: str
    path_entries: str | None = None

    def selector(self) -> str:
        return (self.path_entries or "").strip() or DEFAULT_SELECTOR


@dataclass
class Entry:
    """A syndicated item as handed over by the host application.

    The pipeline mutates ``tags`` and ``attributes`` in place; everything else
    is read-only from its point of view.
    """

    guid: str
    link: str
    title: str = ""
    content: str = ""
    tags: list[str] = field(default_factory=list)
    attributes: dict[str, Any] = field(default_factory=dict)
    feed: Feed | None = None
    is_updated: bool = False

    def has_attribute(self, name: str) -> bool:
        return self.attributes.get(name) is not None

    def attribute_string(self, name: str) -> str:
        value = self.attributes.get(name)
        if value is None:
            return ""
        return str(value)

    def attribute_list(self, name: str) -> list[str]:
        value = self.attributes.get(name)
        if value is None:
            return []
        if isinstance(value, (list, tuple)):
            return [str(item) for item in value]
        return [str(value)]

    def set_attribute(self, name: str, value: Any) -> None:
        if value is None:
            self.attributes.pop(name, None)
            return
        self.attributes[name] = value

    def selector(self) -> str:
        if self.feed is None:
            return DEFAULT_SELECTOR
        return self.feed.selector()

    def to_dict(self) -> dict[str, Any]:
        return {
            "guid": self.guid,
            "link": self.link,
            "title": self.title,
            "content": self.content,
            "tags": list(self.tags),
            "attributes": dict(self.attributes),
            "feed_id": self.feed.id if self.feed else None,
            "is_updated": self.is_updated,
        }


@dataclass(frozen=True)
class FetchResult:
    text: str
    html: str

    @classmethod
    def empty(cls) -> FetchResult:
        return cls(text="", html="")


@dataclass(frozen=True)
class SummaryResult:
    summary: str
    tags: list[str]


@dataclass(frozen=True)
class LockInfo:
    pid: int | None
    timestamp: int | None
    identifier: str
    hostname: str

    def age_seconds(self, now: float | None = None) -> int | None:
        if self.timestamp is None:
            return None
        current = time.time() if now is None else now
        return int(current - self.timestamp)

    def describe(self, now: float | None = None) -> str:
        age = self.age_seconds(now)
        return (
            f"PID: {self.pid if self.pid is not None else 'unknown'}, "
            f"Age: {age if age is not None else 'unknown'} seconds, "
            f"Identifier: {self.identifier or 'none'}, "
            f"Host: {self.hostname or 'unknown'}"
        )
