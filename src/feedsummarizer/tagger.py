from __future__ import annotations

import re
from typing import Iterable

_WHITESPACE = re.compile(r"\s+")


def normalize_tag(tag: str) -> str:
    """Casefold and keep only letters and whitespace, collapsed to single spaces."""
    cleaned = "".join(ch for ch in tag.casefold() if ch.isalpha() or ch.isspace())
    cleaned = _WHITESPACE.sub(" ", cleaned)
    return cleaned.strip()


def normalize_tags(tags: Iterable[str]) -> list[str]:
    normalized: list[str] = []
    for tag in tags:
        if not tag:
            continue
        value = normalize_tag(str(tag))
        if not value:
            continue
        normalized.append(value)
    return normalized


def merge_tags(existing: Iterable[str], added: Iterable[str]) -> list[str]:
    """Order-preserving union; the first occurrence of a tag wins."""
    merged: list[str] = []
    seen: set[str] = set()
    for tag in [*existing, *added]:
        if tag in seen:
            continue
        seen.add(tag)
        merged.append(tag)
    return merged
