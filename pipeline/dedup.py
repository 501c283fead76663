"""Multi-key deduplication of feed items."""

from __future__ import annotations

from typing import Iterable, List, TypeVar

from pipeline.normalize import normalize_title_key, normalize_url_key


T = TypeVar("T")


def dedup_keys(item: object) -> List[str]:
    keys: List[str] = []
    url_key = normalize_url_key(getattr(item, "url", ""))
    if url_key:
        keys.append(f"u:{url_key}")
    title_key = normalize_title_key(getattr(item, "title", ""))
    if title_key:
        keys.append(f"t:{title_key}")
    return keys


def dedup_items(items: Iterable[T]) -> List[T]:
    """Drop any item sharing a url key or a title key with an earlier item.

    First-seen order is preserved and a dropped item never contributes keys,
    so nothing is re-admitted later.
    """
    unique: List[T] = []
    seen = set()
    for item in items:
        keys = dedup_keys(item)
        if any(key in seen for key in keys):
            continue
        seen.update(keys)
        unique.append(item)
    return unique
