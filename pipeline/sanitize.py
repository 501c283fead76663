"""Markup sanitization and source normalization for ingested feed items."""

from __future__ import annotations

import hashlib
import html as html_lib
import re
from datetime import datetime
from typing import Any, Optional


_HTML_TAG_RE = re.compile(r"<[^>]*>")
_WHITESPACE_RE = re.compile(r"\s+")
_FONT_PUBLISHER_RE = re.compile(r"<font[^>]*>([^<]+)</font>", flags=re.IGNORECASE)

_AGGREGATOR_SOURCES = {"google-news", "google news"}


def decode_entities(text: Any) -> str:
    return html_lib.unescape(str(text or ""))


def strip_tags(text: Any) -> str:
    """Replace every tag with a space so adjacent words never fuse."""
    return _HTML_TAG_RE.sub(" ", str(text or ""))


def collapse_whitespace(text: Any) -> str:
    return _WHITESPACE_RE.sub(" ", str(text or "")).strip()


def sanitize_summary(raw: Any, *, max_len: Optional[int] = None) -> str:
    """Decode entities, strip tags, collapse whitespace and optionally cap length."""
    text = collapse_whitespace(strip_tags(decode_entities(raw)))
    if max_len is not None and max_len >= 0:
        text = text[:max_len].rstrip()
    return text


def extract_publisher(summary_html: Any) -> str:
    match = _FONT_PUBLISHER_RE.search(str(summary_html or ""))
    if not match:
        return ""
    return _WHITESPACE_RE.sub("-", match.group(1).strip().lower())


def normalize_source(source: Any, summary_html: Any = "") -> str:
    """Lowercased source key; news aggregators resolve to the original publisher."""
    value = str(source or "").strip().lower()
    if value in _AGGREGATOR_SOURCES:
        publisher = extract_publisher(summary_html)
        if publisher:
            return publisher
    return value


def stable_item_id(url: Any, title: Any, published_at: Any) -> str:
    """SHA-1 of url|title|published timestamp, for items without a native id."""
    if isinstance(published_at, datetime):
        stamp = published_at.isoformat()
    else:
        stamp = str(published_at or "")
    key = f"{url or ''}|{title or ''}|{stamp}"
    return hashlib.sha1(key.encode("utf-8")).hexdigest()
