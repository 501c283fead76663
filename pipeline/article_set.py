"""Build the ranked, filterable article set and turn operator picks into a selection."""

from __future__ import annotations

from dataclasses import dataclass, field
import logging
import math
import re
from typing import Dict, List, Mapping, Optional, Sequence

from config import ScoringSettings, TextSettings
from core import ArticleSet, FeedItem, MarketMover, SelectionItem
from pipeline.dedup import dedup_items
from pipeline.normalize import get_stemmer, slugify
from pipeline.sanitize import normalize_source, sanitize_summary, stable_item_id
from pipeline.scoring import (
    apply_exchange_tags,
    apply_market_boost,
    exchange_asset,
    most_frequent,
    score_corpus,
    top_keywords,
)


logger = logging.getLogger(__name__)

EXCHANGE_KEYWORD = "__binance__"
_SELECTION_SPLIT_RE = re.compile(r"[\s,;]+")


def _timestamp(item: FeedItem) -> float:
    if item.published_at is None:
        return 0.0
    try:
        return item.published_at.timestamp()
    except (OverflowError, OSError, ValueError):
        return 0.0


def build_article_set(
    items: Sequence[FeedItem],
    movers: Optional[Sequence[MarketMover]] = None,
    *,
    text_settings: Optional[TextSettings] = None,
    scoring_settings: Optional[ScoringSettings] = None,
    hours: int = 12,
) -> ArticleSet:
    """Normalize, dedup, sanitize, score, boost, sort and trim raw feed items.

    Args:
        items: raw feed items (summaries may still carry markup)
        movers: market movers, or None when the market feed was unavailable
        text_settings: stemmer mode and output caps
        scoring_settings: top-k and boost parameters
        hours: look-back window that produced `items`
    """
    text_cfg = text_settings or TextSettings()
    scoring_cfg = scoring_settings or ScoringSettings()
    stemmer = get_stemmer(text_cfg.stemmer)

    prepared: List[FeedItem] = []
    for item in items:
        source = normalize_source(item.source, item.summary)
        item_id = item.id or stable_item_id(item.url, item.title, item.published_at)
        prepared.append(item.model_copy(update={"source": source, "id": item_id}))

    unique = dedup_items(prepared)
    unique = [item.model_copy(update={"summary": sanitize_summary(item.summary)}) for item in unique]
    logger.info("article_set_dedup input=%s unique=%s", len(prepared), len(unique))

    corpus = score_corpus([f"{item.title} {item.summary}" for item in unique], stemmer)
    apply_market_boost(
        corpus,
        movers,
        stemmer,
        limit=scoring_cfg.mover_limit,
        multiplier=scoring_cfg.boost_multiplier,
        bonus=scoring_cfg.boost_bonus,
    )
    apply_exchange_tags(
        corpus,
        [item.source for item in unique],
        stemmer,
        prefixes=scoring_cfg.exchange_prefixes,
        bonus=scoring_cfg.tag_bonus,
    )

    stemmed = [
        item.model_copy(update={"stems": tuple(corpus.document_stems(idx))})
        for idx, item in enumerate(unique)
    ]
    stemmed.sort(key=_timestamp, reverse=True)

    articles: List[FeedItem] = []
    for position, item in enumerate(stemmed[: text_cfg.return_limit], start=1):
        articles.append(
            item.model_copy(
                update={
                    "num_id": position,
                    "summary": sanitize_summary(item.summary, max_len=text_cfg.summary_max_len),
                    "stems": tuple(item.stems[: text_cfg.stem_limit]),
                }
            )
        )

    top = top_keywords(corpus, scoring_cfg.top_k)
    frequent = most_frequent(corpus, scoring_cfg.top_k, exclude=[keyword.key for keyword in top])
    logger.info(
        "article_set_built articles=%s keywords=%s boosted=%s degraded_stemmer=%s",
        len(articles),
        len(corpus.keywords),
        corpus.boosted,
        stemmer.degraded,
    )
    return ArticleSet(
        articles=articles,
        top_keywords=top,
        most_frequent=frequent,
        hours_used=hours,
        boosted=corpus.boosted,
    )


@dataclass
class ArticleFilter:
    query: str = ""
    source: str = ""
    keyword: str = ""
    sort: str = "newest"
    page: int = 1
    page_size: int = 20


@dataclass
class ArticlePage:
    items: List[FeedItem] = field(default_factory=list)
    total: int = 0
    page: int = 1
    pages: int = 1


def matches_filter(item: FeedItem, flt: ArticleFilter, prefixes: Sequence[str] = ("binance",)) -> bool:
    query = flt.query.strip().lower()
    if query and query not in item.title.lower() and query not in item.summary.lower():
        return False
    source = flt.source.strip().lower()
    if source and item.source.lower() != source:
        return False
    keyword = flt.keyword.strip().lower()
    if keyword == EXCHANGE_KEYWORD:
        return exchange_asset(item.source, prefixes) is not None
    if keyword and keyword not in [stem_value.lower() for stem_value in item.stems]:
        return False
    return True


def filter_articles(
    articles: Sequence[FeedItem],
    flt: Optional[ArticleFilter] = None,
    *,
    prefixes: Sequence[str] = ("binance",),
) -> ArticlePage:
    """Text/source/keyword filter, newest or oldest first, paged."""
    flt = flt or ArticleFilter()
    matched = [item for item in articles if matches_filter(item, flt, prefixes)]
    matched.sort(key=_timestamp, reverse=flt.sort != "oldest")

    page_size = max(1, int(flt.page_size))
    pages = max(1, math.ceil(len(matched) / page_size))
    page = min(max(1, int(flt.page)), pages)
    start = (page - 1) * page_size
    return ArticlePage(items=matched[start : start + page_size], total=len(matched), page=page, pages=pages)


@dataclass
class SelectionParse:
    items: List[FeedItem] = field(default_factory=list)
    unknown: List[str] = field(default_factory=list)


def parse_selection(text: str, articles: Sequence[FeedItem]) -> SelectionParse:
    """Resolve "2,5,21" style input (display numbers or raw ids) against the set."""
    by_num: Dict[int, FeedItem] = {item.num_id: item for item in articles if item.num_id is not None}
    by_id: Dict[str, FeedItem] = {item.id: item for item in articles}

    result = SelectionParse()
    picked = set()
    for token in _SELECTION_SPLIT_RE.split(str(text or "").strip()):
        if not token:
            continue
        item = None
        if token.isdigit():
            item = by_num.get(int(token))
        if item is None:
            item = by_id.get(token)
        if item is None:
            result.unknown.append(token)
            continue
        if item.id in picked:
            continue
        picked.add(item.id)
        result.items.append(item)
    return result


def to_selection(
    items: Sequence[FeedItem],
    old_slugs: Optional[Mapping[str, Sequence[str]]] = None,
) -> List[SelectionItem]:
    previous = old_slugs or {}
    selection: List[SelectionItem] = []
    for item in items:
        slug = slugify(item.title) or slugify(item.id)
        selection.append(
            SelectionItem(
                item_id=item.id,
                num_id=item.num_id,
                title=item.title,
                summary=item.summary,
                url=item.url,
                slug=slug,
                old_slugs=tuple(previous.get(item.id, ())),
            )
        )
    return selection
