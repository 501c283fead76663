"""Aggregation stages: sanitize, normalize, dedup, scoring, article set."""

from .article_set import (
    ArticleFilter,
    ArticlePage,
    SelectionParse,
    build_article_set,
    filter_articles,
    parse_selection,
    to_selection,
)
from .dedup import dedup_items, dedup_keys
from .normalize import (
    STOPWORDS,
    Stemmer,
    get_stemmer,
    normalize,
    normalize_title_key,
    normalize_url_key,
    qualifies,
    slugify,
    stem,
    tokenize,
)
from .sanitize import normalize_source, sanitize_summary, stable_item_id
from .scoring import (
    CorpusScores,
    apply_exchange_tags,
    apply_market_boost,
    idf,
    most_frequent,
    score_corpus,
    top_keywords,
)

__all__ = [
    "ArticleFilter",
    "ArticlePage",
    "CorpusScores",
    "STOPWORDS",
    "SelectionParse",
    "Stemmer",
    "apply_exchange_tags",
    "apply_market_boost",
    "build_article_set",
    "dedup_items",
    "dedup_keys",
    "filter_articles",
    "get_stemmer",
    "idf",
    "most_frequent",
    "normalize",
    "normalize_source",
    "normalize_title_key",
    "normalize_url_key",
    "parse_selection",
    "qualifies",
    "sanitize_summary",
    "score_corpus",
    "slugify",
    "stable_item_id",
    "stem",
    "tokenize",
    "to_selection",
    "top_keywords",
]
