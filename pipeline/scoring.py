"""Stemmed n-gram relevance scoring with best-effort market boosting."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
import logging
import math
import re
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from core import Keyword, KeywordKind, MarketMover
from pipeline.normalize import Stemmer, qualifies, tokenize


logger = logging.getLogger(__name__)

_KIND_BY_LENGTH = {1: KeywordKind.UNIGRAM, 2: KeywordKind.BIGRAM, 3: KeywordKind.TRIGRAM}
_SYMBOL_CLEAN_RE = re.compile(r"[^a-z0-9]")


@dataclass
class DocumentTerms:
    """Per-document term counts; `stems` keeps first-seen order."""

    tf: Counter = field(default_factory=Counter)
    stems: List[str] = field(default_factory=list)


@dataclass
class CorpusScores:
    corpus_size: int
    keywords: Dict[str, Keyword] = field(default_factory=dict)
    documents: List[DocumentTerms] = field(default_factory=list)
    boosted: bool = False

    def document_stems(self, index: int) -> List[str]:
        return list(self.documents[index].stems)


def idf(corpus_size: int, document_frequency: int) -> float:
    return math.log((corpus_size + 1) / (1 + document_frequency)) + 1


def extract_terms(text: str, stemmer: Stemmer, labels: Optional[Dict[str, str]] = None) -> DocumentTerms:
    """Unigrams plus bigrams/trigrams whose every word qualifies on its own."""
    tokens = tokenize(text)
    doc = DocumentTerms()
    seen = set()

    def _add(term: str, surface: str) -> None:
        doc.tf[term] += 1
        if term not in seen:
            seen.add(term)
            doc.stems.append(term)
        if labels is not None and term not in labels:
            labels[term] = surface

    for token in tokens:
        if qualifies(token):
            _add(stemmer.stem(token), token)

    for idx in range(len(tokens)):
        for size in (2, 3):
            window = tokens[idx : idx + size]
            if len(window) < size or not all(qualifies(word) for word in window):
                continue
            _add(" ".join(stemmer.stem(word) for word in window), " ".join(window))

    return doc


def score_corpus(texts: Sequence[str], stemmer: Stemmer) -> CorpusScores:
    """df counts each term at most once per document; tf counts every occurrence."""
    labels: Dict[str, str] = {}
    documents = [extract_terms(text, stemmer, labels) for text in texts]
    corpus_size = len(documents) or 1

    df: Counter = Counter()
    for doc in documents:
        df.update(doc.tf.keys())

    scores: Dict[str, float] = {}
    for doc in documents:
        for term, tf in doc.tf.items():
            scores[term] = scores.get(term, 0.0) + tf * idf(corpus_size, df[term])

    keywords = {
        term: Keyword(
            key=term,
            label=labels.get(term, term),
            document_frequency=df[term],
            score=score,
            kind=_KIND_BY_LENGTH.get(len(term.split(" ")), KeywordKind.TRIGRAM),
        )
        for term, score in scores.items()
    }
    return CorpusScores(corpus_size=corpus_size, keywords=keywords, documents=documents)


def top_movers(movers: Iterable[MarketMover], limit: int = 40) -> List[MarketMover]:
    return sorted(movers, key=lambda mover: abs(mover.pct_change), reverse=True)[: max(0, int(limit))]


def apply_market_boost(
    corpus: CorpusScores,
    movers: Optional[Sequence[MarketMover]],
    stemmer: Stemmer,
    *,
    limit: int = 40,
    multiplier: float = 3.0,
    bonus: float = 5.0,
) -> List[str]:
    """Boost stems of the top movers that already occur in the corpus.

    `movers=None` means the market feed was unavailable; scoring is left as is.
    """
    if movers is None:
        logger.debug("market_boost_skipped reason=no_movers")
        return []

    boosted: List[str] = []
    stems = []
    for mover in top_movers(movers, limit):
        base = _SYMBOL_CLEAN_RE.sub("", str(mover.base or "").lower())
        if base:
            stems.append(stemmer.stem(base))

    for stem_value in dict.fromkeys(stems):
        keyword = corpus.keywords.get(stem_value)
        if keyword is None or keyword.score <= 0:
            continue
        keyword.score = keyword.score * multiplier + bonus
        keyword.boosted = True
        boosted.append(stem_value)

    corpus.boosted = bool(boosted)
    logger.info("market_boost movers=%s boosted=%s", len(movers), len(boosted))
    return boosted


def exchange_asset(source: str, prefixes: Sequence[str]) -> Optional[Tuple[str, str]]:
    """(exchange, asset) for sources tagged like `binance-<SYM>`."""
    value = str(source or "").strip().lower()
    for prefix in prefixes:
        marker = f"{str(prefix).lower()}-"
        if value.startswith(marker):
            asset = _SYMBOL_CLEAN_RE.sub("", value[len(marker) :])
            if asset:
                return str(prefix).lower(), asset
    return None


def apply_exchange_tags(
    corpus: CorpusScores,
    sources: Sequence[str],
    stemmer: Stemmer,
    *,
    prefixes: Sequence[str] = ("binance",),
    bonus: int = 5,
) -> int:
    """Give exchange-tagged items their asset stem and a frequency/score floor.

    The floor lands in `tag_boost`, not `document_frequency`, so textual df
    never exceeds the corpus size.
    """
    tagged = 0
    for index, source in enumerate(sources):
        pair = exchange_asset(source, prefixes)
        if pair is None or index >= len(corpus.documents):
            continue
        _, asset = pair
        stem_value = stemmer.stem(asset)
        doc_stems = corpus.documents[index].stems
        if stem_value not in doc_stems:
            doc_stems.insert(0, stem_value)

        keyword = corpus.keywords.get(stem_value)
        if keyword is None:
            keyword = Keyword(key=stem_value, label=asset.upper(), kind=KeywordKind.UNIGRAM)
            corpus.keywords[stem_value] = keyword
        keyword.tag_boost += bonus
        keyword.score += bonus
        tagged += 1

    if tagged:
        logger.info("exchange_tags tagged_items=%s", tagged)
    return tagged


def top_keywords(corpus: CorpusScores, k: int = 20) -> List[Keyword]:
    ranked = sorted(corpus.keywords.values(), key=lambda keyword: keyword.score, reverse=True)
    return ranked[: max(0, int(k))]


def most_frequent(corpus: CorpusScores, k: int = 20, exclude: Iterable[str] = ()) -> List[Keyword]:
    """Single-word terms by frequency, skipping anything already in `exclude`."""
    excluded = set(exclude)
    candidates = [
        keyword
        for keyword in corpus.keywords.values()
        if keyword.kind == KeywordKind.UNIGRAM and keyword.key not in excluded
    ]
    candidates.sort(key=lambda keyword: keyword.frequency, reverse=True)
    return candidates[: max(0, int(k))]
