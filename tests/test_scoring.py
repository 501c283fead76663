from __future__ import annotations

import math

import pytest

from core import KeywordKind, MarketMover
from pipeline.normalize import Stemmer
from pipeline.scoring import (
    apply_exchange_tags,
    apply_market_boost,
    exchange_asset,
    extract_terms,
    idf,
    most_frequent,
    score_corpus,
    top_keywords,
    top_movers,
)


@pytest.fixture
def plain() -> Stemmer:
    return Stemmer("none")


def test_single_document_counts(plain: Stemmer) -> None:
    corpus = score_corpus(["bitcoin bitcoin ether"], plain)

    assert corpus.corpus_size == 1
    assert corpus.documents[0].tf["bitcoin"] == 2
    assert corpus.keywords["bitcoin"].document_frequency == 1
    assert corpus.keywords["ether"].document_frequency == 1
    assert idf(1, 1) == pytest.approx(math.log(2 / 2) + 1)
    assert corpus.keywords["bitcoin"].score == pytest.approx(2 * idf(1, 1))
    assert corpus.keywords["ether"].score == pytest.approx(idf(1, 1))


def test_document_frequency_bounded_by_corpus_size(plain: Stemmer) -> None:
    texts = ["alpha beta alpha alpha", "alpha gamma", "delta delta"]
    corpus = score_corpus(texts, plain)

    assert corpus.keywords["alpha"].document_frequency == 2
    assert corpus.keywords["delta"].document_frequency == 1
    assert all(keyword.document_frequency <= len(texts) for keyword in corpus.keywords.values())


def test_ngrams_require_every_word_to_qualify(plain: Stemmer) -> None:
    doc = extract_terms("the bitcoin rally continues", plain)

    assert "bitcoin rally" in doc.tf
    assert "bitcoin rally continues" in doc.tf
    assert "the bitcoin" not in doc.tf
    assert doc.stems[:3] == ["bitcoin", "rally", "continues"]


def test_keyword_kinds_and_labels() -> None:
    corpus = score_corpus(["Solana validators upgrade"], Stemmer("porter"))
    kinds = {keyword.kind for keyword in corpus.keywords.values()}
    assert kinds == {KeywordKind.UNIGRAM, KeywordKind.BIGRAM, KeywordKind.TRIGRAM}
    assert corpus.keywords[Stemmer("porter").stem("validators")].label == "validators"


def test_market_boost_applies_only_to_present_stems(plain: Stemmer) -> None:
    corpus = score_corpus(["sol price jumps"], plain)
    movers = [
        MarketMover(symbol="SOLUSDT", base="SOL", pct_change=12.0),
        MarketMover(symbol="DOGEUSDT", base="DOGE", pct_change=-30.0),
    ]

    boosted = apply_market_boost(corpus, movers, plain, multiplier=3.0, bonus=5.0)

    assert boosted == ["sol"]
    assert corpus.boosted is True
    assert corpus.keywords["sol"].score == pytest.approx(1 * 3.0 + 5.0)
    assert corpus.keywords["sol"].boosted is True
    assert "doge" not in corpus.keywords


def test_missing_movers_leave_scores_untouched(plain: Stemmer) -> None:
    corpus = score_corpus(["sol price jumps"], plain)
    before = corpus.keywords["sol"].score

    assert apply_market_boost(corpus, None, plain) == []
    assert corpus.boosted is False
    assert corpus.keywords["sol"].score == before


def test_top_movers_by_absolute_change() -> None:
    movers = [
        MarketMover(symbol="A", base="A", pct_change=1.0),
        MarketMover(symbol="B", base="B", pct_change=-9.0),
        MarketMover(symbol="C", base="C", pct_change=5.0),
    ]
    assert [mover.symbol for mover in top_movers(movers, 2)] == ["B", "C"]


def test_exchange_tag_creates_keyword_with_floor(plain: Stemmer) -> None:
    corpus = score_corpus(["market update today"], plain)

    tagged = apply_exchange_tags(corpus, ["binance-PEPE"], plain, prefixes=["binance"], bonus=5)

    assert tagged == 1
    keyword = corpus.keywords["pepe"]
    assert keyword.label == "PEPE"
    assert keyword.document_frequency == 0
    assert keyword.tag_boost == 5
    assert keyword.frequency == 5
    assert keyword.score == pytest.approx(5.0)
    assert corpus.document_stems(0)[0] == "pepe"


def test_exchange_asset_parsing() -> None:
    assert exchange_asset("binance-BTC", ["binance"]) == ("binance", "btc")
    assert exchange_asset("cointelegraph", ["binance"]) is None
    assert exchange_asset("binance-", ["binance"]) is None


def test_most_frequent_excludes_top_keywords_and_ngrams(plain: Stemmer) -> None:
    texts = ["bitcoin etf approval", "bitcoin etf inflows", "bitcoin miners", "ether staking"]
    corpus = score_corpus(texts, plain)

    top = top_keywords(corpus, 1)
    frequent = most_frequent(corpus, 5, exclude=[keyword.key for keyword in top])

    assert top[0].key not in [keyword.key for keyword in frequent]
    assert all(keyword.kind == KeywordKind.UNIGRAM for keyword in frequent)
    frequencies = [keyword.frequency for keyword in frequent]
    assert frequencies == sorted(frequencies, reverse=True)
