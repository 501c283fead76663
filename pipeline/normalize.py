"""Text normalizer: tokens, stems and the stable join keys.

`slugify`, `normalize_title_key` and `normalize_url_key` are used as join keys
by the deduplicator and the identity matcher, so they must stay pure,
deterministic and ASCII-only.
"""

from __future__ import annotations

from functools import lru_cache
import logging
import re
import unicodedata
from typing import Any, List

from nltk.stem.porter import PorterStemmer

from pipeline.sanitize import decode_entities, strip_tags
from utils.exceptions import ConfigurationError


logger = logging.getLogger(__name__)

STOPWORDS = frozenset(
    {
        "the", "is", "at", "which", "on", "and", "a", "an", "in", "to", "of", "for",
        "with", "by", "from", "as", "that", "this", "it", "are", "be", "was", "were",
        "has", "have", "but", "or", "its", "will", "can", "not", "we", "our", "they",
        "their", "you", "your",
    }
)
MIN_TOKEN_LENGTH = 3
STEMMER_MODES = ("porter", "none")

_NON_ALNUM_RE = re.compile(r"[^a-z0-9]+")
_QUOTES_RE = re.compile(r"[\"'`]")
_CURLY_QUOTES = str.maketrans({"‘": "'", "’": "'", "“": '"', "”": '"'})


def fold_ascii(text: Any) -> str:
    """NFKD-decompose and drop everything outside ASCII (diacritics included)."""
    decomposed = unicodedata.normalize("NFKD", str(text or ""))
    return decomposed.encode("ascii", "ignore").decode("ascii")


def tokenize(text: Any) -> List[str]:
    """Raw token stream (no length/stopword filter); n-grams need adjacency."""
    plain = fold_ascii(strip_tags(decode_entities(text))).lower()
    return [token for token in _NON_ALNUM_RE.split(plain) if token]


def qualifies(token: str) -> bool:
    return len(token) >= MIN_TOKEN_LENGTH and token not in STOPWORDS


def normalize(text: Any) -> List[str]:
    return [token for token in tokenize(text) if qualifies(token)]


class Stemmer:
    """Porter stemmer with an identity-lowercase degraded mode.

    mode="none" (or a stemmer failure on a single token) falls back to the
    lowercased token. Scoring still works but morphological variants are no
    longer merged, so keyword quality drops.
    """

    def __init__(self, mode: str = "porter"):
        self.mode = str(mode or "porter").strip().lower()
        if self.mode not in STEMMER_MODES:
            raise ConfigurationError(f"unknown stemmer mode: {mode}", {"modes": list(STEMMER_MODES)})
        self._porter = PorterStemmer() if self.mode == "porter" else None
        if self._porter is None:
            logger.warning("stemmer_degraded mode=%s fallback=identity-lowercase", self.mode)

    @property
    def degraded(self) -> bool:
        return self._porter is None

    def stem(self, token: str) -> str:
        word = str(token or "").lower()
        if self._porter is None:
            return word
        try:
            return self._porter.stem(word)
        except Exception as exc:
            logger.debug("stem_failed token=%s error=%s", word, exc)
            return word


@lru_cache(maxsize=4)
def get_stemmer(mode: str = "porter") -> Stemmer:
    return Stemmer(mode)


def stem(token: str, mode: str = "porter") -> str:
    return get_stemmer(mode).stem(token)


def slugify(text: Any) -> str:
    """Lowercase, diacritics stripped, punctuation removed, words joined by single hyphens."""
    value = str(text or "").translate(_CURLY_QUOTES)
    value = fold_ascii(value).lower()
    value = _QUOTES_RE.sub("", value)
    value = _NON_ALNUM_RE.sub("-", value)
    return value.strip("-")


def normalize_title_key(text: Any) -> str:
    value = fold_ascii(strip_tags(decode_entities(text))).lower()
    return " ".join(_NON_ALNUM_RE.sub(" ", value).split())


def normalize_url_key(url: Any) -> str:
    """Url without query, fragment or trailing slash; lowercased ASCII."""
    value = str(url or "").strip()
    if not value:
        return ""
    value = value.split("#", 1)[0].split("?", 1)[0]
    value = value.rstrip("/")
    return fold_ascii(value).lower()
