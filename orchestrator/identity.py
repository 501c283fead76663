"""Identity matcher: resolve a selection item to a pipeline-reported item.

Signals are tried in a fixed order: run token, id-like fields, slug,
normalized title key, normalized url key. Everything here is pure.
"""

from __future__ import annotations

from dataclasses import dataclass
from difflib import SequenceMatcher
from typing import Iterable, List, Optional, Sequence, Set

from core import IdentityDiagnostic, ResultSummaryItem, SelectionItem
from pipeline.normalize import normalize_title_key, normalize_url_key


NEAR_MISS_RATIO = 0.85


@dataclass(frozen=True)
class IdentityMatch:
    """Outcome of a successful match.

    `whole_run` is set when the run token matched; `candidate` is then the
    per-item entry found by the remaining signals, if any.
    """

    matched_by: str
    candidate: Optional[ResultSummaryItem] = None
    whole_run: bool = False

    @property
    def numeric_id(self) -> Optional[int]:
        return self.candidate.numeric_id() if self.candidate else None


def selection_ids(selection: SelectionItem, extra: Iterable[object] = ()) -> Set[str]:
    """Every id the client knows for an item: its own id plus any resolved ids.

    The display number is left out; it collides with small storage ids.
    """
    ids = {str(selection.item_id)}
    for value in extra:
        if value is not None and str(value).strip():
            ids.add(str(value).strip())
    return ids


def selection_slugs(selection: SelectionItem) -> List[str]:
    return [slug for slug in (selection.slug, *selection.old_slugs) if slug]


def _match_by_id(known: Set[str], candidates: Sequence[ResultSummaryItem]) -> Optional[ResultSummaryItem]:
    for candidate in candidates:
        if any(value in known for _, value in candidate.id_values()):
            return candidate
    return None


def _match_by_slug(selection: SelectionItem, candidates: Sequence[ResultSummaryItem]) -> Optional[ResultSummaryItem]:
    slugs = set(selection_slugs(selection))
    for candidate in candidates:
        if candidate.slug and candidate.slug in slugs:
            return candidate
    return None


def _match_by_title(selection: SelectionItem, candidates: Sequence[ResultSummaryItem]) -> Optional[ResultSummaryItem]:
    key = normalize_title_key(selection.title)
    if not key:
        return None
    for candidate in candidates:
        if normalize_title_key(candidate.title) == key:
            return candidate
    return None


def _match_by_url(selection: SelectionItem, candidates: Sequence[ResultSummaryItem]) -> Optional[ResultSummaryItem]:
    key = normalize_url_key(selection.url)
    if not key:
        return None
    for candidate in candidates:
        if normalize_url_key(candidate.url) == key:
            return candidate
    return None


def _locate(
    selection: SelectionItem,
    candidates: Sequence[ResultSummaryItem],
    known_ids: Iterable[object],
) -> Optional[IdentityMatch]:
    known = selection_ids(selection, known_ids)
    for name, finder in (
        ("id", lambda: _match_by_id(known, candidates)),
        ("slug", lambda: _match_by_slug(selection, candidates)),
        ("title", lambda: _match_by_title(selection, candidates)),
        ("url", lambda: _match_by_url(selection, candidates)),
    ):
        found = finder()
        if found is not None:
            return IdentityMatch(matched_by=name, candidate=found)
    return None


def match_selection(
    selection: SelectionItem,
    candidates: Sequence[ResultSummaryItem],
    *,
    known_ids: Iterable[object] = (),
    run_token: Optional[str] = None,
    summary_token: Optional[str] = None,
) -> Optional[IdentityMatch]:
    """Return the first signal that resolves `selection`, or None.

    None means "not available yet"; callers decide when it becomes a failure.
    """
    located = _locate(selection, candidates, known_ids)
    if run_token and summary_token and run_token == summary_token:
        return IdentityMatch(
            matched_by="token",
            candidate=located.candidate if located else None,
            whole_run=True,
        )
    return located


def _near(a: str, b: str) -> float:
    if not a or not b:
        return 0.0
    return SequenceMatcher(None, a, b).ratio()


def explain_miss(
    selection: SelectionItem,
    candidates: Sequence[ResultSummaryItem],
    *,
    known_ids: Iterable[object] = (),
) -> IdentityDiagnostic:
    """Keys attempted versus keys the summary offered, plus close-but-unequal pairs."""
    title_key = normalize_title_key(selection.title)
    url_key = normalize_url_key(selection.url)
    slugs = selection_slugs(selection)

    available = []
    near_misses: List[str] = []
    for candidate in candidates:
        cand_title = normalize_title_key(candidate.title)
        cand_url = normalize_url_key(candidate.url)
        available.append(
            {
                "ids": [value for _, value in candidate.id_values()],
                "slug": candidate.slug,
                "title_key": cand_title,
                "url_key": cand_url,
            }
        )
        for slug in slugs:
            ratio = _near(slug, candidate.slug)
            if NEAR_MISS_RATIO <= ratio < 1.0:
                near_misses.append(f"slug {slug!r} ~ {candidate.slug!r} ({ratio:.2f})")
        ratio = _near(title_key, cand_title)
        if NEAR_MISS_RATIO <= ratio < 1.0:
            near_misses.append(f"title {title_key!r} ~ {cand_title!r} ({ratio:.2f})")

    return IdentityDiagnostic(
        item_id=selection.item_id,
        attempted={
            "ids": sorted(selection_ids(selection, known_ids)),
            "slugs": slugs,
            "title_key": title_key,
            "url_key": url_key,
        },
        available=available,
        near_misses=near_misses,
    )
