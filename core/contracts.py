"""Canonical data contracts for the aggregation and publishing-run engine."""

from __future__ import annotations

from datetime import datetime, timezone
from enum import Enum
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict, Field, field_validator


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


class ItemState(str, Enum):
    """Per-item state inside a run."""

    QUEUED = "queued"
    RUNNING = "running"
    DONE = "done"
    FAILED = "failed"


class RunState(str, Enum):
    """Run-level state machine."""

    STAGING = "staging"
    DISPATCHED = "dispatched"
    POLLING = "polling"
    RECONCILING = "reconciling"
    COMPLETED = "completed"
    TIMED_OUT = "timed_out"
    FAILED = "failed"
    CANCELLED = "cancelled"


TERMINAL_RUN_STATES = frozenset({RunState.COMPLETED, RunState.TIMED_OUT, RunState.FAILED, RunState.CANCELLED})
TERMINAL_ITEM_STATES = frozenset({ItemState.DONE, ItemState.FAILED})


class KeywordKind(str, Enum):
    UNIGRAM = "unigram"
    BIGRAM = "bigram"
    TRIGRAM = "trigram"


class FeedItem(BaseModel):
    """One ingested headline, frozen once the article set is built."""

    model_config = ConfigDict(frozen=True)

    id: str
    title: str
    summary: str = ""
    source: str = ""
    published_at: Optional[datetime] = None
    url: str = ""
    stems: Tuple[str, ...] = ()
    num_id: Optional[int] = None

    @field_validator("title", "summary", "source", "url", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return str(value or "").strip()


class Keyword(BaseModel):
    """Stemmed n-gram with its corpus statistics."""

    key: str
    label: str
    document_frequency: int = 0
    tag_boost: int = 0
    score: float = 0.0
    kind: KeywordKind = KeywordKind.UNIGRAM
    boosted: bool = False

    @property
    def frequency(self) -> int:
        return self.document_frequency + self.tag_boost


class SelectionItem(BaseModel):
    """Operator-chosen FeedItem queued for publishing."""

    model_config = ConfigDict(frozen=True)

    item_id: str
    num_id: Optional[int] = None
    title: str
    summary: str = ""
    url: str = ""
    slug: str
    old_slugs: Tuple[str, ...] = ()

    @field_validator("slug", mode="before")
    @classmethod
    def _slug_required(cls, value: Any) -> str:
        text = str(value or "").strip()
        if not text:
            raise ValueError("slug is required")
        return text


# Ordered accessor list for id-like fields reported by the pipeline.
ID_FIELDS: Tuple[str, ...] = ("id", "article_id", "selection_id", "source_id", "original_id")


class ResultSummaryItem(BaseModel):
    """One entry of the pipeline's reported outcome (read-only here)."""

    id: Optional[str] = None
    article_id: Optional[str] = None
    selection_id: Optional[str] = None
    source_id: Optional[str] = None
    original_id: Optional[str] = None
    slug: str = ""
    title: str = ""
    excerpt: str = ""
    url: str = ""
    thumbnail: Optional[str] = None

    @field_validator(*ID_FIELDS, mode="before")
    @classmethod
    def _id_text(cls, value: Any) -> Optional[str]:
        if value is None or isinstance(value, bool):
            return None
        text = str(value).strip()
        return text or None

    @field_validator("slug", "title", "excerpt", "url", mode="before")
    @classmethod
    def _text(cls, value: Any) -> str:
        return str(value or "").strip()

    def id_values(self) -> List[Tuple[str, str]]:
        """(field, value) pairs for every populated id-like field, in accessor order."""
        values: List[Tuple[str, str]] = []
        for name in ID_FIELDS:
            value = getattr(self, name)
            if value:
                values.append((name, value))
        return values

    def numeric_id(self) -> Optional[int]:
        for _, value in self.id_values():
            if value.isdigit():
                return int(value)
        return None


class ResultSummary(BaseModel):
    count: Optional[int] = None
    items: List[ResultSummaryItem] = Field(default_factory=list)
    token: Optional[str] = None

    def has_signals(self) -> bool:
        return bool(self.token) or self.count is not None or bool(self.items)


class TriggerResponse(BaseModel):
    """What the pipeline trigger returned for a dispatched batch."""

    count: Optional[int] = None
    ids: List[str] = Field(default_factory=list)
    slugs: List[str] = Field(default_factory=list)
    token: Optional[str] = None
    invocation_id: Optional[str] = None
    started_at: datetime = Field(default_factory=_utc_now)

    @field_validator("ids", "slugs", mode="before")
    @classmethod
    def _string_list(cls, value: Any) -> List[str]:
        if not value:
            return []
        return [str(entry).strip() for entry in value if str(entry or "").strip()]


class StatusResponse(BaseModel):
    finished: bool = False
    summary: Optional[ResultSummary] = None


class SelectionStatus(BaseModel):
    """Fallback identity source while the pipeline summary has not arrived."""

    ready: bool = False
    items: List[ResultSummaryItem] = Field(default_factory=list)


class RecordSnapshot(BaseModel):
    """Authoritative record as read back from storage by numeric id."""

    id: int
    slug: str = ""
    title: str = ""
    excerpt: str = ""
    thumbnail: Optional[str] = None


class Expectation(BaseModel):
    """Identity signals captured at dispatch, used to accept a summary."""

    token: Optional[str] = None
    ids: List[str] = Field(default_factory=list)
    slugs: List[str] = Field(default_factory=list)
    count: int = 0


class ItemStatus(BaseModel):
    item_id: str
    state: ItemState = ItemState.QUEUED
    resolved_id: Optional[int] = None
    matched_by: Optional[str] = None
    record: Optional[RecordSnapshot] = None
    error: Optional[str] = None


class ExportItem(BaseModel):
    item_id: str
    num_id: Optional[int] = None
    id: Optional[int] = None
    slug: str = ""
    title: str = ""
    excerpt: str = ""
    thumbnail: Optional[str] = None
    state: ItemState = ItemState.FAILED


class SelectionReport(BaseModel):
    """Final mapping of selection items to resolved records."""

    token: Optional[str] = None
    state: RunState
    started_at: datetime
    finished_at: datetime = Field(default_factory=_utc_now)
    items: List[ExportItem] = Field(default_factory=list)


class IdentityDiagnostic(BaseModel):
    """Diagnostic for a selection item that no identity signal resolved."""

    item_id: str
    attempted: Dict[str, Any] = Field(default_factory=dict)
    available: List[Dict[str, Any]] = Field(default_factory=list)
    near_misses: List[str] = Field(default_factory=list)


class RunOutcome(BaseModel):
    """Frozen snapshot of a finished run; survives the run context."""

    model_config = ConfigDict(frozen=True)

    token: Optional[str] = None
    state: RunState
    started_at: datetime
    finished_at: datetime = Field(default_factory=_utc_now)
    items: List[ItemStatus] = Field(default_factory=list)
    report: Optional[SelectionReport] = None
    diagnostics: List[IdentityDiagnostic] = Field(default_factory=list)
    errors: List[str] = Field(default_factory=list)
    exported: bool = False
    log_tail: List[str] = Field(default_factory=list)


class MarketMover(BaseModel):
    symbol: str
    base: str
    pct_change: float = 0.0
    quote_volume: float = 0.0


class ArticleSet(BaseModel):
    """Ranked, filterable, read-only article set handed to the operator."""

    articles: List[FeedItem] = Field(default_factory=list)
    top_keywords: List[Keyword] = Field(default_factory=list)
    most_frequent: List[Keyword] = Field(default_factory=list)
    hours_used: int = 12
    boosted: bool = False
    generated_at: datetime = Field(default_factory=_utc_now)


ImageFilterMode = Literal["all", "noimg", "hasimg", "done", "failed"]


class ImageRequest(BaseModel):
    item_id: str
    id: Optional[int] = None
    slug: str = ""
    old_slugs: List[str] = Field(default_factory=list)
    title: str = ""
    excerpt: str = ""
    prompt: Optional[str] = None
    reference_url: Optional[str] = None
    size: str = "1024x1024"
    style: str = "photo"
    model: str = "auto"
    engine: str = "auto"


class ImageResult(BaseModel):
    item_id: str
    url: str
    attempts: int = 1
    prompt: Optional[str] = None


class BatchImageJob(BaseModel):
    """Progress of a sequential batch generation."""

    job_id: str
    target: Literal["selection", "filtered", "run"] = "run"
    item_ids: List[str] = Field(default_factory=list)
    completed: List[str] = Field(default_factory=list)
    failed: Dict[str, str] = Field(default_factory=dict)
    current: Optional[str] = None
    cancel_requested: bool = False
    state: Literal["pending", "running", "completed", "cancelled"] = "pending"

    @property
    def progress(self) -> float:
        if not self.item_ids:
            return 1.0
        return (len(self.completed) + len(self.failed)) / float(len(self.item_ids))


class AttachTicket(BaseModel):
    """First phase of a two-phase attach; the write happens on confirm."""

    model_config = ConfigDict(frozen=True)

    token: str
    item_id: str
    record_id: int
    image_url: str
    created_at: datetime = Field(default_factory=_utc_now)
