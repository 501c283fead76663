"""Core contracts and shared types."""

from .contracts import (
    ID_FIELDS,
    TERMINAL_ITEM_STATES,
    TERMINAL_RUN_STATES,
    ArticleSet,
    AttachTicket,
    BatchImageJob,
    Expectation,
    ExportItem,
    FeedItem,
    IdentityDiagnostic,
    ImageFilterMode,
    ImageRequest,
    ImageResult,
    ItemState,
    ItemStatus,
    Keyword,
    KeywordKind,
    MarketMover,
    RecordSnapshot,
    ResultSummary,
    ResultSummaryItem,
    RunOutcome,
    RunState,
    SelectionItem,
    SelectionReport,
    SelectionStatus,
    StatusResponse,
    TriggerResponse,
)

__all__ = [
    "ID_FIELDS",
    "TERMINAL_ITEM_STATES",
    "TERMINAL_RUN_STATES",
    "ArticleSet",
    "AttachTicket",
    "BatchImageJob",
    "Expectation",
    "ExportItem",
    "FeedItem",
    "IdentityDiagnostic",
    "ImageFilterMode",
    "ImageRequest",
    "ImageResult",
    "ItemState",
    "ItemStatus",
    "Keyword",
    "KeywordKind",
    "MarketMover",
    "RecordSnapshot",
    "ResultSummary",
    "ResultSummaryItem",
    "RunOutcome",
    "RunState",
    "SelectionItem",
    "SelectionReport",
    "SelectionStatus",
    "StatusResponse",
    "TriggerResponse",
]
