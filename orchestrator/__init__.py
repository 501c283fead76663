"""Run orchestration: identity matching, run state machine, pipeline clients."""

from .context import RunContext
from .gateway import HttpPipelineGateway, HttpSelectionSink, PipelineGateway, SelectionSink
from .identity import IdentityMatch, explain_miss, match_selection
from .report import build_diagnostics, build_report, format_diagnostic, summarize_outcome
from .service import RunOrchestrator, summary_acceptance
from .staging import FileSelectionSink

__all__ = [
    "FileSelectionSink",
    "HttpPipelineGateway",
    "HttpSelectionSink",
    "IdentityMatch",
    "PipelineGateway",
    "RunContext",
    "RunOrchestrator",
    "SelectionSink",
    "build_diagnostics",
    "build_report",
    "explain_miss",
    "format_diagnostic",
    "match_selection",
    "summarize_outcome",
    "summary_acceptance",
]
