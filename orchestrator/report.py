"""Export report and operator diagnostics for a finished run."""

from __future__ import annotations

from typing import List

from core import ExportItem, IdentityDiagnostic, ItemState, RunOutcome, SelectionReport

from .context import RunContext
from .identity import explain_miss


def build_report(ctx: RunContext) -> SelectionReport:
    """One row per selection item: resolved id (or None), slug, title, excerpt."""
    rows: List[ExportItem] = []
    for item in ctx.selection:
        status = ctx.statuses[item.item_id]
        record = status.record
        rows.append(
            ExportItem(
                item_id=item.item_id,
                num_id=item.num_id,
                id=record.id if record else None,
                slug=(record.slug if record and record.slug else item.slug),
                title=(record.title if record and record.title else item.title),
                excerpt=(record.excerpt if record and record.excerpt else item.summary),
                thumbnail=record.thumbnail if record else None,
                state=status.state,
            )
        )
    return SelectionReport(token=ctx.token, state=ctx.state, started_at=ctx.started_at, items=rows)


def build_diagnostics(ctx: RunContext) -> List[IdentityDiagnostic]:
    """Explain every failed item against all identity keys seen during the run."""
    candidates = list(ctx.summary_items) + list(ctx.selection_items)
    for item in ctx.selection:
        status = ctx.statuses[item.item_id]
        if status.state != ItemState.FAILED or item.item_id in ctx.diagnostics:
            continue
        ctx.diagnostics[item.item_id] = explain_miss(item, candidates, known_ids=ctx.known_ids(item.item_id))
    return list(ctx.diagnostics.values())


def format_diagnostic(diagnostic: IdentityDiagnostic) -> str:
    """Plain-text "why?" answer for the operator."""
    attempted = diagnostic.attempted
    lines = [
        f"item {diagnostic.item_id}: no identity signal matched",
        f"  tried ids={attempted.get('ids')} slugs={attempted.get('slugs')}",
        f"  tried title_key={attempted.get('title_key')!r} url_key={attempted.get('url_key')!r}",
    ]
    if not diagnostic.available:
        lines.append("  summary offered no items")
    for entry in diagnostic.available:
        lines.append(
            f"  available ids={entry.get('ids')} slug={entry.get('slug')!r} "
            f"title_key={entry.get('title_key')!r} url_key={entry.get('url_key')!r}"
        )
    for near in diagnostic.near_misses:
        lines.append(f"  near miss: {near}")
    return "\n".join(lines)


def summarize_outcome(outcome: RunOutcome) -> dict:
    counts = {state.value: 0 for state in ItemState}
    for status in outcome.items:
        counts[status.state.value] += 1
    return {
        "token": outcome.token,
        "state": outcome.state.value,
        "items": counts,
        "exported": outcome.exported,
        "errors": list(outcome.errors),
    }
