"""Run orchestrator: stage, dispatch, poll, reconcile, fast-verify and export."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
from typing import Any, Awaitable, Optional, Sequence

from config import OrchestratorSettings
from core import (
    Expectation,
    ItemState,
    RecordSnapshot,
    ResultSummary,
    RunOutcome,
    RunState,
    SelectionItem,
    StatusResponse,
)
from pipeline.normalize import normalize_title_key
from utils.exceptions import ExportRejectedError, RunInProgressError

from .context import RunContext
from .gateway import PipelineGateway, SelectionSink
from .identity import match_selection
from .report import build_diagnostics, build_report


logger = logging.getLogger(__name__)

_UNAVAILABLE = object()


def summary_acceptance(
    expectation: Expectation,
    run_tokens: Sequence[str],
    status: StatusResponse,
    *,
    strict: bool = False,
) -> Optional[str]:
    """Name of the signal that ties `status` to this run, or None to ignore it.

    Priority: token, count >= expected, all expected slugs, all expected ids.
    A reported count below the expected count rejects the summary outright.
    `finished=True` with a summary carrying no token, count or items is
    accepted as "finished_fallback" unless `strict` is set.
    """
    summary = status.summary
    if summary is not None and summary.token and summary.token in run_tokens:
        return "token"
    if strict and expectation.token:
        return None

    if summary is not None:
        if summary.count is not None:
            return "count" if summary.count >= expectation.count else None
        slugs = {item.slug for item in summary.items if item.slug}
        if expectation.slugs and all(slug in slugs for slug in expectation.slugs):
            return "slugs"
        ids = {value for item in summary.items for _, value in item.id_values()}
        if expectation.ids and all(value in ids for value in expectation.ids):
            return "ids"

    if status.finished and not strict and (summary is None or not summary.has_signals()):
        return "finished_fallback"
    return None


class RunOrchestrator:
    """Owns at most one active run and keeps the last finished outcome."""

    def __init__(
        self,
        gateway: PipelineGateway,
        sink: SelectionSink,
        *,
        settings: Optional[OrchestratorSettings] = None,
    ) -> None:
        self.gateway = gateway
        self.sink = sink
        self.settings = settings or OrchestratorSettings()
        self._active: Optional[RunContext] = None
        self.last_outcome: Optional[RunOutcome] = None

    @property
    def active(self) -> Optional[RunContext]:
        return self._active

    def resolved_id(self, item_id: str) -> Optional[int]:
        """Storage id resolved for an item by the active run or the last one; failed items have none."""
        if self._active is not None and item_id in self._active.statuses:
            return self._active.resolved_id(item_id)
        if self.last_outcome is not None:
            for status in self.last_outcome.items:
                if status.item_id == item_id:
                    return None if status.state == ItemState.FAILED else status.resolved_id
        return None

    def item_state(self, item_id: str) -> Optional[ItemState]:
        if self._active is not None and item_id in self._active.statuses:
            return self._active.statuses[item_id].state
        if self.last_outcome is not None:
            for status in self.last_outcome.items:
                if status.item_id == item_id:
                    return status.state
        return None

    def cancel(self, reason: str = "cancelled by operator") -> bool:
        """Abandon the active run; its loops stop and nothing is exported."""
        ctx = self._active
        if ctx is None or ctx.terminal:
            return False
        ctx.fail_pending(reason)
        ctx.errors.append(reason)
        ctx.transition(RunState.CANCELLED)
        ctx.cancel_loops()
        logger.info("run_cancelled token=%s", ctx.token)
        return True

    async def run(self, selection: Sequence[SelectionItem]) -> RunOutcome:
        if self._active is not None:
            raise RunInProgressError("a run is already active", {"token": self._active.token})
        if not selection:
            raise ValueError("selection is empty")

        ctx = RunContext(selection, log_buffer=self.settings.log_buffer)
        self._active = ctx
        logger.info("run_start token=%s items=%s", ctx.token, len(ctx.selection))
        try:
            await self._stage(ctx)
            if await self._dispatch(ctx) and not ctx.terminal:
                await self._supervise(ctx)
        except asyncio.CancelledError:
            ctx.fail_pending("run task cancelled")
            ctx.transition(RunState.CANCELLED)
            raise
        finally:
            await self._shutdown_loops(ctx)
            build_diagnostics(ctx)
            self.last_outcome = ctx.snapshot()
            self._active = None
            logger.info(
                "run_end token=%s state=%s exported=%s errors=%s",
                ctx.token,
                ctx.state.value,
                ctx.exported,
                len(ctx.errors),
            )
        return self.last_outcome

    # stages -----------------------------------------------------------

    async def _call(self, ctx: RunContext, label: str, awaitable: Awaitable[Any]) -> Any:
        """Bounded collaborator call; any failure becomes `_UNAVAILABLE`."""
        try:
            return await asyncio.wait_for(awaitable, timeout=self.settings.call_timeout)
        except Exception as exc:
            logger.warning("collaborator_unavailable token=%s call=%s error=%s", ctx.token, label, exc)
            return _UNAVAILABLE

    async def _stage(self, ctx: RunContext) -> None:
        result = await self._call(ctx, "stage", self.sink.stage(ctx.selection, run_token=ctx.token))
        if result is _UNAVAILABLE:
            logger.info("staging_skipped token=%s", ctx.token)

    async def _dispatch(self, ctx: RunContext) -> bool:
        ctx.transition(RunState.DISPATCHED)
        try:
            response = await asyncio.wait_for(
                self.gateway.trigger(ctx.selection, run_token=ctx.token),
                timeout=self.settings.call_timeout,
            )
        except Exception as exc:
            ctx.errors.append(f"dispatch failed: {exc}")
            ctx.fail_pending("dispatch failed")
            ctx.transition(RunState.FAILED)
            logger.error("dispatch_failed token=%s error=%s", ctx.token, exc)
            return False

        expectation = ctx.apply_trigger(response)
        ctx.mark_running()
        logger.info(
            "dispatched token=%s expected_count=%s expected_slugs=%s expected_ids=%s run_token=%s",
            ctx.token,
            expectation.count,
            len(expectation.slugs),
            len(expectation.ids),
            bool(expectation.token),
        )
        return True

    async def _supervise(self, ctx: RunContext) -> None:
        ctx.transition(RunState.POLLING)
        ctx.add_loop(asyncio.create_task(self._status_loop(ctx), name=f"{ctx.token}:status"))
        ctx.add_loop(asyncio.create_task(self._fast_verify_loop(ctx), name=f"{ctx.token}:fast-verify"))
        ctx.add_loop(asyncio.create_task(self._log_loop(ctx), name=f"{ctx.token}:log"))

        try:
            await asyncio.wait_for(ctx.finished.wait(), timeout=self.settings.run_timeout)
        except asyncio.TimeoutError:
            failed = ctx.fail_pending("run timed out before reconciliation")
            ctx.errors.append(f"run timed out after {self.settings.run_timeout:g}s ({failed} unresolved)")
            ctx.transition(RunState.TIMED_OUT)
            logger.warning("run_timed_out token=%s unresolved=%s", ctx.token, failed)

        await self._shutdown_loops(ctx)
        if ctx.state in (RunState.COMPLETED, RunState.TIMED_OUT):
            build_diagnostics(ctx)
            await self.export_once(ctx)

    async def _shutdown_loops(self, ctx: RunContext) -> None:
        tasks = ctx.cancel_loops()
        if tasks:
            await asyncio.gather(*tasks, return_exceptions=True)

    def _complete(self, ctx: RunContext, path: str) -> None:
        if ctx.transition(RunState.COMPLETED):
            logger.info("run_completed token=%s via=%s", ctx.token, path)

    async def export_once(self, ctx: RunContext) -> bool:
        """Hand the report to the export sink; only the first call does anything."""
        if not ctx.claim_export():
            logger.debug("export_skipped token=%s reason=already_exported", ctx.token)
            return False
        ctx.report = build_report(ctx)
        try:
            await asyncio.wait_for(self.sink.export(ctx.report), timeout=self.settings.call_timeout)
        except ExportRejectedError as exc:
            ctx.errors.append(f"export rejected: {exc.message} invalid_indexes={exc.invalid_indexes}")
            logger.warning("export_rejected token=%s invalid_indexes=%s", ctx.token, exc.invalid_indexes)
        except Exception as exc:
            ctx.errors.append(f"export failed: {exc}")
            logger.error("export_failed token=%s error=%s", ctx.token, exc)
        else:
            logger.info("exported token=%s items=%s", ctx.token, len(ctx.report.items))
        return True

    # loops ------------------------------------------------------------

    async def _status_loop(self, ctx: RunContext) -> None:
        while not ctx.finished.is_set():
            status = await self._call(ctx, "pipeline_status", self.gateway.status(ctx.started_at))
            if isinstance(status, StatusResponse):
                await self._handle_status(ctx, status)
            if ctx.finished.is_set():
                return
            await asyncio.sleep(self.settings.status_interval)

    async def _handle_status(self, ctx: RunContext, status: StatusResponse) -> None:
        if not status.finished and status.summary is None:
            return
        accepted_by = summary_acceptance(
            ctx.expectation,
            ctx.run_tokens(),
            status,
            strict=self.settings.strict_run_token,
        )
        if accepted_by is None:
            summary = status.summary
            logger.info(
                "summary_ignored token=%s finished=%s count=%s items=%s expected=%s",
                ctx.token,
                status.finished,
                summary.count if summary else None,
                len(summary.items) if summary else 0,
                ctx.expectation.count,
            )
            return
        if accepted_by == "finished_fallback":
            logger.warning("summary_accepted_without_signals token=%s finished=true", ctx.token)

        summary = status.summary or ResultSummary()
        ctx.summary_accepted_by = accepted_by
        ctx.summary_items = list(summary.items)
        ctx.transition(RunState.RECONCILING)
        await self._reconcile(ctx, summary, finished=status.finished)
        if ctx.all_terminal():
            self._complete(ctx, "reconcile")

    async def _reconcile(self, ctx: RunContext, summary: ResultSummary, *, finished: bool) -> None:
        """Match each pending item and confirm it by storage id.

        Misses stay pending while the pipeline is still running; once it
        reports finished they become failures.
        """
        tokens = ctx.run_tokens()
        run_token = summary.token if summary.token in tokens else ctx.expectation.token
        for item in ctx.pending_items():
            match = match_selection(
                item,
                summary.items,
                known_ids=ctx.known_ids(item.item_id),
                run_token=run_token,
                summary_token=summary.token,
            )
            record_id = match.numeric_id if match else None
            if match is not None and record_id is not None:
                ctx.resolve(item.item_id, record_id, match.matched_by)
            record_id = ctx.resolved_id(item.item_id)

            if record_id is None and self.settings.search_fallback and (match is not None or finished):
                record_id = await self._search_for_id(ctx, item)

            if record_id is None:
                if finished:
                    reason = "no identity signal matched" if match is None else "matched item has no numeric id"
                    ctx.mark_failed(item.item_id, reason)
                continue

            record = await self._call(ctx, "get_record", self.gateway.get_record(record_id))
            if isinstance(record, RecordSnapshot):
                ctx.mark_done(item.item_id, record)
            elif record is None and finished:
                ctx.mark_failed(item.item_id, f"record {record_id} not found")

    async def _search_for_id(self, ctx: RunContext, item: SelectionItem) -> Optional[int]:
        """Lower-trust path: exact title match from text search, confirmed later by id."""
        results = await self._call(ctx, "search_records", self.gateway.search_records(item.title))
        if results is _UNAVAILABLE or not results:
            return None
        key = normalize_title_key(item.title)
        for record in results:
            if key and normalize_title_key(record.title) == key:
                ctx.resolve(item.item_id, record.id, "search")
                return record.id
        return None

    async def _fast_verify_loop(self, ctx: RunContext) -> None:
        while not ctx.finished.is_set():
            await self._fast_verify(ctx)
            if ctx.all_terminal():
                self._complete(ctx, "fast_verify")
            if ctx.finished.is_set():
                return
            await asyncio.sleep(self.settings.fast_verify_interval)

    async def _fast_verify(self, ctx: RunContext) -> None:
        """Confirm pending items by ids resolved so far or from a ready selection; never marks failures."""
        unresolved = [item for item in ctx.pending_items() if ctx.resolved_id(item.item_id) is None]
        if unresolved:
            status = await self._call(ctx, "selection_status", self.gateway.selection_status())
            if status is not _UNAVAILABLE and status is not None and status.ready:
                ctx.selection_items = list(status.items)
                for item in unresolved:
                    match = match_selection(item, status.items, known_ids=ctx.known_ids(item.item_id))
                    if match is not None and match.numeric_id is not None:
                        ctx.resolve(item.item_id, match.numeric_id, f"selection_{match.matched_by}")

        for item in ctx.pending_items():
            record_id = ctx.resolved_id(item.item_id)
            if record_id is None:
                continue
            record = await self._call(ctx, "get_record", self.gateway.get_record(record_id))
            if isinstance(record, RecordSnapshot) and ctx.mark_done(item.item_id, record):
                logger.info("fast_verified token=%s item_id=%s id=%s", ctx.token, item.item_id, record.id)

    async def _log_loop(self, ctx: RunContext) -> None:
        while not ctx.finished.is_set():
            lines = await self._call(
                ctx,
                "pipeline_log",
                self.gateway.logs(self.settings.log_lines, since=ctx.log_since),
            )
            if isinstance(lines, list):
                if ctx.set_log_tail(lines):
                    ctx.log_since = datetime.now(timezone.utc)
            await asyncio.sleep(self.settings.log_interval)
