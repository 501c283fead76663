"""Run-scoped state: one context per run, dropped when the run terminates."""

from __future__ import annotations

import asyncio
from collections import deque
from datetime import datetime, timezone
import logging
from typing import Deque, Dict, Iterable, List, Optional, Sequence
from uuid import uuid4

from core import (
    TERMINAL_ITEM_STATES,
    TERMINAL_RUN_STATES,
    Expectation,
    IdentityDiagnostic,
    ItemState,
    ItemStatus,
    RecordSnapshot,
    ResultSummaryItem,
    RunOutcome,
    RunState,
    SelectionItem,
    SelectionReport,
    TriggerResponse,
)


logger = logging.getLogger(__name__)


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def new_run_token() -> str:
    return f"run_{_utcnow().strftime('%Y%m%d_%H%M%S')}_{uuid4().hex[:8]}"


class RunContext:
    """Everything one run knows; replaces process-wide caches.

    The three polling loops are registered here and cancelled together by
    `cancel_loops`, so no timer outlives the run.
    """

    def __init__(self, selection: Sequence[SelectionItem], *, log_buffer: int = 200) -> None:
        self.token = new_run_token()
        self.started_at = _utcnow()
        self.selection: List[SelectionItem] = list(selection)
        self.state = RunState.STAGING
        self.expectation = Expectation(
            slugs=[item.slug for item in self.selection],
            count=len(self.selection),
        )
        self.statuses: Dict[str, ItemStatus] = {
            item.item_id: ItemStatus(item_id=item.item_id) for item in self.selection
        }
        self.summary_items: List[ResultSummaryItem] = []
        self.selection_items: List[ResultSummaryItem] = []
        self.summary_accepted_by: Optional[str] = None
        self.diagnostics: Dict[str, IdentityDiagnostic] = {}
        self.errors: List[str] = []
        self.log_lines: Deque[str] = deque(maxlen=max(1, int(log_buffer)))
        self.log_since: Optional[datetime] = None
        self.report: Optional[SelectionReport] = None
        self.exported = False
        self.finished = asyncio.Event()
        self._tasks: List[asyncio.Task] = []

    # identity ---------------------------------------------------------

    def resolved_id(self, item_id: str) -> Optional[int]:
        status = self.statuses.get(item_id)
        if status is None or status.state == ItemState.FAILED:
            return None
        return status.resolved_id

    def known_ids(self, item_id: str) -> List[int]:
        resolved = self.resolved_id(item_id)
        return [resolved] if resolved is not None else []

    def apply_trigger(self, response: TriggerResponse) -> Expectation:
        """Capture expected-identity signals; client slugs/length fill the gaps."""
        self.expectation = Expectation(
            token=response.token or response.invocation_id,
            ids=list(response.ids),
            slugs=list(response.slugs) or [item.slug for item in self.selection],
            count=response.count if response.count is not None else len(self.selection),
        )
        return self.expectation

    def run_tokens(self) -> List[str]:
        return [token for token in (self.expectation.token, self.token) if token]

    # item state -------------------------------------------------------

    def mark_running(self) -> None:
        for status in self.statuses.values():
            if status.state == ItemState.QUEUED:
                status.state = ItemState.RUNNING

    def resolve(self, item_id: str, resolved_id: int, matched_by: str) -> None:
        status = self.statuses.get(item_id)
        if status is None or status.state in TERMINAL_ITEM_STATES:
            return
        if status.resolved_id != resolved_id:
            logger.info("item_resolved token=%s item_id=%s id=%s by=%s", self.token, item_id, resolved_id, matched_by)
        status.resolved_id = resolved_id
        status.matched_by = matched_by

    def mark_done(self, item_id: str, record: RecordSnapshot) -> bool:
        status = self.statuses.get(item_id)
        if status is None or status.state in TERMINAL_ITEM_STATES:
            return False
        status.state = ItemState.DONE
        status.resolved_id = record.id
        status.record = record
        status.error = None
        return True

    def mark_failed(self, item_id: str, reason: str) -> bool:
        status = self.statuses.get(item_id)
        if status is None or status.state in TERMINAL_ITEM_STATES:
            return False
        status.state = ItemState.FAILED
        status.error = reason
        return True

    def fail_pending(self, reason: str) -> int:
        return sum(1 for item_id in self.pending_ids() if self.mark_failed(item_id, reason))

    def pending_ids(self) -> List[str]:
        return [item_id for item_id, status in self.statuses.items() if status.state not in TERMINAL_ITEM_STATES]

    def pending_items(self) -> List[SelectionItem]:
        pending = set(self.pending_ids())
        return [item for item in self.selection if item.item_id in pending]

    def all_terminal(self) -> bool:
        return not self.pending_ids()

    # run state --------------------------------------------------------

    @property
    def terminal(self) -> bool:
        return self.state in TERMINAL_RUN_STATES

    def transition(self, state: RunState) -> bool:
        """Move to `state`; terminal states are final and never re-entered."""
        if self.terminal:
            return False
        if state != self.state:
            logger.info("run_state token=%s %s->%s", self.token, self.state.value, state.value)
        self.state = state
        if self.terminal:
            self.finished.set()
        return True

    def claim_export(self) -> bool:
        """True exactly once per run."""
        if self.exported:
            return False
        self.exported = True
        return True

    # loops ------------------------------------------------------------

    def add_loop(self, task: asyncio.Task) -> asyncio.Task:
        self._tasks.append(task)
        return task

    def cancel_loops(self) -> List[asyncio.Task]:
        """Cancel every registered loop in one synchronous pass."""
        tasks = list(self._tasks)
        current = asyncio.current_task()
        for task in tasks:
            if task is not current and not task.done():
                task.cancel()
        return tasks

    @property
    def loops(self) -> List[asyncio.Task]:
        return list(self._tasks)

    def set_log_tail(self, lines: Iterable[str]) -> int:
        """Replace the display-only log tail; an empty fetch keeps the previous tail."""
        fresh = [str(line) for line in lines]
        if fresh:
            self.log_lines.clear()
            self.log_lines.extend(fresh)
        return len(fresh)

    def snapshot(self) -> RunOutcome:
        return RunOutcome(
            token=self.token,
            state=self.state,
            started_at=self.started_at,
            finished_at=_utcnow(),
            items=[status.model_copy(deep=True) for status in self.statuses.values()],
            report=self.report.model_copy(deep=True) if self.report else None,
            diagnostics=list(self.diagnostics.values()),
            errors=list(self.errors),
            exported=self.exported,
            log_tail=list(self.log_lines),
        )
