from __future__ import annotations

import asyncio
from typing import Dict, List, Optional

import pytest

from config import OrchestratorSettings
from core import (
    Expectation,
    ItemState,
    RecordSnapshot,
    ResultSummary,
    ResultSummaryItem,
    RunState,
    SelectionItem,
    SelectionReport,
    SelectionStatus,
    StatusResponse,
    TriggerResponse,
)
from orchestrator.context import RunContext
from orchestrator.service import RunOrchestrator, summary_acceptance
from utils.exceptions import DispatchError, RunInProgressError


class FakeGateway:
    def __init__(
        self,
        *,
        trigger: Optional[TriggerResponse] = None,
        statuses: Optional[List[StatusResponse]] = None,
        selection: Optional[SelectionStatus] = None,
        records: Optional[Dict[int, RecordSnapshot]] = None,
        search: Optional[List[RecordSnapshot]] = None,
        trigger_error: Optional[Exception] = None,
    ) -> None:
        self.trigger_response = trigger or TriggerResponse()
        self.statuses = list(statuses or [StatusResponse()])
        self.selection = selection or SelectionStatus()
        self.records = dict(records or {})
        self.search = list(search or [])
        self.trigger_error = trigger_error
        self.record_calls: List[int] = []
        self.status_calls = 0
        self.owner: Optional[RunOrchestrator] = None
        self.contexts: List[RunContext] = []

    async def trigger(self, selection, *, run_token):
        if self.trigger_error is not None:
            raise self.trigger_error
        return self.trigger_response

    def _capture(self) -> None:
        if self.owner is not None and self.owner.active is not None and self.owner.active not in self.contexts:
            self.contexts.append(self.owner.active)

    async def status(self, since):
        self.status_calls += 1
        self._capture()
        if len(self.statuses) > 1:
            return self.statuses.pop(0)
        return self.statuses[0]

    async def logs(self, lines, since=None):
        return ["pipeline: step 1"]

    async def selection_status(self):
        self._capture()
        return self.selection

    async def get_record(self, record_id):
        self.record_calls.append(record_id)
        return self.records.get(record_id)

    async def search_records(self, query):
        return list(self.search)


class FakeSink:
    def __init__(self) -> None:
        self.staged: List[List[SelectionItem]] = []
        self.exports: List[SelectionReport] = []

    async def stage(self, selection, *, run_token):
        self.staged.append(list(selection))

    async def export(self, report):
        await asyncio.sleep(0)
        self.exports.append(report)


def _settings(**overrides) -> OrchestratorSettings:
    fields = {
        "status_interval": 0.01,
        "log_interval": 0.01,
        "fast_verify_interval": 0.01,
        "run_timeout": 1.0,
        "call_timeout": 0.5,
    }
    fields.update(overrides)
    return OrchestratorSettings(**fields)


def _selection() -> List[SelectionItem]:
    return [
        SelectionItem(item_id="src-a", num_id=1, title="Bitcoin ETF approved", slug="bitcoin-etf-approved"),
        SelectionItem(item_id="src-b", num_id=2, title="Ether staking grows", slug="ether-staking-grows"),
    ]


def _records() -> Dict[int, RecordSnapshot]:
    return {
        101: RecordSnapshot(id=101, slug="bitcoin-etf-approved", title="Bitcoin ETF approved"),
        102: RecordSnapshot(id=102, slug="ether-staking-grows", title="Ether staking grows"),
    }


def _summary_items() -> List[ResultSummaryItem]:
    return [
        ResultSummaryItem(id="101", slug="bitcoin-etf-approved"),
        ResultSummaryItem(id="102", slug="ether-staking-grows"),
    ]


def test_summary_acceptance_order() -> None:
    expectation = Expectation(token="tok", ids=["101", "102"], slugs=["a", "b"], count=2)
    items = [ResultSummaryItem(id="101", slug="a"), ResultSummaryItem(id="102", slug="b")]

    by_token = StatusResponse(summary=ResultSummary(token="tok", count=0))
    assert summary_acceptance(expectation, ["tok"], by_token) == "token"

    by_count = StatusResponse(summary=ResultSummary(count=3, items=items))
    assert summary_acceptance(expectation, ["tok"], by_count) == "count"

    assert summary_acceptance(expectation, ["tok"], StatusResponse(summary=ResultSummary(items=items))) == "slugs"

    only_ids = [ResultSummaryItem(id="101"), ResultSummaryItem(article_id="102")]
    assert summary_acceptance(expectation, ["tok"], StatusResponse(summary=ResultSummary(items=only_ids))) == "ids"


def test_summary_with_count_below_expected_is_ignored() -> None:
    expectation = Expectation(slugs=["a", "b", "c"], count=3)
    items = [ResultSummaryItem(slug=slug) for slug in ("a", "b", "c")]
    status = StatusResponse(finished=True, summary=ResultSummary(count=2, items=items))

    assert summary_acceptance(expectation, [], status) is None


def test_finished_fallback_and_strict_mode() -> None:
    expectation = Expectation(token="tok", count=1)
    bare = StatusResponse(finished=True)

    assert summary_acceptance(expectation, ["tok"], bare) == "finished_fallback"
    assert summary_acceptance(expectation, ["tok"], bare, strict=True) is None
    assert summary_acceptance(expectation, ["tok"], StatusResponse(finished=False)) is None


@pytest.mark.asyncio
async def test_run_completes_from_summary_and_exports_once() -> None:
    gateway = FakeGateway(
        trigger=TriggerResponse(count=2),
        statuses=[StatusResponse(finished=True, summary=ResultSummary(count=2, items=_summary_items()))],
        records=_records(),
    )
    sink = FakeSink()
    orchestrator = RunOrchestrator(gateway, sink, settings=_settings())
    gateway.owner = orchestrator

    outcome = await orchestrator.run(_selection())

    assert outcome.state == RunState.COMPLETED
    assert [status.state for status in outcome.items] == [ItemState.DONE, ItemState.DONE]
    assert len(gateway.contexts) == 1
    assert len(gateway.contexts[0].loops) == 3
    assert all(loop.done() for loop in gateway.contexts[0].loops)
    assert [status.resolved_id for status in outcome.items] == [101, 102]
    assert {status.matched_by for status in outcome.items} == {"slug"}
    assert len(sink.staged) == 1
    assert len(sink.exports) == 1
    assert [row.id for row in sink.exports[0].items] == [101, 102]
    assert outcome.exported is True
    assert orchestrator.active is None
    assert orchestrator.resolved_id("src-b") == 102


@pytest.mark.asyncio
async def test_low_count_summary_never_reconciles() -> None:
    gateway = FakeGateway(
        trigger=TriggerResponse(count=2),
        statuses=[StatusResponse(finished=False, summary=ResultSummary(count=1, items=_summary_items()))],
        records=_records(),
    )
    sink = FakeSink()
    orchestrator = RunOrchestrator(gateway, sink, settings=_settings(run_timeout=0.2))
    gateway.owner = orchestrator

    outcome = await orchestrator.run(_selection())

    assert outcome.state == RunState.TIMED_OUT
    assert gateway.status_calls > 1
    assert all(loop.done() for loop in gateway.contexts[0].loops)
    assert gateway.record_calls == []
    assert all(status.state == ItemState.FAILED for status in outcome.items)
    assert any("timed out" in error for error in outcome.errors)
    assert len(sink.exports) == 1
    assert outcome.log_tail == ["pipeline: step 1"]


@pytest.mark.asyncio
async def test_fast_verify_finishes_before_summary() -> None:
    gateway = FakeGateway(
        statuses=[StatusResponse(finished=False)],
        selection=SelectionStatus(ready=True, items=_summary_items()),
        records=_records(),
    )
    sink = FakeSink()
    orchestrator = RunOrchestrator(gateway, sink, settings=_settings())
    gateway.owner = orchestrator

    outcome = await orchestrator.run(_selection())

    assert outcome.state == RunState.COMPLETED
    assert {status.matched_by for status in outcome.items} == {"selection_slug"}
    assert all(loop.done() for loop in gateway.contexts[0].loops)
    assert len(sink.exports) == 1


@pytest.mark.asyncio
async def test_fast_verify_waits_for_selection_to_be_ready() -> None:
    gateway = FakeGateway(
        statuses=[StatusResponse(finished=False)],
        selection=SelectionStatus(ready=False, items=_summary_items()),
        records=_records(),
    )
    orchestrator = RunOrchestrator(gateway, FakeSink(), settings=_settings(run_timeout=0.2))

    outcome = await orchestrator.run(_selection())

    assert outcome.state == RunState.TIMED_OUT
    assert gateway.record_calls == []
    assert all(status.resolved_id is None for status in outcome.items)


@pytest.mark.asyncio
async def test_fast_verify_and_summary_together_export_once() -> None:
    gateway = FakeGateway(
        trigger=TriggerResponse(count=2),
        statuses=[StatusResponse(finished=True, summary=ResultSummary(count=2, items=_summary_items()))],
        selection=SelectionStatus(ready=True, items=_summary_items()),
        records=_records(),
    )
    sink = FakeSink()
    orchestrator = RunOrchestrator(gateway, sink, settings=_settings())

    outcome = await orchestrator.run(_selection())

    assert outcome.state == RunState.COMPLETED
    assert len(sink.exports) == 1


@pytest.mark.asyncio
async def test_export_once_is_idempotent_under_concurrent_calls() -> None:
    sink = FakeSink()
    orchestrator = RunOrchestrator(FakeGateway(), sink, settings=_settings())
    ctx = RunContext(_selection())

    results = await asyncio.gather(orchestrator.export_once(ctx), orchestrator.export_once(ctx))

    assert sorted(results) == [False, True]
    assert len(sink.exports) == 1
    assert await orchestrator.export_once(ctx) is False


@pytest.mark.asyncio
async def test_finished_fallback_resolves_through_search() -> None:
    selection = _selection()[:1]
    gateway = FakeGateway(
        statuses=[StatusResponse(finished=True)],
        search=[
            RecordSnapshot(id=300, title="Bitcoin ETF approved soon"),
            RecordSnapshot(id=301, title="Bitcoin ETF Approved"),
        ],
        records={301: RecordSnapshot(id=301, slug="bitcoin-etf-approved", title="Bitcoin ETF Approved")},
    )
    orchestrator = RunOrchestrator(gateway, FakeSink(), settings=_settings())

    outcome = await orchestrator.run(selection)

    assert outcome.state == RunState.COMPLETED
    assert outcome.items[0].resolved_id == 301
    assert outcome.items[0].matched_by == "search"


@pytest.mark.asyncio
async def test_strict_token_rejects_finished_fallback() -> None:
    gateway = FakeGateway(
        trigger=TriggerResponse(token="tok-strict"),
        statuses=[StatusResponse(finished=True)],
        search=[RecordSnapshot(id=301, title="Bitcoin ETF approved")],
        records={301: RecordSnapshot(id=301)},
    )
    orchestrator = RunOrchestrator(gateway, FakeSink(), settings=_settings(strict_run_token=True, run_timeout=0.2))

    outcome = await orchestrator.run(_selection()[:1])

    assert outcome.state == RunState.TIMED_OUT
    assert gateway.record_calls == []


@pytest.mark.asyncio
async def test_unmatched_item_fails_with_diagnostic_once_finished() -> None:
    summary = ResultSummary(
        count=1,
        items=[ResultSummaryItem(id="55", slug="bitcoin-etf-approve", title="Bitcoin ETF approve")],
    )
    gateway = FakeGateway(statuses=[StatusResponse(finished=True, summary=summary)])
    sink = FakeSink()
    orchestrator = RunOrchestrator(gateway, sink, settings=_settings())

    outcome = await orchestrator.run(_selection()[:1])

    assert outcome.state == RunState.COMPLETED
    assert outcome.items[0].state == ItemState.FAILED
    assert outcome.items[0].error == "no identity signal matched"
    assert len(outcome.diagnostics) == 1
    assert outcome.diagnostics[0].near_misses
    assert sink.exports[0].items[0].id is None


@pytest.mark.asyncio
async def test_dispatch_failure_fails_run_without_export() -> None:
    sink = FakeSink()
    gateway = FakeGateway(trigger_error=DispatchError("pipeline refused the batch"))
    orchestrator = RunOrchestrator(gateway, sink, settings=_settings())

    outcome = await orchestrator.run(_selection())

    assert outcome.state == RunState.FAILED
    assert all(status.state == ItemState.FAILED for status in outcome.items)
    assert sink.exports == []
    assert orchestrator.active is None


async def _wait_for_polling(orchestrator: RunOrchestrator) -> RunContext:
    async def _poll() -> RunContext:
        while orchestrator.active is None or orchestrator.active.state != RunState.POLLING:
            await asyncio.sleep(0.005)
        return orchestrator.active

    return await asyncio.wait_for(_poll(), timeout=2.0)


@pytest.mark.asyncio
async def test_cancel_stops_loops_and_skips_export() -> None:
    sink = FakeSink()
    orchestrator = RunOrchestrator(FakeGateway(), sink, settings=_settings(run_timeout=5.0))

    task = asyncio.create_task(orchestrator.run(_selection()))
    ctx = await _wait_for_polling(orchestrator)
    assert orchestrator.cancel() is True
    outcome = await asyncio.wait_for(task, timeout=2.0)

    assert outcome.state == RunState.CANCELLED
    assert sink.exports == []
    assert all(loop.done() for loop in ctx.loops)
    assert orchestrator.cancel() is False


@pytest.mark.asyncio
async def test_second_run_is_rejected_while_active() -> None:
    orchestrator = RunOrchestrator(FakeGateway(), FakeSink(), settings=_settings(run_timeout=5.0))

    task = asyncio.create_task(orchestrator.run(_selection()))
    await _wait_for_polling(orchestrator)
    with pytest.raises(RunInProgressError):
        await orchestrator.run(_selection())

    orchestrator.cancel()
    await asyncio.wait_for(task, timeout=2.0)
    assert orchestrator.active is None


@pytest.mark.asyncio
async def test_empty_selection_is_rejected() -> None:
    orchestrator = RunOrchestrator(FakeGateway(), FakeSink(), settings=_settings())
    with pytest.raises(ValueError):
        await orchestrator.run([])
