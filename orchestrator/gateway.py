"""Clients for the external publishing pipeline and its selection sinks."""

from __future__ import annotations

from datetime import datetime
import logging
from typing import Any, Dict, List, Mapping, Optional, Protocol, Sequence

import httpx

from config import PipelineSettings
from core import (
    RecordSnapshot,
    ResultSummary,
    ResultSummaryItem,
    SelectionItem,
    SelectionReport,
    SelectionStatus,
    StatusResponse,
    TriggerResponse,
)
from utils.exceptions import DispatchError, ExportRejectedError, GatewayError


logger = logging.getLogger(__name__)

# Wire names for the id-like fields, in accessor order.
_WIRE_ID_FIELDS = (
    ("id", ("id",)),
    ("article_id", ("articleId", "article_id")),
    ("selection_id", ("selectionId", "selection_id")),
    ("source_id", ("sourceId", "source_id")),
    ("original_id", ("originalId", "original_id")),
)


class PipelineGateway(Protocol):
    async def trigger(self, selection: Sequence[SelectionItem], *, run_token: str) -> TriggerResponse: ...

    async def status(self, since: datetime) -> StatusResponse: ...

    async def logs(self, lines: int, since: Optional[datetime] = None) -> List[str]: ...

    async def selection_status(self) -> SelectionStatus: ...

    async def get_record(self, record_id: int) -> Optional[RecordSnapshot]: ...

    async def search_records(self, query: str) -> List[RecordSnapshot]: ...


class SelectionSink(Protocol):
    async def stage(self, selection: Sequence[SelectionItem], *, run_token: str) -> None: ...

    async def export(self, report: SelectionReport) -> None: ...


def _first(raw: Mapping[str, Any], *names: str) -> Any:
    for name in names:
        value = raw.get(name)
        if value not in (None, ""):
            return value
    return None


def _epoch_ms(value: datetime) -> int:
    return int(value.timestamp() * 1000)


def parse_summary_item(raw: Any) -> Optional[ResultSummaryItem]:
    if not isinstance(raw, Mapping):
        return None
    fields: Dict[str, Any] = {}
    for name, wire_names in _WIRE_ID_FIELDS:
        fields[name] = _first(raw, *wire_names)
    fields.update(
        slug=_first(raw, "slug"),
        title=_first(raw, "title"),
        excerpt=_first(raw, "excerpt", "summary"),
        url=_first(raw, "url", "link"),
        thumbnail=_first(raw, "thumbnail", "coverImage", "image"),
    )
    return ResultSummaryItem(**fields)


def parse_summary_items(raw_items: Any) -> List[ResultSummaryItem]:
    parsed = [parse_summary_item(raw) for raw in list(raw_items or [])]
    return [item for item in parsed if item is not None]


def _optional_int(value: Any) -> Optional[int]:
    if value is None or isinstance(value, bool):
        return None
    try:
        return int(value)
    except (TypeError, ValueError):
        return None


def parse_status(payload: Mapping[str, Any]) -> StatusResponse:
    raw_summary = payload.get("summary")
    summary = None
    if isinstance(raw_summary, Mapping):
        summary = ResultSummary(
            count=_optional_int(raw_summary.get("count")),
            items=parse_summary_items(raw_summary.get("items")),
            token=_first(raw_summary, "token", "invocationToken", "runToken"),
        )
    return StatusResponse(finished=bool(payload.get("finished")), summary=summary)


def parse_trigger(payload: Mapping[str, Any]) -> TriggerResponse:
    fields: Dict[str, Any] = {
        "count": _optional_int(payload.get("count")),
        "ids": payload.get("ids") or [],
        "slugs": payload.get("slugs") or [],
        "token": _first(payload, "token"),
        "invocation_id": _first(payload, "invocationId", "invocation"),
    }
    started = _first(payload, "startedAt")
    if isinstance(started, (int, float)):
        fields["started_at"] = datetime.fromtimestamp(started / 1000.0).astimezone()
    elif started:
        fields["started_at"] = started
    return TriggerResponse(**fields)


def parse_record(payload: Any) -> Optional[RecordSnapshot]:
    if not isinstance(payload, Mapping):
        return None
    raw = payload.get("article") if isinstance(payload.get("article"), Mapping) else payload
    record_id = _optional_int(raw.get("id"))
    if record_id is None:
        return None
    return RecordSnapshot(
        id=record_id,
        slug=str(raw.get("slug") or ""),
        title=str(raw.get("title") or ""),
        excerpt=str(_first(raw, "excerpt", "summary") or ""),
        thumbnail=_first(raw, "thumbnail", "coverImage"),
    )


def selection_payload(selection: Sequence[SelectionItem]) -> List[Dict[str, Any]]:
    return [
        {
            "id": item.item_id,
            "numId": item.num_id,
            "slug": item.slug,
            "oldSlugs": list(item.old_slugs),
            "title": item.title,
            "summary": item.summary,
            "url": item.url,
        }
        for item in selection
    ]


def report_payload(report: SelectionReport) -> Dict[str, Any]:
    return {
        "token": report.token,
        "state": report.state.value,
        "startedAt": report.started_at.isoformat(),
        "finishedAt": report.finished_at.isoformat(),
        "selected": [
            {
                "id": item.id,
                "sourceId": item.item_id,
                "numId": item.num_id,
                "slug": item.slug,
                "title": item.title,
                "excerpt": item.excerpt,
                "thumbnail": item.thumbnail,
                "state": item.state.value,
            }
            for item in report.items
        ],
    }


class _HttpClientMixin:
    def __init__(self, settings: Optional[PipelineSettings] = None, client: Optional[httpx.AsyncClient] = None) -> None:
        self.settings = settings or PipelineSettings()
        headers = {"Accept": "application/json"}
        if self.settings.api_token:
            headers["Authorization"] = f"Bearer {self.settings.api_token}"
        self._client = client or httpx.AsyncClient(
            base_url=self.settings.base_url.rstrip("/"),
            timeout=httpx.Timeout(self.settings.request_timeout),
            headers=headers,
            follow_redirects=True,
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def _request(self, method: str, path: str, **kwargs: Any) -> httpx.Response:
        try:
            return await self._client.request(method, path, **kwargs)
        except httpx.HTTPError as exc:
            raise GatewayError(f"{method} {path} failed: {exc}", endpoint=path) from exc

    async def _json(self, method: str, path: str, **kwargs: Any) -> Any:
        response = await self._request(method, path, **kwargs)
        if response.status_code >= 400:
            raise GatewayError(
                f"{method} {path} returned {response.status_code}",
                endpoint=path,
                status_code=response.status_code,
            )
        try:
            return response.json()
        except ValueError as exc:
            raise GatewayError(f"{method} {path} returned invalid JSON", endpoint=path) from exc


class HttpPipelineGateway(_HttpClientMixin):
    """httpx client for the pipeline's trigger, status, log, selection and record endpoints."""

    async def trigger(self, selection: Sequence[SelectionItem], *, run_token: str) -> TriggerResponse:
        body = {
            "ids": [item.item_id for item in selection],
            "selected": selection_payload(selection),
            "token": run_token,
        }
        try:
            payload = await self._json("POST", "/api/run-selection", json=body)
        except GatewayError as exc:
            raise DispatchError(str(exc), {"endpoint": exc.endpoint, "status_code": exc.status_code}) from exc
        if not isinstance(payload, Mapping):
            raise DispatchError("run-selection returned a non-object payload")
        return parse_trigger(payload)

    async def status(self, since: datetime) -> StatusResponse:
        payload = await self._json("GET", "/api/pipeline-status", params={"since": _epoch_ms(since)})
        return parse_status(payload if isinstance(payload, Mapping) else {})

    async def logs(self, lines: int, since: Optional[datetime] = None) -> List[str]:
        params: Dict[str, Any] = {"lines": int(lines)}
        if since is not None:
            params["since"] = _epoch_ms(since)
        payload = await self._json("GET", "/api/pipeline-log", params=params)
        raw_lines = payload.get("lines") if isinstance(payload, Mapping) else None
        return [str(line) for line in list(raw_lines or [])]

    async def selection_status(self) -> SelectionStatus:
        payload = await self._json("GET", "/api/selection-status")
        if not isinstance(payload, Mapping):
            return SelectionStatus()
        return SelectionStatus(ready=bool(payload.get("ready")), items=parse_summary_items(payload.get("items")))

    async def get_record(self, record_id: int) -> Optional[RecordSnapshot]:
        response = await self._request("GET", f"/api/articles/{int(record_id)}")
        if response.status_code == 404:
            return None
        if response.status_code >= 400:
            raise GatewayError(
                f"record lookup returned {response.status_code}",
                endpoint="/api/articles/{id}",
                status_code=response.status_code,
            )
        try:
            return parse_record(response.json())
        except ValueError as exc:
            raise GatewayError("record lookup returned invalid JSON", endpoint="/api/articles/{id}") from exc

    async def search_records(self, query: str) -> List[RecordSnapshot]:
        payload = await self._json("GET", "/api/articles", params={"q": query})
        rows = payload.get("items", payload.get("articles")) if isinstance(payload, Mapping) else payload
        records = [parse_record(row) for row in list(rows or [])]
        return [record for record in records if record is not None]


class HttpSelectionSink(_HttpClientMixin):
    """Staging and export over HTTP."""

    async def stage(self, selection: Sequence[SelectionItem], *, run_token: str) -> None:
        await self._json(
            "POST",
            "/api/selection-staging",
            json={"selected": selection_payload(selection), "token": run_token},
        )

    async def export(self, report: SelectionReport) -> None:
        response = await self._request("POST", "/api/selection-export", json=report_payload(report))
        if response.status_code == 400:
            try:
                body = response.json()
            except ValueError:
                body = {}
            if not isinstance(body, Mapping):
                body = {}
            raise ExportRejectedError(
                str(body.get("error") or "selection export rejected"),
                invalid_indexes=list(body.get("invalidIndexes") or []),
            )
        if response.status_code >= 400:
            raise GatewayError(
                f"selection export returned {response.status_code}",
                endpoint="/api/selection-export",
                status_code=response.status_code,
            )
