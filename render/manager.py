"""Image generation controller: readiness gating, not-ready backoff, batches, two-phase attach."""

from __future__ import annotations

import asyncio
from datetime import datetime, timezone
import logging
import math
from typing import Awaitable, Callable, Dict, Iterable, List, Optional, Protocol, Sequence
from uuid import uuid4

from tenacity import AsyncRetrying, RetryCallState, retry_if_exception_type, stop_after_attempt

from config import ImageSettings
from core import (
    AttachTicket,
    BatchImageJob,
    ImageFilterMode,
    ImageRequest,
    ImageResult,
    ItemState,
    SelectionItem,
)
from utils.exceptions import (
    AttachConfirmationError,
    ImageGenerationError,
    ImageNotReadyError,
    ImageTimeoutError,
)

from .adapters import AttachResult, BaseImageAdapter


logger = logging.getLogger(__name__)

Sleep = Callable[[float], Awaitable[None]]


def _utcnow() -> datetime:
    return datetime.now(timezone.utc)


def _new_batch_job_id() -> str:
    return f"images_{_utcnow().strftime('%Y%m%d_%H%M%S')}_{uuid4().hex[:8]}"


class ReadinessSource(Protocol):
    """Where the controller learns an item's storage id (RunOrchestrator fits)."""

    def resolved_id(self, item_id: str) -> Optional[int]:
        ...

    def item_state(self, item_id: str) -> Optional[ItemState]:
        ...


class NotReadyBackoff:
    """tenacity wait strategy for "not ready" responses.

    Delays start at `initial` and grow by `factor` (floored to whole
    milliseconds) up to `cap`. A Retry-After hint raises the wait but never
    past `cap`, and a wait is never shorter than the one before it.
    """

    def __init__(self, initial: float = 1.0, factor: float = 1.6, cap: float = 15.0) -> None:
        self.cap = float(cap)
        self.factor = float(factor)
        self._delay = min(float(initial), self.cap)
        self._previous = 0.0
        self.waits: List[float] = []

    def __call__(self, retry_state: RetryCallState) -> float:
        hint = 0.0
        outcome = retry_state.outcome
        if outcome is not None and outcome.failed:
            retry_after = getattr(outcome.exception(), "retry_after", None)
            if retry_after:
                hint = float(retry_after)

        wait = min(max(self._previous, self._delay, hint), self.cap)
        self._previous = wait
        self.waits.append(wait)
        self._delay = min(math.floor(self._delay * self.factor * 1000) / 1000, self.cap)
        return wait


def _matches_query(item: SelectionItem, query: str) -> bool:
    needle = query.strip().lower()
    if not needle:
        return True
    haystack = " ".join([item.title, item.summary, item.slug]).lower()
    return needle in haystack


class ImageGenerationController:
    """Per-item and batch image generation for the items of a run.

    Generation for an item waits until the run has resolved its storage id,
    then retries "not ready" answers with `NotReadyBackoff`. Batches run one
    item at a time; attaching an image is two-phase (request, then confirm).
    """

    def __init__(
        self,
        adapter: BaseImageAdapter,
        readiness: ReadinessSource,
        *,
        settings: Optional[ImageSettings] = None,
        sleep: Sleep = asyncio.sleep,
    ) -> None:
        self.adapter = adapter
        self.readiness = readiness
        self.settings = settings or ImageSettings()
        self._sleep = sleep

        self.images: Dict[str, ImageResult] = {}
        self.prompts: Dict[str, str] = {}
        self._requests: Dict[str, ImageRequest] = {}
        self._jobs: Dict[str, BatchImageJob] = {}
        self._tickets: Dict[str, AttachTicket] = {}

    # options ----------------------------------------------------------

    def set_prompt(self, item_id: str, prompt: Optional[str]) -> None:
        """Per-item prompt override; empty clears it."""
        text = (prompt or "").strip()
        if text:
            self.prompts[item_id] = text
        else:
            self.prompts.pop(item_id, None)

    def style_text(self) -> str:
        if self.settings.style == "custom":
            return self.settings.style_custom.strip() or "photo"
        return self.settings.style

    def build_request(self, item: SelectionItem, record_id: Optional[int]) -> ImageRequest:
        previous = self.images.get(item.item_id)
        return ImageRequest(
            item_id=item.item_id,
            id=record_id,
            slug=item.slug,
            old_slugs=list(item.old_slugs),
            title=item.title,
            excerpt=item.summary,
            prompt=self.prompts.get(item.item_id),
            reference_url=previous.url if previous else None,
            size=self.settings.size,
            style=self.style_text(),
            model=self.settings.model,
            engine=self.settings.engine,
        )

    # readiness --------------------------------------------------------

    async def wait_until_ready(self, item_id: str) -> int:
        """Poll the run until `item_id` has a storage id, or raise ImageTimeoutError."""
        interval = max(self.settings.readiness_interval, 0.0)
        polls = max(1, int(math.ceil(self.settings.readiness_timeout / interval))) if interval else 1
        for poll in range(polls + 1):
            if self.readiness.item_state(item_id) == ItemState.FAILED:
                break
            resolved = self.readiness.resolved_id(item_id)
            if resolved is not None:
                return resolved
            if poll < polls:
                await self._sleep(interval)
        raise ImageTimeoutError(
            f"selection not ready for {item_id}",
            item_id=item_id,
            waited=self.settings.readiness_timeout,
        )

    # generation -------------------------------------------------------

    async def generate(self, item: SelectionItem) -> ImageResult:
        """Generate one image; raises ImageTimeoutError or ImageGenerationError."""
        record_id = await self.wait_until_ready(item.item_id)
        request = self.build_request(item, record_id)
        self._requests[item.item_id] = request

        backoff = NotReadyBackoff(
            self.settings.initial_backoff,
            self.settings.backoff_factor,
            self.settings.max_backoff,
        )
        retrying = AsyncRetrying(
            stop=stop_after_attempt(max(1, self.settings.max_attempts)),
            wait=backoff,
            retry=retry_if_exception_type(ImageNotReadyError),
            sleep=self._sleep,
            reraise=True,
        )
        attempts = 0
        try:
            async for attempt in retrying:
                with attempt:
                    attempts = attempt.retry_state.attempt_number
                    logger.debug("image_generate item_id=%s attempt=%s", item.item_id, attempts)
                    result = await asyncio.wait_for(
                        self.adapter.generate(request),
                        timeout=self.settings.request_timeout,
                    )
        except ImageNotReadyError as exc:
            logger.warning("image_not_ready_exhausted item_id=%s attempts=%s", item.item_id, attempts)
            raise ImageTimeoutError(
                f"image not ready after {attempts} attempts",
                item_id=item.item_id,
                waits=list(backoff.waits),
            ) from exc
        except asyncio.TimeoutError as exc:
            raise ImageGenerationError("image request timed out", item_id=item.item_id) from exc

        result = result.model_copy(update={"attempts": attempts})
        self.images[item.item_id] = result
        logger.info("image_generated item_id=%s record_id=%s attempts=%s", item.item_id, record_id, attempts)
        return result

    # batches ----------------------------------------------------------

    def filter_items(
        self,
        items: Iterable[SelectionItem],
        *,
        mode: ImageFilterMode = "all",
        query: str = "",
    ) -> List[SelectionItem]:
        selected: List[SelectionItem] = []
        for item in items:
            if not _matches_query(item, query):
                continue
            has_image = item.item_id in self.images
            state = self.readiness.item_state(item.item_id)
            if mode == "noimg" and has_image:
                continue
            if mode == "hasimg" and not has_image:
                continue
            if mode == "done" and state != ItemState.DONE:
                continue
            if mode == "failed" and state != ItemState.FAILED:
                continue
            selected.append(item)
        return selected

    def resolve_targets(
        self,
        items: Sequence[SelectionItem],
        *,
        selected: Optional[Sequence[str]] = None,
        mode: ImageFilterMode = "all",
        query: str = "",
    ) -> BatchImageJob:
        """Explicit multi-select wins, then a filtered view, then the whole run."""
        if selected:
            wanted = set(selected)
            targets = [item for item in items if item.item_id in wanted]
            target = "selection"
        elif mode != "all" or query.strip():
            targets = self.filter_items(items, mode=mode, query=query)
            target = "filtered"
        else:
            targets = list(items)
            target = "run"
        job = BatchImageJob(
            job_id=_new_batch_job_id(),
            target=target,
            item_ids=[item.item_id for item in targets],
        )
        self._jobs[job.job_id] = job
        logger.info("image_batch_planned job_id=%s target=%s items=%s", job.job_id, target, len(targets))
        return job

    def get_job(self, job_id: str) -> Optional[BatchImageJob]:
        return self._jobs.get(job_id)

    def cancel_batch(self, job_id: str) -> bool:
        """Stop the batch before its next item; the current request finishes."""
        job = self._jobs.get(job_id)
        if job is None or job.state in {"completed", "cancelled"}:
            return False
        job.cancel_requested = True
        if job.state == "pending":
            job.state = "cancelled"
        return True

    async def run_batch(self, job: BatchImageJob, items: Sequence[SelectionItem]) -> BatchImageJob:
        by_id = {item.item_id: item for item in items}
        if job.state == "cancelled":
            return job
        job.state = "running"
        for item_id in job.item_ids:
            if job.cancel_requested:
                job.state = "cancelled"
                job.current = None
                logger.info("image_batch_cancelled job_id=%s done=%s", job.job_id, len(job.completed))
                return job
            item = by_id.get(item_id)
            if item is None:
                job.failed[item_id] = "item not in run"
                continue
            job.current = item_id
            try:
                await self.generate(item)
            except ImageGenerationError as exc:
                job.failed[item_id] = exc.message
                logger.warning("image_batch_item_failed job_id=%s item_id=%s error=%s", job.job_id, item_id, exc.message)
            else:
                job.completed.append(item_id)
        job.current = None
        job.state = "cancelled" if job.cancel_requested else "completed"
        logger.info(
            "image_batch_end job_id=%s completed=%s failed=%s",
            job.job_id,
            len(job.completed),
            len(job.failed),
        )
        return job

    # attach -----------------------------------------------------------

    def request_attach(self, item_id: str) -> AttachTicket:
        """First phase: bind the current image to a storage id, write nothing."""
        image = self.images.get(item_id)
        if image is None:
            raise AttachConfirmationError(f"no generated image for {item_id}", {"item_id": item_id})
        record_id = self.readiness.resolved_id(item_id)
        if record_id is None or self.readiness.item_state(item_id) == ItemState.FAILED:
            raise AttachConfirmationError(f"no storage id for {item_id}", {"item_id": item_id})
        ticket = AttachTicket(
            token=uuid4().hex,
            item_id=item_id,
            record_id=record_id,
            image_url=image.url,
        )
        self._tickets[ticket.token] = ticket
        return ticket

    def cancel_attach(self, token: str) -> bool:
        return self._tickets.pop(token, None) is not None

    async def confirm_attach(self, token: str) -> AttachResult:
        """Second phase: perform the durable write for a pending ticket."""
        ticket = self._tickets.pop(token, None)
        if ticket is None:
            raise AttachConfirmationError("attach was not requested or already confirmed", {"token": token})
        current = self.images.get(ticket.item_id)
        if current is None or current.url != ticket.image_url:
            raise AttachConfirmationError(
                "image changed since attach was requested",
                {"item_id": ticket.item_id},
            )
        request = self._requests.get(ticket.item_id) or ImageRequest(item_id=ticket.item_id, id=ticket.record_id)
        try:
            result = await asyncio.wait_for(
                self.adapter.attach(record_id=ticket.record_id, image_url=ticket.image_url, request=request),
                timeout=self.settings.request_timeout,
            )
        except asyncio.TimeoutError:
            result = AttachResult(record_id=ticket.record_id, success=False, error="attach timed out")
        if not result.success:
            logger.warning("image_attach_failed item_id=%s error=%s", ticket.item_id, result.error)
        return result
