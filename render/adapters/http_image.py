"""HTTP image-generation adapter (generate + attach endpoints)."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx

from config import ImageSettings
from core import ImageRequest, ImageResult
from utils.exceptions import ImageGenerationError, ImageNotReadyError

from .base import AttachResult, BaseImageAdapter


logger = logging.getLogger(__name__)


def _retry_after_seconds(response: httpx.Response) -> Optional[float]:
    raw = str(response.headers.get("Retry-After") or "").strip()
    if not raw:
        return None
    try:
        value = float(raw)
    except ValueError:
        return None
    return value if value > 0 else None


def _error_text(response: httpx.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return response.reason_phrase or f"HTTP {response.status_code}"
    if isinstance(body, dict):
        return str(body.get("error") or body.get("detail") or f"HTTP {response.status_code}")
    return f"HTTP {response.status_code}"


def _add_old_slugs(payload: Dict[str, Any], request: ImageRequest) -> None:
    if request.old_slugs:
        payload["oldslug"] = request.old_slugs[0]
        payload["oldslugs"] = list(request.old_slugs)


def request_payload(request: ImageRequest) -> Dict[str, Any]:
    """Wire payload; `auto` model/engine are left for the service to choose."""
    payload: Dict[str, Any] = {
        "id": request.id if request.id is not None else request.item_id,
        "slug": request.slug,
        "title": request.title or request.slug,
        "excerpt": request.excerpt,
    }
    _add_old_slugs(payload, request)
    if request.prompt and request.prompt.strip():
        payload["prompt"] = request.prompt.strip()
    if request.reference_url:
        payload["referenceUrl"] = request.reference_url
    if request.size:
        payload["size"] = request.size
    if request.style:
        payload["style"] = request.style
    if request.model and request.model != "auto":
        payload["model"] = request.model
    if request.engine and request.engine != "auto":
        payload["engine"] = request.engine
    return payload


class HttpImageAdapter(BaseImageAdapter):
    """Adapter boundary for the image service."""

    provider = "http"

    def __init__(
        self,
        settings: Optional[ImageSettings] = None,
        *,
        client: Optional[httpx.AsyncClient] = None,
    ) -> None:
        self.settings = settings or ImageSettings()
        self._client = client or httpx.AsyncClient(
            base_url=self.settings.base_url.rstrip("/"),
            timeout=httpx.Timeout(self.settings.request_timeout),
            headers={"Accept": "application/json"},
        )

    async def aclose(self) -> None:
        await self._client.aclose()

    async def generate(self, request: ImageRequest) -> ImageResult:
        try:
            response = await self._client.post("/api/generate-image", json=request_payload(request))
        except httpx.HTTPError as exc:
            raise ImageGenerationError(f"image request failed: {exc}", item_id=request.item_id) from exc

        if response.status_code == 409:
            raise ImageNotReadyError(
                _error_text(response),
                retry_after=_retry_after_seconds(response),
                item_id=request.item_id,
            )
        if response.status_code >= 400:
            raise ImageGenerationError(
                f"image generation failed: {_error_text(response)}",
                item_id=request.item_id,
                status_code=response.status_code,
            )
        try:
            body = response.json()
        except ValueError as exc:
            raise ImageGenerationError("image service returned invalid JSON", item_id=request.item_id) from exc

        url = str((body or {}).get("url") or "").strip()
        if not url:
            raise ImageGenerationError("image service response missing url", item_id=request.item_id)
        return ImageResult(item_id=request.item_id, url=url, prompt=request.prompt)

    async def attach(self, *, record_id: int, image_url: str, request: ImageRequest) -> AttachResult:
        payload = {
            "id": record_id,
            "slug": request.slug,
            "title": request.title,
            "excerpt": request.excerpt,
            "imageUrl": image_url,
        }
        _add_old_slugs(payload, request)
        try:
            response = await self._client.post("/api/attach-selected", json=payload)
        except httpx.HTTPError as exc:
            return AttachResult(record_id=record_id, success=False, error=str(exc))
        if response.status_code >= 400:
            return AttachResult(record_id=record_id, success=False, error=_error_text(response))
        try:
            body = response.json()
        except ValueError:
            body = {}
        logger.info("image_attached record_id=%s", record_id)
        return AttachResult(record_id=record_id, success=True, output_path=(body or {}).get("outPath"))
