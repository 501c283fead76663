"""Image adapter abstractions."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from core import ImageRequest, ImageResult


@dataclass
class AttachResult:
    """Result of one durable attach write."""

    record_id: int
    success: bool
    output_path: Optional[str] = None
    error: Optional[str] = None


class BaseImageAdapter:
    """Base adapter that can be replaced by the HTTP service or mocks.

    `generate` raises ImageNotReadyError when the service asks the caller to
    come back later, and ImageGenerationError for anything non-retryable.
    """

    provider = "base"

    async def generate(self, request: ImageRequest) -> ImageResult:
        raise NotImplementedError

    async def attach(self, *, record_id: int, image_url: str, request: ImageRequest) -> AttachResult:
        raise NotImplementedError
