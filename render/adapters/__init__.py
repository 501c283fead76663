"""Image generation adapters."""

from .base import AttachResult, BaseImageAdapter
from .http_image import HttpImageAdapter

__all__ = ["AttachResult", "BaseImageAdapter", "HttpImageAdapter"]
