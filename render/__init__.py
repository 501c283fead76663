"""Image generation for the items of a publishing run."""

from .adapters import AttachResult, BaseImageAdapter, HttpImageAdapter
from .manager import ImageGenerationController, NotReadyBackoff, ReadinessSource

__all__ = [
    "AttachResult",
    "BaseImageAdapter",
    "HttpImageAdapter",
    "ImageGenerationController",
    "NotReadyBackoff",
    "ReadinessSource",
]
