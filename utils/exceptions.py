"""
Custom Exceptions
自定义异常类
"""
from typing import List, Optional


class NewsDeskError(Exception):
    """Base error for the aggregation and publishing-run engine."""

    def __init__(self, message: str, details: dict = None):
        self.message = message
        self.details = details or {}
        super().__init__(self.message)

    def __str__(self):
        if self.details:
            return f"{self.message} | Details: {self.details}"
        return self.message


class ConfigurationError(NewsDeskError):
    """配置错误"""
    pass


class FeedError(NewsDeskError):
    """Feed fetch or parse failure."""

    def __init__(self, message: str, source: str = None, **kwargs):
        super().__init__(message, kwargs)
        self.source = source


class GatewayError(NewsDeskError):
    """A pipeline collaborator call failed or returned an unusable payload."""

    def __init__(self, message: str, endpoint: str = None, status_code: Optional[int] = None, **kwargs):
        super().__init__(message, kwargs)
        self.endpoint = endpoint
        self.status_code = status_code


class RunInProgressError(NewsDeskError):
    """A run is already active; the operator must wait or cancel it."""
    pass


class DispatchError(NewsDeskError):
    """The pipeline trigger rejected or failed to accept a batch."""
    pass


class ExportRejectedError(NewsDeskError):
    """The export sink refused the selection report."""

    def __init__(self, message: str, invalid_indexes: Optional[List[int]] = None, **kwargs):
        super().__init__(message, kwargs)
        self.invalid_indexes = list(invalid_indexes or [])


class ImageGenerationError(NewsDeskError):
    """Image generation failed with a non-retryable response."""

    def __init__(self, message: str, item_id: str = None, **kwargs):
        super().__init__(message, kwargs)
        self.item_id = item_id


class ImageNotReadyError(ImageGenerationError):
    """The image service asked the caller to come back later."""

    def __init__(self, message: str, retry_after: Optional[float] = None, **kwargs):
        super().__init__(message, **kwargs)
        self.retry_after = retry_after


class ImageTimeoutError(ImageGenerationError):
    """Readiness wait or not-ready retries were exhausted."""
    pass


class AttachConfirmationError(NewsDeskError):
    """Attach was attempted without a matching pending confirmation."""
    pass
