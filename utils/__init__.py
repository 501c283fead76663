"""
Utils Module
通用工具函数
"""
from .logger import attach_package_loggers, setup_logger, get_logger
from .exceptions import (
    NewsDeskError,
    AttachConfirmationError,
    ConfigurationError,
    DispatchError,
    ExportRejectedError,
    FeedError,
    GatewayError,
    ImageGenerationError,
    ImageNotReadyError,
    ImageTimeoutError,
    RunInProgressError,
)

__all__ = [
    "attach_package_loggers",
    "setup_logger",
    "get_logger",
    "NewsDeskError",
    "AttachConfirmationError",
    "ConfigurationError",
    "DispatchError",
    "ExportRejectedError",
    "FeedError",
    "GatewayError",
    "ImageGenerationError",
    "ImageNotReadyError",
    "ImageTimeoutError",
    "RunInProgressError",
]
