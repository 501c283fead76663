"""
Configuration Management Module
统一配置管理
"""
from .settings import (
    FeedSettings,
    ImageSettings,
    MarketSettings,
    OrchestratorSettings,
    PipelineSettings,
    ScoringSettings,
    Settings,
    TextSettings,
    get_settings,
    get_feed_settings,
    get_image_settings,
    get_market_settings,
    get_orchestrator_settings,
    get_pipeline_settings,
    get_scoring_settings,
    get_text_settings,
)

__all__ = [
    "FeedSettings",
    "ImageSettings",
    "MarketSettings",
    "OrchestratorSettings",
    "PipelineSettings",
    "ScoringSettings",
    "Settings",
    "TextSettings",
    "get_settings",
    "get_feed_settings",
    "get_image_settings",
    "get_market_settings",
    "get_orchestrator_settings",
    "get_pipeline_settings",
    "get_scoring_settings",
    "get_text_settings",
]
