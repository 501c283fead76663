"""
Settings Configuration
使用 Pydantic 进行配置验证和管理
"""
from functools import lru_cache
from pathlib import Path
from typing import List, Optional

from pydantic import Field
from pydantic_settings import BaseSettings


class FeedSettings(BaseSettings):
    """RSS / market-search ingestion settings"""
    hours: int = Field(default=12, description="Look-back window in hours")
    sources: List[str] = Field(
        default_factory=lambda: [
            "decrypt",
            "coinmarketcap",
            "finbold",
            "coindesk",
            "cointelegraph",
            "coinspeaker",
            "cryptonews",
            "thedailyhodl",
            "coinjournal",
            "cryptopotato",
            "ambcrypto",
            "newsbtc",
            "bitcoinmagazine",
            "beincrypto",
            "utoday",
            "cryptobriefing",
            "theblock",
            "cryptoslate",
            "blockworks",
            "thedefiant",
        ],
        description="Feed keys to pull",
    )
    request_timeout: float = Field(default=3.0, description="Per-request timeout (seconds)")
    max_attempts: int = Field(default=2, description="Attempts per feed URL")
    max_items: int = Field(default=200, description="Cap on aggregated items after dedup")
    mover_search: bool = Field(default=True, description="Run per-symbol searches for top movers")
    mover_search_limit: int = Field(default=10, description="Top movers searched for news")
    mover_min_quote_volume: float = Field(default=5_000_000.0, description="Liquidity floor for mover searches")
    per_symbol_limit: int = Field(default=3, description="Items kept per mover symbol")
    always_search: List[str] = Field(default_factory=list, description="Symbols always searched")
    user_agent: str = Field(default="newsdesk-aggregator/1.0", description="User Agent")

    class Config:
        env_prefix = "FEED_"


class TextSettings(BaseSettings):
    """Normalizer / article-set shaping"""
    stemmer: str = Field(default="porter", description="porter | none (identity-lowercase, degraded)")
    stem_limit: int = Field(default=6, description="Stems kept per article")
    summary_max_len: int = Field(default=360, description="Summary character cap")
    return_limit: int = Field(default=400, description="Articles kept in the article set")
    page_size: int = Field(default=20, description="Filter view page size")

    class Config:
        env_prefix = "TEXT_"


class ScoringSettings(BaseSettings):
    """Relevance scoring and market boost"""
    top_k: int = Field(default=20, description="Top keywords / most frequent size")
    mover_limit: int = Field(default=40, description="Movers considered for boosting")
    boost_multiplier: float = Field(default=3.0, description="Score multiplier for mover stems")
    boost_bonus: float = Field(default=5.0, description="Score addend for mover stems")
    tag_bonus: int = Field(default=5, description="Frequency/score floor per exchange-tagged item")
    exchange_prefixes: List[str] = Field(default_factory=lambda: ["binance"], description="Source-tag exchanges")
    quote_suffixes: List[str] = Field(
        default_factory=lambda: ["USDT", "BUSD", "USDC", "BTC", "ETH", "TUSD", "EUR", "GBP", "TRY", "BNB"],
        description="Quote currencies stripped from ticker symbols",
    )

    class Config:
        env_prefix = "SCORING_"


class MarketSettings(BaseSettings):
    """Market-mover feed"""
    enabled: bool = Field(default=True, description="Query the mover feed at all")
    ticker_url: str = Field(default="https://api.binance.com/api/v3/ticker/24hr", description="24h ticker endpoint")
    request_timeout: float = Field(default=5.0, description="Request timeout (seconds)")

    class Config:
        env_prefix = "MARKET_"


class PipelineSettings(BaseSettings):
    """External publishing pipeline collaborators"""
    base_url: str = Field(default="http://localhost:3000", description="Pipeline host")
    api_token: Optional[str] = Field(default=None, description="Bearer token for the pipeline API")
    request_timeout: float = Field(default=10.0, description="Per-call timeout (seconds)")
    staging_dir: str = Field(default="./tmp", description="Directory for file-backed staging/export")
    selection_file: str = Field(default="selection-from-pipeline.json", description="Staging/export file name")
    sink: str = Field(default="http", description="http | file")

    class Config:
        env_prefix = "PIPELINE_"


class OrchestratorSettings(BaseSettings):
    """Run state machine timing"""
    status_interval: float = Field(default=2.0, description="Status poll interval (seconds)")
    log_interval: float = Field(default=2.0, description="Log poll interval (seconds)")
    fast_verify_interval: float = Field(default=1.0, description="Fast-verify interval (seconds)")
    run_timeout: float = Field(default=300.0, description="Run deadline (seconds)")
    call_timeout: float = Field(default=15.0, description="Upper bound for any single collaborator call")
    log_lines: int = Field(default=80, description="Log lines fetched per poll")
    log_buffer: int = Field(default=200, description="Log lines retained on the run")
    strict_run_token: bool = Field(default=False, description="Require the run token when one was issued")
    search_fallback: bool = Field(default=True, description="Allow text search to find a confirmable id")

    class Config:
        env_prefix = "ORCHESTRATOR_"


class ImageSettings(BaseSettings):
    """Image generation controller"""
    base_url: str = Field(default="http://localhost:3000", description="Image service host")
    engine: str = Field(default="auto", description="auto | responses | images")
    model: str = Field(default="auto", description="Model name or auto")
    size: str = Field(default="1024x1024", description="Image size")
    style: str = Field(default="photo", description="Style preset, or custom")
    style_custom: str = Field(default="", description="Style text used when style=custom")
    request_timeout: float = Field(default=120.0, description="Generation request timeout (seconds)")
    readiness_interval: float = Field(default=1.0, description="Readiness poll interval (seconds)")
    readiness_timeout: float = Field(default=60.0, description="Readiness wait budget (seconds)")
    initial_backoff: float = Field(default=1.0, description="First not-ready wait (seconds)")
    backoff_factor: float = Field(default=1.6, description="Backoff growth")
    max_backoff: float = Field(default=15.0, description="Backoff cap (seconds)")
    max_attempts: int = Field(default=12, description="Not-ready attempts before timing out")

    class Config:
        env_prefix = "IMAGE_"


class Settings(BaseSettings):
    """主配置类 - 聚合所有子配置"""

    feed: FeedSettings = Field(default_factory=FeedSettings)
    text: TextSettings = Field(default_factory=TextSettings)
    scoring: ScoringSettings = Field(default_factory=ScoringSettings)
    market: MarketSettings = Field(default_factory=MarketSettings)
    pipeline: PipelineSettings = Field(default_factory=PipelineSettings)
    orchestrator: OrchestratorSettings = Field(default_factory=OrchestratorSettings)
    image: ImageSettings = Field(default_factory=ImageSettings)

    class Config:
        env_file = ".env"
        env_file_encoding = "utf-8"
        extra = "ignore"

    @classmethod
    def load_from_env_file(cls, env_path: Optional[Path] = None) -> "Settings":
        """从指定的 .env 文件加载配置"""
        if env_path is None:
            # 默认查找 config/.env
            env_path = Path(__file__).parent / ".env"

        if env_path.exists():
            from dotenv import load_dotenv
            load_dotenv(env_path)

        return cls(
            feed=FeedSettings(),
            text=TextSettings(),
            scoring=ScoringSettings(),
            market=MarketSettings(),
            pipeline=PipelineSettings(),
            orchestrator=OrchestratorSettings(),
            image=ImageSettings(),
        )


@lru_cache()
def get_settings() -> Settings:
    """获取全局配置单例"""
    return Settings.load_from_env_file()


def get_feed_settings() -> FeedSettings:
    return get_settings().feed


def get_text_settings() -> TextSettings:
    return get_settings().text


def get_scoring_settings() -> ScoringSettings:
    return get_settings().scoring


def get_market_settings() -> MarketSettings:
    return get_settings().market


def get_pipeline_settings() -> PipelineSettings:
    return get_settings().pipeline


def get_orchestrator_settings() -> OrchestratorSettings:
    return get_settings().orchestrator


def get_image_settings() -> ImageSettings:
    return get_settings().image
