from pydantic import Field
from pydantic_settings import BaseSettings
from functools import lru_cache
from typing import Dict, List

class Settings(BaseSettings):
    # API Keys
    x_bearer_token: str = ""
    grok_api_key: str = ""

    # AI completion service
    grok_api_url: str = "https://api.x.ai/v1/chat/completions"
    grok_model: str = "grok-2-1212"
    grok_vision_model: str = "grok-2-vision-1212"
    request_timeout_seconds: float = 30.0

    # Minimum spacing between calls per external service (seconds)
    feed_min_interval: float = 1.0
    ai_min_interval: float = 0.5
    quote_min_interval: float = 0.2

    # Caches
    quote_cache_ttl: float = 60.0
    analysis_cache_ttl: float = 3600.0
    cache_max_entries: int = 100
    recent_posts_max: int = 500

    # Primary feed is skipped for this long after an auth/quota failure
    feed_disable_seconds: float = 900.0

    # Refresh cadence
    price_refresh_seconds: float = 30.0
    post_poll_seconds: float = 120.0
    sentiment_refresh_seconds: float = Field(300.0, ge=120.0, le=300.0)
    event_throttle_seconds: float = 5.0
    resource_backoff_seconds: float = 30.0

    # AI batching
    impact_batch_size: int = 15
    market_batch_size: int = 20

    # Vote weighting by post impact
    impact_weights: Dict[str, float] = {"high": 2.0, "medium": 1.5, "low": 1.0}
    high_engagement_threshold: int = 1000

    # Symbols kept warm by the background scheduler; empty disables it
    refresh_watchlist: List[str] = []

    market_moving_accounts: List[str] = [
        "elonmusk", "realDonaldTrump", "Bloomberg", "CNBC", "Reuters", "WSJ",
        "MarketWatch", "YahooFinance", "FederalReserve", "JimCramer", "DeItaone",
    ]

    # Logging
    log_level: str = "INFO"

    class Config:
        env_file = ".env"
        case_sensitive = False

@lru_cache()
def get_settings():
    return Settings()
