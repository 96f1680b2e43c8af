"""
Shared pipeline instances for FastAPI routes.

One orchestrator per process so every route shares the in-flight table and
caches. Tests swap these out with ``app.dependency_overrides``.
"""

from functools import lru_cache

from papertrader.config import Settings, get_settings
from papertrader.orchestration.aggregator import SentimentAggregator
from papertrader.orchestration.fetcher import FetchOrchestrator
from papertrader.orchestration.refresh import RefreshScheduler
from papertrader.trading.assistant import TradeAssistant


@lru_cache()
def get_orchestrator() -> FetchOrchestrator:
    return FetchOrchestrator()


@lru_cache()
def get_aggregator() -> SentimentAggregator:
    return SentimentAggregator(orchestrator=get_orchestrator())


@lru_cache()
def get_assistant() -> TradeAssistant:
    return TradeAssistant(get_orchestrator())


def build_scheduler(orchestrator, aggregator: SentimentAggregator, settings: Settings) -> RefreshScheduler:
    """
    Scheduler over ``settings.refresh_watchlist``.

    Market-moving accounts are polled for posts; any fetch through the
    orchestrator that returns unseen posts queues a recomputation, which
    scores the posts the orchestrator has seen recently.
    """

    async def refresh_prices():
        await orchestrator.get_quotes(settings.refresh_watchlist)

    async def poll_posts():
        await orchestrator.get_posts_by_authors(settings.market_moving_accounts, max_per_author=3)

    async def refresh_sentiment(scope):
        posts = orchestrator.recent_posts()
        if not posts:
            posts = await orchestrator.get_posts_by_authors(settings.market_moving_accounts, max_per_author=3)
        await aggregator.refresh(posts, scope)
        await aggregator.market_sentiment(posts, scope)

    scheduler = RefreshScheduler(refresh_prices, refresh_sentiment, settings=settings, poll_posts=poll_posts)
    orchestrator.add_post_listener(lambda new_posts: scheduler.notify(settings.refresh_watchlist))
    return scheduler


@lru_cache()
def get_scheduler() -> RefreshScheduler:
    return build_scheduler(get_orchestrator(), get_aggregator(), get_settings())
