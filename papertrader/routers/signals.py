"""
Sentiment and symbol endpoints.
"""

import logging
from typing import Dict, List, Optional
from fastapi import APIRouter, Depends, HTTPException, Query
from pydantic import BaseModel

from papertrader.config import get_settings
from papertrader.dependencies import get_aggregator, get_orchestrator
from papertrader.errors import UpstreamUnavailableError, is_resource_exhausted
from papertrader.orchestration.aggregator import SentimentAggregator
from papertrader.orchestration.fetcher import FetchOrchestrator
from papertrader.services.resolver import resolve_ticker
from papertrader.services.types import FlowAnalysis, MarketSentiment, Post, SentimentScore

logger = logging.getLogger(__name__)
router = APIRouter(tags=["signals"])


class SentimentRequest(BaseModel):
    """Posts to score against a symbol scope."""
    posts: List[Post] = []
    scope: List[str]
    use_ai: bool = False


class MarketSentimentRequest(BaseModel):
    """Market posts; when empty and fetch is set, posts are pulled from market-moving accounts."""
    posts: List[Post] = []
    watchlist: List[str] = []
    use_ai: bool = False
    fetch: bool = False


class FlowRequest(BaseModel):
    """Options-flow screenshots: an explicit URL and/or the images attached to posts."""
    image_url: Optional[str] = None
    posts: List[Post] = []
    symbol: Optional[str] = None


@router.get("/resolve")
def resolve(token: str = Query(..., min_length=1, max_length=40, description="Ticker, cashtag or name")):
    """Map a free-text token to a canonical symbol."""
    symbol = resolve_ticker(token)
    if symbol is None:
        raise HTTPException(status_code=404, detail=f"Could not resolve {token!r}")
    return {"token": token, "symbol": symbol}


@router.post("/sentiment", response_model=Dict[str, SentimentScore])
async def sentiment(
    request: SentimentRequest,
    aggregator: SentimentAggregator = Depends(get_aggregator),
):
    """Per-symbol sentiment (plus MARKET) for the given posts."""
    scope = [s for s in (resolve_ticker(t) for t in request.scope) if s]
    if not scope:
        raise HTTPException(status_code=400, detail="Scope has no resolvable symbols")

    try:
        return await aggregator.refresh(request.posts, scope, use_ai=request.use_ai)
    except UpstreamUnavailableError as e:
        logger.warning(f"Returning keyword sentiment after upstream failure: {e}")
        return aggregator.latest(scope)


@router.post("/market-sentiment", response_model=MarketSentiment)
async def market_sentiment(
    request: MarketSentimentRequest,
    aggregator: SentimentAggregator = Depends(get_aggregator),
    orchestrator: FetchOrchestrator = Depends(get_orchestrator),
):
    """Market-wide sentiment from posts supplied or fetched."""
    posts = request.posts
    if not posts and request.fetch:
        posts = await orchestrator.get_posts_by_authors(get_settings().market_moving_accounts, max_per_author=3)

    try:
        return await aggregator.market_sentiment(posts, request.watchlist, use_ai=request.use_ai)
    except UpstreamUnavailableError as e:
        logger.warning(f"Returning keyword market sentiment after upstream failure: {e}")
        return aggregator.market


@router.post("/flow", response_model=List[FlowAnalysis])
async def flow(
    request: FlowRequest,
    orchestrator: FetchOrchestrator = Depends(get_orchestrator),
):
    """Options-flow details read from each image; images yielding no text are left out."""
    urls = [request.image_url] if request.image_url else []
    urls.extend(url for post in request.posts for url in post.image_urls)
    urls = list(dict.fromkeys(urls))
    if not urls:
        raise HTTPException(status_code=400, detail="No images to analyze")

    results = []
    for url in urls:
        try:
            analysis = await orchestrator.analyze_flow_image(url, request.symbol)
        except UpstreamUnavailableError as e:
            logger.warning(f"Skipping flow image {url[:80]}: {e}")
            if is_resource_exhausted(e):
                break
            continue
        if analysis is not None:
            results.append(analysis)
    return results
