import logging
from datetime import datetime
from typing import Dict, Iterable, List, Optional, Sequence

from papertrader.config import Settings, get_settings
from papertrader.errors import PartialAnalysisError, UpstreamUnavailableError, is_resource_exhausted
from papertrader.nlp.json_repair import RecoveryFailure
from papertrader.nlp.mentions import build_mention_sets, is_market_related, is_non_financial
from papertrader.nlp.sentiment import (
    empty_market_sentiment, market_from_ai, score_market_heuristic,
    score_symbol_from_analyses, score_symbol_heuristic,
)
from papertrader.orchestration.fetcher import dedupe_posts
from papertrader.services.types import MARKET_TAG, MarketSentiment, Post, SentimentScore

logger = logging.getLogger(__name__)


def scope_key(scope: Iterable[str]) -> str:
    return ",".join(sorted({s.strip().upper() for s in scope if s and s.strip()}))


class SentimentAggregator:
    """
    Per-scope sentiment with supersession.

    Every recomputation records the time it started. ``publish`` keeps a
    result only if no computation that started later has already been
    published for the same scope.

    Args:
        orchestrator: FetchOrchestrator used for AI analysis; None means
            keyword scoring only
        settings: Overrides ``get_settings()``
    """

    def __init__(self, orchestrator=None, settings: Optional[Settings] = None):
        self.orchestrator = orchestrator
        self.settings = settings or get_settings()
        self._updated_at: Dict[str, datetime] = {}
        self._scores: Dict[str, Dict[str, SentimentScore]] = {}
        self._market: Optional[MarketSentiment] = None

    def updated_at(self, scope: Iterable[str]) -> Optional[datetime]:
        return self._updated_at.get(scope_key(scope))

    def latest(self, scope: Iterable[str]) -> Dict[str, SentimentScore]:
        return dict(self._scores.get(scope_key(scope), {}))

    @property
    def market(self) -> Optional[MarketSentiment]:
        return self._market

    def publish(self, scope: Iterable[str], scores: Dict[str, SentimentScore], started_at: datetime) -> bool:
        """
        Store ``scores`` for ``scope`` unless a fresher result exists.

        Returns:
            False when the computation started before the stored updated_at
        """
        key = scope_key(scope)
        current = self._updated_at.get(key)
        if current is not None and started_at < current:
            logger.debug(f"Dropping superseded sentiment for scope [{key}]")
            return False
        self._updated_at[key] = started_at
        self._scores[key] = dict(scores)
        if MARKET_TAG in scores and isinstance(scores[MARKET_TAG], MarketSentiment):
            self._market = scores[MARKET_TAG]
        return True

    def _posts_by_symbol(self, posts: Sequence[Post], scope: Sequence[str]) -> Dict[str, List[Post]]:
        by_id = {post.id: post for post in posts}
        grouped: Dict[str, List[Post]] = {s: [] for s in scope}
        grouped.setdefault(MARKET_TAG, [])
        # Mention sets come back in arrival order
        for mention in build_mention_sets(posts, scope):
            for symbol in mention.symbols:
                grouped.setdefault(symbol, []).append(by_id[mention.post_id])
        return grouped

    def score_heuristic(
        self,
        posts: Sequence[Post],
        scope: Sequence[str],
        now: Optional[datetime] = None,
    ) -> Dict[str, SentimentScore]:
        """Keyword scores for every scope symbol plus MARKET."""
        scope = [s.upper() for s in scope]
        now = now or datetime.utcnow()
        grouped = self._posts_by_symbol(dedupe_posts(posts), scope)
        return {
            symbol: score_symbol_heuristic(
                symbol, tagged, self.settings.impact_weights,
                self.settings.high_engagement_threshold, now,
            )
            for symbol, tagged in grouped.items()
        }

    async def refresh(self, posts: Sequence[Post], scope: Sequence[str], use_ai: bool = True) -> Dict[str, SentimentScore]:
        """
        Recompute sentiment for ``scope`` from ``posts``.

        Keyword scores are published first. When AI analysis succeeds its
        scores replace them wholesale, including when only some batches
        completed. Resource exhaustion from the AI service is re-raised
        after publishing so a scheduler can back off; other upstream
        failures keep the keyword scores.

        Returns:
            The scores this computation produced (published or not)
        """
        started_at = datetime.utcnow()
        scope = [s.upper() for s in scope]
        posts = dedupe_posts(posts)

        scores = self.score_heuristic(posts, scope, now=started_at)
        self.publish(scope, scores, started_at)

        if not use_ai or self.orchestrator is None:
            return scores

        candidates = [p for p in posts if not is_non_financial(p.text)]
        if not candidates:
            return scores

        exhausted = None
        try:
            analyses = await self.orchestrator.analyze_post_impact(candidates, scope)
        except PartialAnalysisError as e:
            logger.warning(f"AI sentiment cut short with {len(e.analyses)} analyses: {e}")
            analyses, exhausted = e.analyses, e
        except UpstreamUnavailableError as e:
            logger.warning(f"AI sentiment unavailable, keeping keyword scores: {e}")
            if is_resource_exhausted(e):
                raise
            return scores

        if not analyses:
            logger.info("AI analysis returned nothing usable, keeping keyword scores")
            if exhausted is not None:
                raise exhausted
            return scores

        ai_scores = self._publish_analyses(scope, candidates, analyses, started_at)
        if exhausted is not None:
            raise exhausted
        return ai_scores

    def _publish_analyses(self, scope, candidates, analyses, started_at) -> Dict[str, SentimentScore]:
        posts_by_id = {p.id: p for p in candidates}
        now = datetime.utcnow()
        ai_scores = {
            symbol: score_symbol_from_analyses(
                symbol, analyses, posts_by_id, self.settings.impact_weights,
                self.settings.high_engagement_threshold, now,
            )
            for symbol in [*scope, MARKET_TAG]
        }
        if self.publish(scope, ai_scores, started_at):
            logger.info(f"Published AI sentiment for {len(scope)} symbols from {len(analyses)} analyses")
        return ai_scores

    async def market_sentiment(
        self,
        posts: Sequence[Post],
        watchlist: Sequence[str] = (),
        use_ai: bool = True,
    ) -> MarketSentiment:
        """Market-wide sentiment over market-related posts."""
        started_at = datetime.utcnow()
        market_posts = [p for p in dedupe_posts(posts) if is_market_related(p.text)]
        if not market_posts:
            result = empty_market_sentiment(started_at)
            self.publish([MARKET_TAG], {MARKET_TAG: result}, started_at)
            return result

        result = score_market_heuristic(
            market_posts, self.settings.impact_weights,
            self.settings.high_engagement_threshold, started_at,
        )
        self.publish([MARKET_TAG], {MARKET_TAG: result}, started_at)

        if not use_ai or self.orchestrator is None:
            return result

        try:
            parsed = await self.orchestrator.analyze_market(market_posts, watchlist)
        except UpstreamUnavailableError as e:
            logger.warning(f"AI market analysis unavailable, keeping keyword read: {e}")
            if is_resource_exhausted(e):
                raise
            return result

        if isinstance(parsed, RecoveryFailure):
            return result

        top = sorted(market_posts, key=lambda p: p.engagement, reverse=True)[:self.settings.market_batch_size]
        result = market_from_ai(parsed, top)
        self.publish([MARKET_TAG], {MARKET_TAG: result}, started_at)
        return result
