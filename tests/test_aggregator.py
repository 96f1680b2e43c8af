"""Test sentiment aggregation and supersession."""

from datetime import datetime, timedelta

import pytest
from papertrader.errors import CompletionError, PartialAnalysisError
from papertrader.nlp.json_repair import RecoveryFailure
from papertrader.orchestration.aggregator import SentimentAggregator, scope_key
from papertrader.services.types import MARKET_TAG, PostAnalysis
from tests.helpers import make_post, make_settings


class StubOrchestrator:
    def __init__(self, analyses=None, market=None, error=None):
        self.analyses = analyses or []
        self.market = market
        self.error = error
        self.analyzed_ids = []

    async def analyze_post_impact(self, posts, scope):
        self.analyzed_ids = [p.id for p in posts]
        if self.error:
            raise self.error
        return self.analyses

    async def analyze_market(self, posts, watchlist=()):
        if self.error:
            raise self.error
        return self.market


def nvda_posts():
    return [
        make_post("1", "$NVDA breakout, bullish"),
        make_post("2", "$NVDA looks weak"),
        make_post("3", "Stock market rally continues"),
    ]


class TestPublish:

    def test_scope_key_is_canonical(self):
        assert scope_key(["nvda", "AMD ", "NVDA"]) == "AMD,NVDA"

    def test_older_computation_is_dropped(self):
        agg = SentimentAggregator(settings=make_settings())
        t1 = datetime(2025, 1, 1, 12, 0, 0)
        t2 = t1 + timedelta(seconds=5)
        newer = agg.score_heuristic(nvda_posts(), ["NVDA"], now=t2)
        older = agg.score_heuristic([], ["NVDA"], now=t1)

        assert agg.publish(["NVDA"], newer, t2) is True
        assert agg.publish(["nvda"], older, t1) is False
        assert agg.latest(["NVDA"])["NVDA"].source == "heuristic"
        assert agg.updated_at(["NVDA"]) == t2

    def test_same_start_time_replaces(self):
        agg = SentimentAggregator(settings=make_settings())
        t = datetime(2025, 1, 1)

        assert agg.publish(["NVDA"], {}, t)
        assert agg.publish(["NVDA"], agg.score_heuristic([], ["NVDA"], now=t), t)
        assert "NVDA" in agg.latest(["NVDA"])

    def test_unknown_scope(self):
        agg = SentimentAggregator(settings=make_settings())

        assert agg.latest(["AAPL"]) == {}
        assert agg.updated_at(["AAPL"]) is None


class TestHeuristicScores:

    def test_every_scope_symbol_and_market(self):
        agg = SentimentAggregator(settings=make_settings())

        scores = agg.score_heuristic(nvda_posts(), ["nvda", "amd"])

        assert set(scores) == {"NVDA", "AMD", MARKET_TAG}

        nvda = scores["NVDA"]
        assert (nvda.bullish_pct, nvda.bearish_pct, nvda.neutral_pct) == (50, 50, 0)
        assert nvda.overall == "neutral"
        assert nvda.driving_post_ids == ["1", "2"]

        assert scores["AMD"].source == "default"
        assert scores[MARKET_TAG].overall == "bullish"
        assert scores[MARKET_TAG].driving_post_ids == ["3"]

    def test_duplicates_vote_once(self):
        agg = SentimentAggregator(settings=make_settings())
        posts = nvda_posts() + [make_post("4", "$NVDA looks weak")]

        scores = agg.score_heuristic(posts, ["NVDA"])

        assert scores["NVDA"].driving_post_ids == ["1", "2"]


class TestRefresh:

    @pytest.mark.asyncio
    async def test_keyword_only(self):
        agg = SentimentAggregator(settings=make_settings())

        scores = await agg.refresh(nvda_posts(), ["NVDA"])

        assert scores["NVDA"].source == "heuristic"
        assert agg.latest(["NVDA"])["NVDA"].bullish_pct == 50

    @pytest.mark.asyncio
    async def test_ai_scores_replace_keyword_scores(self):
        orchestrator = StubOrchestrator(analyses=[
            PostAnalysis(post_id="1", impacted_symbols=["NVDA"], sentiment_per_symbol={"NVDA": "bearish"}),
            PostAnalysis(post_id="3", overall_market_impact="bullish"),
        ])
        agg = SentimentAggregator(orchestrator, settings=make_settings())

        await agg.refresh(nvda_posts(), ["NVDA", "AMD"])
        latest = agg.latest(["AMD", "NVDA"])

        assert latest["NVDA"].source == "ai"
        assert latest["NVDA"].overall == "bearish"
        assert latest["NVDA"].bearish_pct == 100
        assert latest["AMD"].source == "default"
        assert latest[MARKET_TAG].overall == "bullish"

    @pytest.mark.asyncio
    async def test_non_financial_posts_not_sent_to_ai(self):
        orchestrator = StubOrchestrator()
        agg = SentimentAggregator(orchestrator, settings=make_settings())
        posts = nvda_posts() + [make_post("9", "Great football game tonight $NVDA")]

        await agg.refresh(posts, ["NVDA"])

        assert orchestrator.analyzed_ids == ["1", "2", "3"]

    @pytest.mark.asyncio
    async def test_upstream_failure_keeps_keyword_scores(self):
        orchestrator = StubOrchestrator(error=CompletionError("bad gateway", status_code=502))
        agg = SentimentAggregator(orchestrator, settings=make_settings())

        scores = await agg.refresh(nvda_posts(), ["NVDA"])

        assert scores["NVDA"].source == "heuristic"
        assert agg.latest(["NVDA"])["NVDA"].source == "heuristic"

    @pytest.mark.asyncio
    async def test_resource_exhaustion_is_raised_after_publishing(self):
        orchestrator = StubOrchestrator(error=CompletionError("rate limited", status_code=429))
        agg = SentimentAggregator(orchestrator, settings=make_settings())

        with pytest.raises(CompletionError):
            await agg.refresh(nvda_posts(), ["NVDA"])

        assert agg.latest(["NVDA"])["NVDA"].source == "heuristic"

    @pytest.mark.asyncio
    async def test_partial_analyses_published_before_exhaustion_is_raised(self):
        completed = [PostAnalysis(post_id="1", impacted_symbols=["NVDA"], sentiment_per_symbol={"NVDA": "bearish"})]
        error = PartialAnalysisError("rate limited", status_code=429, analyses=completed)
        agg = SentimentAggregator(StubOrchestrator(error=error), settings=make_settings())

        with pytest.raises(PartialAnalysisError):
            await agg.refresh(nvda_posts(), ["NVDA"])

        latest = agg.latest(["NVDA"])["NVDA"]
        assert latest.source == "ai"
        assert latest.bearish_pct == 100

    @pytest.mark.asyncio
    async def test_exhaustion_with_nothing_completed_keeps_keyword_scores(self):
        error = PartialAnalysisError("rate limited", status_code=429)
        agg = SentimentAggregator(StubOrchestrator(error=error), settings=make_settings())

        with pytest.raises(PartialAnalysisError):
            await agg.refresh(nvda_posts(), ["NVDA"])

        assert agg.latest(["NVDA"])["NVDA"].source == "heuristic"

    @pytest.mark.asyncio
    async def test_empty_analyses_keep_keyword_scores(self):
        agg = SentimentAggregator(StubOrchestrator(analyses=[]), settings=make_settings())

        scores = await agg.refresh(nvda_posts(), ["NVDA"])

        assert scores["NVDA"].source == "heuristic"


class TestMarketSentiment:

    @pytest.mark.asyncio
    async def test_no_market_posts(self):
        agg = SentimentAggregator(settings=make_settings())

        result = await agg.market_sentiment([make_post("1", "Lovely sunny afternoon")])

        assert result.source == "default"
        assert result.key_drivers == ["Insufficient post data provided for analysis"]
        assert agg.market is result

    @pytest.mark.asyncio
    async def test_ai_market_read(self):
        orchestrator = StubOrchestrator(market={
            "sentiment": {"bullish": 20, "bearish": 70, "neutral": 10},
            "summary": "Rate fears",
            "keyDrivers": ["CPI"],
            "sourceAccounts": ["Reuters"],
        })
        agg = SentimentAggregator(orchestrator, settings=make_settings())
        posts = [make_post("1", "Fed signals more rate hikes, stocks fall", author="Reuters")]

        result = await agg.market_sentiment(posts)

        assert result.source == "ai"
        assert result.overall == "bearish"
        assert result.source_accounts == ["Reuters"]
        assert agg.market.summary == "Rate fears"

    @pytest.mark.asyncio
    async def test_unrecoverable_ai_reply_keeps_keyword_read(self):
        failure = RecoveryFailure(stage="exhausted", reason="bad", preview="")
        agg = SentimentAggregator(StubOrchestrator(market=failure), settings=make_settings())
        posts = [make_post("1", "Stock market rally", author="CNBC")]

        result = await agg.market_sentiment(posts)

        assert result.source == "heuristic"
        assert result.overall == "bullish"
