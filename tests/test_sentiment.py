"""Test keyword sentiment, vote weighting and normalisation."""

import itertools
from datetime import datetime

import pytest
from papertrader.nlp.sentiment import (
    default_score, empty_market_sentiment, impact_weight, market_from_ai,
    normalize_votes, overall_label, sanitize_percentages, score_breakdown,
    score_market_heuristic, score_post_heuristic, score_symbol_from_analyses,
    score_symbol_heuristic,
)
from papertrader.services.types import PostAnalysis
from tests.helpers import make_post


class TestKeywordScoring:
    """Test per-post keyword direction."""

    def test_bullish(self):
        assert score_post_heuristic("Bullish on this breakout, strong rally") == "bullish"

    def test_bearish(self):
        assert score_post_heuristic("Crash incoming, sell everything") == "bearish"

    def test_no_vocabulary_is_neutral(self):
        assert score_post_heuristic("Company reported results today") == "neutral"

    def test_tie_is_neutral(self):
        assert score_post_heuristic("buy the dip") == "neutral"

    def test_phrase_consumes_component_word(self):
        """'bear market' counts once, not also as 'bear'."""
        assert score_breakdown("bear market") == (0.0, 2.0)

    def test_empty(self):
        assert score_breakdown("") == (0.0, 0.0)
        assert score_post_heuristic("") == "neutral"


class TestNormalizeVotes:
    """Test percentage normalisation."""

    def test_three_way_split(self):
        assert normalize_votes(1, 1, 1) == (33, 33, 34)

    def test_zero_votes(self):
        assert normalize_votes(0, 0, 0) == (33, 33, 34)

    def test_two_thirds(self):
        assert normalize_votes(2, 1, 0) == (67, 33, 0)

    def test_always_sums_to_100(self):
        """Every combination of small weighted totals sums to exactly 100."""
        values = [0, 1, 1.5, 2, 3, 7]
        for bull, bear, neutral in itertools.product(values, repeat=3):
            result = normalize_votes(bull, bear, neutral)
            assert sum(result) == 100, (bull, bear, neutral, result)
            assert all(0 <= pct <= 100 for pct in result)


class TestOverallLabel:

    @pytest.mark.parametrize("bull,bear,expected", [
        (50, 39, "bullish"),
        (45, 40, "neutral"),
        (40, 50, "neutral"),
        (20, 31, "bearish"),
    ])
    def test_ten_point_margin(self, bull, bear, expected):
        assert overall_label(bull, bear) == expected


class TestImpactWeight:

    def test_verified_is_high(self):
        post = make_post("1", "x", impact="low", verified=True)
        assert impact_weight(post) == 2.0

    def test_high_engagement_is_at_least_medium(self):
        post = make_post("1", "x", impact="low", like_count=900, repost_count=200)
        assert impact_weight(post) == 1.5

    def test_low_engagement_low_impact(self):
        post = make_post("1", "x", impact="low", like_count=5)
        assert impact_weight(post) == 1.0

    def test_custom_weights(self):
        post = make_post("1", "x", verified=True)
        assert impact_weight(post, {"high": 3.0, "medium": 1.0, "low": 1.0}) == 3.0


class TestSymbolScores:

    def test_no_posts_gives_default(self):
        score = score_symbol_heuristic("AAPL", [])

        assert (score.bullish_pct, score.bearish_pct, score.neutral_pct) == (33, 33, 34)
        assert score.overall == "neutral"
        assert score.source == "default"

    def test_default_score(self):
        score = default_score("TSLA")
        assert score.symbol == "TSLA"
        assert score.driving_post_ids == []

    def test_verified_vote_outweighs(self):
        posts = [
            make_post("1", "$AAPL breakout, bullish", verified=True, impact="low"),
            make_post("2", "$AAPL looks weak", impact="low"),
        ]
        score = score_symbol_heuristic("AAPL", posts)

        assert (score.bullish_pct, score.bearish_pct, score.neutral_pct) == (67, 33, 0)
        assert score.overall == "bullish"
        assert score.source == "heuristic"
        assert score.driving_post_ids == ["1", "2"]

    def test_from_analyses(self):
        posts = {p.id: p for p in [
            make_post("1", "a"), make_post("2", "b"), make_post("3", "c"),
        ]}
        analyses = [
            PostAnalysis(post_id="1", sentiment_per_symbol={"AAPL": "bullish"}),
            PostAnalysis(post_id="2", sentiment_per_symbol={"AAPL": "bearish"}),
            PostAnalysis(post_id="3", sentiment_per_symbol={"TSLA": "bullish"}),
        ]
        score = score_symbol_from_analyses("AAPL", analyses, posts)

        assert (score.bullish_pct, score.bearish_pct, score.neutral_pct) == (50, 50, 0)
        assert score.source == "ai"
        assert score.driving_post_ids == ["1", "2"]

    def test_from_analyses_no_votes(self):
        score = score_symbol_from_analyses("NVDA", [], {})
        assert score.source == "default"


class TestMarketSentiment:

    def test_empty(self):
        result = empty_market_sentiment()

        assert (result.bullish_pct, result.bearish_pct, result.neutral_pct) == (33, 33, 34)
        assert result.summary == "Not enough posts were available to evaluate current market sentiment."
        assert score_market_heuristic([]).source == "default"

    def test_heuristic(self):
        posts = [
            make_post("1", "Stock market rally", author="CNBC"),
            make_post("2", "Markets surge on jobs data", author="Reuters"),
        ]
        result = score_market_heuristic(posts)

        assert result.symbol == "MARKET"
        assert result.overall == "bullish"
        assert result.source_accounts == ["CNBC", "Reuters"]

    def test_from_ai(self):
        parsed = {
            "sentiment": {"bullish": 60, "bearish": 20, "neutral": 20},
            "summary": "Risk on",
            "keyDrivers": ["Fed"],
        }
        result = market_from_ai(parsed, [make_post("1", "x", author="WSJ")], now=datetime(2025, 1, 1))

        assert (result.bullish_pct, result.bearish_pct, result.neutral_pct) == (60, 20, 20)
        assert result.overall == "bullish"
        assert result.source == "ai"
        assert result.source_accounts == ["WSJ"]
        assert result.key_drivers == ["Fed"]

    def test_sanitize_clamps_and_renormalises(self):
        assert sanitize_percentages({"bullish": 150, "bearish": -5, "neutral": "abc"}) == (75, 0, 25)

    def test_sanitize_missing(self):
        assert sanitize_percentages(None) == (34, 33, 33)
