import logging
import math
import re
from datetime import datetime
from typing import Dict, Iterable, List, Mapping, Optional, Sequence, Tuple

from papertrader.services.types import (
    MARKET_TAG, Direction, MarketSentiment, Post, PostAnalysis, SentimentScore,
)

logger = logging.getLogger(__name__)

DEFAULT_IMPACT_WEIGHTS = {"high": 2.0, "medium": 1.5, "low": 1.0}

# Weighted vocabulary; phrases are matched before their component words count
BULLISH_TERMS = {
    'bullish': 2.0, 'bull market': 2.0, 'breakout': 2.0, 'beat expectations': 2.0,
    'earnings beat': 2.0, 'rally': 1.5, 'surge': 1.5, 'soar': 1.5, 'outperform': 1.5,
    'buy': 1.0, 'up': 1.0, 'growth': 1.0, 'strong': 1.0, 'positive': 1.0,
    'rise': 1.0, 'gain': 1.0, 'climb': 1.0, 'boost': 1.0, 'momentum': 1.0,
    'bull': 1.0, 'higher': 1.0, 'increase': 1.0, 'advance': 1.0, 'profit': 1.0,
    'optimistic': 1.0, 'recovery': 1.0, 'expansion': 1.0, 'upside': 1.0,
    'moon': 1.0, 'long': 0.5,
}

BEARISH_TERMS = {
    'bearish': 2.0, 'bear market': 2.0, 'crash': 2.0, 'missed expectations': 2.0,
    'plunge': 1.5, 'slump': 1.5, 'recession': 1.5, 'underperform': 1.5, 'dump': 1.5,
    'sell': 1.0, 'down': 1.0, 'weak': 1.0, 'negative': 1.0, 'drop': 1.0,
    'fall': 1.0, 'short': 1.0, 'decline': 1.0, 'dip': 1.0, 'correction': 1.0,
    'bear': 1.0, 'lower': 1.0, 'decrease': 1.0, 'loss': 1.0, 'miss': 1.0,
    'disappoint': 1.0, 'pessimistic': 1.0, 'concern': 0.5, 'worried': 0.5,
    'fear': 0.5, 'uncertainty': 0.5, 'volatility': 0.5,
}


def _compile(terms: Mapping[str, float]) -> List[Tuple[re.Pattern, float]]:
    compiled = []
    # Longest first so "bull market" is consumed before "bull"
    for term in sorted(terms, key=len, reverse=True):
        pattern = re.compile(r"\b" + re.escape(term) + r"(?:s|es|ed|d|ing)?\b", re.I)
        compiled.append((pattern, terms[term]))
    return compiled


_BULLISH = _compile(BULLISH_TERMS)
_BEARISH = _compile(BEARISH_TERMS)


def _weighted_hits(text: str, compiled: List[Tuple[re.Pattern, float]]) -> float:
    score = 0.0
    for pattern, weight in compiled:
        text, hits = pattern.subn(" ", text)
        score += hits * weight
    return score


def score_breakdown(text: str) -> Tuple[float, float]:
    """Weighted (bullish, bearish) keyword totals for one post."""
    if not text:
        return 0.0, 0.0
    return _weighted_hits(text, _BULLISH), _weighted_hits(text, _BEARISH)


def score_post_heuristic(text: str) -> Direction:
    """
    Keyword direction of a single post.

    Ties, including posts with no sentiment vocabulary, are neutral.
    """
    bullish, bearish = score_breakdown(text)
    if bullish > bearish:
        return "bullish"
    if bearish > bullish:
        return "bearish"
    return "neutral"


def impact_weight(
    post: Post,
    weights: Optional[Mapping[str, float]] = None,
    high_engagement_threshold: int = 1000,
) -> float:
    """Vote weight of a post: verified authors count as high impact, busy posts at least medium."""
    weights = weights or DEFAULT_IMPACT_WEIGHTS
    impact = post.impact
    if post.verified:
        impact = "high"
    elif impact == "low" and post.engagement >= high_engagement_threshold:
        impact = "medium"
    return float(weights.get(impact, weights.get("low", 1.0)))


def _round_half_up(x: float) -> int:
    return int(math.floor(x + 0.5))


def normalize_votes(bullish: float, bearish: float, neutral: float) -> Tuple[int, int, int]:
    """
    Convert vote totals to integer percentages that sum to exactly 100.

    The neutral bucket absorbs the rounding remainder. Zero votes gives the
    33/33/34 default.
    """
    bullish, bearish, neutral = (max(0.0, float(v)) for v in (bullish, bearish, neutral))
    total = bullish + bearish + neutral
    if total <= 0:
        return 33, 33, 34

    bull_pct = _round_half_up(bullish / total * 100)
    bear_pct = _round_half_up(bearish / total * 100)
    neutral_pct = _round_half_up(neutral / total * 100)

    pct_total = bull_pct + bear_pct + neutral_pct
    factor = 100 / pct_total if pct_total else 1
    bull_pct = min(100, _round_half_up(bull_pct * factor))
    bear_pct = min(100 - bull_pct, _round_half_up(bear_pct * factor))
    neutral_pct = 100 - bull_pct - bear_pct
    return bull_pct, bear_pct, neutral_pct


def sanitize_percentages(raw: Optional[Mapping], fallback: Tuple[int, int, int] = (34, 33, 33)) -> Tuple[int, int, int]:
    """Clamp AI-reported percentages to [0, 100] and renormalise them to sum to 100."""
    raw = raw or {}
    values = []
    for key, default in zip(("bullish", "bearish", "neutral"), fallback):
        value = raw.get(key)
        if value is None and key == "bullish":
            value = raw.get("positive")
        if value is None and key == "bearish":
            value = raw.get("negative")
        try:
            number = float(value)
        except (TypeError, ValueError):
            number = float(default)
        if math.isnan(number) or math.isinf(number):
            number = float(default)
        values.append(min(100, max(0, _round_half_up(number))))
    return normalize_votes(*values)


def overall_label(bullish_pct: int, bearish_pct: int) -> Direction:
    if bullish_pct > bearish_pct + 10:
        return "bullish"
    if bearish_pct > bullish_pct + 10:
        return "bearish"
    return "neutral"


def default_score(symbol: str, now: Optional[datetime] = None) -> SentimentScore:
    """Neutral placeholder for a symbol with no tagged posts."""
    return SentimentScore(
        symbol=symbol,
        bullish_pct=33,
        bearish_pct=33,
        neutral_pct=34,
        overall="neutral",
        updated_at=now or datetime.utcnow(),
        driving_post_ids=[],
        source="default",
    )


def _build_score(symbol, votes, post_ids, source, now) -> SentimentScore:
    bull, bear, neutral = normalize_votes(*votes)
    return SentimentScore(
        symbol=symbol,
        bullish_pct=bull,
        bearish_pct=bear,
        neutral_pct=neutral,
        overall=overall_label(bull, bear),
        updated_at=now or datetime.utcnow(),
        driving_post_ids=post_ids,
        source=source,
    )


def score_symbol_heuristic(
    symbol: str,
    posts: Sequence[Post],
    weights: Optional[Mapping[str, float]] = None,
    high_engagement_threshold: int = 1000,
    now: Optional[datetime] = None,
) -> SentimentScore:
    """
    Keyword-mode sentiment for posts already tagged with ``symbol``.

    Posts are taken in arrival order; each casts one impact-weighted vote.
    """
    if not posts:
        return default_score(symbol, now)

    votes = {"bullish": 0.0, "bearish": 0.0, "neutral": 0.0}
    post_ids = []
    for post in posts:
        votes[score_post_heuristic(post.text)] += impact_weight(post, weights, high_engagement_threshold)
        post_ids.append(post.id)

    return _build_score(symbol, (votes["bullish"], votes["bearish"], votes["neutral"]), post_ids, "heuristic", now)


def score_symbol_from_analyses(
    symbol: str,
    analyses: Iterable[PostAnalysis],
    posts_by_id: Mapping[str, Post],
    weights: Optional[Mapping[str, float]] = None,
    high_engagement_threshold: int = 1000,
    now: Optional[datetime] = None,
) -> SentimentScore:
    """AI-mode sentiment: one impact-weighted vote per post the AI tied to ``symbol``."""
    votes = {"bullish": 0.0, "bearish": 0.0, "neutral": 0.0}
    post_ids = []
    for analysis in analyses:
        direction = analysis.sentiment_per_symbol.get(symbol)
        if direction is None and symbol == MARKET_TAG and analysis.overall_market_impact != "none":
            direction = analysis.overall_market_impact
        if direction is None:
            continue
        post = posts_by_id.get(analysis.post_id)
        weight = impact_weight(post, weights, high_engagement_threshold) if post else 1.0
        votes[direction if direction in votes else "neutral"] += weight
        post_ids.append(analysis.post_id)

    if not post_ids:
        return default_score(symbol, now)
    return _build_score(symbol, (votes["bullish"], votes["bearish"], votes["neutral"]), post_ids, "ai", now)


def empty_market_sentiment(now: Optional[datetime] = None) -> MarketSentiment:
    return MarketSentiment(
        bullish_pct=33,
        bearish_pct=33,
        neutral_pct=34,
        overall="neutral",
        updated_at=now or datetime.utcnow(),
        source="default",
        summary="Not enough posts were available to evaluate current market sentiment.",
        key_drivers=["Insufficient post data provided for analysis"],
    )


def score_market_heuristic(
    posts: Sequence[Post],
    weights: Optional[Mapping[str, float]] = None,
    high_engagement_threshold: int = 1000,
    now: Optional[datetime] = None,
) -> MarketSentiment:
    """Keyword-mode market sentiment over MARKET-tagged posts."""
    if not posts:
        return empty_market_sentiment(now)

    score = score_symbol_heuristic(MARKET_TAG, posts, weights, high_engagement_threshold, now)
    accounts = list(dict.fromkeys(p.author for p in posts))
    return MarketSentiment(
        **score.model_dump(exclude={"symbol"}),
        summary=f"Keyword read of {len(posts)} market posts: {score.overall}.",
        source_accounts=accounts,
    )


def market_from_ai(
    parsed: Mapping,
    posts: Sequence[Post],
    now: Optional[datetime] = None,
) -> MarketSentiment:
    """Build MarketSentiment from an AI market-analysis object."""
    sentiment = parsed.get("sentiment") if isinstance(parsed.get("sentiment"), dict) else {}
    bull, bear, neutral = sanitize_percentages(sentiment)

    accounts = parsed.get("sourceAccounts")
    if not isinstance(accounts, list) or not accounts:
        accounts = list(dict.fromkeys(p.author for p in posts))
    drivers = parsed.get("keyDrivers") if isinstance(parsed.get("keyDrivers"), list) else []

    return MarketSentiment(
        bullish_pct=bull,
        bearish_pct=bear,
        neutral_pct=neutral,
        overall=overall_label(bull, bear),
        updated_at=now or datetime.utcnow(),
        driving_post_ids=[p.id for p in posts],
        source="ai",
        summary=str(parsed.get("summary") or "")[:200],
        source_accounts=[str(a) for a in accounts],
        key_drivers=[str(d) for d in drivers],
    )


def tally_directions(posts: Iterable[Post]) -> Dict[str, int]:
    """Unweighted direction counts, for logging and the CLI."""
    counts = {"bullish": 0, "bearish": 0, "neutral": 0}
    for post in posts:
        counts[score_post_heuristic(post.text)] += 1
    return counts
