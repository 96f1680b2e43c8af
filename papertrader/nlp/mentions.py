"""
Decide which in-scope symbols a post is about.

Specificity is favoured over recall: a post that is tagged wrongly skews a
symbol's sentiment more than a post that is missed.
"""

import logging
import re
from typing import FrozenSet, Iterable, List

from papertrader.services.resolver import base_symbol
from papertrader.services.types import MARKET_TAG, MentionSet, Post

logger = logging.getLogger(__name__)

NON_FINANCIAL_PATTERNS = [
    re.compile(r"\b(?:mayoral|mayor|election|political|campaign|vote|voting|ballot)", re.I),
    re.compile(r"\b(?:sports|football|basketball|soccer|baseball|tennis|golf)", re.I),
    re.compile(r"\b(?:entertainment|movie|film|actor|actress|celebrity|music|song)", re.I),
    re.compile(r"\b(?:weather|temperature|rain|snow|storm)", re.I),
]

MARKET_VOCABULARY = re.compile(
    r"stock|market|trading|finance|economy|\bfed\b|inflation|recession|gdp|earnings|"
    r"revenue|profit|loss|investment|portfolio|bull|bear|crypto|bitcoin|ethereum|"
    r"dollar|yuan|euro|\brates?\b|interest|bond|equity|sector|index|wall street|"
    r"\bdow\b|nasdaq|s&p",
    re.I,
)

FINANCIAL_CONTEXT = re.compile(
    r"stock|share|price|trading|market|invest|buy|sell|earnings|revenue", re.I
)

# Company phrases that count as a mention only alongside financial context
COMPANY_PHRASES = {
    "AAPL": ["APPLE INC", "APPLE STOCK", "APPLE SHARES", "APPLE'S"],
    "MSFT": ["MICROSOFT CORP", "MICROSOFT STOCK", "MICROSOFT SHARES"],
    "GOOGL": ["GOOGLE STOCK", "ALPHABET STOCK", "GOOGLE SHARES"],
    "AMZN": ["AMAZON STOCK", "AMAZON SHARES", "AMAZON.COM"],
    "TSLA": ["TESLA STOCK", "TESLA SHARES", "TESLA MOTORS"],
    "NVDA": ["NVIDIA STOCK", "NVIDIA SHARES"],
    "META": ["META STOCK", "FACEBOOK STOCK", "META SHARES"],
    "BTC": ["BITCOIN"],
    "ETH": ["ETHEREUM"],
    "SPY": ["S&P 500", "SP500", "SP 500 INDEX"],
}


def is_non_financial(text: str) -> bool:
    return any(p.search(text) for p in NON_FINANCIAL_PATTERNS)


def is_market_related(text: str) -> bool:
    return not is_non_financial(text) and bool(MARKET_VOCABULARY.search(text))


def _dollar_pattern(symbol: str) -> re.Pattern:
    return re.compile(r"\$" + re.escape(symbol) + r"(?![A-Za-z0-9])", re.I)


def _word_pattern(symbol: str) -> re.Pattern:
    return re.compile(r"(?<![A-Za-z0-9$])" + re.escape(symbol) + r"(?![A-Za-z0-9])", re.I)


def _matches_symbol(text: str, symbol: str) -> bool:
    upper = symbol.upper()
    if len(upper) <= 3:
        # Short tickers collide with English words; cashtag only
        if _dollar_pattern(upper).search(text):
            return True
    elif _dollar_pattern(upper).search(text) or _word_pattern(upper).search(text):
        return True

    base = base_symbol(upper)
    if base != upper and len(base) >= 2 and _dollar_pattern(base).search(text):
        return True

    phrases = COMPANY_PHRASES.get(base, [])
    if phrases and FINANCIAL_CONTEXT.search(text):
        text_upper = text.upper()
        for phrase in phrases:
            if re.search(r"(?<![A-Z])" + re.escape(phrase) + r"(?![A-Z])", text_upper):
                return True
    return False


def extract_mentions(text: str, scope: Iterable[str]) -> FrozenSet[str]:
    """
    Symbols from ``scope`` that a post concerns.

    Returns a subset of scope, ``{"MARKET"}`` for general market posts, or an
    empty set for posts that should be left out of every aggregate.
    """
    if not text or is_non_financial(text):
        return frozenset()

    matched = frozenset(
        s.upper() for s in scope
        if s and s.upper() != MARKET_TAG and _matches_symbol(text, s)
    )
    if matched:
        return matched

    if MARKET_VOCABULARY.search(text):
        return frozenset({MARKET_TAG})
    return frozenset()


def build_mention_sets(posts: Iterable[Post], scope: Iterable[str]) -> List[MentionSet]:
    scope = [s.upper() for s in scope]
    mention_sets = []
    for post in posts:
        symbols = extract_mentions(post.text, scope)
        if symbols:
            mention_sets.append(MentionSet(post_id=post.id, symbols=symbols))
    logger.debug(f"Tagged {len(mention_sets)} posts against scope of {len(scope)} symbols")
    return mention_sets
