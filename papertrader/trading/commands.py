"""
Turn chat messages into structured trade intents.

Patterns are data: ``TRADE_PATTERNS`` is tried in order and the first
pattern that matches decides the reading of the message.
"""

import logging
import re
from typing import Dict, List, NamedTuple, Optional, Pattern

from papertrader.services.resolver import is_crypto, resolve_ticker
from papertrader.services.types import TradeIntent

logger = logging.getLogger(__name__)

_AMOUNT = r"(\d[\d,]*(?:\.\d+)?)"
_SYMBOL = r"([A-Za-z]+(?:-USD)?)\b"


class TradePattern(NamedTuple):
    regex: Pattern
    side: str
    # "dollar", "quantity", or "auto" (dollar only when a $ sign is present)
    amount_kind: str


TRADE_PATTERNS: List[TradePattern] = [
    TradePattern(re.compile(r"\bbuy\s+\$?" + _AMOUNT + r"\s+worth\s+of\s+" + _SYMBOL, re.I), "buy", "dollar"),
    TradePattern(re.compile(r"\bbuy\s+" + _AMOUNT + r"\s+shares?\s+of\s+" + _SYMBOL, re.I), "buy", "quantity"),
    TradePattern(re.compile(r"\bbuy\s+(\$?)" + _AMOUNT + r"\s+(?:shares?\s+)?(?:of\s+)?" + _SYMBOL, re.I), "buy", "auto"),
    TradePattern(re.compile(r"\bpurchase\s+" + _AMOUNT + r"\s+(?:shares?\s+(?:of\s+)?)?" + _SYMBOL, re.I), "buy", "quantity"),
    TradePattern(re.compile(r"\bsell\s+" + _AMOUNT + r"\s+shares?\s+of\s+" + _SYMBOL, re.I), "sell", "quantity"),
    TradePattern(re.compile(r"\bsell\s+" + _AMOUNT + r"\s+(?:shares?\s+)?(?:of\s+)?" + _SYMBOL, re.I), "sell", "quantity"),
    TradePattern(re.compile(r"\bclose\s+" + _AMOUNT + r"\s+(?:shares?\s+(?:of\s+)?)?" + _SYMBOL, re.I), "sell", "quantity"),
]

# Words the symbol group can swallow that are never instruments
_FILLER_WORDS = {
    "OF", "THE", "IT", "MORE", "SOME", "WORTH", "SHARE", "SHARES", "DOLLARS", "BUCKS", "USD", "MY",
    "THEM", "THIS", "THAT", "THESE", "THOSE", "ALL",
}

DIVERSIFICATION_KEYWORDS = [
    "DIVERSIFY", "DIVERSIFICATION", "MAKE MY PORTFOLIO", "BALANCE MY PORTFOLIO",
    "REBALANCE", "DO IT FOR ME", "DO IT", "EXECUTE", "GO AHEAD", "PROCEED",
    "MAKE IT SAFE", "PROTECT MY PORTFOLIO",
]

HEATMAP_KEYWORDS = ["HEATMAP", "HEAT MAP", "SHOW ME", "VISUALIZE", "MAP OF"]

# Alias -> sector name
SECTOR_ALIASES: Dict[str, str] = {
    "TECHNOLOGY": "Technology",
    "TECH": "Technology",
    "HEALTHCARE": "Healthcare",
    "HEALTH": "Healthcare",
    "FINANCIAL": "Financial",
    "FINANCE": "Financial",
    "BANKING": "Financial",
    "ENERGY": "Energy",
    "CONSUMER": "Consumer",
    "RETAIL": "Consumer",
    "INDUSTRIAL": "Industrial",
    "COMMUNICATION": "Communication",
    "TELECOMMUNICATION": "Communication",
    "UTILITIES": "Utilities",
    "REAL ESTATE": "Real Estate",
    "MATERIALS": "Materials",
    "CRYPTO": "Crypto",
    "CRYPTOCURRENCY": "Crypto",
    "CRYPTOCURRENCIES": "Crypto",
    "LAYER 1": "Layer 1",
    "LAYER1": "Layer 1",
    "L1": "Layer 1",
    "LAYER 2": "Layer 2",
    "LAYER2": "Layer 2",
    "L2": "Layer 2",
    "DEFI": "DeFi",
    "DECENTRALIZED FINANCE": "DeFi",
    "MEME": "Meme Coins",
    "MEMECOIN": "Meme Coins",
    "MEME COIN": "Meme Coins",
    "STABLECOIN": "Stablecoins",
    "STABLE COIN": "Stablecoins",
    "EXCHANGE": "Exchange Tokens",
    "CEX": "Exchange Tokens",
    "DEX": "Exchange Tokens",
}

SECTOR_SYMBOLS: Dict[str, List[str]] = {
    "Technology": ["AAPL", "MSFT", "GOOGL", "META", "NVDA", "AMD", "INTC", "CRM", "ORCL", "ADBE"],
    "Healthcare": ["JNJ", "UNH", "PFE", "ABBV", "TMO", "ABT", "DHR", "BMY", "AMGN", "GILD"],
    "Financial": ["JPM", "BAC", "WFC", "GS", "MS", "C", "BLK", "SCHW", "AXP", "COF"],
    "Energy": ["XOM", "CVX", "SLB", "EOG", "COP", "MPC", "VLO", "PSX", "HAL", "FANG"],
    "Consumer": ["AMZN", "WMT", "HD", "MCD", "NKE", "SBUX", "TGT", "LOW", "TJX", "COST"],
    "Industrial": ["BA", "CAT", "GE", "HON", "RTX", "LMT", "DE", "EMR", "ETN", "ITW"],
    "Communication": ["GOOGL", "META", "NFLX", "DIS", "CMCSA", "VZ", "T", "CHTR", "EA", "TTWO"],
    "Utilities": ["NEE", "DUK", "SO", "AEP", "SRE", "EXC", "XEL", "WEC", "ES", "PEG"],
    "Real Estate": ["AMT", "PLD", "EQIX", "PSA", "WELL", "SPG", "O", "DLR", "AVB", "EQR"],
    "Materials": ["LIN", "APD", "ECL", "SHW", "PPG", "DD", "FCX", "NEM", "VMC", "MLM"],
    "Crypto": ["BTC-USD", "ETH-USD", "BNB-USD", "SOL-USD", "ADA-USD", "XRP-USD", "DOGE-USD", "MATIC-USD", "AVAX-USD", "DOT-USD"],
    "Layer 1": ["BTC-USD", "ETH-USD", "BNB-USD", "SOL-USD", "ADA-USD", "AVAX-USD", "DOT-USD", "ATOM-USD", "ALGO-USD", "NEAR-USD"],
    "Layer 2": ["MATIC-USD", "ARB-USD", "OP-USD", "LRC-USD", "IMX-USD", "METIS-USD", "MAGIC-USD", "DYDX-USD"],
    "DeFi": ["UNI-USD", "AAVE-USD", "LINK-USD", "MKR-USD", "SNX-USD", "COMP-USD", "CRV-USD", "SUSHI-USD", "YFI-USD"],
    "Meme Coins": ["DOGE-USD", "SHIB-USD", "PEPE-USD", "FLOKI-USD", "BONK-USD", "WIF-USD"],
    "Stablecoins": ["USDT-USD", "USDC-USD", "DAI-USD", "TUSD-USD", "USDP-USD", "FRAX-USD"],
    "Exchange Tokens": ["BNB-USD", "OKB-USD", "KCS-USD", "CRO-USD", "GT-USD", "LEO-USD"],
}

CRYPTO_SECTORS = {"Crypto", "Layer 1", "Layer 2", "DeFi", "Meme Coins", "Stablecoins", "Exchange Tokens"}


def _keyword_regex(keywords) -> Pattern:
    ordered = sorted(keywords, key=len, reverse=True)
    return re.compile(r"\b(?:" + "|".join(re.escape(k) for k in ordered) + r")\b", re.I)


_DIVERSIFY_RE = _keyword_regex(DIVERSIFICATION_KEYWORDS)
_HEATMAP_RE = _keyword_regex(HEATMAP_KEYWORDS)
_SECTOR_RE = _keyword_regex([*SECTOR_ALIASES, "SECTOR"])


def _parse_amount(raw: str) -> Optional[float]:
    try:
        return float(raw.replace(",", ""))
    except ValueError:
        return None


def _build_intent(pattern: TradePattern, match: re.Match) -> Optional[TradeIntent]:
    groups = match.groups()
    if pattern.amount_kind == "auto":
        dollar_sign, raw_amount, token = groups
        is_dollar = bool(dollar_sign)
    else:
        raw_amount, token = groups
        is_dollar = pattern.amount_kind == "dollar"

    amount = _parse_amount(raw_amount)
    if amount is None or amount <= 0:
        return None

    if token.upper() in _FILLER_WORDS:
        return None
    symbol = resolve_ticker(token)
    if symbol is None:
        logger.debug(f"Could not resolve instrument {token!r}")
        return None

    return TradeIntent(
        symbol=symbol,
        side=pattern.side,
        quantity=None if is_dollar else amount,
        dollar_amount=amount if is_dollar else None,
        asset_type="crypto" if is_crypto(symbol) else "stock",
    )


def parse_trade_command(message: str) -> Optional[TradeIntent]:
    """
    Parse a buy/sell instruction.

    Args:
        message: Free-form chat message, e.g. "buy $1000 worth of ethereum"

    Returns:
        TradeIntent with either quantity or dollar_amount set, or None when
        the message is not an actionable trade
    """
    if not message:
        return None
    for pattern in TRADE_PATTERNS:
        match = pattern.regex.search(message)
        if match:
            return _build_intent(pattern, match)
    return None


def detect_diversification_request(message: str) -> bool:
    return bool(message) and bool(_DIVERSIFY_RE.search(message))


def detect_sector_heatmap_request(message: str) -> bool:
    """Needs both a visualisation keyword and a sector keyword."""
    if not message:
        return False
    return bool(_HEATMAP_RE.search(message)) and bool(_SECTOR_RE.search(message))


def extract_sector_name(message: str) -> Optional[str]:
    if not message:
        return None
    for alias in sorted(SECTOR_ALIASES, key=len, reverse=True):
        if re.search(r"\b" + re.escape(alias) + r"\b", message, re.I):
            return SECTOR_ALIASES[alias]
    return None
