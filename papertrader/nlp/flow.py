"""
Options-flow parsing for text transcribed from flow screenshots.

Each field is taken from the first pattern that matches; fields nothing
matches stay None. Confidence reflects how many fields were found.
"""

import re
from typing import List, Optional, Pattern

from papertrader.nlp.clean import extract_cashtags
from papertrader.services.types import FlowAnalysis

_NOT_TICKERS = {
    "BUY", "SELL", "LONG", "SHORT", "THE", "OF", "AT", "FOR", "AND", "ON", "IN",
    "SWEEP", "BLOCK", "SPLIT", "OTM", "ITM", "ATM", "BIG",
}

TICKER_PATTERNS: List[Pattern] = [
    re.compile(r"\b([A-Z]{1,5})\s+(?:CALLS?|PUTS?|OPTIONS?|STRIKE)\b"),
    re.compile(r"\b([A-Z]{2,5})\s+\d{1,2}/\d{1,2}\b"),
    re.compile(r"\b([A-Z]{1,5})\s+\d+(?:\.\d+)?[CP]\b"),
]

DATE_PATTERNS: List[Pattern] = [
    re.compile(r"\b(\d{1,2}/\d{1,2}(?:/\d{2,4})?)\b"),
    re.compile(r"\b((?:JAN|FEB|MAR|APR|MAY|JUN|JUL|AUG|SEP|OCT|NOV|DEC)\s*\d{1,2})\b"),
    re.compile(r"\b(\d{4}-\d{2}-\d{2})\b"),
]

STRIKE_PATTERNS: List[Pattern] = [
    re.compile(r"STRIKE[:\s]+\$?(\d+(?:\.\d+)?)"),
    re.compile(r"\b(\d+(?:\.\d+)?)[CP]\b"),
    re.compile(r"\$(\d{3,}(?:\.\d+)?)(?![\d.KM])"),
    re.compile(r"\b(\d{3,}(?:\.\d+)?)\s*(?:STRIKE|CALLS?|PUTS?)\b"),
]

PREMIUM_PATTERNS: List[Pattern] = [
    re.compile(r"PREMIUM[:\s]+\$?(\d+(?:\.\d+)?)\s*([KM])?\b"),
    re.compile(r"\$(\d+\.\d{2})\b"),
    re.compile(r"PRICE[:\s]+\$?(\d+(?:\.\d+)?)\s*([KM])?\b"),
]

VOLUME_PATTERNS: List[Pattern] = [
    re.compile(r"VOLUME[:\s]+(\d[\d,]*)"),
    re.compile(r"SIZE[:\s]+(\d[\d,]*)"),
    re.compile(r"\b(\d[\d,]*)\s*(?:CONTRACTS?|CTS?)\b"),
]

_CALL_RE = re.compile(r"\bCALLS?\b|\b\d+(?:\.\d+)?C\b")
_PUT_RE = re.compile(r"\bPUTS?\b|\b\d+(?:\.\d+)?P\b")
_BUY_RE = re.compile(r"\bCALL BUYERS?\b|\b(?:BUY|BUYS|BOUGHT|LONG)\b")
_SELL_RE = re.compile(r"\bPUT BUYERS?\b|\b(?:SELL|SELLS|SOLD|SHORT)\b")

_MULTIPLIERS = {"K": 1_000, "M": 1_000_000}


def _first(patterns: List[Pattern], text: str) -> Optional[re.Match]:
    for pattern in patterns:
        match = pattern.search(text)
        if match:
            return match
    return None


def _ticker(text: str) -> Optional[str]:
    tags = extract_cashtags(text)
    if tags:
        return tags[0]
    for pattern in TICKER_PATTERNS:
        for match in pattern.finditer(text):
            if match.group(1) not in _NOT_TICKERS:
                return match.group(1)
    return None


def _earliest(text: str, *patterns: Pattern) -> Optional[int]:
    """Index of the pattern that matches earliest in ``text``."""
    best = None
    for index, pattern in enumerate(patterns):
        match = pattern.search(text)
        if match and (best is None or match.start() < best[1]):
            best = (index, match.start())
    return best[0] if best else None


def _confidence(found: int) -> str:
    if found >= 5:
        return "high"
    if found >= 3:
        return "medium"
    return "low"


def parse_flow_text(text: str, fallback_symbol: Optional[str] = None) -> FlowAnalysis:
    """
    Read an options-flow description out of free text.

    Args:
        text: Transcribed screenshot text
        fallback_symbol: Used when the text names no ticker

    Returns:
        FlowAnalysis with ``source="text"``
    """
    upper = (text or "").upper()

    symbol = _ticker(upper) or (fallback_symbol.strip().upper() if fallback_symbol else None)

    date = _first(DATE_PATTERNS, upper)
    expiration = re.sub(r"\s+", " ", date.group(1)) if date else None

    strike_match = _first(STRIKE_PATTERNS, upper)
    strike = float(strike_match.group(1)) if strike_match else None

    premium = None
    premium_match = _first(PREMIUM_PATTERNS, upper)
    if premium_match:
        premium = float(premium_match.group(1))
        suffix = premium_match.group(2) if premium_match.re.groups > 1 else None
        if suffix:
            premium *= _MULTIPLIERS[suffix]

    option_type = {0: "call", 1: "put"}.get(_earliest(upper, _CALL_RE, _PUT_RE))

    action = {0: "buy", 1: "sell"}.get(_earliest(upper, _BUY_RE, _SELL_RE))
    if action is None and option_type:
        action = "buy"

    volume_match = _first(VOLUME_PATTERNS, upper)
    volume = int(volume_match.group(1).replace(",", "")) if volume_match else None

    flow = FlowAnalysis(
        symbol=symbol,
        expiration=expiration,
        strike=strike,
        premium=premium,
        option_type=option_type,
        action=action,
        volume=volume,
    )
    return flow.model_copy(update={"confidence": _confidence(flow.found_fields())})


def merge_flow(parsed: FlowAnalysis, refined: dict) -> FlowAnalysis:
    """Prefer refined values that are present and well-formed; keep parsed ones otherwise."""
    update = {}

    symbol = refined.get("ticker")
    if isinstance(symbol, str) and symbol.strip():
        update["symbol"] = symbol.strip().lstrip("$").upper()

    expiration = refined.get("expirationDate")
    if isinstance(expiration, str) and expiration.strip():
        update["expiration"] = expiration.strip().upper()

    for field, key in (("strike", "strikePrice"), ("premium", "premium")):
        try:
            value = float(refined.get(key))
        except (TypeError, ValueError):
            continue
        if value > 0:
            update[field] = value

    option_type = str(refined.get("optionType") or "").lower()
    if option_type in ("call", "put"):
        update["option_type"] = option_type

    action = str(refined.get("action") or "").lower()
    if action in ("buy", "sell"):
        update["action"] = action

    try:
        volume = int(refined.get("volume"))
    except (TypeError, ValueError):
        volume = 0
    if volume > 0:
        update["volume"] = volume

    merged = parsed.model_copy(update={**update, "source": "ai"})
    return merged.model_copy(update={"confidence": _confidence(merged.found_fields())})
