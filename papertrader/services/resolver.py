import re
from typing import Optional

TICKER_RE = re.compile(r"^[A-Z]{1,5}(-USD)?$")

# Bare crypto tickers and their quote-service pair
CRYPTO_ALIASES = {
    "BTC": "BTC-USD",
    "ETH": "ETH-USD",
    "BNB": "BNB-USD",
    "SOL": "SOL-USD",
    "ADA": "ADA-USD",
    "XRP": "XRP-USD",
    "DOGE": "DOGE-USD",
    "DOT": "DOT-USD",
    "MATIC": "MATIC-USD",
    "AVAX": "AVAX-USD",
    "LTC": "LTC-USD",
    "LINK": "LINK-USD",
    "UNI": "UNI-USD",
}

# Names (and common misspellings) to canonical symbols
NAME_MAP = {
    "BITCOIN": "BTC-USD",
    "ETHEREUM": "ETH-USD",
    "ETHERUM": "ETH-USD",
    "ETHERIUM": "ETH-USD",
    "BINANCE COIN": "BNB-USD",
    "SOLANA": "SOL-USD",
    "CARDANO": "ADA-USD",
    "RIPPLE": "XRP-USD",
    "DOGECOIN": "DOGE-USD",
    "POLKADOT": "DOT-USD",
    "POLYGON": "MATIC-USD",
    "AVALANCHE": "AVAX-USD",
    "LITECOIN": "LTC-USD",
    "CHAINLINK": "LINK-USD",
    "UNISWAP": "UNI-USD",
    "APPLE": "AAPL",
    "TESLA": "TSLA",
    "MICROSOFT": "MSFT",
    "AMAZON": "AMZN",
    "GOOGLE": "GOOGL",
    "ALPHABET": "GOOGL",
    "NVIDIA": "NVDA",
    "FACEBOOK": "META",
    "NETFLIX": "NFLX",
}

# Misspelling prefixes, checked last
PREFIX_HINTS = (
    ("ETHER", "ETH-USD"),
    ("BITCOIN", "BTC-USD"),
    ("BIT", "BTC-USD"),
)

# Shorter aliases are only used for exact matches
_MIN_SUBSTRING_LEN = 4


def resolve_ticker(token: Optional[str]) -> Optional[str]:
    """
    Map a free-text token to a canonical symbol.

    Order: exact name table hit, then ticker-shaped tokens (with crypto alias
    normalisation), then name substrings, then misspelling prefixes.

    Args:
        token: Ticker, $cashtag, coin or company name

    Returns:
        Canonical symbol such as "AAPL" or "ETH-USD", or None if nothing matches
    """
    if not token:
        return None

    query = token.strip().lstrip("$").upper()
    query = re.sub(r"\s+", " ", query)
    if not query:
        return None

    if query in NAME_MAP:
        return NAME_MAP[query]

    if TICKER_RE.match(query):
        if query.endswith("-USD"):
            return query
        return CRYPTO_ALIASES.get(query, query)

    for name, symbol in NAME_MAP.items():
        if len(name) >= _MIN_SUBSTRING_LEN and (name in query or (len(query) >= _MIN_SUBSTRING_LEN and query in name)):
            return symbol

    for prefix, symbol in PREFIX_HINTS:
        if query.startswith(prefix):
            return symbol

    return None


def is_crypto(symbol: str) -> bool:
    return symbol.upper().endswith("-USD")


def base_symbol(symbol: str) -> str:
    """BTC-USD -> BTC; equities are returned unchanged."""
    upper = symbol.upper()
    return upper.split("-")[0] if "-" in upper else upper
