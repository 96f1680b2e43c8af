"""Shared stubs for pipeline tests."""

from datetime import datetime
from typing import Dict, List, Optional

from papertrader.config import Settings
from papertrader.services.types import Post, Quote


class FakeClock:
    """Manually advanced monotonic clock."""

    def __init__(self, now: float = 0.0):
        self.now = now

    def __call__(self) -> float:
        return self.now

    def advance(self, seconds: float) -> None:
        self.now += seconds


def make_settings(**overrides) -> Settings:
    values = dict(
        x_bearer_token="",
        grok_api_key="",
        feed_min_interval=0.0,
        ai_min_interval=0.0,
        quote_min_interval=0.0,
    )
    values.update(overrides)
    return Settings(_env_file=None, **values)


def make_post(post_id: str, text: str, author: str = "trader1", **kwargs) -> Post:
    return Post(
        id=post_id,
        author=author,
        text=text,
        created_at=kwargs.pop("created_at", datetime(2025, 1, 15, 10, 0, 0)),
        **kwargs,
    )


class StubQuoteService:
    """Orchestrator-shaped quote source backed by a price table."""

    def __init__(self, prices: Dict[str, Optional[float]]):
        self.prices = {k.upper(): v for k, v in prices.items()}
        self.requested: List[str] = []

    def _quote(self, symbol: str) -> Optional[Quote]:
        price = self.prices.get(symbol.upper())
        if price is None:
            return None
        return Quote(symbol=symbol.upper(), price=price, previous_close=price * 0.98)

    async def get_quotes(self, symbols):
        self.requested.extend(symbols)
        return {s.upper(): self._quote(s) for s in symbols}

    async def get_price(self, symbol):
        quote = self._quote(symbol)
        return quote.price if quote else None
