import asyncio
import logging
import math
from typing import Optional

import yfinance as yf

from papertrader.errors import QuoteUnavailableError
from papertrader.services.types import Quote

logger = logging.getLogger(__name__)


def _number(value) -> Optional[float]:
    try:
        number = float(value)
    except (TypeError, ValueError):
        return None
    if math.isnan(number) or math.isinf(number):
        return None
    return number


class QuoteClient:
    """Latest quotes from Yahoo Finance via yfinance."""

    def fetch_quote(self, symbol: str) -> Optional[Quote]:
        """
        Blocking quote lookup.

        Args:
            symbol: Canonical symbol, e.g. "AAPL" or "BTC-USD"

        Returns:
            Quote, or None when Yahoo has no usable price for the symbol

        Raises:
            QuoteUnavailableError: If the lookup itself failed
        """
        try:
            info = yf.Ticker(symbol).fast_info
            price = _number(info.last_price)
            previous_close = _number(info.previous_close)
            volume = _number(info.last_volume)
            market_cap = _number(info.market_cap)
        except KeyError:
            # fast_info raises KeyError for fields Yahoo has no data for
            logger.warning(f"No quote data for {symbol}")
            return None
        except Exception as e:
            raise QuoteUnavailableError(f"Quote lookup failed for {symbol}: {e}") from e

        if price is None or price <= 0:
            logger.warning(f"No usable price for {symbol}")
            return None

        return Quote(
            symbol=symbol,
            price=price,
            previous_close=previous_close,
            volume=volume,
            market_cap=market_cap,
        )

    async def get_quote(self, symbol: str) -> Optional[Quote]:
        # yfinance is blocking; keep it off the event loop
        return await asyncio.to_thread(self.fetch_quote, symbol)
