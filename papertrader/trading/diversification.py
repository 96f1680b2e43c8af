import logging
import math
from typing import Dict, List, Mapping, NamedTuple, Optional, Sequence

from papertrader.services.resolver import is_crypto
from papertrader.services.types import DiversificationPlan, Holding, TradeIntent

logger = logging.getLogger(__name__)

CRYPTO_MAX_SHARE = 40.0
STOCK_MIN_SHARE = 50.0
CRYPTO_SELL_FRACTION = 0.3
BUY_BUDGET_FRACTION = 0.3
WATCHLIST_PICKS = 4
WATCHLIST_ALLOCATION = 0.25


class BasketPick(NamedTuple):
    symbol: str
    sector: str
    allocation: float


DEFAULT_BASKET = [
    BasketPick("AMGN", "Healthcare", 0.15),
    BasketPick("JPM", "Financials", 0.15),
    BasketPick("JNJ", "Healthcare", 0.10),
    BasketPick("PG", "Consumer Goods", 0.10),
]


def _live_price(symbol: str, quotes: Mapping[str, Optional[float]]) -> Optional[float]:
    price = quotes.get(symbol.upper())
    if price is None or price <= 0:
        return None
    return price


def _weighting_price(holding: Holding, quotes: Mapping[str, Optional[float]]) -> Optional[float]:
    # Stored prices only weight the portfolio; trades need a live quote
    for candidate in (_live_price(holding.symbol, quotes), holding.current_price, holding.entry_price):
        if candidate is not None and candidate > 0:
            return candidate
    return None


def _buy_candidates(holdings: Sequence[Holding], watchlist: Sequence[str]) -> List[BasketPick]:
    held = {h.symbol.upper() for h in holdings}
    watch_stocks = [
        s.upper() for s in watchlist
        if s and not is_crypto(s) and len(s) <= 5
    ]
    if watch_stocks:
        picks = [BasketPick(s, "diversified", WATCHLIST_ALLOCATION) for s in watch_stocks[:WATCHLIST_PICKS]]
    else:
        picks = list(DEFAULT_BASKET)
    return [p for p in picks if p.symbol not in held]


def create_diversification_plan(
    holdings: Sequence[Holding],
    watchlist: Sequence[str],
    quotes: Mapping[str, Optional[float]],
) -> DiversificationPlan:
    """
    Propose sells then buys that move a portfolio toward a stock/crypto balance.

    Args:
        holdings: Current positions
        watchlist: Watchlist symbols, in the user's order
        quotes: Live prices by upper-cased symbol; missing or None means no
            live price is known. Stored holding prices are used only to
            weight the portfolio, never to price a trade.

    Returns:
        DiversificationPlan with every trade priced from ``quotes`` and
        quantities resolved. Trades without a live price are reported in
        ``reasoning`` and left out.
    """
    plan = DiversificationPlan()
    if not holdings:
        return plan

    values: Dict[str, float] = {}
    for holding in holdings:
        price = _weighting_price(holding, quotes)
        values[holding.symbol] = max(0.0, holding.quantity) * (price or 0.0)

    total = sum(values.values())
    if total <= 0:
        plan.reasoning.append("Portfolio has no priced value; nothing to rebalance")
        return plan

    crypto_holdings = [h for h in holdings if h.is_crypto]
    crypto_share = sum(values[h.symbol] for h in crypto_holdings) / total * 100
    stock_share = sum(values[h.symbol] for h in holdings if not h.is_crypto and h.asset_type == "stock") / total * 100

    if crypto_share > CRYPTO_MAX_SHARE:
        for holding in crypto_holdings:
            sell_qty = math.floor(holding.quantity * CRYPTO_SELL_FRACTION)
            if sell_qty <= 0:
                plan.reasoning.append(f"Position in {holding.symbol} too small to trim; skipped")
                continue
            price = _live_price(holding.symbol, quotes)
            if price is None:
                plan.reasoning.append(f"Unable to price {holding.symbol}; skipped")
                continue
            plan.sells.append(TradeIntent(
                symbol=holding.symbol,
                side="sell",
                quantity=sell_qty,
                asset_type="crypto",
                price=price,
                reason=f"Reducing crypto exposure from {crypto_share:.1f}%",
            ))
            plan.reasoning.append(f"Selling {sell_qty} {holding.symbol} to reduce crypto concentration")

    if stock_share < STOCK_MIN_SHARE:
        budget = total * BUY_BUDGET_FRACTION
        for pick in _buy_candidates(holdings, watchlist):
            price = _live_price(pick.symbol, quotes)
            if price is None:
                plan.reasoning.append(f"Unable to price {pick.symbol}; skipped")
                continue
            quantity = math.floor(budget * pick.allocation / price)
            if quantity <= 0:
                plan.reasoning.append(f"Budget too small for one share of {pick.symbol}; skipped")
                continue
            plan.buys.append(TradeIntent(
                symbol=pick.symbol,
                side="buy",
                quantity=quantity,
                asset_type="stock",
                price=price,
                reason=f"Adding {pick.sector} exposure",
            ))
            plan.reasoning.append(f"Buying {quantity} shares of {pick.symbol} for diversification")

    logger.info(
        f"Diversification plan: {len(plan.sells)} sells, {len(plan.buys)} buys "
        f"(crypto {crypto_share:.1f}%, stocks {stock_share:.1f}%)"
    )
    return plan


async def build_priced_plan(holdings: Sequence[Holding], watchlist: Sequence[str], orchestrator) -> DiversificationPlan:
    """Fetch live quotes for holdings and every buy candidate, then build the plan."""
    symbols = [h.symbol for h in holdings] + [p.symbol for p in _buy_candidates(holdings, watchlist)]
    quotes = await orchestrator.get_quotes(symbols)
    prices = {symbol: (quote.price if quote else None) for symbol, quote in quotes.items()}
    return create_diversification_plan(holdings, watchlist, prices)
