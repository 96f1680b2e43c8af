import logging
from typing import Dict, List, Optional, Sequence

from papertrader.errors import UpstreamUnavailableError
from papertrader.nlp.json_repair import RecoveryFailure, recover_json
from papertrader.services.resolver import is_crypto
from papertrader.services.types import AssistantReply, HeatmapEntry, Holding, SectorHeatmap, TradeIntent
from papertrader.trading.commands import (
    SECTOR_SYMBOLS, detect_diversification_request, detect_sector_heatmap_request,
    extract_sector_name, parse_trade_command,
)
from papertrader.trading.diversification import build_priced_plan

logger = logging.getLogger(__name__)

FALLBACK_RESPONSE = "I couldn't reach the analysis service just now, so here is what I could work out directly."


async def build_sector_heatmap(sector: str, orchestrator) -> Optional[SectorHeatmap]:
    """Priced entries for a sector's symbols; symbols without a quote are left out."""
    symbols = SECTOR_SYMBOLS.get(sector, [])
    if not symbols:
        return None
    quotes = await orchestrator.get_quotes(symbols)

    entries = []
    for symbol in symbols:
        quote = quotes.get(symbol.upper())
        if quote is None:
            continue
        change = quote.price - quote.previous_close if quote.previous_close else 0.0
        change_pct = change / quote.previous_close * 100 if quote.previous_close else 0.0
        entries.append(HeatmapEntry(
            symbol=symbol,
            price=quote.price,
            change=round(change, 4),
            change_pct=round(change_pct, 2),
            asset_type="crypto" if is_crypto(symbol) else "stock",
        ))
    if not entries:
        return None
    return SectorHeatmap(sector=sector, entries=entries)


def _describe(action: TradeIntent) -> str:
    return f"{action.side} {action.quantity:g} {action.symbol} @ ${action.price:.2f}"


def build_chat_prompt(
    message: str,
    watchlist: Sequence[str],
    holdings: Sequence[Holding],
    prices: Dict[str, float],
    actions: Sequence[TradeIntent],
    notes: Sequence[str],
    heatmap: Optional[SectorHeatmap],
) -> str:
    watch = ", ".join(
        f"{s} (${prices[s]:.2f})" if s in prices else s for s in watchlist
    ) or "none"
    positions = ", ".join(
        f"{h.quantity:g} {h.symbol} @ ${h.entry_price:.2f}" for h in holdings
    ) or "none"

    prompt = f"""You are an AI trading assistant for a paper trading platform.

User context:
- Watchlist: {watch}
- Positions: {positions}

User message: "{message}"
"""
    if actions:
        prompt += "\nThese trades have already been prepared at live prices: "
        prompt += "; ".join(_describe(a) for a in actions) + ". Explain them briefly; do not change them.\n"
    if notes:
        prompt += "\nNotes to pass on to the user: " + "; ".join(notes) + "\n"
    if heatmap:
        prompt += f"\nA heatmap of the {heatmap.sector} sector is being shown. Give brief insights on the sector.\n"
    prompt += '\nReturn JSON: {"response": "your helpful response to the user"}'
    return prompt


def fallback_text(actions: Sequence[TradeIntent], notes: Sequence[str], heatmap: Optional[SectorHeatmap]) -> str:
    parts = [FALLBACK_RESPONSE]
    if actions:
        parts.append("Prepared trades: " + "; ".join(_describe(a) for a in actions) + ".")
    if heatmap:
        parts.append(f"Showing the {heatmap.sector} sector heatmap.")
    parts.extend(notes)
    return " ".join(parts)


class TradeAssistant:
    """
    Chat front end: trade commands, diversification and sector heatmaps.

    Trades are always produced by the command parser or the diversification
    strategist and priced from live quotes; the AI service only supplies the
    conversational text.
    """

    def __init__(self, orchestrator):
        self.orchestrator = orchestrator

    async def _price_intent(self, intent: TradeIntent, notes: List[str]) -> Optional[TradeIntent]:
        price = await self.orchestrator.get_price(intent.symbol)
        if price is None:
            notes.append(f"Unable to fetch current market price for {intent.symbol}")
            return None
        return intent.priced(price)

    async def handle_message(
        self,
        message: str,
        watchlist: Sequence[str] = (),
        holdings: Sequence[Holding] = (),
    ) -> AssistantReply:
        """
        Answer one chat message.

        Args:
            message: User message
            watchlist: Watchlist symbols
            holdings: Current positions

        Returns:
            AssistantReply; AI failures degrade to a canned response
        """
        watchlist = [s.strip().upper() for s in watchlist if s and s.strip()]
        notes: List[str] = []
        actions: List[TradeIntent] = []

        if detect_diversification_request(message):
            plan = await build_priced_plan(holdings, watchlist, self.orchestrator)
            actions.extend(plan.trades)
            notes.extend(plan.reasoning)
        else:
            intent = parse_trade_command(message)
            if intent is not None:
                priced = await self._price_intent(intent, notes)
                if priced is not None:
                    actions.append(priced)

        heatmap = None
        if detect_sector_heatmap_request(message):
            sector = extract_sector_name(message)
            if sector:
                heatmap = await build_sector_heatmap(sector, self.orchestrator)

        prices = {a.symbol: a.price for a in actions if a.price}
        quotes = await self.orchestrator.get_quotes([s for s in watchlist if s not in prices])
        prices.update({s: q.price for s, q in quotes.items() if q is not None})

        prompt = build_chat_prompt(message, watchlist, holdings, prices, actions, notes, heatmap)
        response = None
        try:
            text = await self.orchestrator.complete(prompt, temperature=0.7, max_tokens=800, json_mode=True)
            parsed = recover_json(text, array_field="tradeActions")
            if isinstance(parsed, RecoveryFailure):
                response = text.strip() or None
            else:
                response = str(parsed.get("response") or "").strip() or None
        except UpstreamUnavailableError as e:
            logger.warning(f"Chat completion unavailable, using canned response: {e}")

        if response is None:
            response = fallback_text(actions, notes, heatmap)

        return AssistantReply(response=response, trade_actions=actions, heatmap=heatmap, notes=notes)
