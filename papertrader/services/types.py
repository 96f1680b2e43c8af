import asyncio
import math
from enum import Enum
from pydantic import BaseModel, ConfigDict, Field, model_validator
from typing import Any, Dict, FrozenSet, List, Literal, Optional
from datetime import datetime

Direction = Literal["bullish", "bearish", "neutral"]
Impact = Literal["high", "medium", "low"]
Side = Literal["buy", "sell"]
AssetType = Literal["stock", "crypto", "option"]

MARKET_TAG = "MARKET"


class ServiceKind(str, Enum):
    CONTENT_FEED = "content_feed"
    AI_COMPLETION = "ai_completion"
    QUOTE = "quote"


class Post(BaseModel):
    model_config = ConfigDict(frozen=True)

    id: str
    author: str
    text: str
    created_at: datetime
    like_count: int = 0
    repost_count: int = 0
    image_urls: List[str] = []
    verified: bool = False
    impact: Impact = "medium"
    source: Literal["x", "ai"] = "x"

    @property
    def dedup_key(self) -> tuple:
        return (self.author.lower(), self.text.strip())

    @property
    def engagement(self) -> int:
        return (self.like_count or 0) + (self.repost_count or 0)


class MentionSet(BaseModel):
    model_config = ConfigDict(frozen=True)

    post_id: str
    symbols: FrozenSet[str] = frozenset()


class SentimentScore(BaseModel):
    symbol: str
    bullish_pct: int = Field(ge=0, le=100)
    bearish_pct: int = Field(ge=0, le=100)
    neutral_pct: int = Field(ge=0, le=100)
    overall: Direction = "neutral"
    updated_at: datetime
    driving_post_ids: List[str] = []
    source: Literal["ai", "heuristic", "default"] = "heuristic"

    @model_validator(mode="after")
    def _check_sum(self):
        total = self.bullish_pct + self.bearish_pct + self.neutral_pct
        if total != 100:
            raise ValueError(f"sentiment percentages must sum to 100, got {total}")
        return self


class MarketSentiment(SentimentScore):
    symbol: str = MARKET_TAG
    summary: str = ""
    source_accounts: List[str] = []
    key_drivers: List[str] = []


class OptionDetails(BaseModel):
    strike: float
    expiration: datetime
    option_type: Literal["call", "put"]


class TradeIntent(BaseModel):
    symbol: str
    side: Side
    quantity: Optional[float] = None
    dollar_amount: Optional[float] = None
    asset_type: AssetType = "stock"
    option_details: Optional[OptionDetails] = None
    price: Optional[float] = None
    reason: Optional[str] = None

    @model_validator(mode="after")
    def _one_amount(self):
        if (self.quantity is None) == (self.dollar_amount is None):
            raise ValueError("exactly one of quantity or dollar_amount must be set")
        if self.quantity is not None and self.quantity <= 0:
            raise ValueError("quantity must be positive")
        if self.dollar_amount is not None and self.dollar_amount <= 0:
            raise ValueError("dollar_amount must be positive")
        return self

    def resolve_quantity(self, price: Optional[float]) -> Optional[float]:
        """Whole units for this intent at ``price``; None when the price is unknown."""
        if self.quantity is not None:
            return self.quantity
        if price is None or price <= 0:
            return None
        return max(1, math.floor(self.dollar_amount / price))

    def priced(self, price: float) -> "TradeIntent":
        """Copy with quantity resolved and price attached (dollar_amount cleared)."""
        quantity = self.resolve_quantity(price)
        if quantity is None:
            raise ValueError(f"cannot price {self.symbol} at {price}")
        return self.model_copy(update={"quantity": quantity, "dollar_amount": None, "price": price})


class Quote(BaseModel):
    symbol: str
    price: float = Field(gt=0)
    previous_close: Optional[float] = None
    volume: Optional[float] = None
    market_cap: Optional[float] = None


class Holding(BaseModel):
    symbol: str
    quantity: float
    entry_price: float
    current_price: Optional[float] = None
    asset_type: AssetType = "stock"

    @property
    def is_crypto(self) -> bool:
        return self.asset_type == "crypto" or self.symbol.upper().endswith("-USD")


class PostAnalysis(BaseModel):
    post_id: str
    impacted_symbols: List[str] = []
    sentiment_per_symbol: Dict[str, Direction] = {}
    overall_market_impact: Literal["bullish", "bearish", "neutral", "none"] = "none"


class DiversificationPlan(BaseModel):
    sells: List[TradeIntent] = []
    buys: List[TradeIntent] = []
    reasoning: List[str] = []

    @property
    def trades(self) -> List[TradeIntent]:
        return [*self.sells, *self.buys]


class FetchTask(BaseModel):
    model_config = ConfigDict(arbitrary_types_allowed=True)

    key: str
    kind: ServiceKind
    started_at: float
    future: Any  # asyncio.Future shared by every caller of this key

    def done(self) -> bool:
        return isinstance(self.future, asyncio.Future) and self.future.done()


class HeatmapEntry(BaseModel):
    symbol: str
    price: float
    change: float = 0.0
    change_pct: float = 0.0
    asset_type: AssetType = "stock"


class SectorHeatmap(BaseModel):
    sector: str
    entries: List[HeatmapEntry] = []


class AssistantReply(BaseModel):
    response: str
    trade_actions: List[TradeIntent] = []
    heatmap: Optional[SectorHeatmap] = None
    notes: List[str] = []


class FlowAnalysis(BaseModel):
    """Options-flow details read from a screenshot."""
    symbol: Optional[str] = None
    expiration: Optional[str] = None
    strike: Optional[float] = None
    premium: Optional[float] = None
    option_type: Optional[Literal["call", "put"]] = None
    action: Optional[Side] = None
    volume: Optional[int] = None
    confidence: Literal["high", "medium", "low"] = "low"
    source: Literal["text", "ai"] = "text"

    def found_fields(self) -> int:
        values = (self.symbol, self.expiration, self.strike, self.premium,
                  self.option_type, self.action, self.volume)
        return sum(v is not None for v in values)
