"""
Trade command, diversification and chat endpoints.

Nothing here executes or stores trades; responses are priced proposals.
"""

import logging
from typing import List
from fastapi import APIRouter, Depends, HTTPException
from pydantic import BaseModel

from papertrader.dependencies import get_assistant, get_orchestrator
from papertrader.orchestration.fetcher import FetchOrchestrator
from papertrader.services.types import AssistantReply, DiversificationPlan, Holding, TradeIntent
from papertrader.trading.assistant import TradeAssistant
from papertrader.trading.commands import parse_trade_command
from papertrader.trading.diversification import build_priced_plan

logger = logging.getLogger(__name__)
router = APIRouter(tags=["trading"])


class ParseRequest(BaseModel):
    message: str


class DiversifyRequest(BaseModel):
    holdings: List[Holding] = []
    watchlist: List[str] = []


class ChatRequest(BaseModel):
    message: str
    watchlist: List[str] = []
    holdings: List[Holding] = []


@router.post("/trade/parse", response_model=TradeIntent)
def parse_trade(request: ParseRequest):
    """Parse a chat message into an unpriced trade intent."""
    intent = parse_trade_command(request.message)
    if intent is None:
        raise HTTPException(status_code=422, detail="Message is not a recognizable trade command")
    return intent


@router.post("/diversify", response_model=DiversificationPlan)
async def diversify(
    request: DiversifyRequest,
    orchestrator: FetchOrchestrator = Depends(get_orchestrator),
):
    """Priced sell-then-buy plan for the given holdings."""
    plan = await build_priced_plan(request.holdings, request.watchlist, orchestrator)
    logger.info(f"Diversify: {len(plan.trades)} trades for {len(request.holdings)} holdings")
    return plan


@router.post("/chat", response_model=AssistantReply)
async def chat(
    request: ChatRequest,
    assistant: TradeAssistant = Depends(get_assistant),
):
    """Conversational assistant; always answers, even when the AI service is down."""
    return await assistant.handle_message(request.message, request.watchlist, request.holdings)
