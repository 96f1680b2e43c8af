"""
Client for the xAI Grok chat-completions API.

Besides plain completions this covers the AI-backed content path used when
the X feed is unavailable, per-post impact analysis, market analysis and
options-flow screenshots.
Batch-level helpers take an optional ``complete`` coroutine so a caller can
route every request through its own rate limiting.
"""

import hashlib
import json
import logging
from datetime import datetime
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Union

import httpx

from papertrader.config import get_settings
from papertrader.errors import (
    CompletionError, PartialAnalysisError, UpstreamUnavailableError, is_resource_exhausted,
)
from papertrader.nlp.clean import truncate_text
from papertrader.nlp.flow import merge_flow, parse_flow_text
from papertrader.nlp.json_repair import RecoveryFailure, recover_json
from papertrader.services.types import MARKET_TAG, FlowAnalysis, Post, PostAnalysis

logger = logging.getLogger(__name__)

CompleteFn = Callable[..., Awaitable[str]]

JSON_ONLY_SUFFIX = (
    "\n\nIMPORTANT: Return ONLY valid JSON. Ensure all strings are properly escaped. "
    "Do not include any markdown formatting or code blocks. The JSON must be parseable."
)

_DIRECTIONS = {"bullish", "bearish", "neutral"}


def _cap(value, limit: int = 999999) -> int:
    try:
        return min(int(value or 0), limit)
    except (TypeError, ValueError):
        return 0


def build_impact_prompt(posts: Sequence[Post], scope: Sequence[str]) -> str:
    """Compact per-post impact prompt; short field names keep the request small."""
    post_data = [
        {
            "i": post.id[:50],
            "u": post.author[:30],
            "t": truncate_text(post.text, 200),
            "l": _cap(post.like_count),
            "r": _cap(post.repost_count),
        }
        for post in posts
    ]
    return f"""Analyze tweets for stock impact. Watchlist: {','.join(scope) or 'none'}

Tweets: {json.dumps(post_data)}

For each tweet (use "i" as tweetId), return:
{{
  "tweetAnalyses": [
    {{
      "tweetId": "i value",
      "impactedTickers": ["AAPL", "MARKET"],
      "sentimentPerTicker": {{"AAPL": "bullish", "MARKET": "neutral"}},
      "overallMarketImpact": "bullish|bearish|neutral|none"
    }}
  ]
}}

Rules:
- Only tag tickers EXPLICITLY mentioned or CLEARLY impacted
- Use "MARKET" for general market news
- Be conservative - only tag clear connections{JSON_ONLY_SUFFIX}"""


def parse_impact_analyses(parsed: Dict, batch: Sequence[Post], scope: Sequence[str]) -> List[PostAnalysis]:
    """
    Turn a recovered ``tweetAnalyses`` object into PostAnalysis records.

    Entries for unknown post ids are ignored, tickers outside the scope (other
    than MARKET) are dropped and unknown directions are read as neutral.
    """
    known_ids = {post.id for post in batch}
    allowed = {s.upper() for s in scope} | {MARKET_TAG}

    analyses = []
    for entry in parsed.get("tweetAnalyses") or []:
        if not isinstance(entry, dict):
            continue
        post_id = str(entry.get("tweetId", ""))
        if post_id not in known_ids:
            continue

        raw_sentiment = entry.get("sentimentPerTicker") or {}
        sentiment = {}
        if isinstance(raw_sentiment, dict):
            for ticker, direction in raw_sentiment.items():
                ticker = str(ticker).upper()
                if ticker in allowed:
                    direction = str(direction).lower()
                    sentiment[ticker] = direction if direction in _DIRECTIONS else "neutral"

        impacted = [
            str(t).upper() for t in (entry.get("impactedTickers") or [])
            if str(t).upper() in allowed
        ]
        market_impact = str(entry.get("overallMarketImpact", "none")).lower()
        if market_impact not in _DIRECTIONS:
            market_impact = "none"

        analyses.append(PostAnalysis(
            post_id=post_id,
            impacted_symbols=impacted or list(sentiment),
            sentiment_per_symbol=sentiment,
            overall_market_impact=market_impact,
        ))
    return analyses


def build_market_prompt(posts: Sequence[Post], watchlist: Sequence[str] = ()) -> str:
    post_data = [
        {
            "i": post.id[:50],
            "u": post.author[:25],
            "t": truncate_text(post.text, 180),
            "e": _cap(post.engagement),
        }
        for post in posts
    ]
    usernames = list(dict.fromkeys(p.author[:25] for p in posts if p.author))
    return f"""Market analysis from tweets. Watchlist: {','.join(watchlist) or 'none'}

Tweets from multiple accounts: {json.dumps(post_data)}

IMPORTANT: Analyze tweets from ALL accounts shown (usernames: {', '.join(usernames)}). Do NOT focus on just one account.

Return JSON:
{{
  "sentiment": {{"overall": "bullish|bearish|neutral", "bullish": 0-100, "bearish": 0-100, "neutral": 0-100}},
  "summary": "max 200 chars",
  "keyDrivers": ["phrase1", "phrase2", "phrase3"],
  "sourceAccounts": {json.dumps(usernames)}
}}

Base on tweets only. Keep text concise."""


def build_content_prompt(subject: str, authors: Sequence[str] = (), count: int = 10) -> str:
    users = (
        f"from these specific users: {', '.join(authors)}" if authors
        else "from influential financial analysts, traders, and verified accounts"
    )
    if subject in (MARKET_TAG, "GENERAL"):
        context = "general market-moving tweets and financial insights"
    else:
        context = f'about "{subject}" OR general market-moving tweets'
    return f"""Extract {count} REAL tweets {context} {users} from last 24h.

Return JSON:
{{
  "tweets": [
    {{
      "content": "exact tweet text",
      "username": "username_no_@",
      "verified": true,
      "impact": "high|medium|low",
      "likes": 0,
      "retweets": 0,
      "timestamp": "ISO8601"
    }}
  ]
}}

Rules:
- Only REAL tweets from last 24h
- Mix bullish/bearish/neutral
- Return ONLY valid JSON."""


FLOW_TRANSCRIBE_PROMPT = (
    "This image is an options flow screenshot. Transcribe every piece of text in it, "
    "line by line, exactly as shown. Do not summarize or add commentary."
)


def build_flow_refine_prompt(text: str, parsed: FlowAnalysis) -> str:
    current = {
        "ticker": parsed.symbol,
        "expirationDate": parsed.expiration,
        "strikePrice": parsed.strike,
        "premium": parsed.premium,
        "optionType": parsed.option_type,
        "action": parsed.action,
        "volume": parsed.volume,
    }
    return f"""Text transcribed from an options flow image:
{text[:1000]}

Fields read so far:
{json.dumps(current, indent=2)}

Refine and extract:
1. Stock symbol (e.g. AAPL, TSLA, SPY)
2. Expiration date (e.g. "1/19", "JAN 19")
3. Strike price
4. Premium paid
5. Option type (call or put)
6. Action (buy or sell)
7. Volume (number of contracts)

Return JSON (null when not found):
{{
  "ticker": "AAPL",
  "expirationDate": "1/19",
  "strikePrice": 150.0,
  "premium": 2.5,
  "optionType": "call|put",
  "action": "buy|sell",
  "volume": 100
}}{JSON_ONLY_SUFFIX}"""


def _parse_timestamp(value) -> datetime:
    if isinstance(value, str) and value:
        try:
            return datetime.fromisoformat(value.replace("Z", "+00:00"))
        except ValueError:
            pass
    return datetime.utcnow()


def parse_content_posts(parsed: Dict) -> List[Post]:
    """Posts from an AI content response; ids are derived from author and text."""
    posts = []
    for item in parsed.get("tweets") or []:
        if not isinstance(item, dict):
            continue
        text = str(item.get("content") or "").strip()
        author = str(item.get("username") or "").lstrip("@")
        if not text or not author:
            continue
        impact = str(item.get("impact") or "medium").lower()
        digest = hashlib.sha1(f"{author.lower()}|{text}".encode("utf-8")).hexdigest()[:16]
        posts.append(Post(
            id=f"ai-{digest}",
            author=author,
            text=text,
            created_at=_parse_timestamp(item.get("timestamp")),
            like_count=_cap(item.get("likes")),
            repost_count=_cap(item.get("retweets")),
            verified=bool(item.get("verified")),
            impact=impact if impact in ("high", "medium", "low") else "medium",
            source="ai",
        ))
    return posts


class GrokClient:
    """Async wrapper around the chat-completions endpoint."""

    def __init__(
        self,
        api_key: Optional[str] = None,
        api_url: Optional[str] = None,
        model: Optional[str] = None,
        client: Optional[httpx.AsyncClient] = None,
        timeout: Optional[float] = None,
    ):
        settings = get_settings()
        self.api_key = api_key if api_key is not None else settings.grok_api_key
        self.api_url = api_url or settings.grok_api_url
        self.model = model or settings.grok_model
        self.vision_model = settings.grok_vision_model
        self._client = client or httpx.AsyncClient(timeout=timeout or settings.request_timeout_seconds)

    async def aclose(self):
        await self._client.aclose()

    async def complete(
        self,
        prompt: str,
        temperature: float = 0.7,
        max_tokens: int = 1000,
        json_mode: bool = False,
        system_prompt: Optional[str] = None,
        image_url: Optional[str] = None,
        model: Optional[str] = None,
    ) -> str:
        """
        Run one chat completion and return the message content.

        ``image_url`` attaches an image to the user message; pair it with a
        vision-capable ``model``.

        Raises:
            CompletionError: Missing key, transport failure, non-2xx status or
                a response without message content
        """
        if not self.api_key:
            raise CompletionError("Grok API key not configured")

        messages = []
        if system_prompt:
            messages.append({"role": "system", "content": system_prompt})
        if image_url:
            messages.append({"role": "user", "content": [
                {"type": "image_url", "image_url": {"url": image_url, "detail": "high"}},
                {"type": "text", "text": prompt},
            ]})
        else:
            messages.append({"role": "user", "content": prompt})

        payload = {
            "model": model or self.model,
            "messages": messages,
            "temperature": temperature,
            "max_tokens": max_tokens,
        }
        if json_mode:
            payload["response_format"] = {"type": "json_object"}

        headers = {
            "Authorization": f"Bearer {self.api_key}",
            "Content-Type": "application/json",
        }

        try:
            response = await self._client.post(self.api_url, json=payload, headers=headers)
        except httpx.HTTPError as e:
            raise CompletionError(f"Grok request failed: {e}") from e

        if response.status_code >= 400:
            raise CompletionError(
                f"Grok API error: {response.status_code}",
                status_code=response.status_code,
            )

        try:
            return response.json()["choices"][0]["message"]["content"]
        except (ValueError, KeyError, IndexError, TypeError) as e:
            raise CompletionError(f"Unexpected Grok response shape: {e}") from e

    async def get_posts_from_authors(
        self,
        authors: Sequence[str],
        max_per_author: int = 3,
        subject: str = MARKET_TAG,
        complete: Optional[CompleteFn] = None,
    ) -> List[Post]:
        """AI-backed stand-in for the feed's author timeline lookup."""
        complete = complete or self.complete
        count = max(1, max_per_author * max(1, len(authors)))
        text = await complete(build_content_prompt(subject, authors, count), temperature=0.7,
                              max_tokens=2000, json_mode=True)
        parsed = recover_json(text, array_field="tweets")
        if isinstance(parsed, RecoveryFailure):
            logger.warning(f"Discarding AI content response: {parsed.reason}")
            return []
        return parse_content_posts(parsed)

    async def search_posts(
        self,
        query: str,
        max_results: int = 10,
        complete: Optional[CompleteFn] = None,
    ) -> List[Post]:
        """AI-backed stand-in for the feed's recent search."""
        complete = complete or self.complete
        text = await complete(build_content_prompt(query, (), max_results), temperature=0.7,
                              max_tokens=2000, json_mode=True)
        parsed = recover_json(text, array_field="tweets")
        if isinstance(parsed, RecoveryFailure):
            logger.warning(f"Discarding AI search response: {parsed.reason}")
            return []
        return parse_content_posts(parsed)[:max_results]

    async def analyze_post_impact(
        self,
        posts: Sequence[Post],
        scope: Sequence[str],
        batch_size: int = 15,
        complete: Optional[CompleteFn] = None,
    ) -> List[PostAnalysis]:
        """
        Per-post, per-symbol directions in batches of ``batch_size``.

        A batch whose request fails or whose response cannot be recovered is
        skipped and logged; the other batches still run.

        Raises:
            PartialAnalysisError: the AI service reported resource exhaustion.
                No further batches are sent and the error carries the
                analyses completed so far.
        """
        complete = complete or self.complete
        batch_size = max(1, min(batch_size, 20))
        analyses: List[PostAnalysis] = []
        for start in range(0, len(posts), batch_size):
            batch = list(posts[start:start + batch_size])
            try:
                text = await complete(build_impact_prompt(batch, scope), temperature=0.3,
                                      max_tokens=2000, json_mode=True)
            except UpstreamUnavailableError as e:
                if is_resource_exhausted(e):
                    logger.warning(f"AI service exhausted after {len(analyses)} analyses; stopping impact batches")
                    raise PartialAnalysisError(str(e), e.status_code, analyses) from e
                logger.warning(f"Skipping impact batch of {len(batch)} posts: {e}")
                continue
            parsed = recover_json(text, array_field="tweetAnalyses")
            if isinstance(parsed, RecoveryFailure):
                logger.warning(f"Skipping impact batch of {len(batch)} posts: {parsed.reason}")
                continue
            analyses.extend(parse_impact_analyses(parsed, batch, scope))
        return analyses

    async def analyze_market(
        self,
        posts: Sequence[Post],
        watchlist: Sequence[str] = (),
        max_posts: int = 20,
        complete: Optional[CompleteFn] = None,
    ) -> Union[Dict, RecoveryFailure]:
        """Market read over the ``max_posts`` highest-engagement posts."""
        complete = complete or self.complete
        top = sorted(posts, key=lambda p: p.engagement, reverse=True)[:max_posts]
        text = await complete(build_market_prompt(top, watchlist), temperature=0.5,
                              max_tokens=1800, json_mode=True)
        return recover_json(text, array_field="keyDrivers")

    async def analyze_flow_image(
        self,
        image_url: str,
        fallback_symbol: Optional[str] = None,
        complete: Optional[CompleteFn] = None,
    ) -> Optional[FlowAnalysis]:
        """
        Read an options-flow screenshot.

        The vision model transcribes the image, the text is parsed locally and
        a low-confidence parse is sent back once for refinement. A failed
        refinement keeps the local parse.

        Args:
            image_url: Publicly reachable image URL
            fallback_symbol: Symbol to assume when the image names none
            complete: Completion coroutine, defaults to ``self.complete``

        Returns:
            FlowAnalysis, or None when the image yielded no text

        Raises:
            CompletionError: The transcription request failed
        """
        complete = complete or self.complete
        text = await complete(FLOW_TRANSCRIBE_PROMPT, temperature=0.1, max_tokens=800,
                              image_url=image_url, model=self.vision_model)
        if not text or not text.strip():
            logger.warning(f"No text read from flow image {image_url[:80]}")
            return None

        flow = parse_flow_text(text, fallback_symbol)
        if flow.confidence != "low":
            return flow

        try:
            reply = await complete(build_flow_refine_prompt(text, flow), temperature=0.1,
                                   max_tokens=500, json_mode=True)
        except UpstreamUnavailableError as e:
            logger.warning(f"Flow refinement failed, keeping parsed fields: {e}")
            return flow
        refined = recover_json(reply, array_field="flow")
        if isinstance(refined, RecoveryFailure):
            logger.warning(f"Discarding flow refinement: {refined.reason}")
            return flow
        return merge_flow(flow, refined)
