"""
Single entry point for every external call the pipeline makes.

The orchestrator owns the mutable state shared between callers: the table
of in-flight requests, the last-call timestamp per service kind, the quote
and analysis caches, and the feed cooldown. Tests build isolated instances
with stub clients.
"""

import asyncio
import hashlib
import logging
import time
from collections import OrderedDict
from typing import Any, Awaitable, Callable, Dict, Hashable, Iterable, List, Optional, Sequence, Tuple, TypeVar, Union

from papertrader.config import Settings, get_settings
from papertrader.errors import FeedUnavailableError, UpstreamUnavailableError
from papertrader.nlp.json_repair import RecoveryFailure
from papertrader.services.types import FetchTask, FlowAnalysis, Post, PostAnalysis, Quote, ServiceKind

logger = logging.getLogger(__name__)

T = TypeVar("T")

_MISSING = object()


def make_task_key(kind: Union[ServiceKind, str], purpose: str, symbols: Iterable[str] = ()) -> str:
    """
    Canonical de-duplication key for an external call.

    Symbols are stripped, upper-cased, de-duplicated and sorted so that
    equivalent requests share a key regardless of argument order.
    """
    kind_value = kind.value if isinstance(kind, ServiceKind) else str(kind)
    canonical = sorted({s.strip().upper() for s in symbols if s and s.strip()})
    return f"{kind_value}:{purpose}:{','.join(canonical)}"


def dedupe_posts(posts: Iterable[Post]) -> List[Post]:
    """Drop repeats of the same (author, text), keeping the first seen."""
    seen = set()
    unique = []
    for post in posts:
        if post.dedup_key in seen:
            continue
        seen.add(post.dedup_key)
        unique.append(post)
    return unique


class TTLCache:
    """
    Insertion-ordered cache with a per-entry time-to-live.

    Once the cache grows past ``max_entries`` it is pruned: expired entries
    go first (oldest first), then the oldest live entries until back in bound.
    """

    def __init__(self, ttl: float, max_entries: int = 100, clock: Callable[[], float] = time.monotonic):
        self.ttl = ttl
        self.max_entries = max_entries
        self._clock = clock
        self._data: "OrderedDict[Hashable, Tuple[float, Any]]" = OrderedDict()

    def __len__(self) -> int:
        return len(self._data)

    def __contains__(self, key: Hashable) -> bool:
        return self.get(key, _MISSING) is not _MISSING

    def get(self, key: Hashable, default: Any = None) -> Any:
        entry = self._data.get(key)
        if entry is None:
            return default
        stored_at, value = entry
        if self._clock() - stored_at >= self.ttl:
            del self._data[key]
            return default
        return value

    def set(self, key: Hashable, value: Any) -> None:
        self._data.pop(key, None)
        self._data[key] = (self._clock(), value)
        if len(self._data) > self.max_entries:
            self.prune()

    def prune(self) -> int:
        """Evict entries; returns how many were removed."""
        now = self._clock()
        removed = 0
        for key in [k for k, (stored_at, _) in self._data.items() if now - stored_at >= self.ttl]:
            del self._data[key]
            removed += 1
        while len(self._data) > self.max_entries:
            self._data.popitem(last=False)
            removed += 1
        if removed:
            logger.debug(f"Pruned {removed} cache entries, {len(self._data)} remain")
        return removed

    def values(self) -> List[Any]:
        """Live values, oldest first."""
        now = self._clock()
        return [value for stored_at, value in self._data.values() if now - stored_at < self.ttl]

    def clear(self) -> None:
        self._data.clear()


class FetchOrchestrator:
    """
    Single-flight, rate-spaced, cached access to the feed, AI and quote services.

    Args:
        feed: Content feed client (``get_posts_by_authors``, ``search_posts``)
        ai: AI completion client (``complete`` plus the AI-backed content path)
        quotes: Quote client (``get_quote``)
        settings: Overrides ``get_settings()``
        clock: Monotonic clock, injectable for tests
    """

    def __init__(
        self,
        feed=None,
        ai=None,
        quotes=None,
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
    ):
        self.settings = settings or get_settings()
        if feed is None:
            from papertrader.services.x_client import XClient
            feed = XClient()
        if ai is None:
            from papertrader.services.grok_client import GrokClient
            ai = GrokClient()
        if quotes is None:
            from papertrader.services.quote_client import QuoteClient
            quotes = QuoteClient()
        self.feed = feed
        self.ai = ai
        self.quotes = quotes
        self._clock = clock

        self._in_flight: Dict[str, FetchTask] = {}
        self._locks: Dict[ServiceKind, asyncio.Lock] = {}
        self._last_call: Dict[ServiceKind, float] = {}
        self._intervals = {
            ServiceKind.CONTENT_FEED: self.settings.feed_min_interval,
            ServiceKind.AI_COMPLETION: self.settings.ai_min_interval,
            ServiceKind.QUOTE: self.settings.quote_min_interval,
        }
        self.quote_cache = TTLCache(self.settings.quote_cache_ttl, self.settings.cache_max_entries, clock)
        self.analysis_cache = TTLCache(self.settings.analysis_cache_ttl, self.settings.cache_max_entries, clock)
        # Posts by dedup key, most recently fetched last
        self._recent_posts = TTLCache(self.settings.analysis_cache_ttl, self.settings.recent_posts_max, clock)
        self._post_listeners: List[Callable[[List[Post]], None]] = []
        self._feed_disabled_until = 0.0

    # ------------------------------------------------------------------
    # Core single-flight + spacing
    # ------------------------------------------------------------------

    def in_flight(self) -> List[str]:
        return [key for key, task in self._in_flight.items() if not task.done()]

    async def fetch(self, task_key: str, kind: ServiceKind, fn: Callable[[], Awaitable[T]]) -> T:
        """
        Run ``fn`` at most once per ``task_key`` at a time.

        Concurrent callers with the same key await the same future, so they
        all get the same value or the same exception. The in-flight entry is
        removed once the call settles.
        """
        existing = self._in_flight.get(task_key)
        if existing is not None and not existing.done():
            logger.debug(f"Joining in-flight request {task_key}")
            return await asyncio.shield(existing.future)

        loop = asyncio.get_running_loop()
        future = loop.create_task(self._spaced_call(kind, fn))
        entry = FetchTask(key=task_key, kind=kind, started_at=self._clock(), future=future)
        self._in_flight[task_key] = entry
        future.add_done_callback(lambda _: self._release(entry))
        return await asyncio.shield(future)

    def _release(self, entry: FetchTask) -> None:
        if self._in_flight.get(entry.key) is entry:
            del self._in_flight[entry.key]

    async def _spaced_call(self, kind: ServiceKind, fn: Callable[[], Awaitable[T]]) -> T:
        lock = self._locks.setdefault(kind, asyncio.Lock())
        async with lock:
            last = self._last_call.get(kind)
            if last is not None:
                wait = self._intervals[kind] - (self._clock() - last)
                if wait > 0:
                    await asyncio.sleep(wait)
            self._last_call[kind] = self._clock()
        return await fn()

    # ------------------------------------------------------------------
    # Quotes
    # ------------------------------------------------------------------

    async def get_quote(self, symbol: str) -> Optional[Quote]:
        """Cached quote for ``symbol``; None when no price is available."""
        symbol = symbol.strip().upper()
        cached = self.quote_cache.get(symbol)
        if cached is not None:
            return cached

        key = make_task_key(ServiceKind.QUOTE, "quote", [symbol])
        try:
            quote = await self.fetch(key, ServiceKind.QUOTE, lambda: self.quotes.get_quote(symbol))
        except UpstreamUnavailableError as e:
            logger.warning(f"Quote unavailable for {symbol}: {e}")
            return None

        if quote is not None:
            self.quote_cache.set(symbol, quote)
        return quote

    async def get_quotes(self, symbols: Sequence[str]) -> Dict[str, Optional[Quote]]:
        unique = list(dict.fromkeys(s.strip().upper() for s in symbols if s and s.strip()))
        results = await asyncio.gather(*(self.get_quote(s) for s in unique))
        return dict(zip(unique, results))

    async def get_price(self, symbol: str) -> Optional[float]:
        quote = await self.get_quote(symbol)
        return quote.price if quote else None

    # ------------------------------------------------------------------
    # Content feed with AI fallback
    # ------------------------------------------------------------------

    def feed_disabled(self) -> bool:
        return self._clock() < self._feed_disabled_until

    def disable_feed(self, reason: Exception) -> None:
        self._feed_disabled_until = self._clock() + self.settings.feed_disable_seconds
        logger.warning(
            f"Content feed unavailable ({reason}); using AI content path for "
            f"{self.settings.feed_disable_seconds:.0f}s"
        )

    async def _from_feed(self, key: str, fn: Callable[[], Awaitable[List[Post]]]) -> Optional[List[Post]]:
        if self.feed_disabled():
            return None
        try:
            return await self.fetch(key, ServiceKind.CONTENT_FEED, fn)
        except FeedUnavailableError as e:
            self.disable_feed(e)
        except UpstreamUnavailableError as e:
            logger.warning(f"Content feed request failed, falling back to AI content: {e}")
        return None

    async def _from_ai_content(self, key: str, fn: Callable[[], Awaitable[List[Post]]]) -> List[Post]:
        try:
            return await self.fetch(key, ServiceKind.AI_COMPLETION, fn)
        except UpstreamUnavailableError as e:
            logger.warning(f"AI content path failed: {e}")
            return []

    def add_post_listener(self, callback: Callable[[List[Post]], None]) -> None:
        """Call ``callback(new_posts)`` whenever a fetch returns posts not seen before."""
        self._post_listeners.append(callback)

    def recent_posts(self) -> List[Post]:
        """Posts fetched within the analysis TTL, oldest fetch first."""
        return self._recent_posts.values()

    def _record_posts(self, posts: List[Post]) -> List[Post]:
        new = [p for p in posts if p.dedup_key not in self._recent_posts]
        for post in posts:
            self._recent_posts.set(post.dedup_key, post)
        if new:
            logger.debug(f"{len(new)} new posts arrived")
            for callback in self._post_listeners:
                callback(new)
        return new

    async def get_posts_by_authors(self, authors: Sequence[str], max_per_author: int = 5) -> List[Post]:
        """Recent posts from ``authors``; AI-backed content when the feed is down."""
        authors = list(dict.fromkeys(a.lstrip("@") for a in authors if a))
        if not authors:
            return []

        feed_key = make_task_key(ServiceKind.CONTENT_FEED, f"authors:{max_per_author}", authors)
        posts = await self._from_feed(feed_key, lambda: self.feed.get_posts_by_authors(authors, max_per_author))
        if posts is None:
            ai_key = make_task_key(ServiceKind.AI_COMPLETION, f"authors:{max_per_author}", authors)
            posts = await self._from_ai_content(ai_key, lambda: self.ai.get_posts_from_authors(authors, max_per_author))
        posts = dedupe_posts(posts)
        self._record_posts(posts)
        return posts

    async def search_posts(self, query: str, max_results: int = 20) -> List[Post]:
        """Recent posts matching ``query``; AI-backed content when the feed is down."""
        feed_key = make_task_key(ServiceKind.CONTENT_FEED, f"search:{max_results}:{query}")
        posts = await self._from_feed(feed_key, lambda: self.feed.search_posts(query, max_results))
        if posts is None:
            ai_key = make_task_key(ServiceKind.AI_COMPLETION, f"search:{max_results}:{query}")
            posts = await self._from_ai_content(ai_key, lambda: self.ai.search_posts(query, max_results))
        posts = dedupe_posts(posts)
        self._record_posts(posts)
        return posts

    # ------------------------------------------------------------------
    # AI completion
    # ------------------------------------------------------------------

    async def complete(self, prompt: str, **kwargs) -> str:
        """Spaced, single-flight AI completion. CompletionError propagates."""
        digest = hashlib.sha1(f"{prompt}|{sorted(kwargs.items())}".encode("utf-8")).hexdigest()[:16]
        key = make_task_key(ServiceKind.AI_COMPLETION, f"complete:{digest}")
        return await self.fetch(key, ServiceKind.AI_COMPLETION, lambda: self.ai.complete(prompt, **kwargs))

    async def analyze_post_impact(self, posts: Sequence[Post], scope: Sequence[str]) -> List[PostAnalysis]:
        return await self.ai.analyze_post_impact(
            posts, scope, batch_size=self.settings.impact_batch_size, complete=self.complete,
        )

    async def analyze_market(self, posts: Sequence[Post], watchlist: Sequence[str] = ()) -> Union[Dict, RecoveryFailure]:
        return await self.ai.analyze_market(
            posts, watchlist, max_posts=self.settings.market_batch_size, complete=self.complete,
        )

    async def analyze_image(self, url: str, fallback_symbol: Optional[str], fn: Callable[[], Awaitable[Any]]) -> Any:
        """
        Cached (1 h by default) analysis of an attached image.

        ``fn`` performs the actual analysis; a None result is not cached.
        """
        cache_key = (url, (fallback_symbol or "").upper())
        cached = self.analysis_cache.get(cache_key)
        if cached is not None:
            return cached

        key = make_task_key(ServiceKind.AI_COMPLETION, f"image:{url}", [fallback_symbol or ""])
        result = await self.fetch(key, ServiceKind.AI_COMPLETION, fn)
        if result is not None:
            self.analysis_cache.set(cache_key, result)
        return result

    async def analyze_flow_image(self, url: str, fallback_symbol: Optional[str] = None) -> Optional[FlowAnalysis]:
        """Options-flow read of an image, cached per URL and fallback symbol."""
        return await self.analyze_image(
            url, fallback_symbol,
            lambda: self.ai.analyze_flow_image(url, fallback_symbol, complete=self.complete),
        )

    async def aclose(self) -> None:
        for client in (self.feed, self.ai):
            close = getattr(client, "aclose", None)
            if close is not None:
                await close()
