import asyncio
import logging
import time
from typing import Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from papertrader.config import Settings, get_settings
from papertrader.errors import is_resource_exhausted

logger = logging.getLogger(__name__)

Scope = Tuple[str, ...]


def _scope(symbols: Sequence[str]) -> Scope:
    return tuple(sorted({s.strip().upper() for s in symbols if s and s.strip()}))


class RefreshScheduler:
    """
    Periodic price/sentiment refresh plus event-driven sentiment recomputation.

    ``notify(scope)`` posts a "new posts arrived" event. A single consumer
    drains the queue with a leading-edge throttle per scope: the first event
    runs at once and later events inside the window are dropped. Periodic
    runs skip the throttle but open a window of their own, so an arrival
    event raised by their own fetch is coalesced. A resource-exhaustion
    failure blocks every run for ``resource_backoff_seconds``.

    Args:
        refresh_prices: Coroutine function that refreshes quotes
        refresh_sentiment: Coroutine function taking a scope tuple
        settings: Overrides ``get_settings()``
        clock: Monotonic clock, injectable for tests
        poll_posts: Optional coroutine function that fetches posts; run
            every ``post_poll_seconds`` so new arrivals raise events
    """

    def __init__(
        self,
        refresh_prices: Callable[[], Awaitable[None]],
        refresh_sentiment: Callable[[Scope], Awaitable[None]],
        settings: Optional[Settings] = None,
        clock: Callable[[], float] = time.monotonic,
        poll_posts: Optional[Callable[[], Awaitable[None]]] = None,
    ):
        self.settings = settings or get_settings()
        self.refresh_prices = refresh_prices
        self.refresh_sentiment = refresh_sentiment
        self.poll_posts = poll_posts
        self._clock = clock
        self.events: "asyncio.Queue[Scope]" = asyncio.Queue()
        self._last_event_run: Dict[Scope, float] = {}
        self._blocked_until = 0.0
        self._tasks: List[asyncio.Task] = []
        self.coalesced = 0

    @property
    def running(self) -> bool:
        return bool(self._tasks)

    def notify(self, scope: Sequence[str]) -> None:
        """Queue a recomputation for ``scope``; ignored until ``start``."""
        if not self.running:
            logger.debug(f"Scheduler not running; ignoring event for {_scope(scope)}")
            return
        self.events.put_nowait(_scope(scope))

    def blocked(self) -> bool:
        return self._clock() < self._blocked_until

    async def _guarded(self, label: str, job: Callable[[], Awaitable[None]]) -> bool:
        try:
            await job()
            return True
        except asyncio.CancelledError:
            raise
        except Exception as e:
            if is_resource_exhausted(e):
                self._blocked_until = self._clock() + self.settings.resource_backoff_seconds
                logger.warning(
                    f"{label} hit resource limits; pausing refreshes for "
                    f"{self.settings.resource_backoff_seconds:.0f}s: {e}"
                )
            else:
                logger.error(f"{label} refresh failed: {e}", exc_info=True)
            return False

    async def handle_event(self, scope: Sequence[str]) -> bool:
        """
        Apply the throttle to one event.

        Returns:
            True if a recomputation ran, False if the event was coalesced
        """
        scope = _scope(scope)
        now = self._clock()
        last = self._last_event_run.get(scope)
        if self.blocked() or (last is not None and now - last < self.settings.event_throttle_seconds):
            self.coalesced += 1
            logger.debug(f"Coalesced sentiment event for {scope}")
            return False
        self._last_event_run[scope] = now
        return await self._guarded("Sentiment", lambda: self.refresh_sentiment(scope))

    async def run_periodic_sentiment(self, scope: Sequence[str]) -> bool:
        if self.blocked():
            return False
        scope = _scope(scope)
        self._last_event_run[scope] = self._clock()
        return await self._guarded("Sentiment", lambda: self.refresh_sentiment(scope))

    async def run_prices(self) -> bool:
        if self.blocked():
            return False
        return await self._guarded("Price", self.refresh_prices)

    async def run_post_poll(self) -> bool:
        if self.poll_posts is None or self.blocked():
            return False
        return await self._guarded("Post", self.poll_posts)

    async def _consume_events(self):
        while True:
            scope = await self.events.get()
            try:
                await self.handle_event(scope)
            finally:
                self.events.task_done()

    async def _price_loop(self):
        while True:
            await self.run_prices()
            await asyncio.sleep(self.settings.price_refresh_seconds)

    async def _post_loop(self):
        while True:
            await self.run_post_poll()
            await asyncio.sleep(self.settings.post_poll_seconds)

    async def _sentiment_loop(self, scope_provider: Callable[[], Sequence[str]]):
        while True:
            await asyncio.sleep(self.settings.sentiment_refresh_seconds)
            await self.run_periodic_sentiment(scope_provider())

    def start(self, scope_provider: Callable[[], Sequence[str]]) -> None:
        """Start the event consumer and the periodic loops on the running loop."""
        if self._tasks:
            return
        self._tasks = [
            asyncio.create_task(self._consume_events()),
            asyncio.create_task(self._price_loop()),
            asyncio.create_task(self._sentiment_loop(scope_provider)),
        ]
        if self.poll_posts is not None:
            self._tasks.append(asyncio.create_task(self._post_loop()))
        logger.info(
            f"Refresh scheduler started (prices every {self.settings.price_refresh_seconds:.0f}s, "
            f"sentiment every {self.settings.sentiment_refresh_seconds:.0f}s)"
        )

    async def stop(self) -> None:
        for task in self._tasks:
            task.cancel()
        await asyncio.gather(*self._tasks, return_exceptions=True)
        self._tasks = []
