"""Test the refresh scheduler throttle and backoff."""

import pytest
from papertrader.errors import CompletionError
from papertrader.dependencies import build_scheduler
from papertrader.orchestration.fetcher import FetchOrchestrator
from papertrader.orchestration.refresh import RefreshScheduler
from tests.helpers import FakeClock, make_post, make_settings


class Recorder:
    def __init__(self, error=None):
        self.error = error
        self.prices = 0
        self.scopes = []

    async def refresh_prices(self):
        self.prices += 1
        if self.error:
            raise self.error

    async def refresh_sentiment(self, scope):
        self.scopes.append(scope)
        if self.error:
            raise self.error


def build(recorder, clock=None, **settings):
    values = dict(event_throttle_seconds=5.0, resource_backoff_seconds=30.0)
    values.update(settings)
    return RefreshScheduler(
        recorder.refresh_prices,
        recorder.refresh_sentiment,
        settings=make_settings(**values),
        clock=clock or FakeClock(),
    )


class TestEventThrottle:

    @pytest.mark.asyncio
    async def test_leading_edge(self):
        clock = FakeClock()
        recorder = Recorder()
        scheduler = build(recorder, clock)

        assert await scheduler.handle_event(["nvda", "amd"]) is True
        clock.advance(2)
        assert await scheduler.handle_event(["AMD", "NVDA"]) is False
        clock.advance(3)
        assert await scheduler.handle_event(["NVDA", "AMD"]) is True

        assert recorder.scopes == [("AMD", "NVDA"), ("AMD", "NVDA")]
        assert scheduler.coalesced == 1

    @pytest.mark.asyncio
    async def test_scopes_throttled_independently(self):
        recorder = Recorder()
        scheduler = build(recorder)

        assert await scheduler.handle_event(["NVDA"])
        assert await scheduler.handle_event(["TSLA"])

    @pytest.mark.asyncio
    async def test_periodic_run_skips_throttle(self):
        recorder = Recorder()
        scheduler = build(recorder)

        await scheduler.handle_event(["NVDA"])
        assert await scheduler.run_periodic_sentiment(["NVDA"]) is True
        assert len(recorder.scopes) == 2


class TestBackoff:

    @pytest.mark.asyncio
    async def test_resource_exhaustion_blocks_all_runs(self):
        clock = FakeClock()
        recorder = Recorder(error=CompletionError("quota exceeded", status_code=429))
        scheduler = build(recorder, clock)

        assert await scheduler.run_prices() is False
        assert scheduler.blocked()
        assert await scheduler.run_periodic_sentiment(["NVDA"]) is False
        assert await scheduler.handle_event(["NVDA"]) is False
        assert recorder.prices == 1
        assert recorder.scopes == []

        clock.advance(30)
        recorder.error = None
        assert not scheduler.blocked()
        assert await scheduler.run_prices() is True

    @pytest.mark.asyncio
    async def test_message_marks_exhaustion(self):
        recorder = Recorder(error=CompletionError("RESOURCE_EXHAUSTED: try later"))
        scheduler = build(recorder)

        await scheduler.run_periodic_sentiment(["NVDA"])

        assert scheduler.blocked()

    @pytest.mark.asyncio
    async def test_other_failures_do_not_block(self):
        recorder = Recorder(error=RuntimeError("bug"))
        scheduler = build(recorder)

        assert await scheduler.run_prices() is False
        assert not scheduler.blocked()


@pytest.mark.asyncio
async def test_event_consumer_drains_queue():
    recorder = Recorder()
    scheduler = build(recorder, price_refresh_seconds=3600)

    scheduler.start(lambda: ["NVDA"])
    scheduler.notify(["NVDA"])
    scheduler.notify(["nvda"])
    scheduler.notify(["TSLA"])
    await scheduler.events.join()
    await scheduler.stop()

    assert recorder.scopes == [("NVDA",), ("TSLA",)]
    assert scheduler.coalesced == 1


@pytest.mark.asyncio
async def test_events_before_start_are_ignored():
    scheduler = build(Recorder())

    scheduler.notify(["NVDA"])

    assert scheduler.events.empty()


@pytest.mark.asyncio
async def test_post_poll_respects_backoff():
    clock = FakeClock()
    recorder = Recorder()
    polls = []

    async def poll_posts():
        polls.append(clock())
        if len(polls) == 1:
            raise CompletionError("quota exceeded", status_code=429)

    scheduler = RefreshScheduler(
        recorder.refresh_prices, recorder.refresh_sentiment,
        settings=make_settings(resource_backoff_seconds=30.0), clock=clock, poll_posts=poll_posts,
    )

    assert await scheduler.run_post_poll() is False
    assert await scheduler.run_post_poll() is False
    clock.advance(30)
    assert await scheduler.run_post_poll() is True
    assert polls == [0.0, 30.0]


@pytest.mark.asyncio
async def test_periodic_run_coalesces_its_own_arrival_event():
    recorder = Recorder()
    scheduler = build(recorder)

    assert await scheduler.run_periodic_sentiment(["NVDA"])
    assert await scheduler.handle_event(["NVDA"]) is False
    assert scheduler.coalesced == 1


class ListFeed:
    def __init__(self, posts):
        self.posts = list(posts)
        self.calls = 0

    async def get_posts_by_authors(self, authors, max_per_author=5):
        self.calls += 1
        return list(self.posts)

    async def search_posts(self, query, max_results=20):
        self.calls += 1
        return list(self.posts)


class NoQuotes:
    async def get_quote(self, symbol):
        return None


class RecordingAggregator:
    def __init__(self):
        self.refreshed = []

    async def refresh(self, posts, scope):
        self.refreshed.append((tuple(scope), [p.id for p in posts]))

    async def market_sentiment(self, posts, watchlist=()):
        return None


@pytest.mark.asyncio
async def test_new_posts_trigger_one_throttled_recomputation():
    """Unseen posts from a fetch queue a recomputation; a burst runs once."""
    settings = make_settings(
        refresh_watchlist=["NVDA"],
        market_moving_accounts=["CNBC"],
        price_refresh_seconds=3600,
        post_poll_seconds=3600,
        event_throttle_seconds=60.0,
    )
    feed = ListFeed([make_post("1", "$NVDA breakout")])
    orchestrator = FetchOrchestrator(feed=feed, ai=object(), quotes=NoQuotes(), settings=settings)
    aggregator = RecordingAggregator()
    scheduler = build_scheduler(orchestrator, aggregator, settings)

    scheduler.start(lambda: settings.refresh_watchlist)
    await scheduler.run_post_poll()
    await scheduler.events.join()

    # Same posts again: nothing new, no event
    await orchestrator.get_posts_by_authors(["CNBC"], max_per_author=3)
    # A new post inside the throttle window is coalesced
    feed.posts.append(make_post("2", "$NVDA looks weak"))
    await orchestrator.search_posts("$NVDA")
    await scheduler.events.join()
    await scheduler.stop()

    assert aggregator.refreshed == [(("NVDA",), ["1"])]
    assert scheduler.coalesced == 1
    assert [p.id for p in orchestrator.recent_posts()] == ["1", "2"]
