"""Tests for FastAPI endpoints."""
import pytest
from fastapi.testclient import TestClient
from papertrader.dependencies import get_aggregator, get_assistant, get_orchestrator
from papertrader.errors import CompletionError
from papertrader.main import app
from papertrader.orchestration.aggregator import SentimentAggregator
from papertrader.services.types import FlowAnalysis
from papertrader.trading.assistant import TradeAssistant
from tests.helpers import StubQuoteService, make_post, make_settings


class StubOrchestrator(StubQuoteService):
    def __init__(self, prices=None, posts=None):
        super().__init__(prices or {})
        self.posts = posts or []
        self.authors = None
        self.flow_urls = []

    async def get_posts_by_authors(self, authors, max_per_author=5):
        self.authors = list(authors)
        return list(self.posts)

    async def complete(self, prompt, **kwargs):
        return '{"response": "Prepared."}'

    async def analyze_flow_image(self, url, fallback_symbol=None):
        self.flow_urls.append(url)
        if "blank" in url:
            return None
        if "down" in url:
            raise CompletionError("Grok API error: 503", status_code=503)
        return FlowAnalysis(symbol=fallback_symbol or "SPY", option_type="call", confidence="low")


@pytest.fixture
def orchestrator():
    return StubOrchestrator(
        prices={"NVDA": 500.0, "ETH-USD": 2500.0},
        posts=[make_post("1", "Stock market rally", author="CNBC")],
    )


@pytest.fixture
def client(orchestrator):
    app.dependency_overrides[get_orchestrator] = lambda: orchestrator
    app.dependency_overrides[get_aggregator] = lambda: SentimentAggregator(settings=make_settings())
    app.dependency_overrides[get_assistant] = lambda: TradeAssistant(orchestrator)
    yield TestClient(app)
    app.dependency_overrides.clear()


def post_json(post_id, text, author="trader1"):
    return {"id": post_id, "author": author, "text": text, "created_at": "2025-01-15T10:00:00"}


def test_root_endpoint(client):
    """Test root endpoint returns service info."""
    response = client.get("/")
    assert response.status_code == 200
    data = response.json()
    assert data["service"] == "Paper Trader Signal API"
    assert "sentiment" in data["endpoints"]


def test_healthz_endpoint(client):
    """Test health check endpoint."""
    response = client.get("/healthz")
    assert response.status_code == 200
    data = response.json()
    assert data["status"] == "ok"
    assert "timestamp" in data


def test_resolve(client):
    response = client.get("/resolve", params={"token": "ethereum"})
    assert response.status_code == 200
    assert response.json() == {"token": "ethereum", "symbol": "ETH-USD"}


def test_resolve_unknown(client):
    assert client.get("/resolve", params={"token": "hello world"}).status_code == 404


def test_resolve_missing_token(client):
    assert client.get("/resolve").status_code == 422


def test_sentiment(client):
    """Test keyword sentiment for a scope."""
    response = client.post("/sentiment", json={
        "scope": ["nvidia", "AMD"],
        "posts": [
            post_json("1", "$NVDA breakout, bullish"),
            post_json("2", "$NVDA looks weak"),
        ],
    })
    assert response.status_code == 200
    data = response.json()
    assert set(data) == {"NVDA", "AMD", "MARKET"}
    assert data["NVDA"]["bullish_pct"] == 50
    assert data["NVDA"]["bearish_pct"] == 50
    assert data["AMD"]["source"] == "default"


def test_sentiment_unresolvable_scope(client):
    response = client.post("/sentiment", json={"scope": ["!!!"], "posts": []})
    assert response.status_code == 400


def test_market_sentiment_fetches_posts(client, orchestrator):
    response = client.post("/market-sentiment", json={"fetch": True})
    assert response.status_code == 200
    data = response.json()
    assert data["overall"] == "bullish"
    assert data["source_accounts"] == ["CNBC"]
    assert "CNBC" in orchestrator.authors


def test_market_sentiment_without_posts(client):
    response = client.post("/market-sentiment", json={})
    assert response.status_code == 200
    assert response.json()["source"] == "default"


def test_trade_parse(client):
    response = client.post("/trade/parse", json={"message": "buy $1000 worth of ethereum"})
    assert response.status_code == 200
    data = response.json()
    assert data["symbol"] == "ETH-USD"
    assert data["dollar_amount"] == 1000


def test_trade_parse_not_a_trade(client):
    response = client.post("/trade/parse", json={"message": "hello there"})
    assert response.status_code == 422


def test_diversify(client):
    response = client.post("/diversify", json={
        "holdings": [{"symbol": "ETH-USD", "quantity": 10, "entry_price": 2000, "asset_type": "crypto"}],
    })
    assert response.status_code == 200
    data = response.json()
    assert [t["symbol"] for t in data["sells"]] == ["ETH-USD"]
    assert data["sells"][0]["quantity"] == 3
    assert "Unable to price AMGN; skipped" in data["reasoning"]


def test_chat(client):
    response = client.post("/chat", json={"message": "sell 2 shares of NVDA"})
    assert response.status_code == 200
    data = response.json()
    assert data["response"] == "Prepared."
    assert data["trade_actions"][0]["symbol"] == "NVDA"
    assert data["trade_actions"][0]["price"] == 500.0


def test_flow_reads_explicit_and_attached_images(client, orchestrator):
    post = post_json("1", "Big flow today")
    post["image_urls"] = ["https://img/a.png", "https://img/blank.png", "https://img/down.png"]
    response = client.post("/flow", json={
        "image_url": "https://img/a.png",
        "posts": [post],
        "symbol": "QQQ",
    })

    assert response.status_code == 200
    assert response.json() == [{
        "symbol": "QQQ", "expiration": None, "strike": None, "premium": None,
        "option_type": "call", "action": None, "volume": None,
        "confidence": "low", "source": "text",
    }]
    assert orchestrator.flow_urls == ["https://img/a.png", "https://img/blank.png", "https://img/down.png"]


def test_flow_without_images(client):
    response = client.post("/flow", json={"posts": [post_json("1", "no pictures")]})
    assert response.status_code == 400
