"""
Unit Tests for the FastAPI Application

The app runs its real lifespan against a supervisor wired to fake feeds and
an in-memory store.

Run with:
    pytest tests/unit/test_app.py -v
"""

import time

import pytest
from fastapi.testclient import TestClient
from starlette.websockets import WebSocketDisconnect

from app.main import create_app
from core.config import ExchangeFeedConfig, PipelineConfig, Settings
from core.errors import FeedConnectionError, PersistenceError
from core.feed_registry import FeedRegistry
from core.normalizer import normalize
from services.pipeline import PipelineSupervisor
from tests.unit.helpers import FakeFeedConnection, FakeTradeStore, make_ticker


PIPELINE_CONFIG = PipelineConfig(exchanges={
    "alpha": ExchangeFeedConfig(ws_feed="wss://feed.test", currency=["BTC-USD"])
})


class UnavailableStore(FakeTradeStore):

    async def count_by_exchange(self):
        raise PersistenceError("database unreachable")

    async def latest_trades(self, pair, limit=10):
        raise PersistenceError("database unreachable")


def build_client(feed=None, store=None) -> tuple:
    feed = feed or FakeFeedConnection()
    registry = FeedRegistry(register_defaults=False)
    registry.register("alpha", lambda cfg: feed)
    supervisor = PipelineSupervisor(store or FakeTradeStore(), registry=registry)
    app = create_app(
        supervisor=supervisor,
        pipeline_config=PIPELINE_CONFIG,
        config=Settings(_env_file=None, subscription_instruments="BTC,ETH"),
    )
    return TestClient(app), supervisor


def topic_counts(client, supervisor):
    return client.portal.call(supervisor.router.topic_counts)


def wait_for_subscriber(client, supervisor, topic, timeout=2.0):
    deadline = time.monotonic() + timeout
    while topic_counts(client, supervisor).get(topic) != 1:
        if time.monotonic() > deadline:
            raise AssertionError(f"no subscriber on {topic}")
        time.sleep(0.01)


# ============================================
# System Endpoints
# ============================================

class TestSystemEndpoints:

    def test_root(self):
        client, _ = build_client()
        with client:
            body = client.get("/").json()
        assert body["instruments"] == ["BTC", "ETH"]

    def test_health_while_running(self):
        client, _ = build_client()
        with client:
            response = client.get("/health")
        assert response.status_code == 200
        assert response.json() == {"status": "ok", "state": "running", "exchanges": ["alpha"]}

    def test_health_when_no_feed_started(self):
        client, _ = build_client(feed=FakeFeedConnection(fail_connect=FeedConnectionError("refused")))
        with client:
            body = client.get("/health").json()
        assert body["status"] == "degraded"
        assert body["state"] == "idle"

    def test_status_reports_counters_and_stored(self):
        feed = FakeFeedConnection(messages=[make_ticker()])
        client, supervisor = build_client(feed=feed)
        with client:
            deadline = time.monotonic() + 2
            while supervisor.sink.stats.written < 1 and time.monotonic() < deadline:
                time.sleep(0.01)
            body = client.get("/status").json()

        assert body["state"] == "running"
        assert body["exchanges"]["alpha"]["published"] == 1
        assert body["stored"] == {"alpha": 1}

    def test_status_without_store(self):
        client, _ = build_client(store=UnavailableStore())
        with client:
            body = client.get("/status").json()
        assert body["stored"] is None

    def test_shutdown_on_exit(self):
        feed = FakeFeedConnection()
        client, supervisor = build_client(feed=feed)
        with client:
            pass
        assert supervisor.state.value == "stopped"
        assert feed.unsubscribed == ("BTC-USD",)


# ============================================
# Stored Trades
# ============================================

class TestTradesEndpoint:

    def test_latest_trades(self):
        feed = FakeFeedConnection(messages=[make_ticker(sequence="1"), make_ticker(sequence="2", product_id="ETH-USD")])
        client, supervisor = build_client(feed=feed)
        with client:
            deadline = time.monotonic() + 2
            while supervisor.sink.stats.written < 2 and time.monotonic() < deadline:
                time.sleep(0.01)
            response = client.get("/trades/btc/usd", params={"limit": 5})

        assert response.status_code == 200
        rows = response.json()
        assert len(rows) == 1
        assert rows[0]["transaction_id"] == "1"
        assert rows[0]["sourcePair"] == "BTC"
        assert rows[0]["unit"] == 0.5

    @pytest.mark.parametrize("limit", [0, 501])
    def test_limit_bounds(self, limit):
        client, _ = build_client()
        with client:
            response = client.get("/trades/btc/usd", params={"limit": limit})
        assert response.status_code == 422

    def test_store_unavailable(self):
        client, _ = build_client(store=UnavailableStore())
        with client:
            response = client.get("/trades/btc/usd")
        assert response.status_code == 503


# ============================================
# WebSocket Subscriptions
# ============================================

class TestWebSocket:

    def test_unsupported_instrument_is_rejected(self):
        client, _ = build_client()
        with client:
            with pytest.raises(WebSocketDisconnect) as exc_info:
                with client.websocket_connect("/ws/doge/usd") as ws:
                    ws.receive_json()
        assert exc_info.value.code == 1008

    def test_trade_is_streamed_to_subscriber(self):
        client, supervisor = build_client()
        trade = normalize("alpha", make_ticker(product_id="ETH-USD")).trade
        with client:
            with client.websocket_connect("/ws/eth/usd") as ws:
                wait_for_subscriber(client, supervisor, "/ETH/USD")
                delivered = client.portal.call(supervisor.router.publish, trade.topic, trade)
                payload = ws.receive_json()

            assert delivered == 1
            assert payload == {
                "exchange": "alpha",
                "action": "buy",
                "unit": 0.5,
                "price": 9000.12,
                "sourcePair": "ETH",
                "destinationPair": "USD",
            }

    def test_disconnect_detaches_subscriber(self):
        client, supervisor = build_client()
        with client:
            with client.websocket_connect("/ws/btc/usd"):
                wait_for_subscriber(client, supervisor, "/BTC/USD")

            deadline = time.monotonic() + 2
            while topic_counts(client, supervisor) and time.monotonic() < deadline:
                time.sleep(0.01)
            assert topic_counts(client, supervisor) == {}
