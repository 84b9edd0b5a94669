"""
Unit Tests for the Topic Router

Tests cover:
- Attach / detach bookkeeping
- Fan-out to every subscriber of a topic
- Isolation: a closed or saturated subscriber does not affect the others
- Release on shutdown

Run with:
    pytest tests/unit/test_topic_router.py -v
"""

import pytest

from core.errors import DeliveryError
from core.normalizer import normalize
from services.topic_router import QueueSubscriber, TopicRouter, normalize_topic
from tests.unit.helpers import make_ticker


def trade_for(product_id: str = "ETH-USD", sequence: str = "1"):
    return normalize("gdax", make_ticker(sequence=sequence, product_id=product_id)).trade


class TestNormalizeTopic:

    @pytest.mark.parametrize("path", ["/eth/usd", "ETH/USD", "/ETH/USD/", " /Eth/Usd "])
    def test_canonical_form(self, path):
        assert normalize_topic(path) == "/ETH/USD"


class TestQueueSubscriber:
    """Test the non-blocking subscriber endpoint"""

    @pytest.mark.asyncio
    async def test_deliver_then_receive(self):
        subscriber = QueueSubscriber("s1")
        subscriber.deliver({"n": 1})
        assert await subscriber.receive() == {"n": 1}

    def test_full_queue_raises(self):
        subscriber = QueueSubscriber("s1", max_queue_size=1)
        subscriber.deliver({"n": 1})
        with pytest.raises(DeliveryError):
            subscriber.deliver({"n": 2})

    def test_closed_subscriber_raises(self):
        subscriber = QueueSubscriber("s1")
        subscriber.close()
        with pytest.raises(DeliveryError):
            subscriber.deliver({"n": 1})

    @pytest.mark.asyncio
    async def test_close_wakes_receiver(self):
        subscriber = QueueSubscriber("s1", max_queue_size=1)
        subscriber.deliver({"n": 1})
        subscriber.close()
        subscriber.close()
        assert subscriber.closed
        assert await subscriber.receive() is None
        assert await subscriber.receive() is None


class TestAttachDetach:
    """Test topic bookkeeping"""

    def test_attach_then_detach(self):
        router = TopicRouter()
        s1 = QueueSubscriber("s1")

        assert router.attach("/eth/usd", s1) == "/ETH/USD"
        assert router.subscribers("/ETH/USD") == [s1]

        assert router.detach(s1) == 1
        assert router.subscribers("/ETH/USD") == []
        assert router.topic_counts() == {}

    def test_detach_unknown_subscriber(self):
        router = TopicRouter()
        assert router.detach(QueueSubscriber("ghost")) == 0

    def test_subscriber_on_many_topics(self):
        router = TopicRouter()
        s1 = QueueSubscriber("s1")
        router.attach("/BTC/USD", s1)
        router.attach("/ETH/USD", s1)
        router.attach("/ETH/USD", s1)

        assert router.topic_counts() == {"/BTC/USD": 1, "/ETH/USD": 1}
        assert router.detach(s1) == 2


class TestPublish:
    """Test fan-out"""

    @pytest.mark.asyncio
    async def test_every_subscriber_of_the_topic_receives(self):
        router = TopicRouter()
        s1, s2, other = QueueSubscriber("s1"), QueueSubscriber("s2"), QueueSubscriber("other")
        router.attach("/ETH/USD", s1)
        router.attach("/ETH/USD", s2)
        router.attach("/BTC/USD", other)

        trade = trade_for("ETH-USD")
        assert router.publish(trade.topic, trade) == 2

        assert await s1.receive() == trade.to_payload()
        assert await s2.receive() == trade.to_payload()
        assert other._queue.empty()

    @pytest.mark.asyncio
    async def test_detach_stops_delivery_to_that_subscriber_only(self):
        router = TopicRouter()
        s1, s2 = QueueSubscriber("s1"), QueueSubscriber("s2")
        router.attach("/ETH/USD", s1)
        router.attach("/ETH/USD", s2)

        first = trade_for("ETH-USD", sequence="1")
        router.publish("/ETH/USD", first)
        assert await s1.receive() == first.to_payload()
        assert await s2.receive() == first.to_payload()

        router.detach(s1)
        second = trade_for("ETH-USD", sequence="2")
        assert router.publish("/ETH/USD", second) == 1
        assert await s2.receive() == second.to_payload()
        assert s1._queue.empty()

    def test_publish_without_subscribers(self):
        router = TopicRouter()
        trade = trade_for()
        assert router.publish(trade.topic, trade) == 0

    def test_detached_subscriber_receives_nothing(self):
        router = TopicRouter()
        s1 = QueueSubscriber("s1")
        router.attach("/ETH/USD", s1)
        router.detach(s1)

        trade = trade_for("ETH-USD")
        assert router.publish(trade.topic, trade) == 0
        assert s1._queue.empty()

    @pytest.mark.asyncio
    async def test_failing_subscribers_are_isolated(self):
        router = TopicRouter()
        healthy = QueueSubscriber("healthy")
        saturated = QueueSubscriber("saturated", max_queue_size=1)
        closed = QueueSubscriber("closed")
        for subscriber in (healthy, saturated, closed):
            router.attach("/ETH/USD", subscriber)
        saturated.deliver({"filler": True})
        closed.close()

        trade = trade_for("ETH-USD")
        assert router.publish(trade.topic, trade) == 1

        assert await healthy.receive() == trade.to_payload()
        assert router.subscribers("/ETH/USD") == [healthy]
        assert router.delivery_failures == 2
        assert saturated.closed

        second = trade_for("ETH-USD", sequence="2")
        assert router.publish(second.topic, second) == 1
        assert await healthy.receive() == second.to_payload()


class TestReleaseAll:

    @pytest.mark.asyncio
    async def test_release_closes_everyone(self):
        router = TopicRouter()
        s1, s2 = QueueSubscriber("s1"), QueueSubscriber("s2")
        router.attach("/BTC/USD", s1)
        router.attach("/ETH/USD", s1)
        router.attach("/ETH/USD", s2)

        assert router.release_all() == 2
        assert router.topic_counts() == {}
        assert await s1.receive() is None
        assert await s2.receive() is None
