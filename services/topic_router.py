"""
Topic Router - Trade Fan-Out to Downstream Subscribers

This module maps topics (currency-pair paths such as "/BTC/USD") to the
subscribers currently attached to them, and delivers each published trade to
every subscriber of its topic.

Each subscriber owns a bounded asyncio.Queue. Publishing only does
put_nowait(), so a publish never awaits and never blocks the feed consumer.
A subscriber that cannot take a payload (closed, or its queue is full) is
detached; the rest of the broadcast continues.

Because publish() never awaits, attach()/detach() cannot interleave with a
broadcast on the event loop. The broadcast still iterates a snapshot so a
subscriber detached during delivery is handled cleanly.

The router holds references to subscribers but does not own them: the
WebSocket session that created a subscriber detaches it when it ends.
"""

import asyncio
import logging
from collections import defaultdict
from typing import Any, DefaultDict, Dict, List, Optional, Set

from core.errors import DeliveryError
from core.logging import get_logger, log_pipeline_error
from core.schemas import Trade


def normalize_topic(path: str) -> str:
    """
    Normalize a topic path to its canonical uppercase form.

    Example:
        >>> normalize_topic("btc/usd/")
        '/BTC/USD'
    """
    parts = [part.strip().upper() for part in str(path).split("/") if part.strip()]
    return "/" + "/".join(parts)


class QueueSubscriber:
    """
    Non-blocking delivery endpoint for one downstream client.

    Attributes:
        name: Label used in logs (e.g., the client address)
        max_queue_size: Payloads buffered before deliveries fail
    """

    _CLOSED = object()

    def __init__(self, name: str = "subscriber", max_queue_size: int = 1000) -> None:
        self.name = name
        self.max_queue_size = max_queue_size
        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def deliver(self, payload: Dict[str, Any]) -> None:
        """
        Queue a payload without waiting.

        Raises:
            DeliveryError: If the subscriber is closed or its queue is full
        """
        if self._closed:
            raise DeliveryError(f"subscriber '{self.name}' is closed")
        try:
            self._queue.put_nowait(payload)
        except asyncio.QueueFull:
            raise DeliveryError(f"subscriber '{self.name}' queue is full ({self.max_queue_size})")

    async def receive(self) -> Optional[Dict[str, Any]]:
        """
        Wait for the next payload.

        Returns:
            The payload, or None once the subscriber has been closed
        """
        if self._closed and self._queue.empty():
            return None
        item = await self._queue.get()
        if item is self._CLOSED:
            return None
        return item

    def close(self) -> None:
        """Close the subscriber and wake a pending receive(). Idempotent."""
        if self._closed:
            return
        self._closed = True
        # Drop what's buffered so the sentinel always fits
        while not self._queue.empty():
            self._queue.get_nowait()
        self._queue.put_nowait(self._CLOSED)

    def __repr__(self) -> str:
        return f"<QueueSubscriber(name='{self.name}', closed={self._closed})>"


class TopicRouter:
    """
    Topic-based fan-out of trades to attached subscribers.

    - Multiple subscribers per topic; a subscriber may attach to many topics.
    - No topic needs to be declared; publishing to an empty topic is a no-op.
    - Deliveries are at-most-once and only reach subscribers attached at the
      time of the publish call (no backlog for late subscribers).
    """

    def __init__(self) -> None:
        self._topics: DefaultDict[str, Set[QueueSubscriber]] = defaultdict(set)
        self.delivery_failures = 0
        self._logger = get_logger(__name__)

    def attach(self, topic: str, subscriber: QueueSubscriber) -> str:
        """
        Register a subscriber under a topic.

        Returns:
            The normalized topic the subscriber was attached to
        """
        topic = normalize_topic(topic)
        self._topics[topic].add(subscriber)
        self._logger.debug(f"Subscriber '{subscriber.name}' attached to '{topic}'. total={len(self._topics[topic])}")
        return topic

    def detach(self, subscriber: QueueSubscriber) -> int:
        """
        Remove a subscriber from every topic it is attached to.

        Returns:
            Number of topics the subscriber was removed from
        """
        removed = 0
        for topic in list(self._topics.keys()):
            subscribers = self._topics[topic]
            if subscriber in subscribers:
                subscribers.discard(subscriber)
                removed += 1
                if not subscribers:
                    del self._topics[topic]
        if removed:
            self._logger.debug(f"Subscriber '{subscriber.name}' detached from {removed} topic(s)")
        return removed

    def publish(self, topic: str, trade: Trade) -> int:
        """
        Deliver a trade to every subscriber currently attached to a topic.

        A failing subscriber is detached after the broadcast and does not
        prevent delivery to the others.

        Returns:
            Number of subscribers the trade was delivered to
        """
        subscribers = list(self._topics.get(normalize_topic(topic), ()))
        if not subscribers:
            return 0

        payload = trade.to_payload()
        delivered = 0
        failed: List[QueueSubscriber] = []

        for subscriber in subscribers:
            try:
                subscriber.deliver(payload)
                delivered += 1
            except DeliveryError as e:
                log_pipeline_error("router", e, exchange=trade.exchange, level=logging.WARNING)
                failed.append(subscriber)
                self.delivery_failures += 1

        for subscriber in failed:
            self.detach(subscriber)
            subscriber.close()

        return delivered

    def subscribers(self, topic: str) -> List[QueueSubscriber]:
        """Snapshot of the subscribers attached to a topic."""
        return list(self._topics.get(normalize_topic(topic), ()))

    def topic_counts(self) -> Dict[str, int]:
        """Number of subscribers per topic."""
        return {topic: len(subscribers) for topic, subscribers in self._topics.items()}

    def release_all(self) -> int:
        """
        Close and detach every subscriber (shutdown).

        Returns:
            Number of distinct subscribers released
        """
        everyone: Set[QueueSubscriber] = set()
        for subscribers in self._topics.values():
            everyone.update(subscribers)
        self._topics.clear()
        for subscriber in everyone:
            subscriber.close()
        if everyone:
            self._logger.info(f"Released {len(everyone)} subscriber(s)")
        return len(everyone)
