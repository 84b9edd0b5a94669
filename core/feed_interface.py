"""
Feed Connection Interface - Abstract Contract for Upstream Exchange Feeds

This module defines the abstract base class every upstream feed must
implement. A feed connection owns exactly one streaming session with one
exchange and exposes it as two pull-based async sequences:

    messages() - raw decoded messages, in the order received
    errors()   - asynchronous transport errors (decode errors, disconnects)

The pipeline supervisor pulls from both; there are no transport callbacks.

A feed connection never interprets messages: it does not build Trade
objects. That is the normalizer's job.

Lifecycle:
    feed = GdaxFeedConnection()
    await feed.connect("wss://ws-feed.exchange.coinbase.com", ["BTC-USD"])
    async for raw in feed.messages():
        ...
    await feed.close()   # idempotent, unsubscribes first

Reconnection is not part of this contract. A transport error
after connect() ends messages() and is reported through errors(); whether to
reconnect is the supervisor's decision.
"""

from abc import ABC, abstractmethod
from dataclasses import dataclass
from typing import Any, AsyncIterator, Dict, Sequence, Tuple


@dataclass(frozen=True)
class FeedError:
    """
    An asynchronous error surfaced by a feed connection.

    Attributes:
        exchange: Exchange the feed belongs to
        kind: Short error category ("decode", "disconnected", "transport", "exchange")
        message: Human-readable details
        fatal: True if the error ended the message sequence
    """

    exchange: str
    kind: str
    message: str
    fatal: bool = False

    def __str__(self) -> str:
        severity = "fatal" if self.fatal else "non-fatal"
        return f"{self.kind} ({severity}): {self.message}"


class FeedConnection(ABC):
    """
    Abstract Base Class for upstream feed connections.

    Class Attributes:
        name: Exchange identifier (lowercase, e.g., "gdax")

    Abstract Methods:
        - connect: Establish the session and subscribe to instruments
        - messages: Lazy sequence of raw decoded messages
        - errors: Lazy sequence of FeedError values
        - close: Unsubscribe and release the transport (idempotent)
        - subscriptions: Currently subscribed instruments
    """

    name: str

    @abstractmethod
    async def connect(self, endpoint: str, instruments: Sequence[str]) -> None:
        """
        Establish the session and subscribe to instruments.

        The subscribed set is the intersection of the configured instruments
        and the ones the exchange advertises.

        Args:
            endpoint: Feed address (e.g., "wss://ws-feed.exchange.coinbase.com")
            instruments: Configured instrument ids (e.g., ["BTC-USD", "ETH-USD"])

        Raises:
            FeedConnectionError: Transport could not be established
            SubscriptionError: No valid instruments, or the exchange rejected them
        """
        pass

    @abstractmethod
    def messages(self) -> AsyncIterator[Dict[str, Any]]:
        """
        Yield raw decoded messages until the connection closes.

        Ends on explicit close() or transport failure. Yields nothing if
        connect() never succeeded.
        """
        pass

    @abstractmethod
    def errors(self) -> AsyncIterator[FeedError]:
        """
        Yield asynchronous transport errors.

        Ends once the connection is closed and pending errors are drained.
        """
        pass

    @abstractmethod
    async def close(self) -> None:
        """
        Unsubscribe (if the transport is still reachable) and release it.

        Must be idempotent and safe to call when connect() never succeeded.
        """
        pass

    @property
    @abstractmethod
    def subscriptions(self) -> Tuple[str, ...]:
        """Instrument ids currently subscribed (empty before connect and after close)."""
        pass

    def __repr__(self) -> str:
        return f"<{self.__class__.__name__}(name='{self.name}', subscriptions={list(self.subscriptions)})>"
