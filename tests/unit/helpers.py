"""
Test doubles shared by the pipeline tests.

- FakeFeedConnection: scripted FeedConnection (no network)
- FakeTradeStore: in-memory TradeStore with the same idempotent write contract
- make_ticker(): builds a raw GDAX ticker message
- wait_until(): polls a condition on the event loop
"""

import asyncio
from typing import Any, Dict, List, Optional, Sequence, Tuple

from core.errors import PersistenceError
from core.feed_interface import FeedConnection, FeedError
from core.schemas import Trade


def make_ticker(sequence: Any = "42", product_id: str = "BTC-USD", side: str = "buy",
                last_size: str = "0.5", price: str = "9000.12",
                time: str = "2020-01-01T00:00:00Z", **overrides) -> Dict[str, Any]:
    """Raw GDAX ticker message (defaults: the BTC-USD #42 reference trade)."""
    message = {
        "type": "ticker",
        "sequence": sequence,
        "product_id": product_id,
        "side": side,
        "last_size": last_size,
        "price": price,
        "time": time,
    }
    message.update(overrides)
    return message


async def wait_until(predicate, timeout: float = 2.0, interval: float = 0.01) -> None:
    """Wait until predicate() is true, failing the test after timeout."""
    loop = asyncio.get_running_loop()
    deadline = loop.time() + timeout
    while not predicate():
        if loop.time() > deadline:
            raise AssertionError("condition not met before timeout")
        await asyncio.sleep(interval)


class FakeFeedConnection(FeedConnection):
    """
    Scripted feed connection.

    Yields `messages` in order. With hold_open=True the message sequence
    stays open until close() is called, like a live feed.
    """

    name = "fake"

    def __init__(self, messages: Optional[List[Any]] = None, fail_connect: Optional[Exception] = None,
                 hold_open: bool = True) -> None:
        self.scripted = list(messages or [])
        self.fail_connect = fail_connect
        self.hold_open = hold_open

        self.connect_calls: List[Tuple[str, Tuple[str, ...]]] = []
        self.close_calls = 0
        self.unsubscribed: Tuple[str, ...] = ()
        self._subscriptions: Tuple[str, ...] = ()
        self._closed = asyncio.Event()
        self._errors: asyncio.Queue = asyncio.Queue()

    @property
    def subscriptions(self) -> Tuple[str, ...]:
        return self._subscriptions

    async def connect(self, endpoint: str, instruments: Sequence[str]) -> None:
        self.connect_calls.append((endpoint, tuple(instruments)))
        if self.fail_connect is not None:
            raise self.fail_connect
        self._subscriptions = tuple(instruments)

    async def messages(self):
        if not self._subscriptions:
            return
        for message in self.scripted:
            yield message
        if self.hold_open:
            await self._closed.wait()

    async def errors(self):
        while True:
            error = await self._errors.get()
            if error is None:
                return
            yield error

    def push_error(self, kind: str = "decode", message: str = "bad frame", fatal: bool = False) -> None:
        self._errors.put_nowait(FeedError(exchange=self.name, kind=kind, message=message, fatal=fatal))

    async def close(self) -> None:
        self.close_calls += 1
        if self._closed.is_set():
            return
        self.unsubscribed = self._subscriptions
        self._subscriptions = ()
        self._closed.set()
        self._errors.put_nowait(None)


class FakeTradeStore:
    """In-memory stand-in for TradeStore."""

    def __init__(self, fail_writes: bool = False, fail_connect: bool = False, write_delay: float = 0.0) -> None:
        self.fail_writes = fail_writes
        self.fail_connect = fail_connect
        self.write_delay = write_delay
        self.rows: Dict[Tuple[str, str, str], Dict[str, Any]] = {}
        self.write_order: List[str] = []
        self.connected = False
        self.connect_calls = 0
        self.close_calls = 0

    async def connect(self) -> None:
        self.connect_calls += 1
        if self.fail_connect:
            raise PersistenceError("database unreachable")
        self.connected = True

    async def write(self, trade: Trade) -> bool:
        if self.write_delay:
            await asyncio.sleep(self.write_delay)
        if self.fail_writes or not self.connected:
            raise PersistenceError("write failed", exchange=trade.exchange)
        key = (trade.exchange, trade.pair, trade.transaction_id)
        if key in self.rows:
            return False
        self.rows[key] = trade.to_record()
        self.write_order.append(trade.transaction_id)
        return True

    async def count_by_exchange(self) -> Dict[str, int]:
        counts: Dict[str, int] = {}
        for exchange, _, _ in self.rows:
            counts[exchange] = counts.get(exchange, 0) + 1
        return counts

    async def latest_trades(self, pair: str, limit: int = 10) -> List[Dict[str, Any]]:
        rows = [row for row in self.rows.values() if row["pair"] == pair.upper()]
        rows.sort(key=lambda row: row["exchange_timestamp"], reverse=True)
        return rows[:limit]

    async def close(self) -> None:
        self.close_calls += 1
        self.connected = False

