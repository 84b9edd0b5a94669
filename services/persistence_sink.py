"""
Persistence Sink - Non-Blocking Trade Writer

Accepts trades from the pipeline without ever waiting on storage, and writes
them to the trade store from a single background task.

- enqueue() is put_nowait() on a bounded queue; it never awaits.
- A full buffer (sustained backend outage or a slow store) drops the trade
  and records a PersistenceError. There is no retry queue, so memory use
  stays bounded.
- Write failures are recorded through the same error path as every other
  contained failure, then the writer moves on.
- close() drains within a bounded grace period; whatever is still buffered
  afterwards is reported as lost.
"""

import asyncio
import logging
from dataclasses import asdict, dataclass
from typing import Dict, Optional

from core.errors import PersistenceError
from core.logging import get_logger, log_pipeline_error
from core.schemas import Trade
from storage.trade_store import TradeStore


@dataclass
class SinkStats:
    """Counters for the persistence sink."""

    enqueued: int = 0
    written: int = 0
    duplicates: int = 0
    failed: int = 0
    dropped: int = 0
    lost: int = 0


class PersistenceSink:
    """
    Background writer between the pipeline and the trade store.

    Example:
        >>> sink = PersistenceSink(TradeStore("sqlite+aiosqlite:///./trades.db"))
        >>> await sink.start()
        >>> sink.enqueue(trade)    # returns immediately
        >>> await sink.close()     # bounded flush, then releases the store
    """

    def __init__(self, store: TradeStore, max_queue_size: int = 10_000, flush_timeout: float = 5.0) -> None:
        self.store = store
        self.max_queue_size = max_queue_size
        self.flush_timeout = flush_timeout
        self.stats = SinkStats()

        self._queue: asyncio.Queue = asyncio.Queue(maxsize=max_queue_size)
        self._worker: Optional[asyncio.Task] = None
        self._accepting = False
        self._closed = False
        self._logger = get_logger(__name__)

    @property
    def pending(self) -> int:
        """Trades buffered but not yet written."""
        return self._queue.qsize()

    async def start(self) -> None:
        """Launch the writer task. The store must already be connected."""
        if self._worker is not None or self._closed:
            return
        self._accepting = True
        self._worker = asyncio.create_task(self._run(), name="persistence_sink")
        self._logger.info(f"Persistence sink started (buffer={self.max_queue_size})")

    def enqueue(self, trade: Trade) -> bool:
        """
        Hand a trade to the writer without waiting.

        Returns:
            True if the trade was buffered, False if it was dropped
        """
        if not self._accepting:
            self.stats.dropped += 1
            log_pipeline_error(
                "sink", PersistenceError("sink is not accepting writes"), exchange=trade.exchange,
                level=logging.WARNING
            )
            return False
        try:
            self._queue.put_nowait(trade)
        except asyncio.QueueFull:
            self.stats.dropped += 1
            log_pipeline_error(
                "sink",
                PersistenceError(f"buffer full ({self.max_queue_size}), dropped {trade.pair}#{trade.transaction_id}"),
                exchange=trade.exchange
            )
            return False
        self.stats.enqueued += 1
        return True

    async def _run(self) -> None:
        while True:
            trade = await self._queue.get()
            try:
                inserted = await self.store.write(trade)
                if inserted:
                    self.stats.written += 1
                else:
                    self.stats.duplicates += 1
            except PersistenceError as e:
                self.stats.failed += 1
                log_pipeline_error("sink", e, exchange=trade.exchange)
            except Exception as e:
                # Unexpected store errors count as failed writes
                self.stats.failed += 1
                log_pipeline_error("sink", PersistenceError(f"unexpected write error: {e}"), exchange=trade.exchange)
            except asyncio.CancelledError:
                # Cancelled mid-write by close(): the flush window expired
                self.stats.lost += 1
                raise
            finally:
                self._queue.task_done()

    async def close(self) -> None:
        """
        Stop accepting trades, drain within flush_timeout, release the store.

        Idempotent. Never raises: failures are recorded.
        """
        if self._closed:
            return
        self._closed = True
        self._accepting = False

        if self._worker is not None:
            if self._queue.qsize():
                self._logger.info(f"Flushing {self._queue.qsize()} buffered trade(s)...")
            try:
                await asyncio.wait_for(self._queue.join(), timeout=self.flush_timeout)
            except asyncio.TimeoutError:
                pass

            self._worker.cancel()
            await asyncio.gather(self._worker, return_exceptions=True)
            self._worker = None

        while not self._queue.empty():
            self._queue.get_nowait()
            self._queue.task_done()
            self.stats.lost += 1
        lost = self.stats.lost
        if lost:
            log_pipeline_error(
                "sink", PersistenceError(f"{lost} trade(s) not written within {self.flush_timeout}s flush window")
            )

        try:
            await self.store.close()
        except Exception as e:
            log_pipeline_error("sink", PersistenceError(f"failed to close trade store: {e}"))

        self._logger.info(f"Persistence sink closed: {self.stats_dict()}")

    def stats_dict(self) -> Dict[str, int]:
        return {**asdict(self.stats), "pending": self.pending}
