"""
Pipeline Supervisor - Ingestion, Fan-Out and Persistence Lifecycle

Owns every moving part of the trade pipeline:

    FeedConnection.messages() -> normalize() -> TopicRouter.publish()
                                             -> PersistenceSink.enqueue()

State machine:
    idle -> starting -> running -> shutting_down -> stopped

Startup:
    Exchanges are validated one by one. An unusable entry (no feed address,
    no instruments, no registered feed) is skipped. An exchange whose feed
    cannot connect or subscribe is aborted on its own. The supervisor runs as
    long as at least one feed is connected.

Running:
    One consumer task per feed processes messages strictly in arrival order.
    Fan-out happens before the persistence enqueue and neither awaits, so the
    next message is never held up by subscribers or storage. A second task
    per feed logs the feed's errors.

Shutdown:
    Debounced: concurrent or repeated calls share one teardown. Order:
    stop consuming, close feeds (unsubscribe), close the sink (bounded
    flush, releases the store), release router subscriptions. Each step's
    failures are logged and never prevent the next. When every feed has
    ended on its own, the supervisor triggers shutdown itself.
"""

import asyncio
import logging
from collections import Counter
from dataclasses import dataclass, field
from enum import Enum
from typing import Any, Dict, List, Optional

from core.config import ExchangeFeedConfig, PipelineConfig
from core.errors import (
    ConfigurationError,
    FeedConnectionError,
    PersistenceError,
    SubscriptionError,
    TradeValidationError,
)
from core.feed_interface import FeedConnection
from core.feed_registry import FeedRegistry
from core.logging import get_logger, log_pipeline_error
from core.normalizer import normalize
from services.persistence_sink import PersistenceSink
from services.topic_router import TopicRouter
from storage.trade_store import TradeStore


class PipelineState(str, Enum):
    IDLE = "idle"
    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


@dataclass
class ExchangeStats:
    """Per-exchange counters."""

    received: int = 0
    published: int = 0
    deliveries: int = 0
    persisted: int = 0
    feed_errors: int = 0
    dropped: Counter = field(default_factory=Counter)


@dataclass
class ExchangePipeline:
    """One connected exchange: its feed, its tasks and its counters."""

    name: str
    feed: FeedConnection
    stats: ExchangeStats = field(default_factory=ExchangeStats)
    consumer: Optional[asyncio.Task] = None
    error_watcher: Optional[asyncio.Task] = None
    ended: bool = False


class PipelineSupervisor:
    """
    Lifecycle owner for the trade pipeline.

    The router and the feed registry are plain instances owned here; the
    API layer reaches them through the supervisor, never through module
    globals.

    Example:
        >>> supervisor = PipelineSupervisor(TradeStore("sqlite+aiosqlite:///./trades.db"))
        >>> await supervisor.start(build_pipeline_config())
        True
        >>> supervisor.router.attach("/BTC/USD", QueueSubscriber("client-1"))
        >>> await supervisor.shutdown()
    """

    ERROR_DRAIN_TIMEOUT = 1.0

    def __init__(
        self,
        store: TradeStore,
        router: Optional[TopicRouter] = None,
        registry: Optional[FeedRegistry] = None,
        persistence_queue_size: int = 10_000,
        flush_timeout: float = 5.0
    ) -> None:
        self.store = store
        self.router = router or TopicRouter()
        self.registry = registry or FeedRegistry()
        self.persistence_queue_size = persistence_queue_size
        self.flush_timeout = flush_timeout

        self.state = PipelineState.IDLE
        self.sink: Optional[PersistenceSink] = None
        self.pipelines: Dict[str, ExchangePipeline] = {}
        self.skipped: Dict[str, str] = {}

        self._shutdown_task: Optional[asyncio.Task] = None
        self._auto_shutdown: Optional[asyncio.Task] = None
        self._logger = get_logger(__name__)

    # ============================================
    # Startup
    # ============================================

    def _skip(self, name: str, error: Exception) -> None:
        self.skipped[name] = str(error)
        log_pipeline_error("supervisor", error, exchange=name, level=logging.WARNING)

    def _validate_exchange(self, name: str, feed_config: ExchangeFeedConfig) -> FeedConnection:
        """
        Check one exchange entry and create its (unconnected) feed.

        Raises:
            ConfigurationError: Missing feed address or instruments, or unknown exchange
        """
        if not feed_config.ws_feed or not feed_config.ws_feed.strip():
            raise ConfigurationError(f"No WebSocket feed provided for {name}", exchange=name)
        if not [c for c in feed_config.currency if str(c).strip()]:
            raise ConfigurationError(f"No currencies provided for {name}", exchange=name)
        return self.registry.create(name, feed_config)

    async def start(self, config: PipelineConfig) -> bool:
        """
        Validate the configuration, connect the feeds and start consuming.

        Returns:
            True if at least one exchange is running, False otherwise
            (the supervisor is then back in, or still in, idle)
        """
        if self.state != PipelineState.IDLE:
            self._logger.warning(f"start() ignored in state '{self.state.value}'")
            return False

        self.skipped.clear()
        candidates = []
        for name, feed_config in config.exchanges.items():
            try:
                feed = self._validate_exchange(name, feed_config)
            except ConfigurationError as e:
                self._skip(name, e)
                continue
            candidates.append((name, feed_config, feed))

        if not candidates:
            log_pipeline_error("supervisor", ConfigurationError("No usable exchange configuration"))
            return False

        self.state = PipelineState.STARTING
        self._logger.info(f"Starting pipeline for: {', '.join(name for name, _, _ in candidates)}")

        try:
            await self.store.connect()
        except PersistenceError as e:
            # Storage outages never block fan-out; writes are dropped and recorded
            log_pipeline_error("supervisor", e)

        if self.state != PipelineState.STARTING:
            await self.store.close()
            return False

        self.sink = PersistenceSink(self.store, self.persistence_queue_size, self.flush_timeout)
        await self.sink.start()

        for name, feed_config, feed in candidates:
            try:
                await feed.connect(feed_config.ws_feed, feed_config.currency)
            except (FeedConnectionError, SubscriptionError) as e:
                self._skip(name, e)
                await feed.close()
                continue

            if self.state != PipelineState.STARTING:
                # shutdown() ran while we were connecting
                await feed.close()
                return False

            self.pipelines[name] = ExchangePipeline(name=name, feed=feed)
            self._logger.info(f"✓ {name} connected: {', '.join(feed.subscriptions)}")

        if not self.pipelines:
            log_pipeline_error("supervisor", FeedConnectionError("No exchange feed could be started"))
            sink, self.sink = self.sink, None
            await sink.close()
            self.state = PipelineState.IDLE
            return False

        for pipeline in self.pipelines.values():
            pipeline.consumer = asyncio.create_task(self._consume(pipeline), name=f"consume_{pipeline.name}")
            pipeline.error_watcher = asyncio.create_task(
                self._watch_errors(pipeline), name=f"feed_errors_{pipeline.name}"
            )

        self.state = PipelineState.RUNNING
        self._logger.info(f"Pipeline running ({len(self.pipelines)} exchange(s))")
        return True

    # ============================================
    # Running
    # ============================================

    async def _consume(self, pipeline: ExchangePipeline) -> None:
        stats = pipeline.stats
        try:
            async for raw in pipeline.feed.messages():
                stats.received += 1

                result = normalize(pipeline.name, raw)
                if not result.ok:
                    stats.dropped[result.reason] += 1
                    log_pipeline_error(
                        "normalizer", TradeValidationError(result.reason, exchange=pipeline.name),
                        exchange=pipeline.name, level=logging.DEBUG
                    )
                    continue

                trade = result.trade
                stats.deliveries += self.router.publish(trade.topic, trade)
                stats.published += 1
                if self.sink is not None and self.sink.enqueue(trade):
                    stats.persisted += 1

        except Exception as e:
            log_pipeline_error("supervisor", e, exchange=pipeline.name)

        pipeline.ended = True
        self._logger.warning(f"Feed for {pipeline.name} ended")

        if self.state == PipelineState.RUNNING and all(p.ended for p in self.pipelines.values()):
            self._logger.warning("All feeds have ended, shutting down pipeline")
            self._auto_shutdown = asyncio.create_task(self.shutdown(), name="pipeline_auto_shutdown")

    async def _watch_errors(self, pipeline: ExchangePipeline) -> None:
        async for error in pipeline.feed.errors():
            pipeline.stats.feed_errors += 1
            log_pipeline_error(
                "feed",
                FeedConnectionError(str(error), exchange=pipeline.name),
                exchange=pipeline.name,
                level=logging.ERROR if error.fatal else logging.WARNING
            )

    # ============================================
    # Shutdown
    # ============================================

    async def shutdown(self) -> None:
        """
        Tear the pipeline down exactly once.

        Safe to call repeatedly, concurrently, and before start() completed.
        Never raises.
        """
        if self._shutdown_task is None:
            self._shutdown_task = asyncio.create_task(self._teardown(), name="pipeline_shutdown")
        await asyncio.shield(self._shutdown_task)

    async def _teardown(self) -> None:
        previous = self.state
        self.state = PipelineState.SHUTTING_DOWN
        self._logger.info(f"Shutdown initiated (from '{previous.value}')")

        if previous == PipelineState.IDLE:
            self.state = PipelineState.STOPPED
            self._logger.info("Shutdown complete (pipeline was never started)")
            return

        # 1. Stop accepting upstream messages
        consumers = [p.consumer for p in self.pipelines.values() if p.consumer is not None]
        for task in consumers:
            task.cancel()
        await asyncio.gather(*consumers, return_exceptions=True)

        # 2. Close feeds (unsubscribes while the transport is still up)
        for pipeline in self.pipelines.values():
            try:
                await pipeline.feed.close()
                self._logger.info(f"✓ {pipeline.name} feed closed")
            except Exception as e:
                log_pipeline_error("supervisor", e, exchange=pipeline.name)

        watchers = [p.error_watcher for p in self.pipelines.values() if p.error_watcher is not None]
        if watchers:
            done, pending = await asyncio.wait(watchers, timeout=self.ERROR_DRAIN_TIMEOUT)
            for task in pending:
                task.cancel()
            await asyncio.gather(*watchers, return_exceptions=True)

        # 3. Flush and close persistence; the store is closed whenever it exists
        if self.sink is not None:
            await self.sink.close()
        try:
            await self.store.close()
        except Exception as e:
            log_pipeline_error("supervisor", PersistenceError(f"failed to close trade store: {e}"))

        # 4. Release downstream subscriptions
        self.router.release_all()

        self.state = PipelineState.STOPPED
        self._logger.info("Shutdown complete")

    # ============================================
    # Status
    # ============================================

    def status(self) -> Dict[str, Any]:
        """Snapshot of state and counters (served by /status)."""
        exchanges = {}
        for name, pipeline in self.pipelines.items():
            stats = pipeline.stats
            exchanges[name] = {
                "connected": not pipeline.ended and self.state == PipelineState.RUNNING,
                "subscriptions": list(pipeline.feed.subscriptions),
                "received": stats.received,
                "published": stats.published,
                "deliveries": stats.deliveries,
                "persisted": stats.persisted,
                "feed_errors": stats.feed_errors,
                "dropped": dict(stats.dropped),
            }

        return {
            "state": self.state.value,
            "exchanges": exchanges,
            "skipped": dict(self.skipped),
            "sink": self.sink.stats_dict() if self.sink is not None else None,
            "topics": self.router.topic_counts(),
            "delivery_failures": self.router.delivery_failures,
        }

    def list_running(self) -> List[str]:
        """Exchanges whose feed is still producing."""
        return [name for name, p in self.pipelines.items() if not p.ended]
