"""
FastAPI Application - Live Trade Relay

Ingests the live trade feed of the configured exchanges, republishes every
trade to WebSocket subscribers of its currency pair, and stores it for later
query.

Supported Exchanges:
    - GDAX / Coinbase Exchange (ticker channel)

Usage:
    uvicorn app.main:app --host 0.0.0.0 --port 8000

Docs:
    - Swagger: http://localhost:8000/docs
    - ReDoc: http://localhost:8000/redoc
"""

import asyncio
from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import FastAPI, HTTPException, Query, WebSocket, WebSocketDisconnect
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from core.config import PipelineConfig, Settings, build_pipeline_config, settings, validate_configuration
from core.errors import PersistenceError
from core.logging import logger
from core.schemas import PAIR_SEPARATOR, StoredTrade, topic_for
from services.pipeline import PipelineState, PipelineSupervisor
from services.topic_router import QueueSubscriber
from storage.trade_store import TradeStore


def build_supervisor(config: Settings) -> PipelineSupervisor:
    """Create a supervisor wired to the configured trade store."""
    return PipelineSupervisor(
        store=TradeStore(config.database_url, config.database_table),
        persistence_queue_size=config.persistence_queue_size,
        flush_timeout=config.persistence_flush_timeout,
    )


def create_app(
    supervisor: Optional[PipelineSupervisor] = None,
    pipeline_config: Optional[PipelineConfig] = None,
    config: Optional[Settings] = None
) -> FastAPI:
    """
    Build the FastAPI application.

    Args:
        supervisor: Pipeline supervisor to run (default: built from settings)
        pipeline_config: Exchanges to start (default: built from settings)
        config: Settings instance (default: global settings)
    """
    config = config or settings

    # ============================================
    # Lifespan Management
    # ============================================

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        """Start the pipeline on startup, tear it down on shutdown."""
        logger.info("=== Application Starting ===")
        validate_configuration(config)

        pipeline = supervisor or build_supervisor(config)
        app.state.supervisor = pipeline

        started = await pipeline.start(pipeline_config or build_pipeline_config(config))
        if started:
            logger.info("=== Started Successfully ===")
        else:
            # Not fatal: the API stays up and reports the pipeline as idle
            logger.error("=== Pipeline did not start; serving read endpoints only ===")

        yield

        logger.info("=== Shutting Down ===")
        await pipeline.shutdown()
        logger.info("=== Shutdown Complete ===")

    app = FastAPI(
        title="Trade Relay",
        description=(
            "Live cryptocurrency trade relay.\n\n"
            "## REST Endpoints\n"
            "- `GET /health` - Pipeline state\n"
            "- `GET /status` - Pipeline counters and stored trade counts\n"
            "- `GET /trades/{instrument}/{currency}` - Latest stored trades for a pair\n\n"
            "## WebSocket Streams\n"
            "Pattern: `ws://{host}/ws/{instrument}/{currency}` (e.g. `ws://localhost:8000/ws/btc/usd`)\n\n"
            "Payload: `{exchange, action, unit, price, sourcePair, destinationPair}`\n"
        ),
        version="1.0.0",
        lifespan=lifespan,
    )

    app.add_middleware(
        CORSMiddleware,
        allow_origins=config.cors_origins_list,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    # ============================================
    # System Endpoints
    # ============================================

    @app.get("/", tags=["System"])
    async def root():
        """API information."""
        return {
            "name": "Trade Relay",
            "websocket": "/ws/{instrument}/{currency}",
            "instruments": config.subscription_instruments_list,
            "docs": "/docs",
        }

    @app.get("/health", tags=["System"])
    async def health_check():
        """Pipeline state and the exchanges still producing."""
        pipeline: PipelineSupervisor = app.state.supervisor
        return {
            "status": "ok" if pipeline.state == PipelineState.RUNNING else "degraded",
            "state": pipeline.state.value,
            "exchanges": pipeline.list_running(),
        }

    @app.get("/status", tags=["System"])
    async def status():
        """Pipeline counters plus the number of stored trades per exchange."""
        pipeline: PipelineSupervisor = app.state.supervisor
        body = pipeline.status()
        try:
            body["stored"] = await pipeline.store.count_by_exchange()
        except PersistenceError as e:
            logger.warning(f"Stored counts unavailable: {e}")
            body["stored"] = None
        return body

    # ============================================
    # Stored Trades
    # ============================================

    @app.get("/trades/{instrument}/{currency}", response_model=List[StoredTrade], tags=["Trades"])
    async def latest_trades(
        instrument: str,
        currency: str,
        limit: int = Query(default=10, ge=1, le=500, description="Number of trades (newest first)")
    ):
        """
        Latest stored trades for a pair.

        Example:
            GET /trades/btc/usd?limit=5
        """
        pipeline: PipelineSupervisor = app.state.supervisor
        pair = f"{instrument.upper()}{PAIR_SEPARATOR}{currency.upper()}"
        try:
            return await pipeline.store.latest_trades(pair, limit)
        except PersistenceError as e:
            logger.error(f"Failed to read trades for {pair}: {e}")
            raise HTTPException(status_code=503, detail="Trade store unavailable")

    # ============================================
    # WebSocket Subscriptions
    # ============================================

    @app.websocket("/ws/{instrument}/{currency}")
    async def websocket_trades(websocket: WebSocket, instrument: str, currency: str):
        """
        Stream trades for one currency pair.

        The path is case-insensitive: /ws/btc/usd and /ws/BTC/USD share the
        topic /BTC/USD.
        """
        await websocket.accept()

        if instrument.upper() not in config.subscription_instruments_list:
            await websocket.close(code=1008, reason=f"Unsupported instrument: {instrument}")
            return

        pipeline: PipelineSupervisor = app.state.supervisor
        client = websocket.client
        name = f"{client.host}:{client.port}" if client else "client"
        subscriber = QueueSubscriber(name=name, max_queue_size=config.subscriber_queue_size)
        topic = pipeline.router.attach(topic_for(instrument, currency), subscriber)
        logger.info(f"WS subscribed: {name} -> {topic}")

        async def forward():
            while True:
                payload = await subscriber.receive()
                if payload is None:
                    return
                await websocket.send_json(payload)

        async def watch_client():
            # Clients never need to send; any frame is ignored until disconnect
            while True:
                await websocket.receive_text()

        sender = asyncio.create_task(forward(), name=f"ws_send_{name}")
        receiver = asyncio.create_task(watch_client(), name=f"ws_recv_{name}")
        try:
            done, pending = await asyncio.wait({sender, receiver}, return_when=asyncio.FIRST_COMPLETED)
            for task in pending:
                task.cancel()
            await asyncio.gather(*pending, return_exceptions=True)

            if sender in done and sender.exception() is None:
                # Subscriber was released (pipeline shut down)
                await websocket.close(code=1001, reason="Server shutting down")
            for task in done:
                error = task.exception()
                if error is not None and not isinstance(error, WebSocketDisconnect):
                    logger.warning(f"WS {name} ended with error: {error}")
        except WebSocketDisconnect:
            pass
        finally:
            pipeline.router.detach(subscriber)
            subscriber.close()
            logger.info(f"WS unsubscribed: {name} -> {topic}")

    # ============================================
    # Error Handlers
    # ============================================

    @app.exception_handler(404)
    async def not_found_handler(request, exc):
        """Handle 404 errors."""
        return JSONResponse(status_code=404, content={"detail": "Not found", "path": str(request.url)})

    @app.exception_handler(500)
    async def internal_error_handler(request, exc):
        """Handle 500 errors."""
        logger.error(f"Internal error: {exc}")
        return JSONResponse(status_code=500, content={"detail": "Internal server error"})

    return app


app = create_app()
