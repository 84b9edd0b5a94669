"""
GDAX (Coinbase Exchange) WebSocket Feed Connection

This module implements FeedConnection for the GDAX / Coinbase Exchange
WebSocket feed. It handles:
- Reconciling configured instruments against the advertised product list
- WebSocket connection and the ticker channel subscription
- Waiting for the subscription acknowledgement (or rejection)
- Message decoding (JSON) and error surfacing
- Unsubscribe and graceful close

Channel:
    ticker - one message per match:
        {"type": "ticker", "sequence": 42, "product_id": "BTC-USD",
         "side": "buy", "last_size": "0.5", "price": "9000.12",
         "time": "2020-01-01T00:00:00.000000Z", ...}

WebSocket Documentation:
    https://docs.cdp.coinbase.com/exchange/docs/websocket-overview

Usage:
    feed = GdaxFeedConnection()
    await feed.connect("wss://ws-feed.exchange.coinbase.com", ["BTC-USD", "ETH-USD"])
    async for raw in feed.messages():
        print(raw["type"])
    await feed.close()
"""

import aiohttp
import asyncio
import json
from typing import Any, AsyncIterator, Dict, List, Optional, Sequence, Tuple

from core.errors import FeedConnectionError, SubscriptionError
from core.feed_interface import FeedConnection, FeedError
from core.logging import get_logger, log_pipeline_error, log_websocket_event
from .api_client import GdaxAPIClient


class GdaxFeedConnection(FeedConnection):
    """
    One streaming session with the GDAX WebSocket feed.

    Attributes:
        name: "gdax"
        CHANNELS: Channels subscribed for every instrument
        rest_url: REST base URL used for the product list
        session: aiohttp ClientSession owning the WebSocket
        ws: Active WebSocket connection

    Notes:
        - No automatic reconnection; a lost transport ends messages()
        - close() is idempotent and unsubscribes before releasing the socket
        - Messages that arrive before the subscription acknowledgement are
          buffered and yielded first by messages()
    """

    name = "gdax"
    CHANNELS = ["ticker"]

    def __init__(
        self,
        rest_url: Optional[str] = None,
        heartbeat: float = 30.0,
        connect_timeout: float = 10.0,
        subscribe_timeout: float = 10.0
    ):
        """
        Args:
            rest_url: REST base URL for the product list (default: GdaxAPIClient.BASE_URL)
            heartbeat: WebSocket ping interval in seconds
            connect_timeout: Seconds allowed to open the WebSocket
            subscribe_timeout: Seconds allowed for the subscription acknowledgement
        """
        self.rest_url = rest_url
        self.heartbeat = heartbeat
        self.connect_timeout = connect_timeout
        self.subscribe_timeout = subscribe_timeout

        self.session: Optional[aiohttp.ClientSession] = None
        self.ws: Optional[aiohttp.ClientWebSocketResponse] = None
        self._subscriptions: Tuple[str, ...] = ()
        self._pending: List[Dict[str, Any]] = []
        self._errors: asyncio.Queue = asyncio.Queue()
        self._errors_ended = False
        self._closed = False

        self.logger = get_logger(__name__)

    @property
    def subscriptions(self) -> Tuple[str, ...]:
        return self._subscriptions

    # ============================================
    # Connect & Subscribe
    # ============================================

    async def fetch_products(self) -> List[str]:
        """
        Fetch the product ids advertised by the exchange.

        Raises:
            FeedConnectionError: If the REST API is unreachable
        """
        try:
            async with GdaxAPIClient(self.rest_url) as client:
                return await client.get_products()
        except (RuntimeError, aiohttp.ClientError, asyncio.TimeoutError) as e:
            raise FeedConnectionError(f"could not list products: {e}", exchange=self.name) from e

    async def connect(self, endpoint: str, instruments: Sequence[str]) -> None:
        """
        Connect to the feed and subscribe to the ticker channel.

        Raises:
            FeedConnectionError: Connection already closed, REST or WebSocket unreachable
            SubscriptionError: No configured instrument is advertised, or the
                exchange rejected the subscription
        """
        if self._closed:
            raise FeedConnectionError("connection already closed", exchange=self.name)
        if self.ws is not None:
            raise FeedConnectionError("already connected", exchange=self.name)

        configured = []
        for instrument in instruments:
            instrument = str(instrument).strip().upper()
            if instrument and instrument not in configured:
                configured.append(instrument)

        advertised = set(await self.fetch_products())
        valid = [instrument for instrument in configured if instrument in advertised]
        if not valid:
            raise SubscriptionError(
                f"none of the configured instruments are offered: {', '.join(configured) or 'none'}",
                exchange=self.name
            )

        skipped = [instrument for instrument in configured if instrument not in advertised]
        if skipped:
            self.logger.warning(f"Skipping instruments not offered by {self.name}: {', '.join(skipped)}")

        self.session = aiohttp.ClientSession()
        self.logger.info(f"Connecting to {endpoint}")
        try:
            self.ws = await asyncio.wait_for(
                self.session.ws_connect(endpoint, heartbeat=self.heartbeat),
                timeout=self.connect_timeout
            )
            await self.ws.send_json(self._subscription_message("subscribe", valid))
        except (aiohttp.ClientError, asyncio.TimeoutError, OSError) as e:
            await self._release()
            raise FeedConnectionError(f"could not connect to {endpoint}: {e}", exchange=self.name) from e

        try:
            await self._await_subscription_ack()
        except SubscriptionError:
            await self._release()
            raise

        self._subscriptions = tuple(valid)
        log_websocket_event(self.name, "subscribed", ",".join(valid), f"channels={','.join(self.CHANNELS)}")

    def _subscription_message(self, action: str, product_ids: Sequence[str]) -> Dict[str, Any]:
        return {
            "type": action,
            "product_ids": list(product_ids),
            "channels": list(self.CHANNELS),
        }

    async def _await_subscription_ack(self) -> None:
        """
        Read frames until the exchange confirms or rejects the subscription.

        Data frames that arrive first are buffered for messages().

        Raises:
            SubscriptionError: Rejection, closed socket, or no answer in time
        """
        loop = asyncio.get_running_loop()
        deadline = loop.time() + self.subscribe_timeout

        while True:
            remaining = deadline - loop.time()
            if remaining <= 0:
                raise SubscriptionError("no subscription acknowledgement received", exchange=self.name)

            try:
                msg = await self.ws.receive(timeout=remaining)
            except asyncio.TimeoutError:
                raise SubscriptionError("no subscription acknowledgement received", exchange=self.name)

            if msg.type != aiohttp.WSMsgType.TEXT:
                raise SubscriptionError(
                    f"feed closed before acknowledging subscription ({msg.type})", exchange=self.name
                )

            try:
                data = json.loads(msg.data)
            except json.JSONDecodeError:
                self._report("decode", f"undecodable frame: {str(msg.data)[:100]}")
                continue

            if not isinstance(data, dict):
                self._pending.append(data)
                continue

            if data.get("type") == "subscriptions":
                return
            if data.get("type") == "error":
                reason = data.get("reason") or data.get("message") or "unknown"
                raise SubscriptionError(f"subscription rejected: {reason}", exchange=self.name)

            self._pending.append(data)

    # ============================================
    # Message & Error Sequences
    # ============================================

    async def messages(self) -> AsyncIterator[Dict[str, Any]]:
        """
        Yield decoded messages until the connection closes.

        Message Types:
            - WSMsgType.TEXT: JSON data (yielded; undecodable frames reported)
            - CLOSE/CLOSING/CLOSED: aiohttp stops the iteration, ending the sequence
            - WSMsgType.ERROR: reported as fatal, ends the sequence
        """
        if self.ws is None:
            return

        while self._pending:
            yield self._pending.pop(0)

        failed = False
        try:
            async for msg in self.ws:
                if msg.type == aiohttp.WSMsgType.TEXT:
                    try:
                        data = json.loads(msg.data)
                    except json.JSONDecodeError:
                        self._report("decode", f"undecodable frame: {str(msg.data)[:100]}")
                        continue
                    yield data

                elif msg.type == aiohttp.WSMsgType.ERROR:
                    self._report("transport", f"websocket error: {self.ws.exception() or msg.data}", fatal=True)
                    failed = True
                    break

                else:
                    self.logger.debug(f"Received message type: {msg.type}")

        except (aiohttp.ClientError, OSError, RuntimeError) as e:
            self._report("transport", str(e), fatal=True)
            failed = True

        # Ended without close(): the transport is gone
        if not self._closed:
            if not failed:
                self._report("disconnected", "feed closed by remote end", fatal=True)
            log_websocket_event(self.name, "disconnected", ",".join(self._subscriptions))
            self._end_errors()

    async def errors(self) -> AsyncIterator[FeedError]:
        """Yield FeedError values until the connection is closed."""
        while True:
            error = await self._errors.get()
            if error is None:
                return
            yield error

    def _report(self, kind: str, message: str, fatal: bool = False) -> None:
        if self._errors_ended:
            return
        self._errors.put_nowait(FeedError(exchange=self.name, kind=kind, message=message, fatal=fatal))

    def _end_errors(self) -> None:
        if not self._errors_ended:
            self._errors_ended = True
            self._errors.put_nowait(None)

    # ============================================
    # Close
    # ============================================

    async def close(self) -> None:
        """
        Unsubscribe and release the WebSocket and HTTP session.

        Notes:
            - Safe to call multiple times
            - Safe to call if connect() never succeeded
            - A failed unsubscribe is logged; the transport is still released
        """
        if self._closed:
            return
        self._closed = True

        if self.ws is not None and not self.ws.closed and self._subscriptions:
            try:
                await self.ws.send_json(self._subscription_message("unsubscribe", self._subscriptions))
                log_websocket_event(self.name, "unsubscribed", ",".join(self._subscriptions))
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                log_pipeline_error("feed", e, exchange=self.name)

        self._subscriptions = ()
        self._pending.clear()
        await self._release()
        self._end_errors()
        self.logger.debug(f"Feed connection closed for {self.name}")

    async def _release(self) -> None:
        if self.ws is not None and not self.ws.closed:
            try:
                await self.ws.close()
            except (aiohttp.ClientError, ConnectionError, RuntimeError) as e:
                log_pipeline_error("feed", e, exchange=self.name)

        if self.session is not None and not self.session.closed:
            await self.session.close()
