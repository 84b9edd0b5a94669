"""
GDAX (Coinbase Exchange) REST API Client

This module provides an async HTTP client for the public GDAX / Coinbase
Exchange REST API. The pipeline only needs one endpoint from it: the product
list, used to reconcile configured instruments against the instruments the
exchange actually advertises before subscribing.

It handles:
- HTTP requests with retry logic
- Rate limit handling (429, 503 errors)
- Error logging

API Documentation:
    https://docs.cdp.coinbase.com/exchange/reference/exchangerestapi_getproducts

Usage:
    async with GdaxAPIClient() as client:
        product_ids = await client.get_products()
"""

import aiohttp
import asyncio
import time
from typing import Any, Dict, List, Optional
from core.logging import get_logger, log_api_request, log_api_response


class GdaxAPIClient:
    """
    Async HTTP client for the GDAX / Coinbase Exchange public REST API.

    Attributes:
        BASE_URL: Default REST base URL
        base_url: REST base URL in use (overridable per exchange config)
        session: aiohttp ClientSession for HTTP requests
        logger: Logger instance

    Example:
        >>> async with GdaxAPIClient() as client:
        ...     products = await client.get_products()
        ...     print(products[:2])
        ['BTC-USD', 'ETH-USD']
    """

    BASE_URL = "https://api.exchange.coinbase.com"
    MAX_ATTEMPTS = 3

    def __init__(self, base_url: Optional[str] = None):
        """
        Initialize the API client.

        Args:
            base_url: REST base URL (defaults to BASE_URL)
        """
        self.base_url = (base_url or self.BASE_URL).rstrip("/")
        self.logger = get_logger(__name__)
        self.session: Optional[aiohttp.ClientSession] = None

    # ============================================
    # Context Manager for Session Management
    # ============================================

    async def __aenter__(self):
        self.session = aiohttp.ClientSession()
        self.logger.debug("GdaxAPIClient session created")
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        if self.session:
            await self.session.close()
            self.logger.debug("GdaxAPIClient session closed")

    # ============================================
    # HTTP Request Handler with Retry Logic
    # ============================================

    async def _get(self, path: str, params: Optional[Dict[str, Any]] = None) -> Any:
        """
        Make GET request with retry logic.

        Args:
            path: API endpoint path (e.g., "/products")
            params: Optional query parameters

        Returns:
            JSON response from API

        Raises:
            RuntimeError: If session is missing or the request fails after all retries

        Retry Policy:
            - 429 / 503: retry after 1.5s * attempt
            - Timeouts and transport errors: retry after 1.0s * attempt
            - Other HTTP errors: give up immediately
        """
        if not self.session:
            raise RuntimeError("Client session not initialized. Use 'async with' statement.")

        url = f"{self.base_url}{path}"
        # Coinbase rejects requests without a User-Agent
        headers = {"Content-Type": "application/json", "User-Agent": "trade-relay"}

        for attempt in range(self.MAX_ATTEMPTS):
            log_api_request("gdax", path, params)
            started = time.monotonic()
            try:
                async with self.session.get(
                    url,
                    params=params,
                    headers=headers,
                    timeout=aiohttp.ClientTimeout(total=10)
                ) as resp:
                    log_api_response("gdax", path, resp.status, time.monotonic() - started)

                    if resp.status == 200:
                        return await resp.json()

                    elif resp.status in (429, 503):
                        delay = 1.5 * (attempt + 1)
                        self.logger.warning(
                            f"Rate limited (HTTP {resp.status}) on {path}. "
                            f"Retrying in {delay:.1f}s... (attempt {attempt + 1}/{self.MAX_ATTEMPTS})"
                        )
                        await asyncio.sleep(delay)
                        continue

                    else:
                        text = await resp.text()
                        self.logger.error(f"HTTP {resp.status} on {path}: {text}")
                        break

            except asyncio.TimeoutError:
                self.logger.error(f"Timeout on {path} (attempt {attempt + 1}/{self.MAX_ATTEMPTS})")
                await asyncio.sleep(1.0 * (attempt + 1))

            except aiohttp.ClientError as e:
                self.logger.error(f"Request failed on {path}: {e} (attempt {attempt + 1}/{self.MAX_ATTEMPTS})")
                await asyncio.sleep(1.0 * (attempt + 1))

        raise RuntimeError(f"Failed to fetch {url} after {self.MAX_ATTEMPTS} attempts")

    # ============================================
    # API Methods
    # ============================================

    async def get_products(self) -> List[str]:
        """
        Fetch the instrument ids advertised by the exchange.

        Returns:
            List of product ids in uppercase (e.g., ["BTC-USD", "ETH-USD"]).
            Entries without an id are skipped.

        Raises:
            RuntimeError: If the request fails

        Endpoint:
            GET /products

        Response Format:
            [
              {"id": "BTC-USD", "base_currency": "BTC", "quote_currency": "USD", ...},
              ...
            ]
        """
        data = await self._get("/products")

        if not isinstance(data, list):
            raise RuntimeError(f"Unexpected /products response type: {type(data).__name__}")

        products = []
        for entry in data:
            if isinstance(entry, dict) and entry.get("id"):
                products.append(str(entry["id"]).upper())

        self.logger.debug(f"Exchange advertises {len(products)} products")
        return products
