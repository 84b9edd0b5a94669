"""
Feed Registry - Factory for Upstream Feed Connections

This module maps exchange names to FeedConnection factories. The pipeline
supervisor asks the registry for a fresh connection per configured exchange;
an exchange without a registered feed is a per-exchange configuration skip,
not a startup failure.

Architecture Pattern:
    Registry/Factory:
    - FeedRegistry keeps name -> factory(feed_config) callables
    - The supervisor requests connections by exchange name
    - Every connection conforms to FeedConnection

Example Usage:
    registry = FeedRegistry()
    feed = registry.create("gdax", ExchangeFeedConfig(ws_feed="wss://...", currency=["BTC-USD"]))

    # Adding a new exchange:
    registry.register("kraken", lambda cfg: KrakenFeedConnection(rest_url=cfg.rest_url))
"""

from typing import Callable, Dict, List

from core.config import ExchangeFeedConfig
from core.errors import ConfigurationError
from core.feed_interface import FeedConnection
from core.logging import logger


FeedFactory = Callable[[ExchangeFeedConfig], FeedConnection]


class FeedRegistry:
    """
    Registry of feed connection factories.

    Attributes:
        factories: Dictionary mapping exchange names to factories
                   Example: {"gdax": <factory>}
    """

    def __init__(self, register_defaults: bool = True):
        """
        Args:
            register_defaults: Register the built-in exchange feeds (default: True)
        """
        self.factories: Dict[str, FeedFactory] = {}

        if register_defaults:
            # Exchange modules import from core, so import lazily
            from exchanges.gdax import GdaxFeedConnection

            self.register("gdax", lambda cfg: GdaxFeedConnection(rest_url=cfg.rest_url))

    def register(self, name: str, factory: FeedFactory) -> None:
        """Register (or replace) the factory for an exchange."""
        self.factories[name.lower()] = factory
        logger.debug(f"Registered feed factory: {name.lower()}")

    def has_feed(self, name: str) -> bool:
        """Check if an exchange has a registered feed (case-insensitive)."""
        return name.lower() in self.factories

    def list_feeds(self) -> List[str]:
        """Names of all registered exchanges."""
        return list(self.factories.keys())

    def create(self, name: str, feed_config: ExchangeFeedConfig) -> FeedConnection:
        """
        Create a new feed connection for an exchange.

        Args:
            name: Exchange name (case-insensitive)
            feed_config: The exchange's feed configuration

        Returns:
            FeedConnection: A new, unconnected feed connection

        Raises:
            ConfigurationError: If no feed is registered for the exchange
        """
        name = name.lower()
        if name not in self.factories:
            available = ", ".join(self.factories.keys()) or "none"
            raise ConfigurationError(
                f"Exchange '{name}' not implemented. Available feeds: {available}",
                exchange=name
            )
        return self.factories[name](feed_config)

    def __repr__(self) -> str:
        return f"<FeedRegistry(feeds={self.list_feeds()})>"

    def __len__(self) -> int:
        return len(self.factories)
