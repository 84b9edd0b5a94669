"""
Pipeline Error Taxonomy

Every failure the ingestion pipeline can contain or surface has a type here.
Callers decide the scope of a failure from its class:

    ConfigurationError   - one exchange entry is unusable; skip that exchange
    FeedConnectionError  - upstream transport cannot be established; abort that exchange
    SubscriptionError    - exchange rejected (or left empty) the instrument set; abort that exchange
    TradeValidationError - one message failed normalization; drop the message
    PersistenceError     - one write failed or the backend is down; drop the write
    DeliveryError        - one subscriber's transport failed; detach the subscriber
"""

from typing import Optional


class TradeRelayError(Exception):
    """Base class for all pipeline errors."""

    def __init__(self, message: str, exchange: Optional[str] = None):
        super().__init__(message)
        self.exchange = exchange


class ConfigurationError(TradeRelayError):
    """Missing or invalid configuration for one exchange."""


class FeedConnectionError(TradeRelayError, ConnectionError):
    """Upstream feed transport could not be established or was lost."""


class SubscriptionError(TradeRelayError):
    """Exchange rejected the subscription or no valid instruments remain."""


class TradeValidationError(TradeRelayError):
    """A raw message could not be normalized into a Trade."""

    def __init__(self, reason: str, exchange: Optional[str] = None):
        super().__init__(f"message rejected: {reason}", exchange=exchange)
        self.reason = reason


class PersistenceError(TradeRelayError):
    """A trade could not be written to the store."""


class DeliveryError(TradeRelayError):
    """A payload could not be delivered to a subscriber."""
