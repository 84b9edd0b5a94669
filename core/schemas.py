"""
Normalized Data Schemas

This module defines the Pydantic models for trade data moving through the
pipeline. Whatever exchange a trade comes from, it is normalized into the
Trade schema before it is published or stored.

Models:
    - TradeSide: Buy / sell enum
    - Trade: Canonical, immutable trade record
    - StoredTrade: A trade row as read back from the store (API responses)

Shapes:
    - Trade.to_payload(): JSON payload pushed to downstream subscribers
    - Trade.to_record(): Row written to the trade store
"""

from datetime import datetime
from decimal import Decimal
from enum import Enum
from typing import Any, Dict

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator


PAIR_SEPARATOR = "-"


def topic_for(source_currency: str, destination_currency: str) -> str:
    """
    Build the topic path for a currency pair.

    Example:
        >>> topic_for("btc", "usd")
        '/BTC/USD'
    """
    return f"/{source_currency.upper()}/{destination_currency.upper()}"


# ============================================
# Trade Side
# ============================================

class TradeSide(str, Enum):
    """Taker side of a trade."""

    BUY = "buy"
    SELL = "sell"


# ============================================
# Trade Schema
# ============================================

class Trade(BaseModel):
    """
    Canonical Trade Record

    Immutable once constructed. The natural key is
    (exchange, pair, transaction_id): the store uses it to make writes
    idempotent under redelivery.

    Attributes:
        exchange: Source exchange identifier (lowercase)
        transaction_id: Exchange-assigned sequence/id
        pair: Combined instrument code in uppercase (e.g., "BTC-USD")
        source_currency: First leg of the pair (e.g., "BTC")
        destination_currency: Second leg of the pair (e.g., "USD")
        side: TradeSide.BUY or TradeSide.SELL
        quantity: Amount traded (positive)
        price: Unit price (positive)
        exchange_timestamp: Trade time reported by the exchange (UTC)

    Example:
        >>> trade = Trade(
        ...     exchange="gdax",
        ...     transaction_id="42",
        ...     pair="BTC-USD",
        ...     source_currency="BTC",
        ...     destination_currency="USD",
        ...     side=TradeSide.BUY,
        ...     quantity=Decimal("0.5"),
        ...     price=Decimal("9000.12"),
        ...     exchange_timestamp=datetime(2020, 1, 1, tzinfo=timezone.utc),
        ... )
        >>> trade.topic
        '/BTC/USD'
    """

    exchange: str = Field(
        ...,
        min_length=1,
        description="Source exchange identifier (lowercase)",
        examples=["gdax"]
    )

    transaction_id: str = Field(
        ...,
        min_length=1,
        description="Exchange-assigned sequence, unique per exchange+pair stream"
    )

    pair: str = Field(
        ...,
        description="Combined instrument code in uppercase",
        examples=["BTC-USD", "ETH-USD"]
    )

    source_currency: str = Field(..., min_length=1, description="First leg of the pair")

    destination_currency: str = Field(..., min_length=1, description="Second leg of the pair")

    side: TradeSide = Field(..., description="Trade side: 'buy' or 'sell'")

    quantity: Decimal = Field(
        ...,
        gt=0,
        allow_inf_nan=False,
        description="Trade quantity in the source currency"
    )

    price: Decimal = Field(
        ...,
        gt=0,
        allow_inf_nan=False,
        description="Unit price in the destination currency"
    )

    exchange_timestamp: datetime = Field(..., description="Trade time reported by the exchange")

    model_config = ConfigDict(
        frozen=True,
        json_schema_extra={
            "example": {
                "exchange": "gdax",
                "transaction_id": "42",
                "pair": "BTC-USD",
                "source_currency": "BTC",
                "destination_currency": "USD",
                "side": "buy",
                "quantity": "0.5",
                "price": "9000.12",
                "exchange_timestamp": "2020-01-01T00:00:00Z"
            }
        }
    )

    @field_validator("exchange")
    @classmethod
    def validate_exchange(cls, v: str) -> str:
        """Ensure exchange is lowercase"""
        return v.lower()

    @field_validator("pair", "source_currency", "destination_currency")
    @classmethod
    def validate_uppercase(cls, v: str) -> str:
        """Ensure currency codes are uppercase"""
        return v.upper()

    @model_validator(mode="after")
    def validate_pair_legs(self) -> "Trade":
        """The pair must be exactly source-destination."""
        expected = f"{self.source_currency}{PAIR_SEPARATOR}{self.destination_currency}"
        if self.pair != expected:
            raise ValueError(f"pair '{self.pair}' does not match legs '{expected}'")
        return self

    # ============================================
    # Derived Shapes
    # ============================================

    @property
    def topic(self) -> str:
        """Topic path this trade is published on (e.g., '/BTC/USD')."""
        return topic_for(self.source_currency, self.destination_currency)

    def to_payload(self) -> Dict[str, Any]:
        """
        Payload pushed to downstream subscribers.

        Example:
            >>> trade.to_payload()
            {'exchange': 'gdax', 'action': 'buy', 'unit': 0.5, 'price': 9000.12,
             'sourcePair': 'BTC', 'destinationPair': 'USD'}
        """
        return {
            "exchange": self.exchange,
            "action": self.side.value,
            "unit": float(self.quantity),
            "price": float(self.price),
            "sourcePair": self.source_currency,
            "destinationPair": self.destination_currency,
        }

    def to_record(self) -> Dict[str, Any]:
        """Row written to the trade store."""
        return {
            "exchange": self.exchange,
            "transaction_id": self.transaction_id,
            "pair": self.pair,
            "sourcePair": self.source_currency,
            "destinationPair": self.destination_currency,
            "action": self.side.value,
            "unit": self.quantity,
            "price": self.price,
            "exchange_timestamp": self.exchange_timestamp,
        }


# ============================================
# Stored Trade (read side)
# ============================================

class StoredTrade(BaseModel):
    """
    A trade row as returned by the /trades endpoint.

    Field names follow the storage columns.
    """

    exchange: str
    transaction_id: str
    pair: str
    sourcePair: str
    destinationPair: str
    action: TradeSide
    unit: float
    price: float
    exchange_timestamp: datetime
