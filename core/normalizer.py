"""
Trade Normalizer

Converts a raw, untyped exchange event into the canonical Trade schema or an
explicit rejection reason. Nothing downstream of this module ever sees a raw
dict.

The function is pure: no I/O, no logging, no clock. The same input always
gives the same result, which is what the supervisor relies on to keep drop
accounting deterministic.

Expected raw shape (GDAX / Coinbase "ticker" channel):
    {
        "type": "ticker",
        "sequence": 42,
        "product_id": "BTC-USD",
        "side": "buy",
        "last_size": "0.5",
        "price": "9000.12",
        "time": "2020-01-01T00:00:00Z"
    }

Usage:
    result = normalize("gdax", raw)
    if result.ok:
        router.publish(result.trade.topic, result.trade)
    else:
        drops[result.reason] += 1
"""

import math
from decimal import Decimal, InvalidOperation
from typing import Any, NamedTuple, Optional

from pydantic import ValidationError

from core.schemas import PAIR_SEPARATOR, Trade, TradeSide
from core.utils.time import parse_exchange_time


TRADE_EVENT_TYPE = "ticker"

REQUIRED_FIELDS = ("sequence", "product_id", "side", "last_size", "price", "time")

# Rejection reasons
NOT_A_TRADE = "not_a_trade"
MISSING_FIELD = "missing_field"
INVALID_PAIR = "invalid_pair"
INVALID_SIDE = "invalid_side"
INVALID_QUANTITY = "invalid_quantity"
INVALID_PRICE = "invalid_price"
INVALID_TIME = "invalid_time"
INVALID_TRADE = "invalid_trade"


class NormalizeResult(NamedTuple):
    """Outcome of normalize(): either a trade or a rejection reason."""

    trade: Optional[Trade]
    reason: Optional[str] = None

    @property
    def ok(self) -> bool:
        return self.trade is not None


def _reject(reason: str) -> NormalizeResult:
    return NormalizeResult(trade=None, reason=reason)


def _is_empty(value: Any) -> bool:
    if value is None:
        return True
    if isinstance(value, str):
        return not value.strip()
    return False


def _parse_positive_decimal(value: Any) -> Optional[Decimal]:
    if isinstance(value, bool):
        return None
    try:
        number = Decimal(str(value).strip())
    except (InvalidOperation, ValueError):
        return None
    if not number.is_finite() or number <= 0:
        return None
    # Payload carries floats; the value must survive the conversion
    as_float = float(number)
    if not math.isfinite(as_float) or as_float == 0:
        return None
    return number


def split_pair(product_id: str) -> Optional[tuple]:
    """
    Split a pair identifier into its two uppercase legs.

    Returns:
        (source, destination) or None if the id does not have exactly two
        non-empty legs

    Example:
        >>> split_pair("btc-usd")
        ('BTC', 'USD')
        >>> split_pair("BTC-USD-X") is None
        True
    """
    legs = [leg.strip().upper() for leg in str(product_id).split(PAIR_SEPARATOR)]
    if len(legs) != 2 or not all(legs):
        return None
    return legs[0], legs[1]


def normalize(exchange: str, raw: Any) -> NormalizeResult:
    """
    Normalize one raw exchange event.

    Args:
        exchange: Source exchange identifier (e.g., "gdax")
        raw: Decoded message from the feed connection

    Returns:
        NormalizeResult: trade set when ok, reason set otherwise
            - "not_a_trade": not a mapping, or not a ticker event
            - "missing_field:<name>": a required field is missing or empty
            - "invalid_pair": pair does not split into two non-empty legs
            - "invalid_side": side is not buy/sell
            - "invalid_quantity" / "invalid_price": unparsable or non-positive
            - "invalid_time": unparsable exchange time

    Example:
        >>> result = normalize("gdax", {"type": "heartbeat", "sequence": 1})
        >>> result.ok, result.reason
        (False, 'not_a_trade')
    """
    if not isinstance(raw, dict) or raw.get("type") != TRADE_EVENT_TYPE:
        return _reject(NOT_A_TRADE)

    for field in REQUIRED_FIELDS:
        if _is_empty(raw.get(field)):
            return _reject(f"{MISSING_FIELD}:{field}")

    legs = split_pair(raw["product_id"])
    if legs is None:
        return _reject(INVALID_PAIR)
    source, destination = legs

    side = str(raw["side"]).strip().lower()
    if side not in (TradeSide.BUY.value, TradeSide.SELL.value):
        return _reject(INVALID_SIDE)

    quantity = _parse_positive_decimal(raw["last_size"])
    if quantity is None:
        return _reject(INVALID_QUANTITY)

    price = _parse_positive_decimal(raw["price"])
    if price is None:
        return _reject(INVALID_PRICE)

    try:
        exchange_timestamp = parse_exchange_time(raw["time"])
    except ValueError:
        return _reject(INVALID_TIME)

    try:
        trade = Trade(
            exchange=exchange,
            transaction_id=str(raw["sequence"]).strip(),
            pair=f"{source}{PAIR_SEPARATOR}{destination}",
            source_currency=source,
            destination_currency=destination,
            side=TradeSide(side),
            quantity=quantity,
            price=price,
            exchange_timestamp=exchange_timestamp,
        )
    except ValidationError:
        return _reject(INVALID_TRADE)

    return NormalizeResult(trade=trade)
