"""
Unit Tests for the Trade Schemas

Run with:
    pytest tests/unit/test_schemas.py -v
"""

from datetime import datetime, timezone
from decimal import Decimal

import pytest
from pydantic import ValidationError

from core.schemas import StoredTrade, Trade, TradeSide, topic_for


def build_trade(**overrides) -> Trade:
    fields = dict(
        exchange="gdax",
        transaction_id="42",
        pair="BTC-USD",
        source_currency="BTC",
        destination_currency="USD",
        side=TradeSide.BUY,
        quantity=Decimal("0.5"),
        price=Decimal("9000.12"),
        exchange_timestamp=datetime(2020, 1, 1, tzinfo=timezone.utc),
    )
    fields.update(overrides)
    return Trade(**fields)


class TestTradeSchema:
    """Test Trade construction and validation"""

    def test_case_is_normalized(self):
        trade = build_trade(exchange="GDAX", pair="btc-usd", source_currency="btc", destination_currency="usd")
        assert trade.exchange == "gdax"
        assert trade.pair == "BTC-USD"
        assert trade.source_currency == "BTC"
        assert trade.destination_currency == "USD"

    def test_trade_is_immutable(self):
        trade = build_trade()
        with pytest.raises(ValidationError):
            trade.price = Decimal("1")

    def test_pair_must_match_legs(self):
        with pytest.raises(ValidationError):
            build_trade(pair="ETH-USD")

    @pytest.mark.parametrize("field", ["quantity", "price"])
    @pytest.mark.parametrize("value", [Decimal("0"), Decimal("-1"), Decimal("NaN")])
    def test_amounts_must_be_positive(self, field, value):
        with pytest.raises(ValidationError):
            build_trade(**{field: value})

    def test_empty_transaction_id_rejected(self):
        with pytest.raises(ValidationError):
            build_trade(transaction_id="")


class TestDerivedShapes:
    """Test topic, payload and record shapes"""

    def test_topic(self):
        assert build_trade().topic == "/BTC/USD"
        assert topic_for("eth", "Usd") == "/ETH/USD"

    def test_payload_uses_numbers(self):
        payload = build_trade(side=TradeSide.SELL).to_payload()
        assert payload["action"] == "sell"
        assert isinstance(payload["unit"], float)
        assert isinstance(payload["price"], float)
        assert set(payload) == {"exchange", "action", "unit", "price", "sourcePair", "destinationPair"}

    def test_record_keeps_exact_amounts(self):
        record = build_trade().to_record()
        assert record["unit"] == Decimal("0.5")
        assert record["price"] == Decimal("9000.12")
        assert record["transaction_id"] == "42"
        assert record["pair"] == "BTC-USD"
        assert record["exchange_timestamp"].tzinfo is not None

    def test_record_validates_as_stored_trade(self):
        stored = StoredTrade(**build_trade().to_record())
        assert stored.action == TradeSide.BUY
        assert stored.unit == 0.5
