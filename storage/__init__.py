"""
Storage Package

Handles durable persistence of normalized trades.

Current implementation:
- TradeStore: SQLAlchemy async engine (SQLite by default, Postgres supported)
  with idempotent writes keyed on (exchange, pair, transaction_id)

The pipeline never writes here directly: trades reach the store through
services.persistence_sink.PersistenceSink, which keeps storage latency off
the fan-out path.
"""

from storage.trade_store import TradeStore

__all__ = ["TradeStore"]
