"""Async SQL trade storage using SQLAlchemy."""

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from sqlalchemy import Column, DateTime, MetaData, Numeric, String, Table, func, insert, select
from sqlalchemy.dialects import postgresql, sqlite
from sqlalchemy.exc import IntegrityError, SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncEngine, create_async_engine

from core.errors import PersistenceError
from core.logging import get_logger
from core.schemas import Trade


def build_trades_table(metadata: MetaData, name: str = "market_trades") -> Table:
    """One row per trade; the primary key (exchange, pair, transaction_id) is the natural key."""
    return Table(
        name,
        metadata,
        Column("exchange", String(32), primary_key=True),
        Column("pair", String(32), primary_key=True),
        Column("transaction_id", String(64), primary_key=True),
        Column("sourcePair", String(16), nullable=False),
        Column("destinationPair", String(16), nullable=False),
        Column("action", String(4), nullable=False),
        Column("unit", Numeric(38, 18), nullable=False),
        Column("price", Numeric(38, 18), nullable=False),
        Column("exchange_timestamp", DateTime(timezone=True), nullable=False, index=True),
    )


def _normalise_ts(ts: datetime) -> datetime:
    if ts.tzinfo is None:
        return ts.replace(tzinfo=timezone.utc)
    return ts


class TradeStore:
    """
    Append-only trade table behind an async SQLAlchemy engine.

    Writes are idempotent: re-writing a stored (exchange, pair, transaction_id)
    is a no-op reported as a duplicate. Works with any async URL; SQLite and
    Postgres use ON CONFLICT DO NOTHING, other backends fall back to catching
    the integrity error.
    """

    def __init__(self, database_url: str, table_name: str = "market_trades") -> None:
        self.database_url = database_url
        self.metadata = MetaData()
        self.table = build_trades_table(self.metadata, table_name)
        self._engine: Optional[AsyncEngine] = None
        self._logger = get_logger(__name__)

    @property
    def connected(self) -> bool:
        return self._engine is not None

    async def connect(self) -> None:
        """
        Create the engine and the trades table if missing.

        Raises:
            PersistenceError: If the backend is unreachable
        """
        if self._engine is not None:
            return
        try:
            engine = create_async_engine(self.database_url, echo=False)
            async with engine.begin() as conn:
                await conn.run_sync(self.metadata.create_all)
        except (SQLAlchemyError, OSError) as exc:
            raise PersistenceError(f"could not open trade store: {exc}") from exc
        self._engine = engine
        self._logger.info(f"Trade store ready (table={self.table.name}, dialect={engine.dialect.name})")

    def _insert_ignoring_duplicates(self, row: Dict[str, Any]):
        dialect = self._engine.dialect.name
        if dialect == "sqlite":
            return sqlite.insert(self.table).values(**row).on_conflict_do_nothing()
        if dialect == "postgresql":
            return postgresql.insert(self.table).values(**row).on_conflict_do_nothing()
        return None

    async def write(self, trade: Trade) -> bool:
        """
        Store one trade.

        Returns:
            True if a row was inserted, False if the trade was already stored

        Raises:
            PersistenceError: If the store is not connected or the write failed
        """
        if self._engine is None:
            raise PersistenceError("trade store is not connected", exchange=trade.exchange)

        row = trade.to_record()
        stmt = self._insert_ignoring_duplicates(row)
        try:
            async with self._engine.begin() as conn:
                if stmt is not None:
                    result = await conn.execute(stmt)
                    return result.rowcount == 1
                try:
                    await conn.execute(insert(self.table).values(**row))
                except IntegrityError:
                    return False
                return True
        except SQLAlchemyError as exc:
            raise PersistenceError(f"write failed for {trade.pair}#{trade.transaction_id}: {exc}",
                                   exchange=trade.exchange) from exc

    async def count_by_exchange(self) -> Dict[str, int]:
        """Number of stored trades per exchange."""
        if self._engine is None:
            raise PersistenceError("trade store is not connected")
        stmt = select(self.table.c.exchange, func.count()).group_by(self.table.c.exchange)
        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(stmt)
                return {exchange: int(count) for exchange, count in result.all()}
        except SQLAlchemyError as exc:
            raise PersistenceError(f"count failed: {exc}") from exc

    async def latest_trades(self, pair: str, limit: int = 10) -> List[Dict[str, Any]]:
        """
        Most recent stored trades for a pair, newest first.

        Args:
            pair: Combined instrument code (e.g., "BTC-USD")
            limit: Maximum rows to return
        """
        if self._engine is None:
            raise PersistenceError("trade store is not connected")
        stmt = (
            select(self.table)
            .where(self.table.c.pair == pair.upper())
            .order_by(self.table.c.exchange_timestamp.desc(), self.table.c.transaction_id.desc())
            .limit(limit)
        )
        try:
            async with self._engine.connect() as conn:
                result = await conn.execute(stmt)
                rows = [dict(row._mapping) for row in result.all()]
        except SQLAlchemyError as exc:
            raise PersistenceError(f"query failed: {exc}") from exc

        for row in rows:
            row["exchange_timestamp"] = _normalise_ts(row["exchange_timestamp"])
        return rows

    async def close(self) -> None:
        """Dispose the engine. Idempotent."""
        if self._engine is None:
            return
        engine, self._engine = self._engine, None
        await engine.dispose()
        self._logger.debug("Trade store closed")
