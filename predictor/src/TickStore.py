"""TickStore: Time-series persistence for trades, price bins and oracle state.

Six tables back the predictor:

- ``cex_ticks``: raw trade prints (append-only)
- ``cex_src_100ms``: per-source 100ms bin medians (upserted)
- ``cex_agg_100ms``: cross-source 100ms aggregate (upserted)
- ``oracle_pred_config``: per-oracle thresholds and calibrated lag
- ``oracle_cex_weights``: per-oracle exchange weights
- ``oracle_pred_samples``: on-chain answers paired with CEX prices

The store is injected into every component; there is no module-level
connection. Threshold and fixed-point columns are integer or text so no
floating rounding enters threshold comparisons.

.. code-block:: python

    store = TickStore("sqlite:///predictor.db")
    store.create_tables()
    store.insert_trades([Trade("binance", "BTCUSDC", 1_700_000_000_000, 65000.0)])
"""

from __future__ import annotations

import logging
import time
from collections.abc import Iterator
from contextlib import contextmanager

from sqlalchemy import (
    BigInteger,
    Float,
    Index,
    Integer,
    Numeric,
    String,
    UniqueConstraint,
    create_engine,
    delete,
    func,
    insert,
    select,
)
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import DeclarativeBase, Mapped, Session, mapped_column, sessionmaker
from sqlalchemy.pool import StaticPool

from .Records import AggregateBin, OracleConfig, OracleSample, SourceBin, Trade

logger = logging.getLogger(__name__)

# Exact decimal on Postgres, returned to Python as float.
PriceColumn = Numeric(38, 18, asdecimal=False)


def _now_ms() -> int:
    return int(time.time() * 1000)


class Base(DeclarativeBase):
    """Declarative base for all predictor tables."""


class CexTickRow(Base):
    __tablename__ = "cex_ticks"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    source: Mapped[str] = mapped_column(String(32))
    symbol: Mapped[str] = mapped_column(String(32))
    ts_ms: Mapped[int] = mapped_column(BigInteger)
    price: Mapped[float] = mapped_column(PriceColumn)

    __table_args__ = (
        Index("idx_cex_ticks_symbol_ts", "symbol", "ts_ms"),
        Index("idx_cex_ticks_symbol_source_ts", "symbol", "source", "ts_ms"),
    )


class SourceBinRow(Base):
    __tablename__ = "cex_src_100ms"

    symbol: Mapped[str] = mapped_column(String(32), primary_key=True)
    source: Mapped[str] = mapped_column(String(32), primary_key=True)
    ts_ms: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    price: Mapped[float] = mapped_column(PriceColumn)


class AggregateBinRow(Base):
    __tablename__ = "cex_agg_100ms"

    symbol: Mapped[str] = mapped_column(String(32), primary_key=True)
    ts_ms: Mapped[int] = mapped_column(BigInteger, primary_key=True)
    price: Mapped[float] = mapped_column(PriceColumn)


class OracleConfigRow(Base):
    __tablename__ = "oracle_pred_config"

    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    oracle_addr: Mapped[str] = mapped_column(String(42), primary_key=True)
    heartbeat_seconds: Mapped[int] = mapped_column(Integer)
    deviation_bps: Mapped[int] = mapped_column(Integer)
    decimals: Mapped[int] = mapped_column(Integer)
    # Decimal string: scale factors reach 1e36 and must stay exact.
    scale_factor: Mapped[str] = mapped_column(String(80))
    lag_seconds: Mapped[int] = mapped_column(Integer, default=0)
    updated_at_ms: Mapped[int] = mapped_column(BigInteger, default=_now_ms)

    def to_record(self) -> OracleConfig:
        return OracleConfig(
            chain_id=self.chain_id,
            oracle_addr=self.oracle_addr,
            heartbeat_seconds=self.heartbeat_seconds,
            deviation_bps=self.deviation_bps,
            decimals=self.decimals,
            scale_factor=int(self.scale_factor),
            lag_seconds=self.lag_seconds,
        )


class CexWeightRow(Base):
    __tablename__ = "oracle_cex_weights"

    chain_id: Mapped[int] = mapped_column(Integer, primary_key=True)
    oracle_addr: Mapped[str] = mapped_column(String(42), primary_key=True)
    source: Mapped[str] = mapped_column(String(32), primary_key=True)
    weight: Mapped[float] = mapped_column(PriceColumn)
    updated_at_ms: Mapped[int] = mapped_column(BigInteger, default=_now_ms)


class OracleSampleRow(Base):
    __tablename__ = "oracle_pred_samples"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    chain_id: Mapped[int] = mapped_column(Integer)
    oracle_addr: Mapped[str] = mapped_column(String(42))
    block_number: Mapped[int] = mapped_column(BigInteger)
    tx_hash: Mapped[str] = mapped_column(String(66))
    answer: Mapped[float] = mapped_column(PriceColumn)
    cex_price: Mapped[float] = mapped_column(PriceColumn)
    event_ts: Mapped[int | None] = mapped_column(BigInteger, nullable=True)
    error_bps: Mapped[int] = mapped_column(Integer)
    created_at_ms: Mapped[int] = mapped_column(BigInteger, default=_now_ms)

    __table_args__ = (
        UniqueConstraint("chain_id", "oracle_addr", "tx_hash", name="uq_sample_tx"),
        Index("idx_oracle_samples_addr_ts", "oracle_addr", "event_ts"),
    )

    def to_record(self) -> OracleSample:
        return OracleSample(
            chain_id=self.chain_id,
            oracle_addr=self.oracle_addr,
            block_number=self.block_number,
            tx_hash=self.tx_hash,
            answer=float(self.answer),
            cex_price=float(self.cex_price),
            event_ts=self.event_ts,
            error_bps=self.error_bps,
        )


class TickStore:
    """Handle to the predictor database.

    :ivar engine: SQLAlchemy engine.
    """

    def __init__(self, database_url: str) -> None:
        """Create the engine and session factory.

        :param database_url: SQLAlchemy URL. ``sqlite://`` (in-memory) shares
            one connection across threads so tests see a single database.
        """
        if database_url in ("sqlite://", "sqlite:///:memory:"):
            self.engine = create_engine(
                database_url,
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )
        elif database_url.startswith("sqlite"):
            self.engine = create_engine(
                database_url, connect_args={"check_same_thread": False}
            )
        else:
            self.engine = create_engine(
                database_url, pool_size=10, max_overflow=20, pool_pre_ping=True
            )
        self._session_factory = sessionmaker(
            bind=self.engine, autoflush=False, expire_on_commit=False
        )

    def create_tables(self) -> None:
        """Create all tables if they do not exist."""
        Base.metadata.create_all(self.engine)
        logger.info("Database tables ready")

    def close(self) -> None:
        self.engine.dispose()

    @contextmanager
    def session(self) -> Iterator[Session]:
        """Transactional session: commit on success, rollback and re-raise on error."""
        session = self._session_factory()
        try:
            yield session
            session.commit()
        except Exception as e:
            session.rollback()
            logger.debug(f"Database error, rolled back: {e}")
            raise
        finally:
            session.close()

    # ------------------------------------------------------------------
    # Raw trades
    # ------------------------------------------------------------------

    def insert_trades(self, trades: list[Trade]) -> None:
        """Insert trades in one multi-row statement.

        :raises sqlalchemy.exc.SQLAlchemyError: If any row is rejected; nothing
            from the batch is kept in that case.
        """
        if not trades:
            return
        with self.session() as s:
            s.execute(
                insert(CexTickRow),
                [
                    {
                        "source": t.source,
                        "symbol": t.symbol,
                        "ts_ms": t.timestamp_ms,
                        "price": t.price,
                    }
                    for t in trades
                ],
            )

    def insert_trade(self, trade: Trade) -> None:
        """Insert a single trade."""
        self.insert_trades([trade])

    def has_trades(self, symbol: str) -> bool:
        """Check whether any trade exists for a symbol."""
        with self.session() as s:
            row = s.execute(
                select(CexTickRow.id).where(CexTickRow.symbol == symbol).limit(1)
            ).first()
        return row is not None

    def trades_between(
        self,
        symbol: str,
        start_ms: int,
        end_ms: int,
        source: str | None = None,
    ) -> list[Trade]:
        """Trades with ``start_ms <= ts < end_ms``, oldest first."""
        stmt = select(CexTickRow).where(
            CexTickRow.symbol == symbol,
            CexTickRow.ts_ms >= start_ms,
            CexTickRow.ts_ms < end_ms,
        )
        if source is not None:
            stmt = stmt.where(CexTickRow.source == source)
        with self.session() as s:
            rows = s.scalars(stmt.order_by(CexTickRow.ts_ms)).all()
            return [Trade(r.source, r.symbol, r.ts_ms, float(r.price)) for r in rows]

    def recent_tick_counts(self, since_ms: int) -> list[dict]:
        """Trade counts per (symbol, source) since a timestamp."""
        stmt = (
            select(CexTickRow.symbol, CexTickRow.source, func.count())
            .where(CexTickRow.ts_ms > since_ms)
            .group_by(CexTickRow.symbol, CexTickRow.source)
            .order_by(CexTickRow.symbol, CexTickRow.source)
        )
        with self.session() as s:
            return [
                {"symbol": sym, "source": src, "n": int(n)}
                for sym, src, n in s.execute(stmt).all()
            ]

    # ------------------------------------------------------------------
    # 100ms bins
    # ------------------------------------------------------------------

    def upsert_source_bins(self, bins: list[SourceBin]) -> None:
        """Write per-source bins, overwriting existing rows for the same key."""
        with self.session() as s:
            for b in bins:
                s.merge(
                    SourceBinRow(
                        symbol=b.symbol, source=b.source, ts_ms=b.bucket_ms, price=b.price
                    )
                )

    def upsert_aggregate_bins(self, bins: list[AggregateBin]) -> None:
        """Write aggregate bins, overwriting existing rows for the same key."""
        with self.session() as s:
            for b in bins:
                s.merge(AggregateBinRow(symbol=b.symbol, ts_ms=b.bucket_ms, price=b.price))

    def aggregate_before(
        self, symbol: str, ts_ms: int, not_before_ms: int | None = None
    ) -> AggregateBin | None:
        """Latest aggregate bin with ``not_before_ms <= ts <= ts_ms``."""
        stmt = select(AggregateBinRow).where(
            AggregateBinRow.symbol == symbol, AggregateBinRow.ts_ms <= ts_ms
        )
        if not_before_ms is not None:
            stmt = stmt.where(AggregateBinRow.ts_ms >= not_before_ms)
        with self.session() as s:
            row = s.scalars(stmt.order_by(AggregateBinRow.ts_ms.desc()).limit(1)).first()
            return AggregateBin(row.symbol, row.ts_ms, float(row.price)) if row else None

    def aggregate_after(
        self, symbol: str, ts_ms: int, not_after_ms: int
    ) -> AggregateBin | None:
        """Earliest aggregate bin with ``ts_ms <= ts <= not_after_ms``."""
        stmt = (
            select(AggregateBinRow)
            .where(
                AggregateBinRow.symbol == symbol,
                AggregateBinRow.ts_ms >= ts_ms,
                AggregateBinRow.ts_ms <= not_after_ms,
            )
            .order_by(AggregateBinRow.ts_ms)
            .limit(1)
        )
        with self.session() as s:
            row = s.scalars(stmt).first()
            return AggregateBin(row.symbol, row.ts_ms, float(row.price)) if row else None

    def source_bin_before(
        self, symbol: str, source: str, ts_ms: int, not_before_ms: int
    ) -> SourceBin | None:
        """Latest bin of one source with ``not_before_ms <= ts <= ts_ms``."""
        stmt = (
            select(SourceBinRow)
            .where(
                SourceBinRow.symbol == symbol,
                SourceBinRow.source == source,
                SourceBinRow.ts_ms <= ts_ms,
                SourceBinRow.ts_ms >= not_before_ms,
            )
            .order_by(SourceBinRow.ts_ms.desc())
            .limit(1)
        )
        with self.session() as s:
            row = s.scalars(stmt).first()
            return (
                SourceBin(row.symbol, row.source, row.ts_ms, float(row.price))
                if row
                else None
            )

    def source_bin_after(
        self, symbol: str, source: str, ts_ms: int, not_after_ms: int
    ) -> SourceBin | None:
        """Earliest bin of one source with ``ts_ms <= ts <= not_after_ms``."""
        stmt = (
            select(SourceBinRow)
            .where(
                SourceBinRow.symbol == symbol,
                SourceBinRow.source == source,
                SourceBinRow.ts_ms >= ts_ms,
                SourceBinRow.ts_ms <= not_after_ms,
            )
            .order_by(SourceBinRow.ts_ms)
            .limit(1)
        )
        with self.session() as s:
            row = s.scalars(stmt).first()
            return (
                SourceBin(row.symbol, row.source, row.ts_ms, float(row.price))
                if row
                else None
            )

    def source_bins_at(self, symbol: str, bucket_ms: int) -> list[SourceBin]:
        """All per-source bins of one bucket."""
        stmt = select(SourceBinRow).where(
            SourceBinRow.symbol == symbol, SourceBinRow.ts_ms == bucket_ms
        )
        with self.session() as s:
            return [
                SourceBin(r.symbol, r.source, r.ts_ms, float(r.price))
                for r in s.scalars(stmt.order_by(SourceBinRow.source)).all()
            ]

    def has_aggregate_between(self, symbol: str, start_ms: int, end_ms: int) -> bool:
        stmt = (
            select(AggregateBinRow.ts_ms)
            .where(
                AggregateBinRow.symbol == symbol,
                AggregateBinRow.ts_ms >= start_ms,
                AggregateBinRow.ts_ms <= end_ms,
            )
            .limit(1)
        )
        with self.session() as s:
            return s.execute(stmt).first() is not None

    def has_source_bin_between(self, symbol: str, start_ms: int, end_ms: int) -> bool:
        stmt = (
            select(SourceBinRow.ts_ms)
            .where(
                SourceBinRow.symbol == symbol,
                SourceBinRow.ts_ms >= start_ms,
                SourceBinRow.ts_ms <= end_ms,
            )
            .limit(1)
        )
        with self.session() as s:
            return s.execute(stmt).first() is not None

    # ------------------------------------------------------------------
    # Oracle configuration and weights
    # ------------------------------------------------------------------

    def get_oracle_config(self, chain_id: int, oracle_addr: str) -> OracleConfig | None:
        with self.session() as s:
            row = s.get(OracleConfigRow, (chain_id, oracle_addr.lower()))
            return row.to_record() if row else None

    def list_oracle_configs(self) -> list[OracleConfig]:
        with self.session() as s:
            rows = s.scalars(
                select(OracleConfigRow).order_by(
                    OracleConfigRow.chain_id, OracleConfigRow.oracle_addr
                )
            ).all()
            return [r.to_record() for r in rows]

    def upsert_oracle_config(self, cfg: OracleConfig) -> None:
        """Insert or fully overwrite one oracle's configuration."""
        with self.session() as s:
            s.merge(
                OracleConfigRow(
                    chain_id=cfg.chain_id,
                    oracle_addr=cfg.oracle_addr,
                    heartbeat_seconds=cfg.heartbeat_seconds,
                    deviation_bps=cfg.deviation_bps,
                    decimals=cfg.decimals,
                    scale_factor=str(cfg.scale_factor),
                    lag_seconds=cfg.lag_seconds,
                    updated_at_ms=_now_ms(),
                )
            )

    def seed_oracle_config(self, cfg: OracleConfig) -> bool:
        """Insert a configuration only if none exists for the oracle.

        :returns: True if a row was inserted.
        """
        if self.get_oracle_config(cfg.chain_id, cfg.oracle_addr) is not None:
            return False
        try:
            with self.session() as s:
                s.add(
                    OracleConfigRow(
                        chain_id=cfg.chain_id,
                        oracle_addr=cfg.oracle_addr,
                        heartbeat_seconds=cfg.heartbeat_seconds,
                        deviation_bps=cfg.deviation_bps,
                        decimals=cfg.decimals,
                        scale_factor=str(cfg.scale_factor),
                        lag_seconds=cfg.lag_seconds,
                    )
                )
        except IntegrityError:
            # Inserted concurrently by another process.
            return False
        return True

    def seed_oracle_configs(self, configs: list[OracleConfig]) -> int:
        """Seed several configurations, keeping any existing rows.

        :returns: Number of rows inserted.
        """
        inserted = sum(1 for cfg in configs if self.seed_oracle_config(cfg))
        if inserted:
            logger.info(f"Seeded {inserted} oracle config(s)")
        return inserted

    def get_weights(self, chain_id: int, oracle_addr: str) -> dict[str, float]:
        stmt = select(CexWeightRow).where(
            CexWeightRow.chain_id == chain_id,
            CexWeightRow.oracle_addr == oracle_addr.lower(),
        )
        with self.session() as s:
            return {
                r.source: float(r.weight)
                for r in s.scalars(stmt.order_by(CexWeightRow.source)).all()
            }

    def save_calibration(
        self,
        chain_id: int,
        oracle_addr: str,
        lag_seconds: int,
        weights: dict[str, float],
    ) -> bool:
        """Persist a calibration result in one transaction.

        Updates the lag of an existing configuration and replaces the
        oracle's weights.

        :returns: False if the oracle has no configuration row (nothing written).
        """
        addr = oracle_addr.lower()
        with self.session() as s:
            row = s.get(OracleConfigRow, (chain_id, addr))
            if row is None:
                return False
            row.lag_seconds = lag_seconds
            row.updated_at_ms = _now_ms()
            s.execute(
                delete(CexWeightRow).where(
                    CexWeightRow.chain_id == chain_id, CexWeightRow.oracle_addr == addr
                )
            )
            for source, weight in weights.items():
                s.add(
                    CexWeightRow(
                        chain_id=chain_id,
                        oracle_addr=addr,
                        source=source,
                        weight=weight,
                        updated_at_ms=_now_ms(),
                    )
                )
        return True

    # ------------------------------------------------------------------
    # Oracle samples
    # ------------------------------------------------------------------

    def add_sample(self, sample: OracleSample) -> bool:
        """Append a sample unless the same transaction is already recorded.

        :returns: True if inserted, False on a duplicate transaction.
        """
        try:
            with self.session() as s:
                s.add(
                    OracleSampleRow(
                        chain_id=sample.chain_id,
                        oracle_addr=sample.oracle_addr.lower(),
                        block_number=sample.block_number,
                        tx_hash=sample.tx_hash.lower(),
                        answer=sample.answer,
                        cex_price=sample.cex_price,
                        event_ts=sample.event_ts,
                        error_bps=sample.error_bps,
                    )
                )
        except IntegrityError:
            return False
        return True

    def recent_samples(
        self, chain_id: int, oracle_addr: str, limit: int
    ) -> list[OracleSample]:
        """Most recent samples with a known event time, newest first."""
        stmt = (
            select(OracleSampleRow)
            .where(
                OracleSampleRow.chain_id == chain_id,
                OracleSampleRow.oracle_addr == oracle_addr.lower(),
                OracleSampleRow.event_ts.is_not(None),
            )
            .order_by(OracleSampleRow.event_ts.desc())
            .limit(limit)
        )
        with self.session() as s:
            return [r.to_record() for r in s.scalars(stmt).all()]

    def latest_sample_block(self, chain_id: int, oracle_addr: str) -> int | None:
        stmt = select(func.max(OracleSampleRow.block_number)).where(
            OracleSampleRow.chain_id == chain_id,
            OracleSampleRow.oracle_addr == oracle_addr.lower(),
        )
        with self.session() as s:
            return s.execute(stmt).scalar()

    def sample_counts(self) -> dict[tuple[int, str], int]:
        """Number of samples per (chain_id, oracle_addr)."""
        stmt = select(
            OracleSampleRow.chain_id, OracleSampleRow.oracle_addr, func.count()
        ).group_by(OracleSampleRow.chain_id, OracleSampleRow.oracle_addr)
        with self.session() as s:
            return {(c, a): int(n) for c, a, n in s.execute(stmt).all()}
