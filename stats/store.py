"""
Durable per-block history and per-day rollups for the chart endpoints.

Only the Update Manager writes here. History rows are keyed by height and
never overwritten; daily rows are recomputed in full from history whenever
blocks for that day are saved.
"""
import os
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Callable, Dict, List, Optional, Sequence

import structlog
from sqlalchemy import create_engine, func
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.orm import Session, sessionmaker
from sqlalchemy.pool import StaticPool

from cache.snapshot import Block
from error_handling.errors import StorageError, StoreNotOpenError
from .models import Base, BlockHistory, DailyStats

logger = structlog.get_logger()

SECONDS_PER_DAY = 24 * 60 * 60


def utc_date(timestamp: float) -> str:
    return datetime.fromtimestamp(timestamp, tz=timezone.utc).strftime("%Y-%m-%d")


@dataclass(frozen=True)
class DailyStatsRecord:
    date: str
    tx_count: int
    block_count: int
    total_size: int
    avg_block_size: float
    updated_at: int

    @classmethod
    def from_row(cls, row: DailyStats) -> 'DailyStatsRecord':
        return cls(
            date=row.date,
            tx_count=row.tx_count or 0,
            block_count=row.block_count or 0,
            total_size=row.total_size or 0,
            avg_block_size=row.avg_block_size or 0.0,
            updated_at=row.updated_at or 0,
        )


class StatisticsStore:
    """SQLAlchemy-backed statistics store with a one-shot retention sweep."""

    def __init__(self, db_url: str, retention_days: int = 90,
                 clock: Callable[[], float] = time.time):
        """
        Args:
            db_url: SQLAlchemy database URL
            retention_days: Rows older than this are deleted by open()
            clock: Wall-clock source in epoch seconds, injectable for tests
        """
        self.db_url = db_url
        self.retention_days = retention_days
        self._clock = clock
        self.engine: Optional[Engine] = None
        self.Session: Optional[sessionmaker] = None

    @property
    def is_open(self) -> bool:
        return self.engine is not None

    def open(self) -> None:
        """Create tables if needed and delete rows outside the retention window."""
        if self.is_open:
            return

        url = make_url(self.db_url)
        kwargs: Dict[str, Any] = {}
        if url.get_backend_name() == "sqlite":
            # Sessions run in worker threads via asyncio.to_thread
            kwargs["connect_args"] = {"check_same_thread": False}
            if not url.database or url.database == ":memory:":
                kwargs["poolclass"] = StaticPool
            else:
                directory = os.path.dirname(os.path.abspath(url.database))
                try:
                    os.makedirs(directory, exist_ok=True)
                except OSError as e:
                    raise StorageError(f"Cannot create statistics directory {directory}: {e}") from e

        try:
            self.engine = create_engine(self.db_url, **kwargs)
            self.Session = sessionmaker(bind=self.engine)
            Base.metadata.create_all(self.engine)
        except SQLAlchemyError as e:
            self.close()
            raise StorageError(f"Cannot open statistics database: {e}") from e

        logger.info("stats_store_opened", db_url=self.db_url)
        self._apply_retention()

    def close(self) -> None:
        if self.engine is not None:
            self.engine.dispose()
            logger.info("stats_store_closed", db_url=self.db_url)
        self.engine = None
        self.Session = None

    def _session(self) -> Session:
        if self.Session is None:
            raise StoreNotOpenError("Statistics store is not open")
        return self.Session()

    def _apply_retention(self) -> None:
        cutoff = int(self._clock()) - self.retention_days * SECONDS_PER_DAY
        cutoff_date = utc_date(cutoff)
        try:
            with self._session() as session:
                history_deleted = session.query(BlockHistory).filter(
                    BlockHistory.timestamp < cutoff
                ).delete(synchronize_session=False)
                daily_deleted = session.query(DailyStats).filter(
                    DailyStats.date < cutoff_date
                ).delete(synchronize_session=False)
                session.commit()
        except SQLAlchemyError as e:
            self.close()
            raise StorageError(f"Retention sweep failed: {e}") from e

        logger.info("stats_retention_applied",
                    cutoff_date=cutoff_date,
                    history_deleted=history_deleted,
                    daily_deleted=daily_deleted)

    def save_blocks(self, blocks: Sequence[Block]) -> int:
        """
        Record observed blocks and refresh the rollup of every day they fall on.

        Heights that are already stored are left untouched.

        Returns:
            Number of new history rows

        Raises:
            StorageError: if the write fails; nothing is committed
        """
        if not blocks:
            return 0

        try:
            with self._session() as session:
                heights = [block.height for block in blocks]
                known = {
                    height for (height,) in session.query(BlockHistory.height).filter(
                        BlockHistory.height.in_(heights)
                    )
                }

                inserted = 0
                for block in blocks:
                    if block.height in known:
                        continue
                    known.add(block.height)
                    session.add(BlockHistory(
                        height=block.height,
                        hash=block.id,
                        timestamp=block.timestamp,
                        tx_count=block.tx_count,
                        size=block.size,
                        date=block.date,
                    ))
                    inserted += 1
                session.flush()

                for date in sorted({block.date for block in blocks}):
                    self._recompute_daily(session, date)

                session.commit()
        except SQLAlchemyError as e:
            raise StorageError(f"Saving block history failed: {e}") from e

        logger.debug("stats_blocks_saved", received=len(blocks), inserted=inserted)
        return inserted

    def _recompute_daily(self, session: Session, date: str) -> None:
        block_count, tx_count, total_size, avg_size = session.query(
            func.count(BlockHistory.height),
            func.sum(BlockHistory.tx_count),
            func.sum(BlockHistory.size),
            func.avg(BlockHistory.size),
        ).filter(BlockHistory.date == date).one()

        if not block_count:
            return

        session.merge(DailyStats(
            date=date,
            tx_count=int(tx_count or 0),
            block_count=int(block_count),
            total_size=int(total_size or 0),
            avg_block_size=float(avg_size or 0),
            updated_at=int(self._clock()),
        ))

    def daily_stats(self, days: int = 7) -> List[DailyStatsRecord]:
        """The most recent `days` days that have data, oldest first."""
        with self._session() as session:
            rows = session.query(DailyStats).order_by(
                DailyStats.date.desc()
            ).limit(days).all()
            records = [DailyStatsRecord.from_row(row) for row in rows]
        records.reverse()
        return records

    def daily_tx_counts(self, days: int = 7) -> List[Dict[str, Any]]:
        return [
            {"date": record.date, "count": record.tx_count}
            for record in self.daily_stats(days)
        ]

    def daily_block_sizes(self, days: int = 7) -> List[Dict[str, Any]]:
        return [
            {"date": record.date, "avgSize": round(record.avg_block_size)}
            for record in self.daily_stats(days)
        ]

    def history_count(self) -> int:
        with self._session() as session:
            return session.query(func.count(BlockHistory.height)).scalar() or 0
