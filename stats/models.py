from sqlalchemy import Column, Float, Index, Integer, String
from sqlalchemy.orm import declarative_base

Base = declarative_base()


class BlockHistory(Base):
    __tablename__ = 'blocks_history'

    height = Column(Integer, primary_key=True, autoincrement=False)
    hash = Column(String(64))
    timestamp = Column(Integer)
    tx_count = Column(Integer, default=0)
    size = Column(Integer, default=0)
    date = Column(String(10))  # UTC day, YYYY-MM-DD

    __table_args__ = (
        Index('idx_blocks_date', 'date'),
    )


class DailyStats(Base):
    __tablename__ = 'daily_stats'

    date = Column(String(10), primary_key=True)
    tx_count = Column(Integer, default=0)
    block_count = Column(Integer, default=0)
    total_size = Column(Integer, default=0)
    avg_block_size = Column(Float, default=0.0)
    updated_at = Column(Integer, default=0)
