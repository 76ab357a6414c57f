import logging
from datetime import datetime

from sqlalchemy import (
    JSON,
    Boolean,
    Column,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
    event,
)
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import declarative_base, sessionmaker

from config import settings
from models.types import TokenAmount

logger = logging.getLogger(__name__)

Base = declarative_base()


# ==================== WATCH LIST ====================


class WatchedWallet(Base):
    """External address a user asked us to watch (copy-trade / notify)"""

    __tablename__ = "watched_wallets"
    __table_args__ = (
        UniqueConstraint("address", "owner_id", name="uq_watched_wallet_owner"),
        Index("idx_watched_wallet_active", "active"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    address = Column(String, nullable=False, index=True)
    owner_id = Column(String, nullable=False, index=True)
    active = Column(Boolean, default=True, nullable=False)
    created_at = Column(DateTime, default=datetime.utcnow)
    last_activity_time = Column(DateTime, nullable=True)


# ==================== DETECTED ACTIVITY ====================


class PurchaseEventRecord(Base):
    """Acquisition detected on a watched wallet (one row per signature/address)"""

    __tablename__ = "purchase_events"
    __table_args__ = (
        UniqueConstraint("source_signature", "wallet_address", name="uq_purchase_event_sig"),
        Index("idx_purchase_event_wallet_time", "wallet_address", "observed_at"),
    )

    id = Column(Integer, primary_key=True, autoincrement=True)
    source_signature = Column(String, nullable=False)
    wallet_address = Column(String, nullable=False)
    acquired_mint = Column(String, nullable=False)
    acquired_amount = Column(TokenAmount, nullable=False)
    paid_mint = Column(String, nullable=False)
    paid_amount = Column(TokenAmount, nullable=False)
    slot = Column(Integer, nullable=True)
    channel = Column(String, nullable=False)  # push | poll | reconciled
    observed_at = Column(DateTime, default=datetime.utcnow, nullable=False)


# ==================== ORDERS ====================


class OrderRecord(Base):
    """Final state of an OrderIntent"""

    __tablename__ = "order_records"
    __table_args__ = (Index("idx_order_owner_time", "owner_id", "created_at"),)

    id = Column(String, primary_key=True)  # order_id
    owner_id = Column(String, nullable=False)
    token_address = Column(String, nullable=False)
    side = Column(String, nullable=False)
    amount = Column(TokenAmount, nullable=False)
    amount_is_percent = Column(Boolean, default=False)
    max_slippage_bps = Column(Integer, nullable=False)
    originating_event_id = Column(String, nullable=True)
    status = Column(String, nullable=False)
    provider = Column(String, nullable=True)
    signature = Column(String, nullable=True)
    realized_price = Column(TokenAmount, nullable=True)
    platform_fee = Column(TokenAmount, nullable=True)
    network_fee = Column(TokenAmount, nullable=True)
    price_impact_pct = Column(Float, nullable=True)
    error_type = Column(String, nullable=True)
    error_message = Column(Text, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    completed_at = Column(DateTime, nullable=True)


class ExecutionAttemptRecord(Base):
    """One provider attempt for an order; rows are appended, never updated"""

    __tablename__ = "execution_attempts"
    __table_args__ = (Index("idx_attempt_order", "order_id"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    order_id = Column(String, ForeignKey("order_records.id", ondelete="CASCADE"), nullable=False)
    sequence = Column(Integer, nullable=False)
    provider = Column(String, nullable=False)
    quote = Column(JSON, nullable=True)
    submitted_at = Column(DateTime, nullable=True)
    signature = Column(String, nullable=True)
    outcome = Column(String, nullable=False)
    reason = Column(Text, nullable=True)
    stage = Column(String, nullable=True)
    stage_timings_ms = Column(JSON, nullable=True)


# ==================== PROVIDER HEALTH ====================


class ProviderTrip(Base):
    """Circuit breaker trip history per execution provider"""

    __tablename__ = "provider_trips"
    __table_args__ = (Index("idx_provider_trip_time", "provider_id", "opened_at"),)

    id = Column(Integer, primary_key=True, autoincrement=True)
    provider_id = Column(String, nullable=False)
    reason = Column(Text, nullable=True)
    consecutive_failures = Column(Integer, nullable=False)
    opened_at = Column(DateTime, default=datetime.utcnow, nullable=False)
    cooldown_seconds = Column(Float, nullable=False)


# ==================== DATABASE SETUP ====================

_engine_kw: dict = {"echo": False}
if "sqlite" in settings.DATABASE_URL:
    _engine_kw["connect_args"] = {"timeout": 30}  # Wait up to 30s when DB is locked

async_engine = create_async_engine(settings.DATABASE_URL, **_engine_kw)


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """WAL mode so monitor writes don't block order writes."""
    if "sqlite" not in settings.DATABASE_URL:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


event.listens_for(async_engine.sync_engine, "connect")(_set_sqlite_pragma)

AsyncSessionLocal = sessionmaker(async_engine, class_=AsyncSession, expire_on_commit=False)


async def init_database():
    """Create any missing tables."""
    async with async_engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Database initialized")
