from sqlalchemy import (
    Column,
    String,
    Integer,
    BigInteger,
    Boolean,
    DateTime,
    Text,
    Index,
    UniqueConstraint,
    event,
    text,
)
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession
from sqlalchemy.orm import declarative_base, sessionmaker
from contextlib import contextmanager
from datetime import datetime
from decimal import Decimal
from pathlib import Path
import enum
import logging
import os

from config import settings
from models.types import TokenAmount, UsdAmount

logger = logging.getLogger(__name__)

Base = declarative_base()


class SyncType(enum.Enum):
    INCREMENTAL = "incremental"
    FULL = "full"


class RunStatus(enum.Enum):
    RUNNING = "running"
    SUCCEEDED = "succeeded"
    FAILED = "failed"


# ==================== TRACKED TOKENS ====================


class TrackedToken(Base):
    """A token whose swaps are ingested on every sync run."""

    __tablename__ = "tracked_tokens"

    token_address = Column(String(42), primary_key=True)
    symbol = Column(String(32), nullable=True)
    decimals = Column(Integer, nullable=False, default=18)
    last_synced_at = Column(DateTime, nullable=True)  # newest ingested trade timestamp
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# ==================== WALLETS ====================


class Wallet(Base):
    """Tracking record for any wallet observed as a trader or holder."""

    __tablename__ = "wallets"

    address = Column(String(42), primary_key=True)
    is_registered = Column(Boolean, nullable=False, default=False)  # contest opt-in
    last_synced_at = Column(DateTime, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


# ==================== TRADES ====================


class SwapTrade(Base):
    """Append-only trade leg. Unique per (wallet, tx hash, token, side)."""

    __tablename__ = "trades"

    id = Column(Integer, primary_key=True, autoincrement=True)
    wallet_address = Column(String(42), nullable=False)
    token_address = Column(String(42), nullable=False)
    tx_hash = Column(String(66), nullable=False)
    block_number = Column(BigInteger, nullable=False, default=0)
    timestamp = Column(DateTime, nullable=False)
    side = Column(String(4), nullable=False)  # BUY | SELL
    token_amount = Column(TokenAmount, nullable=False)
    price_usd = Column(UsdAmount, nullable=False)
    usd_value = Column(UsdAmount, nullable=False)
    source = Column(String(32), nullable=False, default="swap_feed")
    created_at = Column(DateTime, default=datetime.utcnow)

    __table_args__ = (
        UniqueConstraint(
            "wallet_address", "tx_hash", "token_address", "side", name="uq_trades_wallet_tx_token_side"
        ),
        Index("idx_trades_token_ts", "token_address", "timestamp"),
        Index("idx_trades_wallet", "wallet_address"),
        Index("idx_trades_block", "block_number"),
    )


# ==================== POSITIONS ====================


class Position(Base):
    """Average-cost position per (wallet, token). Mutated only by the ledger."""

    __tablename__ = "positions"

    wallet_address = Column(String(42), primary_key=True)
    token_address = Column(String(42), primary_key=True)
    remaining_amount = Column(TokenAmount, nullable=False, default=0)
    cost_basis_usd = Column(UsdAmount, nullable=False, default=Decimal(0))
    realized_pnl_usd = Column(UsdAmount, nullable=False, default=Decimal(0))
    buy_count = Column(Integer, nullable=False, default=0)
    sell_count = Column(Integer, nullable=False, default=0)
    buy_volume_usd = Column(UsdAmount, nullable=False, default=Decimal(0))
    sell_volume_usd = Column(UsdAmount, nullable=False, default=Decimal(0))
    last_trade_at = Column(DateTime, nullable=True)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)

    __table_args__ = (Index("idx_positions_token", "token_address"),)


# ==================== TOKEN TRANSFERS ====================


class TokenTransfer(Base):
    """ERC-20 Transfer log, written by the external log poller."""

    __tablename__ = "token_transfers"

    id = Column(Integer, primary_key=True, autoincrement=True)
    token_address = Column(String(42), nullable=False)
    tx_hash = Column(String(66), nullable=False)
    log_index = Column(Integer, nullable=False)
    from_address = Column(String(42), nullable=False)
    to_address = Column(String(42), nullable=False)
    amount = Column(TokenAmount, nullable=False)
    block_number = Column(BigInteger, nullable=False, default=0)
    timestamp = Column(DateTime, nullable=True)

    __table_args__ = (
        UniqueConstraint("tx_hash", "log_index", name="uq_token_transfers_tx_log"),
        Index("idx_token_transfers_token", "token_address"),
    )


# ==================== INDEXER RUNS ====================


class IndexerRun(Base):
    """Durable audit record of one sync run."""

    __tablename__ = "indexer_runs"

    id = Column(String(32), primary_key=True)
    initiator = Column(String(32), nullable=False)  # scheduled | manual | worker
    sync_type = Column(String(16), nullable=False)
    token_address = Column(String(42), nullable=True)  # None = all tracked tokens
    status = Column(String(16), nullable=False, default=RunStatus.RUNNING.value)
    attempt = Column(Integer, nullable=False, default=1)
    tokens_scanned = Column(Integer, nullable=False, default=0)
    pages_fetched = Column(Integer, nullable=False, default=0)
    external_calls = Column(Integer, nullable=False, default=0)
    swaps_fetched = Column(Integer, nullable=False, default=0)
    swaps_inserted = Column(Integer, nullable=False, default=0)
    wallets_found = Column(Integer, nullable=False, default=0)
    holders_found = Column(Integer, nullable=False, default=0)
    validation_dropped = Column(Integer, nullable=False, default=0)
    error_message = Column(Text, nullable=True)
    owner = Column(String(128), nullable=True)  # host:pid of the process executing the run
    started_at = Column(DateTime, default=datetime.utcnow)
    heartbeat_at = Column(DateTime, nullable=True)
    finished_at = Column(DateTime, nullable=True)

    __table_args__ = (
        Index("idx_indexer_runs_status", "status"),
        Index("idx_indexer_runs_started", "started_at"),
        # At most one running row across all processes sharing the database.
        Index(
            "uq_indexer_runs_single_running",
            "status",
            unique=True,
            sqlite_where=text("status = 'running'"),
            postgresql_where=text("status = 'running'"),
        ),
    )


# ==================== DATABASE SETUP ====================

# SQLite-specific: improve concurrency (WAL + busy_timeout applied in _set_sqlite_pragma)
_engine_kw: dict = {"echo": False}
if "sqlite" in settings.DATABASE_URL:
    _engine_kw["connect_args"] = {"timeout": 30}

async_engine = create_async_engine(settings.DATABASE_URL, **_engine_kw)


def _set_sqlite_pragma(dbapi_connection, connection_record):
    """Configure SQLite for concurrent readers during a sync run."""
    if "sqlite" not in settings.DATABASE_URL:
        return
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA busy_timeout=30000")
    cursor.close()


event.listens_for(async_engine.sync_engine, "connect")(_set_sqlite_pragma)

AsyncSessionLocal = sessionmaker(
    async_engine, class_=AsyncSession, expire_on_commit=False
)


def _run_alembic_upgrade(connection) -> None:
    from alembic import command
    from alembic.config import Config

    backend_root = Path(__file__).resolve().parents[1]
    alembic_cfg = Config(str(backend_root / "alembic.ini"))
    alembic_cfg.set_main_option("script_location", str(backend_root / "alembic"))
    alembic_cfg.set_main_option("sqlalchemy.url", str(connection.engine.url))
    alembic_cfg.attributes["connection"] = connection
    command.upgrade(alembic_cfg, "head")


@contextmanager
def _sqlite_migration_lock():
    """Serialize Alembic upgrades between the API process and the sync worker."""
    if "sqlite" not in settings.DATABASE_URL or os.name != "posix":
        yield
        return

    import fcntl

    lock_path = Path(__file__).resolve().parents[1] / ".alembic.sqlite.lock"
    try:
        lock_file = lock_path.open("a", encoding="utf-8")
    except OSError:
        logger.warning("Cannot open migration lock file, proceeding without lock")
        yield
        return

    try:
        fcntl.flock(lock_file.fileno(), fcntl.LOCK_EX)
        try:
            yield
        finally:
            fcntl.flock(lock_file.fileno(), fcntl.LOCK_UN)
    finally:
        lock_file.close()


async def init_database():
    """Initialize database and apply Alembic migrations."""
    from models.model_registry import register_all_models

    register_all_models()
    with _sqlite_migration_lock():
        async with async_engine.begin() as conn:
            await conn.run_sync(_run_alembic_upgrade)


async def get_db_session() -> AsyncSession:
    """Get database session"""
    async with AsyncSessionLocal() as session:
        yield session
