"""Shared fixtures for swap indexer tests."""

import sys
from pathlib import Path

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

import pytest
from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine
from sqlalchemy.orm import sessionmaker

from config import settings
from models.database import Base

TOKEN = "0x" + "ab" * 20
OTHER_TOKEN = "0x" + "cd" * 20
WETH = "0x4200000000000000000000000000000000000006"
ONE_TOKEN = 10**18
BASE_TS = 1_700_000_000


def wallet_address(index: int) -> str:
    return f"0x{index + 1:040x}"


def tx_hash(index: int) -> str:
    return f"0x{index + 1:064x}"


def swap_record(
    index: int,
    wallet: str = None,
    side: str = "BUY",
    amount: int = ONE_TOKEN,
    price: str = "1.0",
    token: str = TOKEN,
    timestamp: int = None,
    block: int = None,
) -> dict:
    """Raw swap feed record from the wallet's perspective."""
    record = {
        "txHash": tx_hash(index),
        "blockNumber": block if block is not None else 1_000 + index,
        "timestamp": timestamp if timestamp is not None else BASE_TS + index,
        "walletAddress": wallet or wallet_address(index),
        "priceUsd": price,
        "source": "test-feed",
    }
    if side == "BUY":
        record.update({"tokenIn": WETH, "tokenOut": token, "amountIn": "1", "amountOut": str(amount)})
    else:
        record.update({"tokenIn": token, "tokenOut": WETH, "amountIn": str(amount), "amountOut": "1"})
    return record


async def _build_session_factory(tmp_path: Path, name: str = "indexer_test.db"):
    db_path = tmp_path / name
    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}")
    session_factory = sessionmaker(engine, class_=AsyncSession, expire_on_commit=False)
    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
    return engine, session_factory


@pytest.fixture
def build_session_factory():
    return _build_session_factory


@pytest.fixture(autouse=True)
def _isolated_settings(monkeypatch):
    """Keep tests independent of any local .env credentials."""
    monkeypatch.setattr(settings, "ZERION_API_KEY", None)
    monkeypatch.setattr(settings, "ZAPPER_API_KEY", None)
    monkeypatch.setattr(settings, "CRON_SECRET", None)
    monkeypatch.setattr(settings, "SYNC_PASSWORD", None)
    monkeypatch.setattr(settings, "ADMIN_MODE_ENABLED", False)
    monkeypatch.setattr(settings, "SYNC_MAX_PARALLEL_TOKENS", 1)
    monkeypatch.setattr(settings, "SYNC_PERSIST_BATCH_SIZE", 50)
    monkeypatch.setattr(settings, "SWAP_FEED_PAGE_SIZE", 500)
    monkeypatch.setattr(settings, "SWAP_FEED_MAX_PAGES", 200)
    monkeypatch.setattr(settings, "USD_DECIMAL_PLACES", 12)
    monkeypatch.setattr(settings, "DEFAULT_TOKEN_DECIMALS", 18)
    monkeypatch.setattr(settings, "SYNC_HEARTBEAT_SECONDS", 15.0)
    monkeypatch.setattr(settings, "SYNC_RUN_STALE_SECONDS", 120.0)
