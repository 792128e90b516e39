"""Persistence for trades, wallets and transfer logs.

Trades are append-only and deduplicated on (wallet, tx hash, token, side):
a conflicting insert is a no-op, so any sync window can be re-ingested.
"""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Mapping, Optional, Sequence

from sqlalchemy import Float, cast, delete, func, select
from sqlalchemy.dialects.postgresql import insert as pg_insert
from sqlalchemy.dialects.sqlite import insert as sqlite_insert
from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from models.database import Position, SwapTrade, TokenTransfer, Wallet
from models.swap import Trade
from services.errors import PersistenceError
from utils.logger import get_logger
from utils.utcnow import parse_timestamp, utcnow
from utils.validation import TX_HASH_REGEX, is_eth_address

logger = get_logger("indexer.trade_store")

TRADE_KEY_COLUMNS = ["wallet_address", "tx_hash", "token_address", "side"]
TRADE_SORT_COLUMNS = {
    "timestamp": SwapTrade.timestamp,
    "usd_value": cast(SwapTrade.usd_value, Float),
    "token_amount": cast(SwapTrade.token_amount, Float),
    "price_usd": cast(SwapTrade.price_usd, Float),
}
_IN_CLAUSE_CHUNK = 500


def _insert_ignoring(session: AsyncSession, table, index_elements: list[str], values: dict):
    dialect = session.bind.dialect.name if session.bind is not None else "sqlite"
    if dialect == "postgresql":
        return pg_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)
    return sqlite_insert(table).values(**values).on_conflict_do_nothing(index_elements=index_elements)


def _trade_values(trade: Trade) -> dict:
    return {
        "wallet_address": trade.wallet_address,
        "token_address": trade.token_address,
        "tx_hash": trade.tx_hash,
        "block_number": trade.block_number,
        "timestamp": trade.timestamp,
        "side": trade.side.value,
        "token_amount": trade.token_amount,
        "price_usd": trade.price_usd,
        "usd_value": trade.usd_value,
        "source": trade.source,
        "created_at": utcnow(),
    }


async def insert_new_trades(session: AsyncSession, trades: Sequence[Trade]) -> list[Trade]:
    """Insert ``trades``; return only those that were actually written."""
    inserted: list[Trade] = []
    try:
        for trade in trades:
            stmt = _insert_ignoring(session, SwapTrade.__table__, TRADE_KEY_COLUMNS, _trade_values(trade))
            result = await session.execute(stmt)
            if result.rowcount and result.rowcount > 0:
                inserted.append(trade)
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to insert trades: {e}") from e
    return inserted


async def insert_trades(session: AsyncSession, trades: Sequence[Trade]) -> int:
    """Idempotent insert; the count covers newly written rows only."""
    return len(await insert_new_trades(session, trades))


async def latest_trade_times(
    session: AsyncSession, keys: Iterable[tuple[str, str]]
) -> dict[tuple[str, str], datetime]:
    """Newest stored trade timestamp per (wallet, token) key; keys with no trades are absent."""
    wallets_by_token: dict[str, set[str]] = {}
    for wallet, token in keys:
        wallets_by_token.setdefault(token, set()).add(wallet)

    latest: dict[tuple[str, str], datetime] = {}
    try:
        for token, wallets in wallets_by_token.items():
            ordered = sorted(wallets)
            for start in range(0, len(ordered), _IN_CLAUSE_CHUNK):
                chunk = ordered[start : start + _IN_CLAUSE_CHUNK]
                rows = await session.execute(
                    select(SwapTrade.wallet_address, func.max(SwapTrade.timestamp))
                    .where(SwapTrade.token_address == token, SwapTrade.wallet_address.in_(chunk))
                    .group_by(SwapTrade.wallet_address)
                )
                for wallet, newest in rows:
                    latest[(wallet, token)] = newest
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to read latest trade times: {e}") from e
    return latest


async def load_position_trades(
    session: AsyncSession, wallet_address: str, token_address: str, decimals: int = 18
) -> list[Trade]:
    """Every stored trade for one (wallet, token), in fold order."""
    try:
        rows = (
            await session.execute(
                select(SwapTrade).where(
                    SwapTrade.wallet_address == wallet_address.lower(),
                    SwapTrade.token_address == token_address.lower(),
                )
            )
        ).scalars()
        trades = [
            Trade(
                wallet_address=row.wallet_address,
                token_address=row.token_address,
                tx_hash=row.tx_hash,
                block_number=row.block_number or 0,
                timestamp=row.timestamp,
                side=row.side,
                token_amount=row.token_amount,
                token_decimals=decimals,
                price_usd=row.price_usd,
                usd_value=row.usd_value,
                source=row.source or "swap_feed",
            )
            for row in rows
        ]
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to load trades for {wallet_address}/{token_address}: {e}") from e
    return sorted(trades, key=lambda t: t.sort_key)


@dataclass
class TradePage:
    items: list[SwapTrade]
    total: int
    limit: int
    offset: int

    @property
    def has_more(self) -> bool:
        return self.offset + len(self.items) < self.total


async def list_trades(
    session: AsyncSession,
    wallet_address: Optional[str] = None,
    token_address: Optional[str] = None,
    side: Optional[str] = None,
    registered_only: bool = False,
    sort_by: str = "timestamp",
    sort_order: str = "desc",
    limit: int = 50,
    offset: int = 0,
) -> TradePage:
    query = select(SwapTrade)
    if registered_only:
        query = query.join(Wallet, Wallet.address == SwapTrade.wallet_address).where(
            Wallet.is_registered.is_(True)
        )
    if wallet_address:
        query = query.where(SwapTrade.wallet_address == wallet_address.lower())
    if token_address:
        query = query.where(SwapTrade.token_address == token_address.lower())
    if side:
        query = query.where(SwapTrade.side == side.upper())

    total = (await session.execute(select(func.count()).select_from(query.subquery()))).scalar_one()

    sort_column = TRADE_SORT_COLUMNS.get(sort_by, SwapTrade.timestamp)
    if sort_order.lower() == "asc":
        query = query.order_by(sort_column.asc(), SwapTrade.id.asc())
    else:
        query = query.order_by(sort_column.desc(), SwapTrade.id.desc())

    rows = (await session.execute(query.offset(offset).limit(limit))).scalars().all()
    return TradePage(items=list(rows), total=int(total), limit=limit, offset=offset)


async def upsert_wallets(
    session: AsyncSession, observations: Mapping[str, Optional[datetime]]
) -> int:
    """Record observed wallets; advance ``last_synced_at`` to the newest trade seen.

    Returns the number of wallets created.
    """
    addresses = sorted({a.lower() for a in observations})
    normalized = {a.lower(): ts for a, ts in observations.items()}
    created = 0
    now = utcnow()
    try:
        for start in range(0, len(addresses), _IN_CLAUSE_CHUNK):
            chunk = addresses[start : start + _IN_CLAUSE_CHUNK]
            existing = {
                w.address: w
                for w in (
                    await session.execute(select(Wallet).where(Wallet.address.in_(chunk)))
                ).scalars()
            }
            for address in chunk:
                seen_at = normalized.get(address)
                wallet = existing.get(address)
                if wallet is None:
                    session.add(Wallet(address=address, last_synced_at=seen_at, created_at=now, updated_at=now))
                    created += 1
                elif seen_at is not None and (wallet.last_synced_at is None or seen_at > wallet.last_synced_at):
                    wallet.last_synced_at = seen_at
                    wallet.updated_at = now
        await session.flush()
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to upsert wallets: {e}") from e
    return created


async def truncate_indexer_data(session: AsyncSession) -> None:
    """Delete all trades, positions and wallets (full re-sync). Not committed here."""
    try:
        await session.execute(delete(SwapTrade))
        await session.execute(delete(Position))
        await session.execute(delete(Wallet))
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to truncate indexer tables: {e}") from e
    logger.warning("Truncated trades, positions and wallets for full sync")


async def record_transfers(session: AsyncSession, transfers: Iterable[dict]) -> int:
    """Store Transfer logs from the log poller; duplicates by (tx_hash, log_index) are skipped."""
    inserted = 0
    skipped = 0
    try:
        for raw in transfers:
            from_address = str(raw.get("from") or raw.get("from_address") or "").lower()
            to_address = str(raw.get("to") or raw.get("to_address") or "").lower()
            token = str(raw.get("token") or raw.get("token_address") or "").lower()
            tx_hash = str(raw.get("tx_hash") or raw.get("transactionHash") or "").lower()
            log_index = raw.get("log_index", raw.get("logIndex"))
            try:
                amount = int(raw.get("amount", raw.get("value")))
                log_index = int(log_index)
            except (TypeError, ValueError):
                skipped += 1
                continue
            if not (TX_HASH_REGEX.match(tx_hash) and is_eth_address(from_address) and is_eth_address(to_address) and is_eth_address(token)):
                skipped += 1
                continue
            stmt = _insert_ignoring(
                session,
                TokenTransfer.__table__,
                ["tx_hash", "log_index"],
                {
                    "token_address": token,
                    "tx_hash": tx_hash,
                    "log_index": log_index,
                    "from_address": from_address,
                    "to_address": to_address,
                    "amount": amount,
                    "block_number": int(raw.get("block_number", raw.get("blockNumber")) or 0),
                    "timestamp": parse_timestamp(raw.get("timestamp")),
                },
            )
            result = await session.execute(stmt)
            if result.rowcount and result.rowcount > 0:
                inserted += 1
    except SQLAlchemyError as e:
        raise PersistenceError(f"Failed to record transfers: {e}") from e
    if skipped:
        logger.warning("Skipped malformed transfer logs", skipped=skipped)
    return inserted
