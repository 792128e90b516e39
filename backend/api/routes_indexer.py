"""Indexer routes: sync triggers, status polling and read surfaces."""

from __future__ import annotations

import asyncio
from datetime import timedelta
from decimal import Decimal, InvalidOperation
from typing import Literal, Optional

from fastapi import APIRouter, Body, Depends, Header, HTTPException, Query
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import IndexerRun, Position, SwapTrade, TrackedToken, Wallet, get_db_session
from models.types import quantize_usd
from services.errors import FeatureDisabledError, IndexerError
from services.holder_discovery import holder_discovery
from services.position_ledger import unrealized_pnl
from services.sync_orchestrator import SyncOrigin, authorize_trigger, sync_orchestrator
from services.sync_status import run_registry
from services.trade_store import list_trades, record_transfers
from utils.logger import get_logger
from utils.utcnow import parse_timestamp, to_iso, utcnow
from utils.validation import SyncTriggerParams, TrackedTokenParams, validate_eth_address

router = APIRouter(prefix="/indexer", tags=["Indexer"])
logger = get_logger("indexer.api")

ZERO = Decimal(0)


def _error_response(error: IndexerError) -> JSONResponse:
    return JSONResponse(status_code=error.status_code, content=error.to_payload())


def _require_admin_mode() -> None:
    if not settings.ADMIN_MODE_ENABLED:
        raise FeatureDisabledError("Admin mode is not enabled")


def _address_or_400(value: Optional[str], field: str) -> Optional[str]:
    if value is None or not value.strip():
        return None
    try:
        return validate_eth_address(value)
    except ValueError as e:
        raise HTTPException(status_code=400, detail=f"{field}: {e}")


def _price_or_400(value: Optional[str]) -> Optional[Decimal]:
    if value is None or value == "":
        return None
    try:
        price = Decimal(value)
    except InvalidOperation:
        raise HTTPException(status_code=400, detail="price_usd must be a decimal number")
    if not price.is_finite() or price < 0:
        raise HTTPException(status_code=400, detail="price_usd must be non-negative")
    return price


def _usd(value: Optional[Decimal]) -> str:
    return format(value if value is not None else ZERO, "f")


def _trade_to_dict(trade: SwapTrade) -> dict:
    return {
        "id": trade.id,
        "walletAddress": trade.wallet_address,
        "tokenAddress": trade.token_address,
        "txHash": trade.tx_hash,
        "blockNumber": trade.block_number,
        "timestamp": to_iso(trade.timestamp),
        "side": trade.side,
        "tokenAmount": str(trade.token_amount),
        "priceUsd": _usd(trade.price_usd),
        "usdValue": _usd(trade.usd_value),
        "source": trade.source,
    }


def _position_to_dict(position: Position, decimals: int, price: Optional[Decimal]) -> dict:
    data = {
        "walletAddress": position.wallet_address,
        "tokenAddress": position.token_address,
        "remainingAmount": str(position.remaining_amount),
        "costBasisUsd": _usd(position.cost_basis_usd),
        "realizedPnlUsd": _usd(position.realized_pnl_usd),
        "buyCount": position.buy_count,
        "sellCount": position.sell_count,
        "buyVolumeUsd": _usd(position.buy_volume_usd),
        "sellVolumeUsd": _usd(position.sell_volume_usd),
        "lastTradeAt": to_iso(position.last_trade_at),
        "updatedAt": to_iso(position.updated_at),
    }
    if price is not None:
        unrealized = unrealized_pnl(position.remaining_amount, position.cost_basis_usd, price, decimals)
        data["unrealizedPnlUsd"] = _usd(unrealized)
        data["totalPnlUsd"] = _usd(quantize_usd(unrealized + position.realized_pnl_usd))
    return data


def _run_to_dict(run: IndexerRun) -> dict:
    return {
        "id": run.id,
        "initiator": run.initiator,
        "syncType": run.sync_type,
        "tokenAddress": run.token_address,
        "status": run.status,
        "attempt": run.attempt,
        "tokensScanned": run.tokens_scanned,
        "pages": run.pages_fetched,
        "calls": run.external_calls,
        "swapsFetched": run.swaps_fetched,
        "swapsInserted": run.swaps_inserted,
        "walletsFound": run.wallets_found,
        "holdersFound": run.holders_found,
        "validationDropped": run.validation_dropped,
        "errorMessage": run.error_message,
        "owner": run.owner,
        "startedAt": to_iso(run.started_at),
        "heartbeatAt": to_iso(run.heartbeat_at),
        "finishedAt": to_iso(run.finished_at),
    }


async def _token_decimals(session: AsyncSession) -> dict[str, int]:
    rows = await session.execute(select(TrackedToken.token_address, TrackedToken.decimals))
    return {address: decimals for address, decimals in rows}


def _bearer_token(authorization: Optional[str]) -> Optional[str]:
    if not authorization:
        return None
    scheme, _, token = authorization.partition(" ")
    if scheme.lower() != "bearer":
        return None
    return token.strip() or None


async def _start_and_wait(sync_type: str, token_address: Optional[str], origin: SyncOrigin) -> JSONResponse:
    ctx, task = await sync_orchestrator.start_run(sync_type, token_address, origin)
    done, _ = await asyncio.wait({task}, timeout=settings.SYNC_REQUEST_WAIT_SECONDS)
    if task not in done:
        logger.info("Sync still running past request budget", run_id=ctx.run_id)
        return JSONResponse(
            status_code=200,
            content={
                "likelyStillRunning": True,
                "runId": ctx.run_id,
                "syncType": ctx.sync_type.value,
                "tokenAddress": ctx.token_address,
                "message": "Sync is still running; poll /indexer/status for progress",
                "timestamp": to_iso(utcnow()),
            },
        )
    result = task.result()
    if result.success:
        status_code = 200
    else:
        status_code = 502 if result.retryable else 500
    return JSONResponse(status_code=status_code, content=result.to_payload())


# ==================== SYNC TRIGGERS ====================


@router.post("/sync")
async def trigger_sync(params: Optional[SyncTriggerParams] = None):
    """Start a manual sync; waits up to SYNC_REQUEST_WAIT_SECONDS for it to finish."""
    params = params or SyncTriggerParams()
    try:
        authorize_trigger(SyncOrigin.MANUAL, secret=params.secret, password=params.password)
        return await _start_and_wait(params.syncType, params.tokenAddress, SyncOrigin.MANUAL)
    except IndexerError as e:
        return _error_response(e)


@router.api_route("/cron", methods=["GET", "POST"])
async def cron_sync(authorization: Optional[str] = Header(default=None)):
    """Scheduled incremental sync, authorized by ``Bearer <CRON_SECRET>``."""
    try:
        authorize_trigger(SyncOrigin.SCHEDULED, secret=_bearer_token(authorization))
        return await _start_and_wait("incremental", None, SyncOrigin.SCHEDULED)
    except IndexerError as e:
        return _error_response(e)


@router.post("/transfers")
async def ingest_transfers(
    transfers: list[dict] = Body(...),
    authorization: Optional[str] = Header(default=None),
    session: AsyncSession = Depends(get_db_session),
):
    """Accept Transfer logs from the log poller (same credential as cron)."""
    try:
        authorize_trigger(SyncOrigin.SCHEDULED, secret=_bearer_token(authorization))
        inserted = await record_transfers(session, transfers)
        await session.commit()
    except IndexerError as e:
        return _error_response(e)
    return {"received": len(transfers), "inserted": inserted}


# ==================== STATUS ====================


@router.get("/status")
async def get_status(session: AsyncSession = Depends(get_db_session)):
    try:
        _require_admin_mode()
    except IndexerError as e:
        return _error_response(e)

    last_block = (await session.execute(select(func.max(SwapTrade.block_number)))).scalar()
    snapshot = run_registry.status.snapshot()
    snapshot["activeRunId"] = run_registry.active_run_id
    snapshot["lastSyncedBlock"] = last_block
    return snapshot


@router.get("/logs")
async def get_logs(
    limit: int = Query(default=500, ge=1, le=5000),
    since: Optional[str] = Query(default=None),
):
    if since:
        since_at = parse_timestamp(since)
        if since_at is None:
            raise HTTPException(status_code=400, detail="since must be an ISO-8601 timestamp")
        entries = run_registry.logs.since(since_at, limit)
    else:
        entries = run_registry.logs.tail(limit)
    return {"logs": [e.to_dict() for e in entries], "count": len(entries)}


@router.get("/runs")
async def get_runs(
    limit: int = Query(default=20, ge=1, le=200),
    session: AsyncSession = Depends(get_db_session),
):
    rows = await session.execute(select(IndexerRun).order_by(IndexerRun.started_at.desc()).limit(limit))
    return {"runs": [_run_to_dict(run) for run in rows.scalars()]}


# ==================== READ SURFACES ====================


@router.get("/trades")
async def get_trades(
    wallet_address: Optional[str] = Query(default=None),
    token_address: Optional[str] = Query(default=None),
    side: Optional[Literal["BUY", "SELL", "buy", "sell"]] = Query(default=None),
    wallet_filter: Literal["all", "registered"] = Query(default="all"),
    sort_by: Literal["timestamp", "usd_value", "token_amount", "price_usd"] = Query(default="timestamp"),
    sort_order: Literal["asc", "desc"] = Query(default="desc"),
    limit: int = Query(default=50, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_db_session),
):
    page = await list_trades(
        session,
        wallet_address=_address_or_400(wallet_address, "wallet_address"),
        token_address=_address_or_400(token_address, "token_address"),
        side=side,
        registered_only=wallet_filter == "registered",
        sort_by=sort_by,
        sort_order=sort_order,
        limit=limit,
        offset=offset,
    )
    return {
        "trades": [_trade_to_dict(t) for t in page.items],
        "pagination": {
            "total": page.total,
            "limit": page.limit,
            "offset": page.offset,
            "hasMore": page.has_more,
        },
    }


@router.get("/positions")
async def get_positions(
    wallet_address: Optional[str] = Query(default=None),
    token_address: Optional[str] = Query(default=None),
    price_usd: Optional[str] = Query(default=None, description="Current token price for unrealized PnL"),
    include_closed: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_db_session),
):
    wallet = _address_or_400(wallet_address, "wallet_address")
    token = _address_or_400(token_address, "token_address")
    price = _price_or_400(price_usd)

    query = select(Position)
    if wallet:
        query = query.where(Position.wallet_address == wallet)
    if token:
        query = query.where(Position.token_address == token)
    if not include_closed:
        query = query.where(Position.remaining_amount != 0)
    total = (await session.execute(select(func.count()).select_from(query.subquery()))).scalar_one()
    rows = await session.execute(
        query.order_by(Position.wallet_address, Position.token_address).offset(offset).limit(limit)
    )
    decimals = await _token_decimals(session)
    positions = [
        _position_to_dict(p, decimals.get(p.token_address, settings.DEFAULT_TOKEN_DECIMALS), price)
        for p in rows.scalars()
    ]
    return {
        "positions": positions,
        "pagination": {"total": total, "limit": limit, "offset": offset, "hasMore": offset + len(positions) < total},
    }


@router.get("/top-traders")
async def get_top_traders(
    token_address: Optional[str] = Query(default=None),
    price_usd: Optional[str] = Query(default=None),
    registered_only: bool = Query(default=False),
    limit: int = Query(default=25, ge=1, le=500),
    session: AsyncSession = Depends(get_db_session),
):
    token = _address_or_400(token_address, "token_address")
    price = _price_or_400(price_usd)
    if price is not None and token is None:
        raise HTTPException(status_code=400, detail="price_usd requires token_address")

    query = select(Position)
    if token:
        query = query.where(Position.token_address == token)
    if registered_only:
        query = query.join(Wallet, Wallet.address == Position.wallet_address).where(Wallet.is_registered.is_(True))
    decimals = await _token_decimals(session)

    traders: dict[str, dict] = {}
    for position in (await session.execute(query)).scalars():
        entry = traders.setdefault(
            position.wallet_address,
            {
                "realized": ZERO,
                "unrealized": ZERO,
                "buy_count": 0,
                "sell_count": 0,
                "buy_volume": ZERO,
                "sell_volume": ZERO,
            },
        )
        entry["realized"] += position.realized_pnl_usd
        entry["buy_count"] += position.buy_count
        entry["sell_count"] += position.sell_count
        entry["buy_volume"] += position.buy_volume_usd
        entry["sell_volume"] += position.sell_volume_usd
        if price is not None:
            entry["unrealized"] += unrealized_pnl(
                position.remaining_amount,
                position.cost_basis_usd,
                price,
                decimals.get(position.token_address, settings.DEFAULT_TOKEN_DECIMALS),
            )

    ranked = sorted(
        traders.items(),
        key=lambda item: (item[1]["realized"] + item[1]["unrealized"], item[0]),
        reverse=True,
    )[:limit]
    return {
        "traders": [
            {
                "rank": rank,
                "walletAddress": wallet,
                "realizedPnlUsd": _usd(entry["realized"]),
                "unrealizedPnlUsd": _usd(entry["unrealized"]) if price is not None else None,
                "totalPnlUsd": _usd(entry["realized"] + entry["unrealized"]),
                "buyCount": entry["buy_count"],
                "sellCount": entry["sell_count"],
                "buyVolumeUsd": _usd(entry["buy_volume"]),
                "sellVolumeUsd": _usd(entry["sell_volume"]),
            }
            for rank, (wallet, entry) in enumerate(ranked, start=1)
        ]
    }


@router.get("/stats")
async def get_stats(session: AsyncSession = Depends(get_db_session)):
    wallets = (await session.execute(select(func.count()).select_from(Wallet))).scalar_one()
    registered = (
        await session.execute(select(func.count()).select_from(Wallet).where(Wallet.is_registered.is_(True)))
    ).scalar_one()
    trades = (await session.execute(select(func.count()).select_from(SwapTrade))).scalar_one()
    since = utcnow() - timedelta(hours=24)
    trades_24h = (
        await session.execute(select(func.count()).select_from(SwapTrade).where(SwapTrade.timestamp >= since))
    ).scalar_one()

    open_positions = 0
    buy_volume = sell_volume = realized = ZERO
    rows = await session.execute(
        select(
            Position.remaining_amount,
            Position.buy_volume_usd,
            Position.sell_volume_usd,
            Position.realized_pnl_usd,
        )
    )
    for remaining, bought, sold, pnl in rows:
        if remaining:
            open_positions += 1
        buy_volume += bought
        sell_volume += sold
        realized += pnl

    return {
        "wallets": wallets,
        "registeredWallets": registered,
        "trades": trades,
        "trades24h": trades_24h,
        "openPositions": open_positions,
        "buyVolumeUsd": _usd(buy_volume),
        "sellVolumeUsd": _usd(sell_volume),
        "totalVolumeUsd": _usd(buy_volume + sell_volume),
        "totalRealizedPnlUsd": _usd(realized),
        "timestamp": to_iso(utcnow()),
    }


@router.get("/holders/{token_address}")
async def get_holders(token_address: str):
    """Run holder discovery on demand and report how the sources compare."""
    token = _address_or_400(token_address, "token_address")
    result = await holder_discovery.discover_holders(token)
    return result.summary()


@router.get("/wallets")
async def get_wallets(
    registered_only: bool = Query(default=False),
    limit: int = Query(default=100, ge=1, le=1000),
    offset: int = Query(default=0, ge=0),
    session: AsyncSession = Depends(get_db_session),
):
    query = select(Wallet)
    if registered_only:
        query = query.where(Wallet.is_registered.is_(True))
    total = (await session.execute(select(func.count()).select_from(query.subquery()))).scalar_one()
    rows = await session.execute(query.order_by(Wallet.address).offset(offset).limit(limit))
    wallets = [
        {
            "address": w.address,
            "isRegistered": w.is_registered,
            "lastSyncedAt": to_iso(w.last_synced_at),
            "updatedAt": to_iso(w.updated_at),
        }
        for w in rows.scalars()
    ]
    return {
        "wallets": wallets,
        "pagination": {"total": total, "limit": limit, "offset": offset, "hasMore": offset + len(wallets) < total},
    }


@router.get("/tokens")
async def get_tokens(session: AsyncSession = Depends(get_db_session)):
    rows = await session.execute(
        select(TrackedToken, func.count(SwapTrade.id))
        .outerjoin(SwapTrade, SwapTrade.token_address == TrackedToken.token_address)
        .group_by(TrackedToken.token_address)
        .order_by(TrackedToken.token_address)
    )
    return {
        "tokens": [
            {
                "tokenAddress": token.token_address,
                "symbol": token.symbol,
                "decimals": token.decimals,
                "lastSyncedAt": to_iso(token.last_synced_at),
                "tradeCount": trade_count,
            }
            for token, trade_count in rows
        ]
    }


@router.post("/tokens")
async def add_token(params: TrackedTokenParams, session: AsyncSession = Depends(get_db_session)):
    try:
        _require_admin_mode()
    except IndexerError as e:
        return _error_response(e)

    existing = await session.get(TrackedToken, params.token_address)
    if existing is not None:
        return {"success": True, "created": False, "tokenAddress": existing.token_address}
    session.add(
        TrackedToken(token_address=params.token_address, symbol=params.symbol, decimals=params.decimals)
    )
    await session.commit()
    logger.info("Tracked token added", token=params.token_address)
    return {"success": True, "created": True, "tokenAddress": params.token_address}
