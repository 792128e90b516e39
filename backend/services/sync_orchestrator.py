"""Sync run orchestration.

A run moves through swap ingestion (fetch every token, then persist and
fold in chronological order) and holder discovery. All tokens are
fetched before anything is written: a fetch failure leaves the stores
untouched and fails the run. Holder discovery is best effort.

Progress reaches the status sink through a ``ProgressChannel``; the run's
state travels in an explicit ``RunContext``.
"""

from __future__ import annotations

import asyncio
import hmac
import os
import socket
import time
import uuid
from dataclasses import dataclass, field
from datetime import datetime, timedelta
from enum import Enum
from itertools import chain
from typing import Callable, Optional

from sqlalchemy import func, select, update
from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from config import settings
from models.database import IndexerRun, RunStatus, SyncType, TrackedToken
from models.swap import Trade
from services.errors import (
    AlreadyRunningError,
    AuthorizationError,
    ConnectivityError,
    IndexerError,
    PersistenceError,
    SwapFeedError,
    ValidationError,
)
from services.holder_discovery import HolderDiscoveryService, holder_discovery
from services.position_ledger import PositionLedger, find_late_keys, position_ledger
from services.progress import (
    PHASE_DISCOVERY,
    PHASE_FETCH,
    PHASE_PERSIST,
    ProgressChannel,
    ProgressEvent,
)
from services.swap_feed import SwapFeedClient
from services.sync_status import RunRegistry, SyncStatus, run_registry
from services.trade_store import (
    insert_new_trades,
    latest_trade_times,
    load_position_trades,
    truncate_indexer_data,
    upsert_wallets,
)
from utils.logger import ContextLogger, get_logger
from utils.utcnow import to_iso, utcnow

logger = get_logger("indexer.sync")

SWAP_WORKER = "swap-processor"
HOLDER_WORKER = "holder-discovery"
ABANDONED_RUN_MESSAGE = "interrupted: run heartbeat expired"


class SyncOrigin(str, Enum):
    SCHEDULED = "scheduled"  # cron endpoint, CRON_SECRET
    MANUAL = "manual"  # dashboard trigger, SYNC_PASSWORD
    WORKER = "worker"  # sync worker loop


def _matches(candidate: Optional[str], expected: Optional[str]) -> bool:
    if not candidate or not expected:
        return False
    return hmac.compare_digest(candidate.encode(), expected.encode())


def authorize_trigger(origin: SyncOrigin, secret: Optional[str] = None, password: Optional[str] = None) -> None:
    """Validate the trigger credential for ``origin``; raises AuthorizationError."""
    if origin == SyncOrigin.WORKER:
        return
    if origin == SyncOrigin.SCHEDULED:
        if not settings.CRON_SECRET:
            raise AuthorizationError("Cron secret is not configured")
        if not _matches(secret, settings.CRON_SECRET):
            raise AuthorizationError("Invalid secret")
        return
    if secret:
        if not _matches(secret, settings.CRON_SECRET):
            raise AuthorizationError("Invalid secret")
        return
    if settings.SYNC_PASSWORD and not _matches(password, settings.SYNC_PASSWORD):
        raise AuthorizationError("Invalid password", requires_password=True)


def run_owner() -> str:
    return f"{socket.gethostname()}:{os.getpid()}"


async def expire_stale_runs(session, now: Optional[datetime] = None) -> int:
    """Fail ``running`` rows whose heartbeat is older than SYNC_RUN_STALE_SECONDS.

    Live runs refresh ``heartbeat_at`` every SYNC_HEARTBEAT_SECONDS, so only
    runs whose process died are touched. Not committed here.
    """
    now = now or utcnow()
    cutoff = now - timedelta(seconds=settings.SYNC_RUN_STALE_SECONDS)
    result = await session.execute(
        update(IndexerRun)
        .where(
            IndexerRun.status == RunStatus.RUNNING.value,
            func.coalesce(IndexerRun.heartbeat_at, IndexerRun.started_at) < cutoff,
        )
        .values(status=RunStatus.FAILED.value, finished_at=now, error_message=ABANDONED_RUN_MESSAGE)
        .execution_options(synchronize_session=False)
    )
    return result.rowcount or 0


@dataclass(frozen=True)
class PhaseWeights:
    """Share of overall progress per phase; always sums to 100."""

    fetch: float = 40.0
    persist: float = 40.0
    discovery: float = 20.0

    @classmethod
    def normalized(cls, fetch: float, persist: float, discovery: float) -> "PhaseWeights":
        values = [max(0.0, float(v)) for v in (fetch, persist, discovery)]
        total = sum(values)
        if total <= 0:
            return cls()
        return cls(*(v * 100.0 / total for v in values))

    @classmethod
    def from_settings(cls) -> "PhaseWeights":
        return cls.normalized(
            settings.SYNC_FETCH_WEIGHT, settings.SYNC_PERSIST_WEIGHT, settings.SYNC_DISCOVERY_WEIGHT
        )

    @staticmethod
    def _fraction(done: int, total: Optional[int]) -> float:
        if not total:
            return 1.0
        return min(1.0, max(0.0, done / total))

    def fetch_progress(self, swaps_found: int, target: int) -> float:
        return min(self.fetch, self.fetch * swaps_found / max(target, 1))

    def persist_progress(self, done: int, total: int) -> float:
        return self.fetch + self.persist * self._fraction(done, total)

    def discovery_progress(self, done: int, total: int) -> float:
        return self.fetch + self.persist + self.discovery * self._fraction(done, total)


@dataclass(frozen=True)
class TokenTarget:
    address: str
    decimals: int
    last_synced_at: Optional[datetime]


@dataclass
class RunCounters:
    tokens_scanned: int = 0
    pages_fetched: int = 0
    external_calls: int = 0
    swaps_fetched: int = 0
    swaps_inserted: int = 0
    positions_rebuilt: int = 0
    wallets_found: int = 0
    holders_found: int = 0
    validation_dropped: int = 0


@dataclass
class RunContext:
    """Everything one run needs, passed explicitly through each phase."""

    run_id: str
    sync_type: SyncType
    initiator: SyncOrigin
    token_address: Optional[str]
    status: SyncStatus
    progress: ProgressChannel
    log: ContextLogger
    attempt: int = 1
    counters: RunCounters = field(default_factory=RunCounters)
    fetch_counts: dict[str, int] = field(default_factory=dict)
    started_monotonic: float = field(default_factory=time.monotonic)

    @property
    def is_full(self) -> bool:
        return self.sync_type == SyncType.FULL

    @property
    def elapsed_seconds(self) -> float:
        return time.monotonic() - self.started_monotonic


@dataclass
class SyncResult:
    run_id: str
    success: bool
    sync_type: str
    token_address: Optional[str]
    counters: RunCounters
    duration_seconds: float
    error: Optional[str] = None
    error_type: Optional[str] = None
    retryable: bool = False
    finished_at: datetime = field(default_factory=utcnow)

    def to_payload(self) -> dict:
        c = self.counters
        if self.success:
            message = (
                f"Sync completed: {c.swaps_fetched} swaps processed "
                f"({c.swaps_inserted} new), {c.wallets_found} wallets"
            )
        else:
            message = f"Sync failed: {self.error}"
        payload = {
            "success": self.success,
            "runId": self.run_id,
            "message": message,
            "syncType": self.sync_type,
            "tokenAddress": self.token_address,
            "swapsProcessed": c.swaps_fetched,
            "swapsInserted": c.swaps_inserted,
            "positionsRebuilt": c.positions_rebuilt,
            "walletsFound": c.wallets_found,
            "holdersFound": c.holders_found,
            "tokensScanned": c.tokens_scanned,
            "pages": c.pages_fetched,
            "calls": c.external_calls,
            "validationDropped": c.validation_dropped,
            "duration": round(self.duration_seconds, 3),
            "timestamp": to_iso(self.finished_at),
        }
        if self.error:
            payload["error"] = self.error
        return payload


class SyncOrchestrator:
    def __init__(
        self,
        registry: Optional[RunRegistry] = None,
        session_factory: Optional[Callable] = None,
        feed_client: Optional[SwapFeedClient] = None,
        discovery: Optional[HolderDiscoveryService] = None,
        ledger: Optional[PositionLedger] = None,
        weights: Optional[PhaseWeights] = None,
    ):
        self.registry = registry or run_registry
        self._session_factory = session_factory
        self.feed_client = feed_client or SwapFeedClient()
        self.discovery = discovery or holder_discovery
        self.ledger = ledger or position_ledger
        self.weights = weights or PhaseWeights.from_settings()
        self._tasks: set[asyncio.Task] = set()

    def _sessions(self):
        if self._session_factory is not None:
            return self._session_factory()
        from models import database

        return database.AsyncSessionLocal()

    # ==================== ENTRY ====================

    async def start_run(
        self,
        sync_type: SyncType | str = SyncType.INCREMENTAL,
        token_address: Optional[str] = None,
        initiator: SyncOrigin = SyncOrigin.MANUAL,
        attempt: int = 1,
    ) -> tuple[RunContext, asyncio.Task]:
        """Claim the single run slot and start the run as a background task.

        The slot is claimed twice: in this process's registry, then as the
        only ``running`` row in ``indexer_runs``, which every process sharing
        the database competes for. Raises AlreadyRunningError without
        touching any state if either claim fails.
        """
        sync_type = SyncType(sync_type) if isinstance(sync_type, str) else sync_type
        token_address = token_address.lower() if token_address else None
        run_id = uuid.uuid4().hex
        if not self.registry.try_acquire(run_id):
            raise AlreadyRunningError(self.registry.active_run_id)
        try:
            await self._claim_run_record(run_id, sync_type, token_address, initiator, attempt)
        except BaseException:
            self.registry.release(run_id)
            raise

        self.registry.install_log_handler()
        status = self.registry.begin(run_id, sync_type.value)
        ctx = RunContext(
            run_id=run_id,
            sync_type=sync_type,
            initiator=initiator,
            token_address=token_address,
            status=status,
            progress=ProgressChannel(),
            log=logger.with_context(run_id=run_id),
            attempt=attempt,
        )
        task = asyncio.create_task(self._run_guarded(ctx), name=f"sync-{run_id}")
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)
        return ctx, task

    async def run_sync(
        self,
        sync_type: SyncType | str = SyncType.INCREMENTAL,
        token_address: Optional[str] = None,
        initiator: SyncOrigin = SyncOrigin.MANUAL,
        attempt: int = 1,
    ) -> SyncResult:
        _, task = await self.start_run(sync_type, token_address, initiator, attempt)
        return await task

    async def _run_guarded(self, ctx: RunContext) -> SyncResult:
        try:
            return await self._execute(ctx)
        finally:
            self.registry.release(ctx.run_id)

    # ==================== RUN ====================

    async def _execute(self, ctx: RunContext) -> SyncResult:
        ctx.log.info(
            f"Starting {ctx.sync_type.value} sync",
            initiator=ctx.initiator.value,
            token=ctx.token_address,
            attempt=ctx.attempt,
        )
        consumer = asyncio.create_task(self._consume_progress(ctx))
        heartbeat = asyncio.create_task(self._heartbeat(ctx))
        error: Optional[BaseException] = None
        try:
            tokens = await self._resolve_tokens(ctx)
            ctx.counters.tokens_scanned = len(tokens)

            ctx.status.start_worker(SWAP_WORKER, "Fetching swaps")
            fetched = await self._fetch_all(ctx, tokens)
            await self._persist_and_fold(ctx, tokens, fetched)
            ctx.status.finish_worker(SWAP_WORKER)

            await self._discover_holders(ctx, tokens)
        except asyncio.CancelledError as e:
            error = e
            raise
        except Exception as e:
            error = e
        finally:
            heartbeat.cancel()
            await asyncio.gather(heartbeat, return_exceptions=True)
            ctx.progress.close()
            await consumer
            await self._finalize(ctx, error)

        return self._result(ctx, error)

    async def _consume_progress(self, ctx: RunContext) -> None:
        target = settings.SYNC_FETCH_PROGRESS_TARGET
        async for event in ctx.progress:
            if event.phase == PHASE_FETCH:
                ctx.fetch_counts[event.token_address] = event.cumulative_count or 0
                found = sum(ctx.fetch_counts.values())
                ctx.status.set_overall_progress(self.weights.fetch_progress(found, target))
                ctx.status.update_worker(
                    SWAP_WORKER,
                    progress=min(100.0, 100.0 * found / max(target, 1)) * 0.5,
                    current_task=f"Fetching {event.token_address}: page {event.page_index} ({event.cumulative_count} swaps)",
                    swaps_found=found,
                )
            elif event.phase == PHASE_PERSIST:
                ctx.status.set_overall_progress(self.weights.persist_progress(event.completed, event.total))
                ctx.status.update_worker(
                    SWAP_WORKER,
                    progress=50.0 + 50.0 * PhaseWeights._fraction(event.completed, event.total),
                    current_task=f"Persisting swaps {event.completed}/{event.total}",
                    swaps_processed=event.completed,
                )
            elif event.phase == PHASE_DISCOVERY:
                ctx.status.set_overall_progress(self.weights.discovery_progress(event.completed, event.total))
                ctx.status.update_worker(
                    HOLDER_WORKER,
                    progress=100.0 * PhaseWeights._fraction(event.completed, event.total),
                    current_task=event.message or f"Token {event.completed}/{event.total}",
                    tokens_completed=event.completed,
                )

    async def _claim_run_record(
        self,
        run_id: str,
        sync_type: SyncType,
        token_address: Optional[str],
        initiator: SyncOrigin,
        attempt: int,
    ) -> None:
        """Insert this run as the single ``running`` row; AlreadyRunningError if one exists."""
        now = utcnow()
        try:
            async with self._sessions() as session:
                expired = await expire_stale_runs(session, now)
                session.add(
                    IndexerRun(
                        id=run_id,
                        initiator=initiator.value,
                        sync_type=sync_type.value,
                        token_address=token_address,
                        status=RunStatus.RUNNING.value,
                        attempt=attempt,
                        owner=run_owner(),
                        started_at=now,
                        heartbeat_at=now,
                    )
                )
                try:
                    await session.commit()
                except IntegrityError:
                    await session.rollback()
                    active = (
                        await session.execute(
                            select(IndexerRun.id).where(IndexerRun.status == RunStatus.RUNNING.value).limit(1)
                        )
                    ).scalar_one_or_none()
                    logger.info("Sync run already active in another process", active_run_id=active)
                    raise AlreadyRunningError(active)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to create run record: {e}") from e
        if expired:
            logger.warning(f"Expired {expired} abandoned runs before starting", run_id=run_id)

    async def _heartbeat(self, ctx: RunContext) -> None:
        interval = settings.SYNC_HEARTBEAT_SECONDS
        while True:
            await asyncio.sleep(interval)
            try:
                async with self._sessions() as session:
                    await session.execute(
                        update(IndexerRun)
                        .where(IndexerRun.id == ctx.run_id, IndexerRun.status == RunStatus.RUNNING.value)
                        .values(heartbeat_at=utcnow())
                    )
                    await session.commit()
            except SQLAlchemyError as e:
                ctx.log.warning("Failed to refresh run heartbeat", error=str(e))

    async def _resolve_tokens(self, ctx: RunContext) -> list[TokenTarget]:
        try:
            async with self._sessions() as session:
                if ctx.token_address:
                    token = await session.get(TrackedToken, ctx.token_address)
                    if token is None:
                        token = TrackedToken(
                            token_address=ctx.token_address,
                            decimals=settings.DEFAULT_TOKEN_DECIMALS,
                        )
                        session.add(token)
                        await session.commit()
                        ctx.log.info("Registered new tracked token", token=ctx.token_address)
                    rows = [token]
                else:
                    rows = list(
                        (await session.execute(select(TrackedToken).order_by(TrackedToken.token_address))).scalars()
                    )
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to load tracked tokens: {e}") from e

        if not rows:
            raise ValidationError("No tracked tokens to sync; register a token first")
        return [
            TokenTarget(
                address=row.token_address,
                decimals=row.decimals if row.decimals is not None else settings.DEFAULT_TOKEN_DECIMALS,
                last_synced_at=row.last_synced_at,
            )
            for row in rows
        ]

    async def _fetch_all(self, ctx: RunContext, tokens: list[TokenTarget]) -> dict[str, list[Trade]]:
        pool = asyncio.Semaphore(max(1, settings.SYNC_MAX_PARALLEL_TOKENS))

        async def fetch_one(token: TokenTarget) -> list[Trade]:
            async with pool:
                from_time = None if ctx.is_full else token.last_synced_at
                ctx.status.update_worker(SWAP_WORKER, current_task=f"Fetching {token.address}")
                try:
                    result = await self.feed_client.fetch_swaps(
                        token.address,
                        decimals=token.decimals,
                        from_time=from_time,
                        progress=ctx.progress,
                    )
                except SwapFeedError as e:
                    ctx.counters.pages_fetched += e.pages_completed
                    ctx.counters.external_calls += e.pages_completed + 1
                    raise
                ctx.counters.pages_fetched += result.pages_fetched
                ctx.counters.external_calls += result.external_calls
                ctx.counters.validation_dropped += result.validation_dropped
                return result.trades

        outcomes = await asyncio.gather(*(fetch_one(t) for t in tokens), return_exceptions=True)
        fetched: dict[str, list[Trade]] = {}
        for token, outcome in zip(tokens, outcomes):
            if isinstance(outcome, BaseException):
                raise outcome
            fetched[token.address] = outcome
        ctx.counters.swaps_fetched = sum(len(v) for v in fetched.values())
        ctx.log.info(
            f"Fetched {ctx.counters.swaps_fetched} swaps across {len(tokens)} tokens",
            pages=ctx.counters.pages_fetched,
            calls=ctx.counters.external_calls,
        )
        return fetched

    async def _persist_and_fold(
        self, ctx: RunContext, tokens: list[TokenTarget], fetched: dict[str, list[Trade]]
    ) -> None:
        trades = sorted(chain.from_iterable(fetched.values()), key=lambda t: t.sort_key)
        total = len(trades)
        batch_size = max(1, settings.SYNC_PERSIST_BATCH_SIZE)
        decimals = {token.address: token.decimals for token in tokens}
        ctx.progress.publish(ProgressEvent(phase=PHASE_PERSIST, completed=0, total=total))

        wallets: dict[str, datetime] = {}
        for trade in trades:
            seen = wallets.get(trade.wallet_address)
            if seen is None or trade.timestamp > seen:
                wallets[trade.wallet_address] = trade.timestamp

        try:
            async with self._sessions() as session:
                if ctx.is_full:
                    await truncate_indexer_data(session)

                for start in range(0, total, batch_size):
                    batch = trades[start : start + batch_size]
                    latest = await latest_trade_times(
                        session, {(t.wallet_address, t.token_address) for t in batch}
                    )
                    new_trades = await insert_new_trades(session, batch)
                    # A new trade at or before a position's stored history cannot be
                    # appended; those positions are refolded from every stored trade.
                    late = find_late_keys(new_trades, latest)
                    for wallet, token in sorted(late):
                        history = await load_position_trades(session, wallet, token, decimals[token])
                        await self.ledger.rebuild_position(session, wallet, token, history)
                    await self.ledger.fold_trades(
                        session,
                        [t for t in new_trades if (t.wallet_address, t.token_address) not in late],
                    )
                    await session.commit()
                    ctx.counters.positions_rebuilt += len(late)
                    ctx.counters.swaps_inserted += len(new_trades)
                    done = min(start + batch_size, total)
                    ctx.progress.publish(ProgressEvent(phase=PHASE_PERSIST, completed=done, total=total))

                await upsert_wallets(session, wallets)
                ctx.counters.wallets_found = len(wallets)

                for token in tokens:
                    token_trades = fetched.get(token.address) or []
                    if not token_trades:
                        continue
                    newest = max(t.timestamp for t in token_trades)
                    await session.execute(
                        update(TrackedToken)
                        .where(TrackedToken.token_address == token.address)
                        .values(last_synced_at=newest, updated_at=utcnow())
                    )
                await session.commit()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to persist swaps: {e}") from e

        ctx.log.info(
            f"Persisted {ctx.counters.swaps_inserted} new trades of {total}",
            wallets=ctx.counters.wallets_found,
            positions_rebuilt=ctx.counters.positions_rebuilt,
        )

    async def _discover_holders(self, ctx: RunContext, tokens: list[TokenTarget]) -> None:
        ctx.status.start_worker(HOLDER_WORKER, "Discovering holders")
        total = len(tokens)
        for index, token in enumerate(tokens, start=1):
            try:
                result = await self.discovery.discover_holders(token.address)
                holders = result.all_holders
                if holders:
                    async with self._sessions() as session:
                        await upsert_wallets(session, {address: None for address in holders})
                        await session.commit()
                ctx.counters.holders_found += len(holders)
                for source, message in result.errors.items():
                    ctx.status.add_error(f"holder discovery ({source}) for {token.address}: {message}")
            except (IndexerError, SQLAlchemyError) as e:
                ctx.log.warning("Holder discovery failed; continuing", token=token.address, error=str(e))
                ctx.status.add_error(f"holder discovery for {token.address}: {e}")
            ctx.progress.publish(
                ProgressEvent(
                    phase=PHASE_DISCOVERY,
                    completed=index,
                    total=total,
                    token_address=token.address,
                    message=f"Discovered holders for {token.address}",
                )
            )
        ctx.status.finish_worker(HOLDER_WORKER)

    # ==================== COMPLETION ====================

    async def _finalize(self, ctx: RunContext, error: Optional[BaseException]) -> None:
        """Record the terminal state exactly once and update the status sink."""
        succeeded = error is None
        if succeeded:
            ctx.status.set_overall_progress(100.0)
        else:
            message = self._describe(error)
            ctx.status.add_error(message)
            ctx.log.error(f"Sync failed: {message}", error_type=type(error).__name__)

        c = ctx.counters
        try:
            async with self._sessions() as session:
                run = await session.get(IndexerRun, ctx.run_id)
                if run is not None and run.status == RunStatus.RUNNING.value:
                    run.status = RunStatus.SUCCEEDED.value if succeeded else RunStatus.FAILED.value
                    run.finished_at = utcnow()
                    run.tokens_scanned = c.tokens_scanned
                    run.pages_fetched = c.pages_fetched
                    run.external_calls = c.external_calls
                    run.swaps_fetched = c.swaps_fetched
                    run.swaps_inserted = c.swaps_inserted
                    run.wallets_found = c.wallets_found
                    run.holders_found = c.holders_found
                    run.validation_dropped = c.validation_dropped
                    run.error_message = None if succeeded else self._describe(error)
                    await session.commit()
        except SQLAlchemyError as e:
            ctx.log.exception("Failed to record run outcome", error=str(e))

        ctx.status.finish(succeeded)
        if succeeded:
            ctx.log.success(
                f"Sync completed in {ctx.elapsed_seconds:.1f}s: {c.swaps_fetched} swaps, "
                f"{c.wallets_found} wallets, {c.holders_found} holders",
                pages=c.pages_fetched,
                calls=c.external_calls,
            )

    @staticmethod
    def _describe(error: Optional[BaseException]) -> str:
        if error is None:
            return ""
        if isinstance(error, asyncio.CancelledError):
            return "Sync cancelled"
        return str(error) or type(error).__name__

    def _result(self, ctx: RunContext, error: Optional[BaseException]) -> SyncResult:
        return SyncResult(
            run_id=ctx.run_id,
            success=error is None,
            sync_type=ctx.sync_type.value,
            token_address=ctx.token_address,
            counters=ctx.counters,
            duration_seconds=ctx.elapsed_seconds,
            error=self._describe(error) or None,
            error_type=type(error).__name__ if error is not None else None,
            retryable=isinstance(error, ConnectivityError),
        )


async def recover_interrupted_runs(session_factory: Optional[Callable] = None) -> int:
    """Mark runs whose owning process stopped heartbeating as failed.

    Runs still heartbeating belong to a live process (for example the sync
    worker) and are left alone.
    """
    if session_factory is None:
        from models import database

        session_factory = database.AsyncSessionLocal
    async with session_factory() as session:
        recovered = await expire_stale_runs(session)
        await session.commit()
    if recovered:
        logger.warning(f"Marked {recovered} interrupted runs as failed")
    return recovered


sync_orchestrator = SyncOrchestrator()
