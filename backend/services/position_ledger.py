"""Average-cost position ledger.

Every held unit of a (wallet, token) position shares one pooled cost
basis. A sell realizes ``amount * price - amount * cost_basis / remaining``.
This is weighted-average cost, not lot-level FIFO; switching methods would
change realized PnL for existing positions.

Token amounts are base-unit integers. USD values are ``Decimal`` quantized
to ``USD_DECIMAL_PLACES`` after every mutation.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from decimal import Decimal, localcontext
from typing import Iterable, Mapping, Optional, Sequence

from sqlalchemy.exc import SQLAlchemyError
from sqlalchemy.ext.asyncio import AsyncSession

from config import settings
from models.database import Position
from models.swap import Trade, TradeSide, to_whole_tokens
from models.types import quantize_usd
from services.errors import PersistenceError
from utils.logger import get_logger
from utils.utcnow import utcnow

logger = get_logger("indexer.ledger")

ZERO = Decimal(0)
# Enough digits for uint256 amounts times 18-decimal prices without rounding.
_LEDGER_PRECISION = 120


@dataclass
class PositionState:
    """Pure in-memory position math, shared by the ORM-backed ledger and tests."""

    remaining: int = 0
    cost_basis: Decimal = ZERO
    realized_pnl: Decimal = ZERO
    buy_count: int = 0
    sell_count: int = 0
    buy_volume: Decimal = ZERO
    sell_volume: Decimal = ZERO
    last_trade_at: Optional[datetime] = None

    @classmethod
    def from_row(cls, row: Position) -> "PositionState":
        return cls(
            remaining=row.remaining_amount or 0,
            cost_basis=row.cost_basis_usd or ZERO,
            realized_pnl=row.realized_pnl_usd or ZERO,
            buy_count=row.buy_count or 0,
            sell_count=row.sell_count or 0,
            buy_volume=row.buy_volume_usd or ZERO,
            sell_volume=row.sell_volume_usd or ZERO,
            last_trade_at=row.last_trade_at,
        )

    def copy_to(self, row: Position) -> None:
        row.remaining_amount = self.remaining
        row.cost_basis_usd = self.cost_basis
        row.realized_pnl_usd = self.realized_pnl
        row.buy_count = self.buy_count
        row.sell_count = self.sell_count
        row.buy_volume_usd = self.buy_volume
        row.sell_volume_usd = self.sell_volume
        row.last_trade_at = self.last_trade_at
        row.updated_at = utcnow()

    def apply_buy(self, amount: int, unit_price_usd: Decimal, decimals: int = 18) -> None:
        if amount <= 0:
            raise ValueError("buy amount must be positive")
        with localcontext() as ctx:
            ctx.prec = _LEDGER_PRECISION
            value = to_whole_tokens(amount, decimals) * unit_price_usd
            self.remaining += amount
            self.cost_basis = quantize_usd(self.cost_basis + value)
            self.buy_volume = quantize_usd(self.buy_volume + value)
        self.buy_count += 1

    def apply_sell(self, amount: int, unit_price_usd: Decimal, decimals: int = 18) -> Decimal:
        """Apply a sell and return the realized PnL for it.

        Sells beyond ``remaining`` are clamped: units bought before the
        tracked window have no known cost, so no PnL is realized on them.
        """
        if amount <= 0:
            raise ValueError("sell amount must be positive")
        if self.remaining <= 0:
            return ZERO

        sold = min(amount, self.remaining)
        with localcontext() as ctx:
            ctx.prec = _LEDGER_PRECISION
            avg_cost = self.cost_basis / max(self.remaining, 1)
            sell_value = to_whole_tokens(sold, decimals) * unit_price_usd
            cost_of_sold = sold * avg_cost
            realized = quantize_usd(sell_value - cost_of_sold)

            self.remaining -= sold
            if self.remaining == 0:
                # Close out rounding residue so cost basis is zero iff nothing is held.
                self.cost_basis = ZERO
            else:
                self.cost_basis = max(ZERO, quantize_usd(self.cost_basis - cost_of_sold))
            self.realized_pnl = quantize_usd(self.realized_pnl + realized)
            self.sell_volume = quantize_usd(self.sell_volume + sell_value)
        self.sell_count += 1
        return realized

    def unrealized_pnl(self, current_price_usd: Decimal, decimals: int = 18) -> Decimal:
        return unrealized_pnl(self.remaining, self.cost_basis, current_price_usd, decimals)


def unrealized_pnl(
    remaining: int, cost_basis: Decimal, current_price_usd: Decimal, decimals: int = 18
) -> Decimal:
    """``current value - cost basis`` for a caller-supplied price."""
    with localcontext() as ctx:
        ctx.prec = _LEDGER_PRECISION
        current_value = to_whole_tokens(remaining, decimals) * Decimal(current_price_usd)
        return quantize_usd(current_value - cost_basis)


def sort_for_fold(trades: Sequence[Trade]) -> list[Trade]:
    """Order trades by (timestamp, block, BUY before SELL, tx hash)."""
    return sorted(trades, key=lambda t: t.sort_key)


def find_late_keys(
    trades: Iterable[Trade], latest_stored: Mapping[tuple[str, str], datetime]
) -> set[tuple[str, str]]:
    """Keys whose new trades do not all sort after what is already stored.

    ``latest_stored`` holds the newest stored timestamp per key, read before
    the new trades were inserted. A tie counts as late: stored rows at the
    same timestamp may carry a later block.
    """
    late = set()
    for trade in trades:
        key = (trade.wallet_address, trade.token_address)
        newest = latest_stored.get(key)
        if newest is not None and trade.timestamp <= newest:
            late.add(key)
    return late


@dataclass
class FoldSummary:
    applied: int = 0
    skipped_sells: int = 0
    clamped_sells: int = 0
    realized_pnl: Decimal = ZERO
    positions_touched: set = field(default_factory=set)


class PositionLedger:
    """Sole writer of ``positions`` rows.

    Every mutation loads its row ``FOR UPDATE`` inside the caller's
    transaction, so concurrent sessions serialize on the row until commit.
    Nothing is committed here.
    """

    async def get_position(self, session: AsyncSession, wallet: str, token: str) -> Optional[Position]:
        return await session.get(Position, (wallet.lower(), token.lower()))

    async def _load(self, session: AsyncSession, wallet: str, token: str, create: bool) -> Optional[Position]:
        row = await session.get(Position, (wallet.lower(), token.lower()), with_for_update=True)
        if row is None and create:
            row = Position(
                wallet_address=wallet.lower(),
                token_address=token.lower(),
                remaining_amount=0,
                cost_basis_usd=ZERO,
                realized_pnl_usd=ZERO,
                buy_count=0,
                sell_count=0,
                buy_volume_usd=ZERO,
                sell_volume_usd=ZERO,
            )
            session.add(row)
        return row

    async def apply_buy(
        self,
        session: AsyncSession,
        wallet: str,
        token: str,
        amount: int,
        unit_price_usd: Decimal,
        decimals: Optional[int] = None,
        at: Optional[datetime] = None,
    ) -> PositionState:
        decimals = settings.DEFAULT_TOKEN_DECIMALS if decimals is None else decimals
        try:
            row = await self._load(session, wallet, token, create=True)
            state = PositionState.from_row(row)
            state.apply_buy(amount, unit_price_usd, decimals)
            state.last_trade_at = at or state.last_trade_at
            state.copy_to(row)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to apply buy for {wallet}/{token}: {e}") from e
        return state

    async def apply_sell(
        self,
        session: AsyncSession,
        wallet: str,
        token: str,
        amount: int,
        unit_price_usd: Decimal,
        decimals: Optional[int] = None,
        at: Optional[datetime] = None,
    ) -> Decimal:
        decimals = settings.DEFAULT_TOKEN_DECIMALS if decimals is None else decimals
        try:
            row = await self._load(session, wallet, token, create=False)
            if row is None or not row.remaining_amount:
                logger.warning(
                    "Sell with no tracked position; nothing realized",
                    wallet=wallet,
                    token=token,
                    amount=str(amount),
                )
                return ZERO
            state = PositionState.from_row(row)
            if amount > state.remaining:
                logger.warning(
                    "Sell exceeds tracked position; clamped",
                    wallet=wallet,
                    token=token,
                    amount=str(amount),
                    remaining=str(state.remaining),
                )
            realized = state.apply_sell(amount, unit_price_usd, decimals)
            state.last_trade_at = at or state.last_trade_at
            state.copy_to(row)
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to apply sell for {wallet}/{token}: {e}") from e
        return realized

    async def apply_trade(self, session: AsyncSession, trade: Trade) -> Decimal:
        if trade.side == TradeSide.BUY:
            await self.apply_buy(
                session,
                trade.wallet_address,
                trade.token_address,
                trade.token_amount,
                trade.price_usd,
                trade.token_decimals,
                trade.timestamp,
            )
            return ZERO
        return await self.apply_sell(
            session,
            trade.wallet_address,
            trade.token_address,
            trade.token_amount,
            trade.price_usd,
            trade.token_decimals,
            trade.timestamp,
        )

    async def fold_trades(self, session: AsyncSession, trades: Sequence[Trade]) -> FoldSummary:
        """Apply ``trades`` in chronological order. Changes are flushed, not committed."""
        summary = FoldSummary()
        for trade in sort_for_fold(trades):
            key = (trade.wallet_address, trade.token_address)
            if trade.side == TradeSide.SELL:
                row = await self.get_position(session, *key)
                remaining = row.remaining_amount if row is not None else 0
                if not remaining:
                    summary.skipped_sells += 1
                elif trade.token_amount > remaining:
                    summary.clamped_sells += 1
            summary.realized_pnl += await self.apply_trade(session, trade)
            summary.applied += 1
            summary.positions_touched.add(key)
        try:
            await session.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to flush positions: {e}") from e
        if summary.skipped_sells:
            logger.info(
                f"Skipped {summary.skipped_sells} sells with no tracked position",
                skipped=summary.skipped_sells,
            )
        return summary

    async def rebuild_position(
        self, session: AsyncSession, wallet: str, token: str, history: Sequence[Trade]
    ) -> PositionState:
        """Replace one position with a fresh fold of its full trade ``history``."""
        state = PositionState()
        for trade in sort_for_fold(history):
            if trade.side == TradeSide.BUY:
                state.apply_buy(trade.token_amount, trade.price_usd, trade.token_decimals)
            elif state.remaining > 0:
                state.apply_sell(trade.token_amount, trade.price_usd, trade.token_decimals)
            else:
                continue
            state.last_trade_at = trade.timestamp

        try:
            row = await self._load(session, wallet, token, create=state.buy_count > 0)
            if row is not None:
                if state.buy_count:
                    state.copy_to(row)
                else:
                    await session.delete(row)
            await session.flush()
        except SQLAlchemyError as e:
            raise PersistenceError(f"Failed to rebuild position {wallet}/{token}: {e}") from e
        logger.info(
            "Rebuilt position from stored trades",
            wallet=wallet,
            token=token,
            trades=len(history),
            remaining=str(state.remaining),
        )
        return state

    def unrealized_pnl(self, position: Position, current_price_usd: Decimal, decimals: Optional[int] = None) -> Decimal:
        decimals = settings.DEFAULT_TOKEN_DECIMALS if decimals is None else decimals
        return unrealized_pnl(
            position.remaining_amount or 0, position.cost_basis_usd or ZERO, current_price_usd, decimals
        )


position_ledger = PositionLedger()
