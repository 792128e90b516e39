import sys
from decimal import Decimal
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from models.swap import Trade
from services.position_ledger import (
    PositionLedger,
    PositionState,
    find_late_keys,
    sort_for_fold,
    unrealized_pnl,
)
from conftest import ONE_TOKEN, TOKEN, swap_record, wallet_address
from utils.utcnow import parse_timestamp


def _trade(index, side="BUY", tokens=1, price="1", wallet=None, timestamp=None, block=None):
    record = swap_record(
        index,
        wallet=wallet or wallet_address(0),
        side=side,
        amount=tokens * ONE_TOKEN,
        price=price,
        timestamp=timestamp,
        block=block,
    )
    return Trade.from_feed_record(record, TOKEN, 18)


def test_buy_then_partial_sell_realizes_forty_dollars():
    state = PositionState()
    state.apply_buy(100 * ONE_TOKEN, Decimal("1"))

    assert state.remaining == 100 * ONE_TOKEN
    assert state.cost_basis == Decimal("100")

    realized = state.apply_sell(40 * ONE_TOKEN, Decimal("2"))

    assert realized == Decimal("40")
    assert state.remaining == 60 * ONE_TOKEN
    assert state.cost_basis == Decimal("60")
    assert state.realized_pnl == Decimal("40")


def test_sell_more_than_remaining_is_clamped():
    state = PositionState()
    state.apply_buy(10 * ONE_TOKEN, Decimal("3"))

    realized = state.apply_sell(25 * ONE_TOKEN, Decimal("5"))

    # Only the 10 tracked units realize PnL: 10 * 5 - 30.
    assert realized == Decimal("20")
    assert state.remaining == 0
    assert state.cost_basis == Decimal("0")
    assert state.sell_volume == Decimal("50")


def test_sell_without_position_realizes_nothing():
    state = PositionState()

    assert state.apply_sell(5 * ONE_TOKEN, Decimal("2")) == Decimal("0")
    assert state.remaining == 0
    assert state.sell_count == 0


def test_average_cost_pools_buys_at_different_prices():
    state = PositionState()
    state.apply_buy(100 * ONE_TOKEN, Decimal("1"))
    state.apply_buy(100 * ONE_TOKEN, Decimal("3"))

    realized = state.apply_sell(50 * ONE_TOKEN, Decimal("2"))

    # Average cost is $2, so a sale at $2 realizes nothing.
    assert realized == Decimal("0")
    assert state.cost_basis == Decimal("300")


def test_cost_basis_invariants_hold_over_mixed_sequence():
    state = PositionState()
    steps = [
        ("BUY", 7, "0.125"),
        ("SELL", 3, "0.5"),
        ("BUY", 11, "0.333333333333"),
        ("SELL", 20, "0.01"),
        ("BUY", 2, "9.99"),
        ("SELL", 1, "10"),
    ]
    bought_cost = Decimal("0")
    sold_cost = Decimal("0")
    for side, tokens, price in steps:
        amount = tokens * ONE_TOKEN
        if side == "BUY":
            state.apply_buy(amount, Decimal(price))
            bought_cost += tokens * Decimal(price)
        else:
            before = state.cost_basis
            state.apply_sell(amount, Decimal(price))
            sold_cost += before - state.cost_basis

        assert state.remaining >= 0
        assert state.cost_basis >= 0
        assert (state.cost_basis == 0) == (state.remaining == 0)

    assert abs(state.cost_basis - (bought_cost - sold_cost)) < Decimal("0.000001")


def test_unrealized_pnl_uses_supplied_price():
    assert unrealized_pnl(60 * ONE_TOKEN, Decimal("60"), Decimal("1.5")) == Decimal("30")
    assert unrealized_pnl(0, Decimal("0"), Decimal("100")) == Decimal("0")


def test_respects_token_decimals():
    state = PositionState()
    state.apply_buy(5_000_000, Decimal("2"), decimals=6)

    assert state.cost_basis == Decimal("10")


def test_fold_order_puts_buy_before_sell_on_ties():
    sell = _trade(1, side="SELL", timestamp=100, block=5)
    buy = _trade(2, side="BUY", timestamp=100, block=5)
    earlier = _trade(3, side="BUY", timestamp=99, block=9)

    ordered = sort_for_fold([sell, buy, earlier])

    assert ordered == [earlier, buy, sell]


@pytest.mark.asyncio
async def test_fold_is_order_independent_for_sorted_input(tmp_path, build_session_factory):
    trades = [
        _trade(0, "BUY", 100, "1", timestamp=10),
        _trade(1, "SELL", 40, "2", timestamp=20),
        _trade(2, "BUY", 10, "4", timestamp=30),
        _trade(3, "SELL", 100, "3", timestamp=40),
    ]
    results = []
    for name, ordering in (("a.db", trades), ("b.db", list(reversed(trades)))):
        engine, session_factory = await build_session_factory(tmp_path, name)
        try:
            ledger = PositionLedger()
            async with session_factory() as session:
                summary = await ledger.fold_trades(session, ordering)
                await session.commit()
                position = await ledger.get_position(session, wallet_address(0), TOKEN)
                results.append(
                    (position.remaining_amount, position.cost_basis_usd, position.realized_pnl_usd, summary.clamped_sells)
                )
        finally:
            await engine.dispose()

    assert results[0] == results[1]
    remaining, cost_basis, realized, clamped = results[0]
    assert remaining == 0
    assert cost_basis == Decimal("0")
    # Final sell is clamped to 70: 40 + (70 * 3 - 100) = 150
    assert realized == Decimal("150")
    assert clamped == 1


@pytest.mark.asyncio
async def test_ledger_sell_without_position_does_not_create_row(tmp_path, build_session_factory):
    engine, session_factory = await build_session_factory(tmp_path)
    try:
        ledger = PositionLedger()
        async with session_factory() as session:
            realized = await ledger.apply_sell(session, wallet_address(5), TOKEN, ONE_TOKEN, Decimal("1"))
            await session.commit()
            position = await ledger.get_position(session, wallet_address(5), TOKEN)

        assert realized == Decimal("0")
        assert position is None
    finally:
        await engine.dispose()


def test_late_keys_include_ties_and_earlier_trades_only():
    wallet_a, wallet_b, wallet_c = wallet_address(0), wallet_address(1), wallet_address(2)
    latest = {(wallet_a, TOKEN): parse_timestamp(30), (wallet_b, TOKEN): parse_timestamp(30)}
    trades = [
        _trade(0, wallet=wallet_a, timestamp=30, block=199),
        _trade(1, wallet=wallet_b, timestamp=31),
        _trade(2, wallet=wallet_c, timestamp=5),
    ]

    assert find_late_keys(trades, latest) == {(wallet_a, TOKEN)}
    assert find_late_keys(trades, {}) == set()


@pytest.mark.asyncio
async def test_rebuild_matches_a_fresh_fold_of_the_same_history(tmp_path, build_session_factory):
    first_buy = _trade(0, "BUY", 100, "1", timestamp=10, block=100)
    sell = _trade(1, "SELL", 50, "2", timestamp=30, block=200)
    late_buy = _trade(2, "BUY", 100, "3", timestamp=30, block=199)

    engine, session_factory = await build_session_factory(tmp_path, "rebuilt.db")
    try:
        ledger = PositionLedger()
        async with session_factory() as session:
            await ledger.fold_trades(session, [first_buy, sell])
            await session.commit()
            state = await ledger.rebuild_position(session, wallet_address(0), TOKEN, [sell, late_buy, first_buy])
            await session.commit()
            rebuilt = await ledger.get_position(session, wallet_address(0), TOKEN)
            rebuilt = (rebuilt.remaining_amount, rebuilt.cost_basis_usd, rebuilt.realized_pnl_usd, rebuilt.buy_count)
    finally:
        await engine.dispose()

    engine, session_factory = await build_session_factory(tmp_path, "folded.db")
    try:
        ledger = PositionLedger()
        async with session_factory() as session:
            await ledger.fold_trades(session, [first_buy, late_buy, sell])
            await session.commit()
            folded = await ledger.get_position(session, wallet_address(0), TOKEN)
            folded = (folded.remaining_amount, folded.cost_basis_usd, folded.realized_pnl_usd, folded.buy_count)
    finally:
        await engine.dispose()

    assert rebuilt == folded == (150 * ONE_TOKEN, Decimal("300"), Decimal("0"), 2)
    assert state.last_trade_at == sell.timestamp


@pytest.mark.asyncio
async def test_rebuild_of_sells_only_history_creates_no_row(tmp_path, build_session_factory):
    engine, session_factory = await build_session_factory(tmp_path)
    try:
        ledger = PositionLedger()
        async with session_factory() as session:
            state = await ledger.rebuild_position(
                session, wallet_address(0), TOKEN, [_trade(0, "SELL", 5, "2", timestamp=10)]
            )
            await session.commit()

            assert state.sell_count == 0
            assert await ledger.get_position(session, wallet_address(0), TOKEN) is None
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_ledger_retains_no_state_per_position(tmp_path, build_session_factory):
    engine, session_factory = await build_session_factory(tmp_path)
    try:
        ledger = PositionLedger()
        trades = [_trade(i, "BUY", 1, "1", wallet=wallet_address(i)) for i in range(200)]
        async with session_factory() as session:
            summary = await ledger.fold_trades(session, trades)
            await session.commit()

        assert len(summary.positions_touched) == 200
        assert vars(ledger) == {}
    finally:
        await engine.dispose()
