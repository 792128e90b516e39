import sys
from datetime import datetime
from pathlib import Path

import pytest
from sqlalchemy import func, select

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from conftest import ONE_TOKEN, TOKEN, swap_record, tx_hash, wallet_address
from models.database import Position, SwapTrade, TokenTransfer, Wallet
from models.swap import Trade
from services.trade_store import (
    insert_new_trades,
    insert_trades,
    latest_trade_times,
    list_trades,
    load_position_trades,
    record_transfers,
    truncate_indexer_data,
    upsert_wallets,
)


def _trades(count, **kwargs):
    return [Trade.from_feed_record(swap_record(i, **kwargs), TOKEN) for i in range(count)]


async def _count(session, model):
    return (await session.execute(select(func.count()).select_from(model))).scalar_one()


@pytest.mark.asyncio
async def test_reinserting_same_trades_is_a_no_op(tmp_path, build_session_factory):
    engine, session_factory = await build_session_factory(tmp_path)
    try:
        trades = _trades(5)
        async with session_factory() as session:
            assert await insert_trades(session, trades) == 5
            await session.commit()

        async with session_factory() as session:
            assert await insert_new_trades(session, trades) == []
            await session.commit()
            assert await _count(session, SwapTrade) == 5
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_only_new_trades_are_returned_from_mixed_batch(tmp_path, build_session_factory):
    engine, session_factory = await build_session_factory(tmp_path)
    try:
        trades = _trades(6)
        async with session_factory() as session:
            await insert_trades(session, trades[:3])
            new = await insert_new_trades(session, trades)
            await session.commit()

        assert [t.tx_hash for t in new] == [tx_hash(i) for i in range(3, 6)]
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_buy_and_sell_legs_of_one_tx_are_distinct(tmp_path, build_session_factory):
    engine, session_factory = await build_session_factory(tmp_path)
    try:
        buy = Trade.from_feed_record(swap_record(0, wallet=wallet_address(0)), TOKEN)
        sell = Trade.from_feed_record(swap_record(0, wallet=wallet_address(0), side="SELL"), TOKEN)
        async with session_factory() as session:
            assert await insert_trades(session, [buy, sell]) == 2
            await session.commit()
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_amounts_are_stored_exactly(tmp_path, build_session_factory):
    engine, session_factory = await build_session_factory(tmp_path)
    try:
        huge = 2**200 + 7
        trade = Trade.from_feed_record(swap_record(0, amount=huge, price="0.000000123456"), TOKEN)
        async with session_factory() as session:
            await insert_trades(session, [trade])
            await session.commit()
            row = (await session.execute(select(SwapTrade))).scalar_one()

        assert row.token_amount == huge
        assert row.price_usd == trade.price_usd
        assert row.usd_value == trade.usd_value
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_list_trades_paginates_and_sorts(tmp_path, build_session_factory):
    engine, session_factory = await build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            await insert_trades(session, _trades(7))
            await session.commit()

            first = await list_trades(session, limit=3, offset=0)
            last = await list_trades(session, limit=3, offset=6)
            ascending = await list_trades(session, sort_order="asc", limit=2)

        assert first.total == 7
        assert first.has_more is True
        assert [t.tx_hash for t in first.items] == [tx_hash(6), tx_hash(5), tx_hash(4)]
        assert len(last.items) == 1
        assert last.has_more is False
        assert [t.tx_hash for t in ascending.items] == [tx_hash(0), tx_hash(1)]
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_list_trades_sorts_by_usd_value_numerically(tmp_path, build_session_factory):
    engine, session_factory = await build_session_factory(tmp_path)
    try:
        trades = [
            Trade.from_feed_record(swap_record(0, price="9"), TOKEN),
            Trade.from_feed_record(swap_record(1, price="10"), TOKEN),
            Trade.from_feed_record(swap_record(2, price="100"), TOKEN),
        ]
        async with session_factory() as session:
            await insert_trades(session, trades)
            await session.commit()
            page = await list_trades(session, sort_by="usd_value", sort_order="desc")

        assert [t.tx_hash for t in page.items] == [tx_hash(2), tx_hash(1), tx_hash(0)]
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_list_trades_filters(tmp_path, build_session_factory):
    engine, session_factory = await build_session_factory(tmp_path)
    try:
        trades = _trades(4) + [Trade.from_feed_record(swap_record(10, side="SELL"), TOKEN)]
        async with session_factory() as session:
            await insert_trades(session, trades)
            session.add(Wallet(address=wallet_address(1), is_registered=True))
            await session.commit()

            sells = await list_trades(session, side="sell")
            one_wallet = await list_trades(session, wallet_address=wallet_address(2).upper().replace("0X", "0x"))
            registered = await list_trades(session, registered_only=True)

        assert [t.side for t in sells.items] == ["SELL"]
        assert one_wallet.total == 1
        assert [t.wallet_address for t in registered.items] == [wallet_address(1)]
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_upsert_wallets_counts_created_and_advances_marker(tmp_path, build_session_factory):
    engine, session_factory = await build_session_factory(tmp_path)
    try:
        early = datetime(2024, 1, 1)
        late = datetime(2024, 2, 1)
        async with session_factory() as session:
            created = await upsert_wallets(session, {wallet_address(0): early, wallet_address(1): None})
            await session.commit()
            created_again = await upsert_wallets(session, {wallet_address(0): late, wallet_address(2): late})
            await session.commit()
            wallet = await session.get(Wallet, wallet_address(0))

        assert created == 2
        assert created_again == 1
        assert wallet.last_synced_at == late
        assert wallet.is_registered is False
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_truncate_clears_trades_positions_and_wallets(tmp_path, build_session_factory):
    engine, session_factory = await build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            await insert_trades(session, _trades(3))
            await upsert_wallets(session, {wallet_address(0): None})
            session.add(Position(wallet_address=wallet_address(0), token_address=TOKEN, remaining_amount=ONE_TOKEN))
            await session.commit()

            await truncate_indexer_data(session)
            await session.commit()

            assert await _count(session, SwapTrade) == 0
            assert await _count(session, Position) == 0
            assert await _count(session, Wallet) == 0
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_record_transfers_is_idempotent_and_skips_malformed(tmp_path, build_session_factory):
    engine, session_factory = await build_session_factory(tmp_path)
    try:
        transfers = [
            {
                "from": wallet_address(0),
                "to": wallet_address(1),
                "token": TOKEN,
                "tx_hash": tx_hash(0),
                "log_index": 0,
                "amount": str(5 * ONE_TOKEN),
                "block_number": 10,
                "timestamp": 1_700_000_000,
            },
            {
                "from_address": wallet_address(1),
                "to_address": wallet_address(2),
                "token_address": TOKEN,
                "transactionHash": tx_hash(1),
                "logIndex": "3",
                "value": ONE_TOKEN,
            },
            {"from": "bad", "to": wallet_address(2), "token": TOKEN, "tx_hash": tx_hash(2), "log_index": 0, "amount": 1},
            {"from": wallet_address(0), "to": wallet_address(2), "token": TOKEN, "tx_hash": tx_hash(3), "amount": 1},
        ]
        async with session_factory() as session:
            assert await record_transfers(session, transfers) == 2
            await session.commit()
            assert await record_transfers(session, transfers) == 0
            await session.commit()
            assert await _count(session, TokenTransfer) == 2
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_latest_trade_times_per_wallet_and_token(tmp_path, build_session_factory):
    engine, session_factory = await build_session_factory(tmp_path)
    try:
        trades = [
            Trade.from_feed_record(swap_record(0, wallet=wallet_address(0), timestamp=100), TOKEN),
            Trade.from_feed_record(swap_record(1, wallet=wallet_address(0), timestamp=300), TOKEN),
            Trade.from_feed_record(swap_record(2, wallet=wallet_address(1), timestamp=200), TOKEN),
        ]
        async with session_factory() as session:
            await insert_trades(session, trades)
            await session.commit()

            latest = await latest_trade_times(
                session, {(wallet_address(0), TOKEN), (wallet_address(1), TOKEN), (wallet_address(2), TOKEN)}
            )

        assert latest == {
            (wallet_address(0), TOKEN): trades[1].timestamp,
            (wallet_address(1), TOKEN): trades[2].timestamp,
        }
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_load_position_trades_returns_fold_order(tmp_path, build_session_factory):
    engine, session_factory = await build_session_factory(tmp_path)
    try:
        wallet = wallet_address(0)
        sell = Trade.from_feed_record(
            swap_record(0, wallet=wallet, side="SELL", amount=5 * ONE_TOKEN, timestamp=30, block=200), TOKEN
        )
        late_buy = Trade.from_feed_record(
            swap_record(1, wallet=wallet, amount=10 * ONE_TOKEN, price="3", timestamp=30, block=199), TOKEN
        )
        first_buy = Trade.from_feed_record(swap_record(2, wallet=wallet, timestamp=10), TOKEN)
        other = Trade.from_feed_record(swap_record(3, wallet=wallet_address(1), timestamp=20), TOKEN)
        async with session_factory() as session:
            await insert_trades(session, [sell, late_buy, first_buy, other])
            await session.commit()

            history = await load_position_trades(session, wallet, TOKEN, decimals=18)

        assert [t.tx_hash for t in history] == [first_buy.tx_hash, late_buy.tx_hash, sell.tx_hash]
        assert history[1].token_amount == 10 * ONE_TOKEN
        assert history[1].price_usd == late_buy.price_usd
        assert history[2].side == sell.side
    finally:
        await engine.dispose()
