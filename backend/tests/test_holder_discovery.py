import sys
from pathlib import Path

import httpx
import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from config import settings
from conftest import ONE_TOKEN, TOKEN, tx_hash, wallet_address
from services.holder_discovery import HolderDiscoveryService, extract_holder_addresses
from services.trade_store import record_transfers
from utils.rate_limiter import RateLimiter
from utils.retry import RetryConfig
from utils.validation import ZERO_ADDRESS


def _transfer(index, sender, receiver, tokens):
    return {
        "from": sender,
        "to": receiver,
        "token": TOKEN,
        "tx_hash": tx_hash(index),
        "log_index": 0,
        "amount": tokens * ONE_TOKEN,
    }


def _service(session_factory=None, handler=None):
    return HolderDiscoveryService(
        session_factory=session_factory,
        transport=httpx.MockTransport(handler) if handler else None,
        retry_config=RetryConfig(max_attempts=1),
        limiter=RateLimiter(),
    )


@pytest.mark.asyncio
async def test_transfer_scan_keeps_positive_net_balances(tmp_path, build_session_factory):
    engine, session_factory = await build_session_factory(tmp_path)
    try:
        async with session_factory() as session:
            await record_transfers(
                session,
                [
                    _transfer(0, ZERO_ADDRESS, wallet_address(0), 10),
                    _transfer(1, wallet_address(0), wallet_address(1), 4),
                    _transfer(2, wallet_address(1), wallet_address(2), 4),
                    _transfer(3, wallet_address(0), wallet_address(3), 1),
                ],
            )
            await session.commit()

        holders = await _service(session_factory).transfer_holders(TOKEN)

        # wallet 1 received then forwarded everything; the mint source is never a holder.
        assert holders == {wallet_address(0), wallet_address(2), wallet_address(3)}
    finally:
        await engine.dispose()


@pytest.mark.asyncio
async def test_apis_are_skipped_without_keys(tmp_path, build_session_factory):
    calls = []

    def handler(request):
        calls.append(request)
        return httpx.Response(200, json={"data": []})

    engine, session_factory = await build_session_factory(tmp_path)
    service = _service(session_factory, handler)
    try:
        result = await service.discover_holders(TOKEN)
    finally:
        await service.close()
        await engine.dispose()

    assert calls == []
    assert result.all_holders == set()
    assert result.errors == {}


@pytest.mark.asyncio
async def test_discovery_reconciles_transfer_and_api_sets(tmp_path, build_session_factory, monkeypatch):
    monkeypatch.setattr(settings, "ZERION_API_KEY", "zerion-key")
    monkeypatch.setattr(settings, "ZAPPER_API_KEY", "zapper-key")

    def handler(request):
        if "zerion" in request.url.host:
            return httpx.Response(
                200,
                json={"data": [{"attributes": {"address": wallet_address(0)}}, {"address": wallet_address(5)}]},
            )
        return httpx.Response(200, json={"holders": [wallet_address(6).upper().replace("0X", "0x"), "junk"]})

    engine, session_factory = await build_session_factory(tmp_path)
    async with session_factory() as session:
        await record_transfers(
            session,
            [_transfer(0, ZERO_ADDRESS, wallet_address(0), 5), _transfer(1, ZERO_ADDRESS, wallet_address(1), 5)],
        )
        await session.commit()

    service = _service(session_factory, handler)
    try:
        result = await service.discover_holders(TOKEN)
    finally:
        await service.close()
        await engine.dispose()

    assert result.transfer_based == {wallet_address(0), wallet_address(1)}
    assert result.api_based == {wallet_address(0), wallet_address(5), wallet_address(6)}
    assert result.in_both == {wallet_address(0)}
    assert result.only_transfers == {wallet_address(1)}
    assert result.only_apis == {wallet_address(5), wallet_address(6)}
    summary = result.summary()
    assert summary["allHolders"] == 4
    assert summary["inBoth"] == 1


@pytest.mark.asyncio
async def test_failing_api_degrades_to_empty_set(tmp_path, build_session_factory, monkeypatch):
    monkeypatch.setattr(settings, "ZERION_API_KEY", "zerion-key")
    monkeypatch.setattr(settings, "ZAPPER_API_KEY", "zapper-key")

    def handler(request):
        if "zerion" in request.url.host:
            return httpx.Response(404, json={"error": "not found"})
        return httpx.Response(500, json={"error": "boom"})

    engine, session_factory = await build_session_factory(tmp_path)
    service = _service(session_factory, handler)
    try:
        result = await service.discover_holders(TOKEN)
    finally:
        await service.close()
        await engine.dispose()

    assert result.api_based == set()
    # 404 means "no list for this token", not an error.
    assert "zerion" not in result.errors
    assert "zapper" in result.errors


def test_extract_holder_addresses_handles_nested_shapes():
    payload = {"data": {"items": [{"owner": wallet_address(1)}, {"holder": ZERO_ADDRESS}, 7]}}

    assert extract_holder_addresses(payload) == {wallet_address(1)}
    assert extract_holder_addresses(None) == set()
