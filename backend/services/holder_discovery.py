"""Holder discovery: who currently holds a tracked token.

Two strategies run concurrently and are reconciled:

* transfer scan: net balances from ``token_transfers``, positive only,
  zero address excluded;
* holder APIs: Zerion and Zapper holder lists (skipped when no key is
  configured).

A failing strategy contributes an empty set. Discovery never raises for
upstream problems, so it cannot fail the sync that precedes it.
"""

from __future__ import annotations

import asyncio
from collections import defaultdict
from dataclasses import dataclass, field
from typing import Callable, Optional

import httpx
from sqlalchemy import select

from config import settings
from models.database import TokenTransfer
from utils.logger import get_logger
from utils.rate_limiter import RateLimiter, rate_limiter
from utils.retry import RetryableClient, RetryConfig
from utils.validation import ZERO_ADDRESS, is_eth_address

logger = get_logger("indexer.holders")

_ADDRESS_KEYS = ("address", "wallet_address", "walletAddress", "owner", "holder")
_LIST_KEYS = ("data", "holders", "items", "results")


@dataclass
class HolderDiscoveryResult:
    token_address: str
    transfer_based: set[str] = field(default_factory=set)
    api_based: set[str] = field(default_factory=set)
    errors: dict[str, str] = field(default_factory=dict)

    @property
    def all_holders(self) -> set[str]:
        return self.transfer_based | self.api_based

    @property
    def in_both(self) -> set[str]:
        return self.transfer_based & self.api_based

    @property
    def only_transfers(self) -> set[str]:
        return self.transfer_based - self.api_based

    @property
    def only_apis(self) -> set[str]:
        return self.api_based - self.transfer_based

    def summary(self) -> dict:
        return {
            "tokenAddress": self.token_address,
            "transferBasedHolders": len(self.transfer_based),
            "apiBasedHolders": len(self.api_based),
            "allHolders": len(self.all_holders),
            "inBoth": len(self.in_both),
            "onlyInTransfers": len(self.only_transfers),
            "onlyInApis": len(self.only_apis),
            "errors": dict(self.errors),
        }


def extract_holder_addresses(payload: object) -> set[str]:
    """Pull wallet addresses out of a holder-list response of unknown shape."""
    items: list = []
    if isinstance(payload, list):
        items = payload
    elif isinstance(payload, dict):
        for key in _LIST_KEYS:
            value = payload.get(key)
            if isinstance(value, list):
                items = value
                break
            if isinstance(value, dict):
                return extract_holder_addresses(value)

    holders: set[str] = set()
    for item in items:
        if isinstance(item, str) and is_eth_address(item):
            holders.add(item.lower())
            continue
        if not isinstance(item, dict):
            continue
        candidates = [item]
        if isinstance(item.get("attributes"), dict):
            candidates.append(item["attributes"])
        for candidate in candidates:
            for key in _ADDRESS_KEYS:
                value = candidate.get(key)
                if is_eth_address(value):
                    holders.add(value.strip().lower())
                    break
    holders.discard(ZERO_ADDRESS)
    return holders


class HolderDiscoveryService:
    def __init__(
        self,
        session_factory: Optional[Callable] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        retry_config: Optional[RetryConfig] = None,
        limiter: Optional[RateLimiter] = None,
    ):
        self._session_factory = session_factory
        self._transport = transport
        self._retry_config = retry_config
        self._limiter = limiter or rate_limiter
        self._client: Optional[httpx.AsyncClient] = None

    def _sessions(self):
        if self._session_factory is not None:
            return self._session_factory()
        from models import database

        return database.AsyncSessionLocal()

    async def _get_client(self) -> RetryableClient:
        if self._client is None or self._client.is_closed:
            self._client = httpx.AsyncClient(
                timeout=float(settings.API_TIMEOUT_SECONDS), transport=self._transport
            )
        return RetryableClient(self._client, self._retry_config or RetryConfig.from_settings())

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def transfer_holders(self, token_address: str) -> set[str]:
        token = token_address.lower()
        balances: dict[str, int] = defaultdict(int)
        async with self._sessions() as session:
            rows = await session.execute(
                select(TokenTransfer.from_address, TokenTransfer.to_address, TokenTransfer.amount).where(
                    TokenTransfer.token_address == token
                )
            )
            for from_address, to_address, amount in rows:
                balances[from_address] -= amount
                balances[to_address] += amount
        balances.pop(ZERO_ADDRESS, None)
        return {address for address, balance in balances.items() if balance > 0}

    async def _zerion_holders(self, token: str) -> set[str]:
        if not settings.ZERION_API_KEY:
            return set()
        client = await self._get_client()
        await self._limiter.acquire("zerion")
        response = await client.get(
            f"{settings.ZERION_API_URL}/wallets/token-balances/",
            params={"chain_id": settings.CHAIN_NAME, "token_address": token},
            auth=(settings.ZERION_API_KEY, ""),
        )
        return extract_holder_addresses(response.json())

    async def _zapper_holders(self, token: str) -> set[str]:
        if not settings.ZAPPER_API_KEY:
            return set()
        client = await self._get_client()
        await self._limiter.acquire("zapper")
        response = await client.get(
            f"{settings.ZAPPER_API_URL}/tokens/{token}/holders",
            params={"network": settings.CHAIN_NAME},
            headers={"x-zapper-api-key": settings.ZAPPER_API_KEY},
        )
        return extract_holder_addresses(response.json())

    async def api_holders(self, token_address: str, errors: Optional[dict] = None) -> set[str]:
        token = token_address.lower()
        providers = ("zerion", "zapper")
        results = await asyncio.gather(
            self._zerion_holders(token),
            self._zapper_holders(token),
            return_exceptions=True,
        )
        holders: set[str] = set()
        for provider, result in zip(providers, results):
            if isinstance(result, Exception):
                if isinstance(result, httpx.HTTPStatusError) and result.response.status_code in (403, 404):
                    logger.info(f"{provider} has no holder list for token", token=token)
                else:
                    logger.warning(f"{provider} holder lookup failed", token=token, error=str(result))
                    if errors is not None:
                        errors[provider] = str(result)
                continue
            holders |= result
        return holders

    async def discover_holders(self, token_address: str) -> HolderDiscoveryResult:
        token = token_address.lower()
        result = HolderDiscoveryResult(token_address=token)
        transfer_result, api_result = await asyncio.gather(
            self.transfer_holders(token),
            self.api_holders(token, result.errors),
            return_exceptions=True,
        )

        if isinstance(transfer_result, Exception):
            logger.warning("Transfer-based holder scan failed", token=token, error=str(transfer_result))
            result.errors["transfers"] = str(transfer_result)
        else:
            result.transfer_based = transfer_result

        if isinstance(api_result, Exception):
            logger.warning("API-based holder lookup failed", token=token, error=str(api_result))
            result.errors["apis"] = str(api_result)
        else:
            result.api_based = api_result

        logger.info(
            f"Holder discovery for {token}: {len(result.all_holders)} holders "
            f"({len(result.in_both)} in both, {len(result.only_transfers)} only in transfers, "
            f"{len(result.only_apis)} only in APIs)",
            token=token,
        )
        return result


holder_discovery = HolderDiscoveryService()
