"""Client for the external swap indexing API.

Pagination is cursor based and strictly sequential. A failed page aborts
the whole fetch with ``SwapFeedError``; the orchestrator retries whole
runs, never individual pages.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Optional

import httpx

from config import settings
from models.swap import Trade
from services.errors import FeedRecordError, SwapFeedError
from services.progress import PHASE_FETCH, ProgressChannel, ProgressEvent
from utils.logger import get_logger
from utils.rate_limiter import RateLimiter, rate_limiter
from utils.utcnow import to_iso

logger = get_logger("indexer.swap_feed")

_RECORD_KEYS = ("swaps", "data", "items", "results")
_CURSOR_KEYS = ("nextCursor", "next_cursor", "cursor")


@dataclass
class SwapFetchResult:
    token_address: str
    trades: list[Trade] = field(default_factory=list)
    pages_fetched: int = 0
    external_calls: int = 0
    records_seen: int = 0
    validation_dropped: int = 0
    truncated: bool = False  # stopped by the page ceiling

    @property
    def newest_timestamp(self) -> Optional[datetime]:
        if not self.trades:
            return None
        return max(t.timestamp for t in self.trades)


def _extract_page(payload: object) -> tuple[list[dict], Optional[str]]:
    if isinstance(payload, list):
        return [r for r in payload if isinstance(r, dict)], None
    if not isinstance(payload, dict):
        raise ValueError(f"unexpected payload type {type(payload).__name__}")

    records: list = []
    for key in _RECORD_KEYS:
        if isinstance(payload.get(key), list):
            records = payload[key]
            break

    cursor = None
    for key in _CURSOR_KEYS:
        value = payload.get(key)
        if value not in (None, ""):
            cursor = str(value)
            break
    return [r for r in records if isinstance(r, dict)], cursor


class SwapFeedClient:
    """Fetches and normalizes swaps for one token at a time."""

    def __init__(
        self,
        base_url: Optional[str] = None,
        api_key: Optional[str] = None,
        page_size: Optional[int] = None,
        max_pages: Optional[int] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        limiter: Optional[RateLimiter] = None,
    ):
        self.base_url = (base_url or settings.SWAP_FEED_URL).rstrip("/")
        self.api_key = api_key if api_key is not None else settings.SWAP_FEED_API_KEY
        self.page_size = page_size or settings.SWAP_FEED_PAGE_SIZE
        self.max_pages = max_pages or settings.SWAP_FEED_MAX_PAGES
        self._transport = transport
        self._limiter = limiter or rate_limiter
        self._client: Optional[httpx.AsyncClient] = None

    async def _get_client(self) -> httpx.AsyncClient:
        if self._client is None or self._client.is_closed:
            headers = {"Accept": "application/json"}
            if self.api_key:
                headers["X-API-KEY"] = self.api_key
            self._client = httpx.AsyncClient(
                timeout=settings.SWAP_FEED_TIMEOUT_SECONDS,
                headers=headers,
                transport=self._transport,
            )
        return self._client

    async def close(self):
        if self._client and not self._client.is_closed:
            await self._client.aclose()

    async def probe(self) -> bool:
        """Pre-flight connectivity check: one minimal query, True if it answers."""
        client = await self._get_client()
        try:
            await self._limiter.acquire("swap_feed")
            response = await client.get(f"{self.base_url}/swaps", params={"limit": 1})
        except httpx.HTTPError as e:
            logger.warning("Swap feed probe failed", error=str(e))
            return False
        if response.status_code >= 500:
            logger.warning("Swap feed probe failed", status_code=response.status_code)
            return False
        return True

    async def _fetch_page(self, params: dict) -> tuple[list[dict], Optional[str]]:
        client = await self._get_client()
        await self._limiter.acquire("swap_feed")
        response = await client.get(f"{self.base_url}/swaps", params=params)
        response.raise_for_status()
        return _extract_page(response.json())

    async def fetch_swaps(
        self,
        token_address: str,
        decimals: int = 18,
        from_time: Optional[datetime] = None,
        to_time: Optional[datetime] = None,
        progress: Optional[ProgressChannel] = None,
    ) -> SwapFetchResult:
        """Fetch and normalize every swap for ``token_address`` in the window.

        ``from_time`` is inclusive; re-fetched boundary swaps are absorbed by
        the idempotent trade store.
        """
        token = token_address.lower()
        result = SwapFetchResult(token_address=token)
        log = logger.with_context(token=token)
        cursor: Optional[str] = None

        for page_index in range(1, self.max_pages + 1):
            params: dict = {"token": token, "limit": self.page_size}
            if from_time is not None:
                params["fromTime"] = to_iso(from_time)
            if to_time is not None:
                params["toTime"] = to_iso(to_time)
            if cursor:
                params["cursor"] = cursor

            result.external_calls += 1
            try:
                records, cursor = await self._fetch_page(params)
            except (httpx.HTTPError, ValueError) as e:
                log.error(
                    "Swap feed page failed",
                    page_index=page_index,
                    pages_completed=result.pages_fetched,
                    error=str(e),
                )
                raise SwapFeedError(
                    f"Swap feed page {page_index} failed for token {token}: {e}",
                    token_address=token,
                    page_index=page_index,
                    pages_completed=result.pages_fetched,
                ) from e

            if not records:
                break

            result.pages_fetched += 1
            result.records_seen += len(records)
            for record in records:
                try:
                    result.trades.append(Trade.from_feed_record(record, token, decimals))
                except FeedRecordError as e:
                    result.validation_dropped += 1
                    log.debug("Dropped malformed swap record", tx_hash=e.tx_hash, reason=e.message)

            if progress is not None:
                progress.publish(
                    ProgressEvent(
                        phase=PHASE_FETCH,
                        completed=result.pages_fetched,
                        token_address=token,
                        page_index=page_index,
                        cumulative_count=len(result.trades),
                    )
                )

            if not cursor:
                break
        else:
            result.truncated = True
            log.warning(
                "Swap feed page ceiling reached; history truncated",
                max_pages=self.max_pages,
                swaps=len(result.trades),
            )

        if result.validation_dropped:
            log.warning(
                "Dropped malformed swap records",
                dropped=result.validation_dropped,
                seen=result.records_seen,
            )
        log.info(
            f"Fetched {len(result.trades)} swaps for {token} in {result.pages_fetched} pages",
            pages=result.pages_fetched,
            calls=result.external_calls,
        )
        return result
