"""Progress events emitted by pipeline phases and consumed by the orchestrator.

Producers call ``publish`` (never blocks); the orchestrator drains the
channel with ``async for event in channel``. Reporting cadence is thus
independent of fetch control flow.
"""

from __future__ import annotations

import asyncio
from dataclasses import dataclass
from typing import AsyncIterator, Optional

PHASE_FETCH = "fetch"
PHASE_PERSIST = "persist"
PHASE_DISCOVERY = "discovery"


@dataclass(frozen=True)
class ProgressEvent:
    phase: str
    completed: int  # pages, trades or tokens completed so far
    total: Optional[int] = None
    token_address: Optional[str] = None
    page_index: Optional[int] = None
    cumulative_count: Optional[int] = None  # fetch: swaps normalized so far for the token
    message: Optional[str] = None


class ProgressChannel:
    _CLOSED = object()

    def __init__(self):
        self._queue: asyncio.Queue = asyncio.Queue()
        self._closed = False

    @property
    def closed(self) -> bool:
        return self._closed

    def publish(self, event: ProgressEvent) -> None:
        if self._closed:
            return
        self._queue.put_nowait(event)

    def close(self) -> None:
        if self._closed:
            return
        self._closed = True
        self._queue.put_nowait(self._CLOSED)

    async def __aiter__(self) -> AsyncIterator[ProgressEvent]:
        while True:
            item = await self._queue.get()
            if item is self._CLOSED:
                return
            yield item
