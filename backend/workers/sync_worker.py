"""Sync worker: triggers an incremental sync every SYNC_INTERVAL_MINUTES.

Run from backend dir:
  python -m workers.sync_worker
"""

from __future__ import annotations

import asyncio
import os
import sys
from datetime import datetime, timedelta
from typing import Optional

_BACKEND = os.path.dirname(os.path.dirname(os.path.abspath(__file__)))
if _BACKEND not in sys.path:
    sys.path.insert(0, _BACKEND)
if os.getcwd() != _BACKEND:
    os.chdir(_BACKEND)

from config import settings
from models.database import SyncType, init_database
from services.errors import AlreadyRunningError
from services.sync_orchestrator import (
    SyncOrchestrator,
    SyncOrigin,
    SyncResult,
    sync_orchestrator,
)
from utils.logger import get_logger, setup_logging
from utils.retry import RetryConfig, calculate_delay
from utils.utcnow import utcnow

logger = get_logger("indexer.sync_worker")


async def run_with_retries(
    orchestrator: SyncOrchestrator,
    sync_type: SyncType = SyncType.INCREMENTAL,
    max_attempts: Optional[int] = None,
    retry_config: Optional[RetryConfig] = None,
) -> Optional[SyncResult]:
    """Run one sync, retrying the whole run on connectivity failures.

    Returns None when the tick was skipped because a run is already active,
    here or in any other process sharing the database.
    """
    attempts = max(1, max_attempts or settings.SYNC_RUN_MAX_ATTEMPTS)
    config = retry_config or RetryConfig.from_settings(max_attempts=attempts, max_delay=300.0)
    result: Optional[SyncResult] = None

    for attempt in range(1, attempts + 1):
        try:
            result = await orchestrator.run_sync(sync_type, None, SyncOrigin.WORKER, attempt=attempt)
        except AlreadyRunningError as e:
            logger.info("Sync already running; skipping tick", active_run_id=e.active_run_id)
            return None

        if result.success or not result.retryable:
            return result

        if attempt < attempts:
            delay = calculate_delay(attempt - 1, config)
            logger.warning(
                "Sync failed on connectivity; retrying whole run",
                attempt=attempt,
                max_attempts=attempts,
                delay=round(delay, 2),
                error=result.error,
            )
            await asyncio.sleep(delay)

    logger.error("Sync failed after all attempts", attempts=attempts, error=result.error if result else None)
    return result


async def _run_loop() -> None:
    logger.info("Sync worker started", interval_minutes=settings.SYNC_INTERVAL_MINUTES)
    next_scheduled_run_at: datetime | None = None

    while True:
        now = utcnow()
        if next_scheduled_run_at is not None and now < next_scheduled_run_at:
            await asyncio.sleep(min(30.0, (next_scheduled_run_at - now).total_seconds()))
            continue

        try:
            result = await run_with_retries(sync_orchestrator)
            if result is not None and result.success:
                logger.info(
                    "Scheduled sync finished",
                    run_id=result.run_id,
                    swaps=result.counters.swaps_fetched,
                    duration=round(result.duration_seconds, 2),
                )
        except asyncio.CancelledError:
            raise
        except Exception as exc:
            logger.exception("Sync worker tick failed", error=str(exc))

        next_scheduled_run_at = utcnow().replace(microsecond=0) + timedelta(
            minutes=max(1, settings.SYNC_INTERVAL_MINUTES)
        )


async def main() -> None:
    setup_logging(level=settings.LOG_LEVEL, json_format=settings.LOG_JSON)
    await init_database()
    logger.info("Database initialized")
    try:
        await _run_loop()
    except asyncio.CancelledError:
        logger.info("Sync worker shutting down")
    finally:
        await sync_orchestrator.feed_client.close()


if __name__ == "__main__":
    asyncio.run(main())
