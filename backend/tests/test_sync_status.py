import logging
import sys
from datetime import datetime, timedelta
from pathlib import Path

import pytest

BACKEND_ROOT = Path(__file__).resolve().parents[1]
if str(BACKEND_ROOT) not in sys.path:
    sys.path.insert(0, str(BACKEND_ROOT))

from services.progress import PHASE_FETCH, ProgressChannel, ProgressEvent
from services.sync_status import RunLogBuffer, RunLogHandler, RunRegistry, SyncStatus
from utils.logger import SUCCESS, get_logger


def test_overall_progress_never_decreases_and_is_clamped():
    status = SyncStatus()
    status.reset("run-1", "full")

    assert status.set_overall_progress(30) == 30
    assert status.set_overall_progress(10) == 30
    assert status.set_overall_progress(250) == 100
    assert status.set_overall_progress(-5) == 100


def test_reset_clears_previous_run():
    status = SyncStatus()
    status.reset("run-1", "full")
    status.set_overall_progress(80)
    status.add_error("boom")
    status.start_worker("swap-processor")

    status.reset("run-2", "incremental")

    snapshot = status.snapshot()
    assert snapshot["runId"] == "run-2"
    assert snapshot["progress"] == 0
    assert snapshot["errors"] == []
    assert snapshot["workerDetails"] == {}
    assert snapshot["isRunning"] is True


def test_finish_closes_unfinished_workers():
    status = SyncStatus()
    status.reset("run-1", "full")
    status.start_worker("swap-processor", "fetching")
    status.update_worker("swap-processor", progress=50, swaps=10)
    status.start_worker("holder-discovery")
    status.finish_worker("holder-discovery")

    status.finish(succeeded=False)

    snapshot = status.snapshot()
    assert snapshot["isRunning"] is False
    assert snapshot["succeeded"] is False
    assert snapshot["activeWorkers"] == []
    swap = snapshot["workerDetails"]["swap-processor"]
    assert swap["currentTask"] == "aborted"
    assert swap["counters"] == {"swaps": 10}
    assert snapshot["workerDetails"]["holder-discovery"]["currentTask"] == "done"


def test_worker_progress_is_monotonic():
    status = SyncStatus()
    status.update_worker("swap-processor", progress=60)
    status.update_worker("swap-processor", progress=20)

    assert status.workers["swap-processor"].progress == 60


def test_log_buffer_is_bounded_and_keeps_newest():
    buffer = RunLogBuffer(maxlen=5)
    for i in range(8):
        buffer.append("info", f"line {i}")

    assert len(buffer) == 5
    assert [e.message for e in buffer.tail()] == [f"line {i}" for i in range(3, 8)]
    assert [e.message for e in buffer.tail(2)] == ["line 6", "line 7"]
    assert buffer.tail(0) == []


def test_log_buffer_since_filters_by_timestamp():
    buffer = RunLogBuffer()
    base = datetime(2024, 1, 1)
    for i in range(4):
        buffer.append("info", f"line {i}", base + timedelta(seconds=i))

    entries = buffer.since(base + timedelta(seconds=1))

    assert [e.message for e in entries] == ["line 2", "line 3"]


def test_unknown_level_is_stored_as_info():
    buffer = RunLogBuffer()
    buffer.append("debug", "hidden detail")

    assert buffer.tail()[0].level == "info"


def test_handler_maps_python_levels_to_dashboard_levels():
    assert RunLogHandler.dashboard_level(logging.INFO) == "info"
    assert RunLogHandler.dashboard_level(SUCCESS) == "success"
    assert RunLogHandler.dashboard_level(logging.WARNING) == "warn"
    assert RunLogHandler.dashboard_level(logging.CRITICAL) == "error"


def test_registry_handler_captures_indexer_loggers_only():
    registry = RunRegistry(log_buffer_size=10)
    handler = registry.install_log_handler()
    try:
        get_logger("indexer.test_component").success("Synced 3 swaps")
        get_logger("indexer.test_component").warning("Page ceiling reached", page=3)
        get_logger("unrelated.component").warning("not captured")

        entries = registry.logs.tail()
        assert [(e.level, e.message) for e in entries] == [
            ("success", "Synced 3 swaps"),
            ("warn", "Page ceiling reached"),
        ]
    finally:
        logging.getLogger("indexer").removeHandler(handler)


def test_registry_allows_one_active_run():
    registry = RunRegistry()

    assert registry.try_acquire("run-1") is True
    assert registry.try_acquire("run-2") is False
    assert registry.active_run_id == "run-1"
    assert registry.release("run-2") is False
    assert registry.release("run-1") is True
    assert registry.is_running is False
    assert registry.try_acquire("run-2") is True


def test_begin_clears_logs_and_resets_status():
    registry = RunRegistry()
    registry.logs.append("error", "previous run failed")
    registry.status.set_overall_progress(100)

    status = registry.begin("run-9", "incremental")

    assert len(registry.logs) == 0
    assert status.progress == 0
    assert status.run_id == "run-9"


@pytest.mark.asyncio
async def test_progress_channel_drops_events_after_close():
    channel = ProgressChannel()
    channel.publish(ProgressEvent(phase=PHASE_FETCH, completed=1))
    channel.close()
    channel.publish(ProgressEvent(phase=PHASE_FETCH, completed=2))

    events = [event async for event in channel]

    assert channel.closed is True
    assert [e.completed for e in events] == [1]
