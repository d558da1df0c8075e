import asyncio
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from reimburse.services.errors import WorkerStateError
from reimburse.workers.base import PollingWorker
from reimburse.workers.manager import WorkerManager


class _FakeWorker:
    def __init__(self, name, log, start_error=None, stop_error=None):
        self.name = name
        self.log = log
        self.start_error = start_error
        self.stop_error = stop_error

    async def start(self):
        if self.start_error is not None:
            raise self.start_error
        self.log.append(("start", self.name))

    async def stop(self):
        self.log.append(("stop", self.name))
        if self.stop_error is not None:
            raise self.stop_error


class _CountingWorker(PollingWorker):
    name = "counting"

    def __init__(self, tick_delay=0.0, fail=False, **kwargs):
        super().__init__(**kwargs)
        self.tick_delay = tick_delay
        self.fail = fail
        self.ticks = 0
        self.finished = 0

    async def _tick(self):
        self.ticks += 1
        if self.fail:
            raise RuntimeError("tick exploded")
        if self.tick_delay:
            await asyncio.sleep(self.tick_delay)
        self.finished += 1


def test_start_in_order_stop_in_reverse():
    log = []
    manager = WorkerManager()
    for name in ("download", "audit", "poller"):
        manager.register(_FakeWorker(name, log))

    async def scenario():
        await manager.start_all()
        await manager.stop_all()

    asyncio.run(scenario())

    assert manager.count() == 3
    assert log == [
        ("start", "download"),
        ("start", "audit"),
        ("start", "poller"),
        ("stop", "poller"),
        ("stop", "audit"),
        ("stop", "download"),
    ]


def test_start_all_is_fail_fast():
    log = []
    manager = WorkerManager()
    manager.register(_FakeWorker("download", log))
    manager.register(_FakeWorker("audit", log, start_error=RuntimeError("no database")))
    manager.register(_FakeWorker("poller", log))

    with pytest.raises(RuntimeError, match="no database"):
        asyncio.run(manager.start_all())

    assert log == [("start", "download")]


def test_stop_all_continues_past_errors():
    log = []
    manager = WorkerManager()
    manager.register(_FakeWorker("download", log))
    manager.register(_FakeWorker("audit", log, stop_error=RuntimeError("stuck")))

    asyncio.run(manager.stop_all())

    assert log == [("stop", "audit"), ("stop", "download")]


def test_statuses_use_worker_snapshots():
    manager = WorkerManager()
    manager.register(_CountingWorker(poll_interval=1.0))
    manager.register(_FakeWorker("plain", []))

    statuses = manager.statuses()

    assert statuses[0]["name"] == "counting"
    assert statuses[0]["is_running"] is False
    assert statuses[1] == {"name": "plain"}


def test_polling_worker_ticks_until_stopped():
    worker = _CountingWorker(poll_interval=0.01)

    async def scenario():
        await worker.start()
        assert worker.get_status()["is_running"] is True
        await asyncio.sleep(0.1)
        await worker.stop()

    asyncio.run(scenario())

    assert worker.ticks >= 2
    assert worker.get_status()["is_running"] is False
    assert worker.get_status()["tick_count"] == worker.ticks


def test_polling_worker_cannot_start_twice():
    worker = _CountingWorker(poll_interval=10)

    async def scenario():
        await worker.start()
        try:
            with pytest.raises(WorkerStateError):
                await worker.start()
        finally:
            await worker.stop()

    asyncio.run(scenario())


def test_tick_errors_are_recorded_and_loop_survives():
    worker = _CountingWorker(poll_interval=0.01, fail=True)

    async def scenario():
        await worker.start()
        await asyncio.sleep(0.1)
        await worker.stop()

    asyncio.run(scenario())

    assert worker.ticks >= 2
    assert worker.get_status()["last_error"] == "tick exploded"


def test_stop_lets_in_flight_tick_finish():
    worker = _CountingWorker(poll_interval=0.01, tick_delay=0.1, shutdown_grace=2.0)

    async def scenario():
        await worker.start()
        while worker.ticks == 0:
            await asyncio.sleep(0.005)
        await worker.stop()

    asyncio.run(scenario())

    assert worker.finished == worker.ticks == 1


def test_stop_cancels_after_grace_period():
    worker = _CountingWorker(poll_interval=0.01, tick_delay=10.0, shutdown_grace=0.05)

    async def scenario():
        await worker.start()
        while worker.ticks == 0:
            await asyncio.sleep(0.005)
        await worker.stop()

    asyncio.run(scenario())

    assert worker.ticks == 1
    assert worker.finished == 0
    assert worker.get_status()["is_running"] is False
