"""
Shared poll-loop machinery for the pipeline workers.

Each worker owns one asyncio task driven by its own fixed interval and its own
lock-guarded status snapshot; nothing is shared between workers except the
database.
"""
from __future__ import annotations

import asyncio
import logging
import threading
from datetime import datetime, timezone
from typing import Any, Dict, Optional

from reimburse.services.errors import WorkerStateError

logger = logging.getLogger(__name__)


class WorkerStatus:
    """Counters and health fields for one worker, safe to read from any thread."""

    def __init__(self) -> None:
        self._lock = threading.Lock()
        self._is_running = False
        self._processed_count = 0
        self._failed_count = 0
        self._tick_count = 0
        self._last_processed: Optional[str] = None
        self._last_tick: Optional[str] = None
        self._last_error: Optional[str] = None

    def set_running(self, running: bool) -> None:
        with self._lock:
            self._is_running = running

    def record_tick(self) -> None:
        with self._lock:
            self._tick_count += 1
            self._last_tick = datetime.now(timezone.utc).isoformat()

    def record_success(self) -> None:
        with self._lock:
            self._processed_count += 1
            self._last_processed = datetime.now(timezone.utc).isoformat()

    def record_failure(self, error: str) -> None:
        with self._lock:
            self._failed_count += 1
            self._last_processed = datetime.now(timezone.utc).isoformat()
            self._last_error = error

    def record_error(self, error: str) -> None:
        with self._lock:
            self._last_error = error

    @property
    def is_running(self) -> bool:
        with self._lock:
            return self._is_running

    def snapshot(self) -> Dict[str, Any]:
        with self._lock:
            return {
                "is_running": self._is_running,
                "processed_count": self._processed_count,
                "failed_count": self._failed_count,
                "tick_count": self._tick_count,
                "last_processed": self._last_processed,
                "last_tick": self._last_tick,
                "last_error": self._last_error,
            }


class PollingWorker:
    """
    Base class: ``start`` spawns the loop task, ``stop`` signals it and waits
    up to ``shutdown_grace`` seconds for the in-flight item before cancelling.
    Subclasses implement ``_tick``.
    """

    name = "worker"

    def __init__(
        self,
        poll_interval: float,
        shutdown_grace: float = 10.0,
        poll_immediately: bool = False,
    ):
        self.poll_interval = poll_interval
        self.shutdown_grace = shutdown_grace
        self.poll_immediately = poll_immediately
        self.status = WorkerStatus()
        self._task: Optional[asyncio.Task] = None
        self._stop_event: Optional[asyncio.Event] = None

    def get_status(self) -> Dict[str, Any]:
        snapshot = self.status.snapshot()
        snapshot["name"] = self.name
        snapshot["poll_interval"] = self.poll_interval
        return snapshot

    @property
    def stopping(self) -> bool:
        return self._stop_event is not None and self._stop_event.is_set()

    async def _on_start(self) -> None:
        """Hook run once before the loop starts."""

    async def start(self) -> None:
        if self._task is not None and not self._task.done():
            raise WorkerStateError(self.name, "already running")
        await self._on_start()
        self._stop_event = asyncio.Event()
        self._task = asyncio.create_task(self._run_loop(), name=f"{self.name}-loop")
        self.status.set_running(True)
        logger.info("%s started (interval %ss)", self.name, self.poll_interval)

    async def stop(self) -> None:
        task = self._task
        if task is None:
            return
        if self._stop_event is not None:
            self._stop_event.set()
        if not task.done():
            _, pending = await asyncio.wait({task}, timeout=self.shutdown_grace)
            if pending:
                logger.warning("%s did not stop within %ss, cancelling", self.name, self.shutdown_grace)
                task.cancel()
                await asyncio.gather(task, return_exceptions=True)
        self._task = None
        self.status.set_running(False)
        logger.info("%s stopped", self.name)

    async def _run_loop(self) -> None:
        if self.poll_immediately:
            await self._safe_tick()
        while not self.stopping:
            try:
                await asyncio.wait_for(self._stop_event.wait(), timeout=self.poll_interval)
            except asyncio.TimeoutError:
                await self._safe_tick()

    async def _safe_tick(self) -> None:
        self.status.record_tick()
        try:
            await self._tick()
        except Exception as exc:
            logger.exception("%s loop error: %s", self.name, exc)
            self.status.record_error(str(exc) or type(exc).__name__)

    async def run_once(self) -> None:
        """Run a single poll cycle outside the loop."""
        await self._safe_tick()

    async def _tick(self) -> None:
        raise NotImplementedError
