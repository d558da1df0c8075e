"""Supervisor that starts and stops the registered pipeline workers together."""
import logging
from typing import Any, Dict, List

from reimburse.workflows.ports import Worker

logger = logging.getLogger(__name__)


class WorkerManager:
    def __init__(self) -> None:
        self._workers: List[Worker] = []

    def register(self, worker: Worker) -> None:
        self._workers.append(worker)
        logger.debug("Registered worker %s", worker.name)

    def count(self) -> int:
        return len(self._workers)

    async def start_all(self) -> None:
        """Start workers in registration order; the first failure aborts the rest and propagates."""
        for worker in self._workers:
            try:
                await worker.start()
            except Exception:
                logger.exception("Failed to start worker %s", worker.name)
                raise
        logger.info("Started %s workers", len(self._workers))

    async def stop_all(self) -> None:
        """Stop every worker in reverse order, even when one of them errors."""
        for worker in reversed(self._workers):
            try:
                await worker.stop()
            except Exception as exc:
                logger.error("Error stopping worker %s: %s", worker.name, exc)
        logger.info("Stopped %s workers", len(self._workers))

    def statuses(self) -> List[Dict[str, Any]]:
        result = []
        for worker in self._workers:
            get_status = getattr(worker, "get_status", None)
            if callable(get_status):
                result.append(get_status())
            else:
                result.append({"name": worker.name})
        return result
