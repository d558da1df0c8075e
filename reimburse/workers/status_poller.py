"""
Status poller

Reconciles local instance status with the approval platform when push events
cannot reach this deployment. Mismatches are replayed through the same
status-change path the webhook uses, tagged as polled.
"""
import asyncio
import logging
from typing import Any, Dict, Optional

from reimburse.core.database import ReimbursementDB
from reimburse.core.status import TERMINAL_INSTANCE_STATUSES, map_platform_status, status_values
from reimburse.workers.base import PollingWorker
from reimburse.workflows.ports import ApprovalPlatform, StatusChangeHandler

logger = logging.getLogger(__name__)


class StatusPoller(PollingWorker):
    name = "status_poller"

    def __init__(
        self,
        db: ReimbursementDB,
        platform: ApprovalPlatform,
        engine: StatusChangeHandler,
        poll_interval: float = 30.0,
        batch_size: int = 50,
        request_timeout: float = 10.0,
        shutdown_grace: float = 10.0,
    ):
        super().__init__(poll_interval=poll_interval, shutdown_grace=shutdown_grace, poll_immediately=True)
        self.db = db
        self.platform = platform
        self.engine = engine
        self.batch_size = batch_size
        self.request_timeout = request_timeout

    async def _tick(self) -> None:
        instances = self.db.list_instances_for_polling(self.batch_size)
        if not instances:
            return
        logger.debug("%s checking %s instances", self.name, len(instances))
        for instance in instances:
            if self.stopping:
                break
            await self.poll_instance(instance)

    async def poll_instance(self, instance: Dict[str, Any]) -> Optional[str]:
        """Reconcile one instance; returns the new local status when it changed."""
        external_id = instance["external_id"]
        if instance["status"] in status_values(TERMINAL_INSTANCE_STATUSES):
            return None
        try:
            raw_status = await asyncio.wait_for(
                self.platform.get_instance_status(external_id), timeout=self.request_timeout
            )
        except asyncio.TimeoutError:
            self.status.record_failure(f"status lookup timed out for {external_id}")
            logger.warning("Status lookup for instance %s timed out", external_id)
            return None
        except Exception as exc:
            self.status.record_failure(str(exc))
            logger.warning("Status lookup for instance %s failed: %s", external_id, exc)
            return None

        mapped = map_platform_status(raw_status)
        if mapped.value == instance["status"]:
            return None

        logger.info(
            "Instance %s status drifted: local=%s platform=%s",
            external_id,
            instance["status"],
            raw_status,
        )
        try:
            await self.engine.handle_status_changed(
                external_id,
                {"status": raw_status, "instance_code": external_id, "polled": True},
            )
        except Exception as exc:
            self.status.record_failure(str(exc))
            logger.exception("Failed to apply polled status for instance %s", external_id)
            return None
        self.status.record_success()
        return mapped.value
