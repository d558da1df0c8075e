"""
Voucher package trigger

Runs after each successful download: once none of an instance's attachments is
still waiting for download, the voucher generator assembles the instance's
package in the background. Voucher rendering itself lives behind the
``VoucherGenerator`` port; the default generator writes a JSON manifest.
"""
import logging
import os
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from reimburse.core.database import ReimbursementDB
from reimburse.core.status import AttachmentStatus
from reimburse.services.background import BackgroundTasks
from reimburse.services.errors import NotFoundError
from reimburse.services.file_storage import LocalFileStorage
from reimburse.workflows.ports import VoucherGenerator

logger = logging.getLogger(__name__)

MANIFEST_FILE_NAME = "voucher_manifest.json"

_NOT_DOWNLOADED = (AttachmentStatus.PENDING, AttachmentStatus.FAILED)


class ManifestVoucherGenerator:
    """Writes ``voucher_manifest.json`` describing the instance and its files."""

    def __init__(self, storage: LocalFileStorage, db: ReimbursementDB):
        self.storage = storage
        self.db = db

    async def generate(self, instance: Dict[str, Any], attachments: List[Dict[str, Any]]) -> str:
        folder = self.storage.instance_folder_name(instance["external_id"])
        items = self.db.get_items_by_instance(instance["id"])
        manifest = {
            "external_id": instance["external_id"],
            "applicant_user_id": instance.get("applicant_user_id"),
            "status": instance.get("status"),
            "generated_at": datetime.now(timezone.utc).isoformat(),
            "total_amount": round(sum(float(item.get("amount") or 0) for item in items), 2),
            "items": [
                {
                    "id": item["id"],
                    "item_type": item.get("item_type"),
                    "description": item.get("description"),
                    "amount": item.get("amount"),
                    "currency": item.get("currency"),
                }
                for item in items
            ],
            "attachments": [
                {
                    "id": attachment["id"],
                    "item_id": attachment.get("item_id"),
                    "file_name": attachment.get("file_name"),
                    "file": os.path.basename(attachment["file_path"]) if attachment.get("file_path") else None,
                    "status": attachment.get("download_status"),
                }
                for attachment in attachments
            ],
        }
        path = self.storage.write_json(os.path.join(folder, MANIFEST_FILE_NAME), manifest)
        logger.info("Voucher manifest written for instance %s: %s", instance["id"], path)
        return path


class VoucherTrigger:
    def __init__(
        self,
        db: ReimbursementDB,
        generator: VoucherGenerator,
        background: Optional[BackgroundTasks] = None,
    ):
        self.db = db
        self.generator = generator
        self.background = background or BackgroundTasks()

    def is_instance_fully_processed(self, instance_id: int) -> bool:
        """Download-readiness: True with zero attachments, False while any is PENDING or FAILED."""
        if self.db.get_total_count(instance_id) == 0:
            return True
        return self.db.count_by_status(instance_id, _NOT_DOWNLOADED) == 0

    async def generate_if_ready(self, instance_id: int) -> Optional[str]:
        if not self.is_instance_fully_processed(instance_id):
            logger.debug("Instance %s not fully downloaded, skipping voucher generation", instance_id)
            return None
        instance = self.db.get_instance(instance_id)
        if instance is None:
            raise NotFoundError("instance", instance_id)
        attachments = self.db.get_by_instance_id(instance_id)
        return await self.generator.generate(instance, attachments)

    def generate_async(self, instance_id: int):
        """Fire-and-forget voucher generation; failures are logged by the task registry."""
        return self.background.spawn(
            self.generate_if_ready(instance_id), name=f"voucher-{instance_id}"
        )
