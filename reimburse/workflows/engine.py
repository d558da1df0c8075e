"""
Workflow engine

Applies approval-platform events to local state. Webhook deliveries and the
status poller both land here, so an instance's history records whether each
change was pushed or discovered by polling.
"""
import logging
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from reimburse.core.database import ReimbursementDB
from reimburse.core.status import InstanceStatus, map_platform_status
from reimburse.services.errors import InvalidEventError

logger = logging.getLogger(__name__)

SOURCE_PUSH = "push"
SOURCE_POLL = "poll"


def _attachment_refs(container: Dict[str, Any]) -> List[Dict[str, Any]]:
    refs = container.get("attachments") or []
    return [ref for ref in refs if isinstance(ref, dict)]


class WorkflowEngine:
    def __init__(self, db: ReimbursementDB):
        self.db = db

    async def handle_event(self, external_id: str, event_type: str, data: Optional[Dict[str, Any]] = None) -> Dict[str, Any]:
        """Route a platform event by type; unknown types are acknowledged and ignored."""
        if not external_id:
            raise InvalidEventError("instance id missing from event")
        data = dict(data or {})
        kind = (event_type or "").lower()

        if "created" in kind:
            return await self.handle_instance_created(external_id, data)
        if "approved" in kind:
            data.setdefault("status", InstanceStatus.APPROVED.value)
            return await self.handle_status_changed(external_id, data)
        if "rejected" in kind:
            data.setdefault("status", InstanceStatus.REJECTED.value)
            return await self.handle_status_changed(external_id, data)
        if "status_changed" in kind:
            return await self.handle_status_changed(external_id, data)

        logger.info("Ignoring unhandled event type %s for instance %s", event_type, external_id)
        return {"result": "ignored", "event_type": event_type}

    async def handle_instance_created(self, external_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        """Create the instance with its line items and PENDING attachments in one transaction.

        ``data["items"]`` holds already-decoded line items, each optionally
        carrying its own ``attachments``; top-level ``attachments`` belong to no
        item. Replayed creation events are no-ops.
        """
        existing = self.db.get_instance_by_external_id(external_id)
        if existing is not None:
            logger.info("Instance %s already exists, skipping creation", external_id)
            return {"result": "exists", "instance_id": existing["id"]}

        status = map_platform_status(data.get("status") or InstanceStatus.PENDING.value)
        items = [item for item in (data.get("items") or []) if isinstance(item, dict)]
        attachment_count = 0

        with self.db.transaction() as conn:
            instance_id = self.db.create_instance(
                external_id,
                status.value,
                applicant_user_id=data.get("applicant_user_id") or data.get("user_id"),
                form_data=data.get("form_data") or {},
                submitted_at=data.get("submitted_at"),
                conn=conn,
            )
            for item in items:
                item_id = self.db.create_item(
                    instance_id,
                    item.get("item_type"),
                    description=item.get("description"),
                    amount=item.get("amount") or 0.0,
                    currency=item.get("currency") or "CNY",
                    conn=conn,
                )
                for ref in _attachment_refs(item):
                    self.db.create_attachment(
                        instance_id, ref.get("file_name") or "attachment", ref.get("url"), item_id=item_id, conn=conn
                    )
                    attachment_count += 1
            for ref in _attachment_refs(data):
                self.db.create_attachment(
                    instance_id, ref.get("file_name") or "attachment", ref.get("url"), conn=conn
                )
                attachment_count += 1
            self.db.append_history(instance_id, None, status.value, SOURCE_PUSH, data, conn=conn)

        logger.info(
            "Instance %s created (id=%s, %s items, %s attachments)",
            external_id,
            instance_id,
            len(items),
            attachment_count,
        )
        return {
            "result": "created",
            "instance_id": instance_id,
            "items": len(items),
            "attachments": attachment_count,
        }

    async def handle_status_changed(self, external_id: str, data: Dict[str, Any]) -> Dict[str, Any]:
        raw_status = data.get("status")
        if not raw_status:
            raise InvalidEventError(f"status missing from event for instance {external_id}")
        new_status = map_platform_status(raw_status)
        source = SOURCE_POLL if data.get("polled") else SOURCE_PUSH

        instance = self.db.get_instance_by_external_id(external_id)
        if instance is None:
            logger.info("Status change for unknown instance %s, creating it first", external_id)
            await self.handle_instance_created(external_id, data)
            instance = self.db.get_instance_by_external_id(external_id)
            if instance["status"] == new_status.value:
                return {"result": "created", "instance_id": instance["id"], "status": new_status.value}

        previous_status = instance["status"]
        if previous_status == new_status.value:
            return {"result": "unchanged", "instance_id": instance["id"], "status": previous_status}

        approved_at = None
        if new_status == InstanceStatus.APPROVED:
            approved_at = data.get("approved_at") or datetime.now(timezone.utc).isoformat()

        with self.db.transaction() as conn:
            self.db.update_instance_status(instance["id"], new_status.value, approved_at=approved_at, conn=conn)
            self.db.append_history(instance["id"], previous_status, new_status.value, source, data, conn=conn)

        logger.info(
            "Instance %s status %s -> %s (%s)", external_id, previous_status, new_status.value, source
        )
        return {
            "result": "updated",
            "instance_id": instance["id"],
            "previous_status": previous_status,
            "status": new_status.value,
            "source": source,
        }
