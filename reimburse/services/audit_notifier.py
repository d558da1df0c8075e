"""
Audit result notification

Delivers the aggregated audit verdict of an instance to its approvers once
every attachment has reached a terminal audit state. The ``audit_notifications``
row for the instance is the idempotency key: a SENT row makes every later call
a no-op, PENDING/FAILED rows are retried in place.
"""
import logging
from typing import Any, Dict, List, Optional, Set

from reimburse.core.database import ReimbursementDB
from reimburse.core.status import AuditDecision, NotificationStatus
from reimburse.models.audit import AggregatedAuditResult, ApproverInfo
from reimburse.services.audit_aggregator import AuditAggregator
from reimburse.services.background import BackgroundTasks
from reimburse.services.errors import NotFoundError, NotificationError, ReimburseError
from reimburse.workflows.ports import ApprovalPlatform

logger = logging.getLogger(__name__)

DECISION_TITLES = {
    AuditDecision.PASS.value: "AI审核通过",
    AuditDecision.NEEDS_REVIEW.value: "AI审核：需人工复核",
    AuditDecision.FAIL.value: "AI审核不通过",
}


def format_audit_message(result: AggregatedAuditResult, instance: Dict[str, Any]) -> str:
    """Plain-text rendering of the aggregated verdict sent to approvers."""
    lines = [
        f"【{DECISION_TITLES.get(result.decision, 'AI审核结果')}】",
        f"报销金额: {result.total_amount:.2f}",
        f"置信度: {int(result.confidence * 100)}%",
        f"已审核附件: {result.processed_count}/{result.attachment_count}",
    ]
    if result.violations:
        lines.append("发现问题:")
        lines.extend(f"• {violation}" for violation in result.violations)
    lines.append(f"审批单号: {instance.get('external_id') or result.external_id}")
    return "\n".join(lines)


class AuditNotifier:
    def __init__(
        self,
        db: ReimbursementDB,
        platform: Optional[ApprovalPlatform] = None,
        aggregator: Optional[AuditAggregator] = None,
        background: Optional[BackgroundTasks] = None,
    ):
        self.db = db
        self.platform = platform
        self.aggregator = aggregator or AuditAggregator()
        self.background = background or BackgroundTasks()
        # Instances with a delivery under way; checked and claimed without an await in between.
        self._in_flight: Set[int] = set()

    def is_instance_fully_audited(self, instance_id: int) -> bool:
        """True once the instance has attachments and none is outside PROCESSED/AUDIT_FAILED.

        Zero-attachment instances are never ready for notification.
        """
        if self.db.get_total_count(instance_id) == 0:
            return False
        return self.db.get_unprocessed_count(instance_id) == 0

    async def _resolve_approvers(self, instance: Dict[str, Any]) -> List[ApproverInfo]:
        approvers: List[ApproverInfo] = []
        if self.platform is not None:
            try:
                approvers = await self.platform.get_approvers(instance["external_id"])
            except Exception as exc:
                logger.warning(
                    "Failed to get approvers for instance %s, will notify applicant instead: %s",
                    instance["id"],
                    exc,
                )
                approvers = []

        if not approvers and instance.get("applicant_user_id"):
            approvers = [ApproverInfo(user_id=instance["applicant_user_id"])]
        return approvers

    async def notify_on_audit_complete(self, instance_id: int) -> Optional[NotificationStatus]:
        """Aggregate and send the instance's verdict.

        Returns the resulting notification status, or ``None`` when the
        instance is not ready, was already notified, is being notified by
        another task or has nobody to notify. Raises ``NotificationError``
        after recording FAILED when every send failed.
        """
        if not self.is_instance_fully_audited(instance_id):
            logger.debug("Instance %s not fully audited yet, skipping notification", instance_id)
            return None

        if instance_id in self._in_flight:
            logger.debug("Notification for instance %s already in progress, skipping", instance_id)
            return None
        self._in_flight.add(instance_id)
        try:
            return await self._deliver(instance_id)
        finally:
            self._in_flight.discard(instance_id)

    async def _deliver(self, instance_id: int) -> Optional[NotificationStatus]:
        existing = self.db.get_notification_by_instance(instance_id)
        if existing is not None:
            if existing["status"] == NotificationStatus.SENT.value:
                logger.debug(
                    "Notification %s already sent for instance %s, skipping",
                    existing["id"],
                    instance_id,
                )
                return None
            logger.info(
                "Retrying notification for instance %s (previous status %s)",
                instance_id,
                existing["status"],
            )

        instance = self.db.get_instance(instance_id)
        if instance is None:
            raise NotFoundError("instance", instance_id)

        attachments = self.db.get_processed_by_instance_id(instance_id)
        result = self.aggregator.aggregate(attachments, instance)
        self.db.update_audit_summary(instance_id, result.model_dump(mode="json"))

        approvers = await self._resolve_approvers(instance)
        if not approvers:
            logger.warning("No approvers or applicant to notify for instance %s", instance_id)
            return None

        notification_id = self.db.save_notification_snapshot(
            instance_id,
            {
                "external_id": instance["external_id"],
                "decision": result.decision,
                "confidence": result.confidence,
                "total_amount": result.total_amount,
                "violations": result.violations,
                "approver_count": len(approvers),
            },
        )

        message = format_audit_message(result, instance)
        success_count = 0
        last_error: Optional[str] = None
        for approver in approvers:
            if not approver.recipient_id:
                logger.warning("Approver has no recipient id, skipping (instance %s)", instance_id)
                last_error = "approver has no recipient id"
                continue
            if self.platform is None:
                last_error = "approval platform not configured"
                continue
            try:
                await self.platform.send_notification(approver, message)
            except Exception as exc:
                logger.error(
                    "Failed to send notification to %s for instance %s: %s",
                    approver.recipient_id,
                    instance_id,
                    exc,
                )
                last_error = str(exc) or type(exc).__name__
                continue
            success_count += 1

        if success_count > 0:
            self.db.update_notification_status(notification_id, NotificationStatus.SENT.value)
            logger.info(
                "Audit notification sent for instance %s (%s/%s approvers)",
                instance_id,
                success_count,
                len(approvers),
            )
            return NotificationStatus.SENT

        error_message = last_error or "no notification was delivered"
        self.db.update_notification_status(
            notification_id, NotificationStatus.FAILED.value, error_message
        )
        raise NotificationError(instance_id, error_message)

    async def _notify_logged(self, instance_id: int) -> None:
        try:
            await self.notify_on_audit_complete(instance_id)
        except ReimburseError as exc:
            logger.warning("Failed to send audit notification (non-blocking): %s", exc)

    def notify_async(self, instance_id: int):
        """Fire-and-forget variant; failures are logged, never raised to the caller."""
        return self.background.spawn(
            self._notify_logged(instance_id), name=f"audit-notify-{instance_id}"
        )

    async def retry_failed_notifications(self, limit: int = 20, older_than: float = 300.0) -> int:
        """Re-run delivery for unsent rows whose last attempt is older than ``older_than`` seconds."""
        sent = 0
        for row in self.db.list_retryable_notifications(limit, older_than_seconds=older_than):
            try:
                status = await self.notify_on_audit_complete(row["instance_id"])
            except ReimburseError as exc:
                logger.warning(
                    "Notification retry failed for instance %s: %s", row["instance_id"], exc
                )
                continue
            if status == NotificationStatus.SENT:
                sent += 1
        return sent
