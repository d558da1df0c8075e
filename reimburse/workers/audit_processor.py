"""
Audit processor

Drains COMPLETED attachments into PROCESSED or AUDIT_FAILED. For each
attachment the invoice is extracted, the policy and price checks run
concurrently under their own timeouts, completeness is scored inline and the
duplicate-invoice index is consulted before the verdict is stored.
"""
import asyncio
import logging
import os
from typing import Any, Dict, List, Optional, Tuple

from reimburse.core.database import ReimbursementDB
from reimburse.core.status import AttachmentStatus, AttachmentStateError, AuditDecision
from reimburse.models.audit import (
    InvoiceAuditResult,
    InvoiceData,
    PolicyCheckResult,
    PriceVerificationResult,
    UniquenessCheck,
)
from reimburse.services.audit_notifier import AuditNotifier
from reimburse.services.invoice_auditor import (
    build_reasoning,
    check_completeness,
    degraded_policy_result,
    degraded_price_result,
    determine_decision,
)
from reimburse.workers.base import PollingWorker
from reimburse.workflows.ports import Auditor, InvoiceExtractor

logger = logging.getLogger(__name__)

SUPPORTED_EXTENSIONS = {".pdf", ".jpg", ".jpeg", ".png"}
DEFAULT_CATEGORY = "OTHER"


def resolve_claim(
    attachment: Dict[str, Any], items: List[Dict[str, Any]], invoice: InvoiceData
) -> Tuple[float, str]:
    """Claimed amount and expense category for an attachment.

    The attachment's own line item wins, then the instance's first item, then
    the invoice total with the default category.
    """
    item = None
    item_id = attachment.get("item_id")
    if item_id is not None:
        item = next((candidate for candidate in items if candidate["id"] == item_id), None)
    if item is None and items:
        item = items[0]
    if item is None:
        return invoice.total_amount, DEFAULT_CATEGORY
    return float(item.get("amount") or 0.0), (item.get("item_type") or DEFAULT_CATEGORY)


class AuditProcessor(PollingWorker):
    name = "audit_processor"

    def __init__(
        self,
        db: ReimbursementDB,
        extractor: InvoiceExtractor,
        auditor: Auditor,
        notifier: Optional[AuditNotifier] = None,
        poll_interval: float = 10.0,
        batch_size: int = 5,
        process_timeout: float = 120.0,
        check_timeout: float = 60.0,
        deviation_threshold: float = 10.0,
        notification_retry_interval: float = 300.0,
        shutdown_grace: float = 10.0,
    ):
        super().__init__(poll_interval=poll_interval, shutdown_grace=shutdown_grace)
        self.db = db
        self.extractor = extractor
        self.auditor = auditor
        self.notifier = notifier
        self.batch_size = batch_size
        self.process_timeout = process_timeout
        self.check_timeout = check_timeout
        self.deviation_threshold = deviation_threshold
        self.notification_retry_interval = notification_retry_interval

    async def _on_start(self) -> None:
        recovered = self.db.recover_processing()
        if recovered:
            logger.warning("Returned %s attachments stuck in PROCESSING to COMPLETED", recovered)

    async def _tick(self) -> None:
        attachments = self.db.get_completed_attachments(self.batch_size)
        for attachment in attachments:
            if self.stopping:
                break
            await self.process_attachment(attachment)

        if self.notifier is not None and not self.stopping:
            sent = await self.notifier.retry_failed_notifications(
                limit=self.batch_size, older_than=self.notification_retry_interval
            )
            if sent:
                logger.info("Delivered %s previously failed notifications", sent)

    async def process_attachment(self, attachment: Dict[str, Any]) -> Optional[str]:
        """Audit one attachment and return its terminal status (None if it was not claimed)."""
        attachment_id = attachment["id"]
        instance_id = attachment["instance_id"]
        try:
            self.db.update_status(attachment_id, AttachmentStatus.PROCESSING.value)
        except AttachmentStateError as exc:
            logger.warning("Attachment %s could not be claimed for audit: %s", attachment_id, exc)
            return None

        try:
            status = await self._process(attachment)
        except Exception as exc:
            logger.exception("Audit failed for attachment %s (instance %s)", attachment_id, instance_id)
            try:
                status = self._finish(
                    attachment, AttachmentStatus.AUDIT_FAILED, None, f"Audit failed: {exc}"
                )
            except Exception as persist_exc:
                # Row stays PROCESSING until startup recovery returns it to COMPLETED.
                logger.error(
                    "Could not record audit failure for attachment %s: %s", attachment_id, persist_exc
                )
                self.status.record_error(str(persist_exc) or type(persist_exc).__name__)
                status = AttachmentStatus.AUDIT_FAILED.value

        if self.notifier is not None:
            self.notifier.notify_async(instance_id)
        return status

    def _finish(
        self,
        attachment: Dict[str, Any],
        status: AttachmentStatus,
        audit_result: Optional[Dict[str, Any]],
        error_message: Optional[str],
    ) -> str:
        self.db.update_processing_status(attachment["id"], status.value, audit_result, error_message)
        if status == AttachmentStatus.AUDIT_FAILED:
            self.status.record_failure(error_message or status.value)
        else:
            self.status.record_success()
        return status.value

    async def _process(self, attachment: Dict[str, Any]) -> str:
        attachment_id = attachment["id"]
        source_name = attachment.get("file_path") or attachment.get("file_name") or ""
        ext = os.path.splitext(source_name)[1].lower()
        if ext not in SUPPORTED_EXTENSIONS:
            logger.info("Attachment %s skipped: unsupported file type %s", attachment_id, ext or "(none)")
            return self._finish(
                attachment, AttachmentStatus.PROCESSED, None, f"unsupported file type: {ext}"
            )

        try:
            result = await asyncio.wait_for(self.audit_attachment(attachment), timeout=self.process_timeout)
        except asyncio.TimeoutError:
            return self._finish(
                attachment,
                AttachmentStatus.AUDIT_FAILED,
                None,
                f"Audit timed out after {self.process_timeout}s",
            )

        logger.info(
            "Attachment %s (instance %s) audited: decision=%s confidence=%.3f",
            attachment_id,
            attachment["instance_id"],
            result.overall_decision,
            result.overall_confidence,
        )
        return self._finish(
            attachment, AttachmentStatus.PROCESSED, result.model_dump(mode="json"), None
        )

    async def _run_checks(
        self, invoice: InvoiceData, category: str, claimed_amount: float
    ) -> Tuple[PolicyCheckResult, PriceVerificationResult]:
        policy, price = await asyncio.gather(
            asyncio.wait_for(self.auditor.check_policy(invoice, category), timeout=self.check_timeout),
            asyncio.wait_for(self.auditor.check_price(invoice, claimed_amount), timeout=self.check_timeout),
            return_exceptions=True,
        )
        if isinstance(policy, BaseException):
            logger.error("Policy check failed: %s", policy)
            policy = degraded_policy_result(policy)
        if isinstance(price, BaseException):
            logger.error("Price verification failed: %s", price)
            price = degraded_price_result(price)
        return policy, price

    async def audit_attachment(self, attachment: Dict[str, Any]) -> InvoiceAuditResult:
        invoice = await self.extractor.extract(attachment["file_path"])

        items = self.db.get_items_by_instance(attachment["instance_id"])
        claimed_amount, category = resolve_claim(attachment, items, invoice)

        policy, price = await self._run_checks(invoice, category, claimed_amount)
        completeness = check_completeness(invoice)

        overall_confidence = (policy.confidence + price.confidence + completeness.score) / 3
        decision = determine_decision(
            policy, price, completeness, overall_confidence, self.deviation_threshold
        )
        reasoning = build_reasoning(policy, price, completeness)

        uniqueness = self.check_uniqueness(invoice, attachment)
        if not uniqueness.is_unique:
            policy.violations.append(f"DUPLICATE: {uniqueness.message}")
            policy.is_compliant = False
            decision = AuditDecision.FAIL
            reasoning = f"{reasoning} | {uniqueness.message}"

        return InvoiceAuditResult(
            extracted_data=invoice,
            policy_result=policy,
            price_verification=price,
            completeness=completeness,
            overall_confidence=overall_confidence,
            overall_decision=decision.value,
            reasoning=reasoning,
        )

    def check_uniqueness(self, invoice: InvoiceData, attachment: Dict[str, Any]) -> UniquenessCheck:
        """Look the invoice up in the duplicate index, recording it when first seen."""
        if not invoice.invoice_code and not invoice.invoice_number:
            return UniquenessCheck(is_unique=True, message="invoice code and number not extracted")

        unique_id = invoice.unique_id
        existing = self.db.get_invoice_by_unique_id(unique_id)
        if existing is not None and existing.get("attachment_id") != attachment["id"]:
            return UniquenessCheck(
                is_unique=False,
                duplicate_invoice_id=existing["id"],
                duplicate_instance_id=existing["instance_id"],
                duplicate_attachment_id=existing.get("attachment_id"),
                first_seen_at=existing.get("created_at"),
                message=(
                    f"Invoice {unique_id} was already submitted in instance "
                    f"{existing['instance_id']} on {existing.get('created_at')}"
                ),
            )

        if existing is None:
            self.db.create_invoice(
                {
                    "unique_id": unique_id,
                    "invoice_code": invoice.invoice_code,
                    "invoice_number": invoice.invoice_number,
                    "instance_id": attachment["instance_id"],
                    "attachment_id": attachment["id"],
                    "invoice_amount": invoice.total_amount,
                    "seller_name": invoice.seller_name,
                    "buyer_name": invoice.buyer_name,
                    "extracted_data": invoice.model_dump(mode="json"),
                }
            )
        return UniquenessCheck(is_unique=True, message="invoice is unique")
