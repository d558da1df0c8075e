import asyncio
import sqlite3
import sys
from datetime import date
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from reimburse.core.database import ReimbursementDB
from reimburse.core.status import AttachmentStatus, AuditDecision, InstanceStatus, NotificationStatus
from reimburse.models.audit import ApproverInfo, InvoiceData, InvoiceItem
from reimburse.services.audit_notifier import AuditNotifier
from reimburse.services.errors import ExtractionError, LLMError
from reimburse.services.invoice_auditor import InvoiceAuditor
from reimburse.workers.audit_processor import AuditProcessor, resolve_claim

COMPANY = "杭州示例科技有限公司"


def _invoice(**overrides) -> InvoiceData:
    data = {
        "invoice_code": "033001900111",
        "invoice_number": "00012345",
        "invoice_type": "增值税普通发票",
        "invoice_date": date.today().isoformat(),
        "total_amount": 100.0,
        "tax_amount": 11.5,
        "amount_without_tax": 88.5,
        "seller_name": "滴滴出行科技有限公司",
        "seller_tax_id": "911201163409833307",
        "buyer_name": COMPANY,
        "buyer_tax_id": "91330100MA2XXXXX1X",
        "items": [InvoiceItem(name="客运服务费", amount=88.5, tax_amount=11.5)],
    }
    data.update(overrides)
    return InvoiceData(**data)


class _FakeExtractor:
    def __init__(self, invoice=None, error=None, delay=0.0):
        self.invoice = invoice or _invoice()
        self.error = error
        self.delay = delay
        self.paths = []

    async def extract(self, file_path):
        self.paths.append(file_path)
        if self.delay:
            await asyncio.sleep(self.delay)
        if self.error is not None:
            raise self.error
        return self.invoice


class _SlowPolicyAuditor(InvoiceAuditor):
    async def check_policy(self, invoice, expense_category):
        await asyncio.sleep(1)
        return await super().check_policy(invoice, expense_category)


class _BrokenPriceAuditor(InvoiceAuditor):
    async def check_price(self, invoice, claimed_amount):
        raise LLMError("market price service unavailable")


class _FakeNotifier:
    def __init__(self):
        self.notified = []
        self.retries = 0

    def notify_async(self, instance_id):
        self.notified.append(instance_id)

    async def retry_failed_notifications(self, limit=20, older_than=300.0):
        self.retries += 1
        return 0


class _YieldingPlatform:
    """Approval platform whose calls suspend, so concurrent notify tasks interleave."""

    def __init__(self):
        self.sent = []

    async def get_approvers(self, instance_code):
        await asyncio.sleep(0)
        return [ApproverInfo(open_id="ou_approver")]

    async def send_notification(self, approver, text):
        await asyncio.sleep(0)
        self.sent.append(approver.recipient_id)
        return f"om_{len(self.sent)}"

    async def get_instance_status(self, instance_code):
        return "PENDING"


class _LockedResultsDB(ReimbursementDB):
    def update_processing_status(self, *args, **kwargs):
        raise sqlite3.OperationalError("database is locked")


@pytest.fixture()
def db(tmp_path):
    db = ReimbursementDB(str(tmp_path / "audit.db"))
    db.initialize()
    return db


def _downloaded_attachment(db, external_id="INST-1", file_path="/data/INST-1/1_1_invoice.pdf", amount=100.0):
    instance_id = db.create_instance(external_id, InstanceStatus.PENDING.value, applicant_user_id="u-1")
    item_id = db.create_item(instance_id, "TRAVEL", description="打车", amount=amount)
    attachment_id = db.create_attachment(instance_id, "invoice.pdf", "https://files/1", item_id=item_id)
    db.mark_download_completed(attachment_id, file_path, 128, "application/pdf")
    return instance_id, attachment_id


def _processor(db, extractor=None, auditor=None, notifier=None, **kwargs):
    return AuditProcessor(
        db,
        extractor or _FakeExtractor(),
        auditor or InvoiceAuditor(company_name=COMPANY),
        notifier=notifier,
        **kwargs,
    )


def test_clean_invoice_passes(db):
    notifier = _FakeNotifier()
    processor = _processor(db, notifier=notifier)
    instance_id, attachment_id = _downloaded_attachment(db)

    asyncio.run(processor.run_once())

    attachment = db.get_attachment(attachment_id)
    result = attachment["audit_result"]
    assert attachment["download_status"] == AttachmentStatus.PROCESSED.value
    assert attachment["processed_at"]
    assert result["overall_decision"] == AuditDecision.PASS.value
    assert result["overall_confidence"] == pytest.approx(1.0)
    assert result["extracted_data"]["invoice_number"] == "00012345"
    assert db.get_invoice_by_unique_id("033001900111-00012345")["attachment_id"] == attachment_id
    assert notifier.notified == [instance_id]
    assert notifier.retries == 1


def test_duplicate_invoice_forces_fail(db):
    processor = _processor(db)
    _, first = _downloaded_attachment(db, "INST-1")
    _, second = _downloaded_attachment(db, "INST-2", file_path="/data/INST-2/2_2_invoice.pdf")

    asyncio.run(processor.run_once())

    assert db.get_attachment(first)["audit_result"]["overall_decision"] == AuditDecision.PASS.value
    duplicate = db.get_attachment(second)["audit_result"]
    assert duplicate["overall_decision"] == AuditDecision.FAIL.value
    violations = duplicate["policy_result"]["violations"]
    assert any(v.startswith("DUPLICATE:") for v in violations)
    assert duplicate["policy_result"]["is_compliant"] is False


def test_reaudit_of_same_attachment_is_not_duplicate(db):
    processor = _processor(db)
    _, attachment_id = _downloaded_attachment(db)
    attachment = db.get_attachment(attachment_id)

    first = processor.check_uniqueness(_invoice(), attachment)
    second = processor.check_uniqueness(_invoice(), attachment)

    assert first.is_unique and second.is_unique


def test_unsupported_file_type_is_processed_without_audit(db):
    extractor = _FakeExtractor()
    processor = _processor(db, extractor=extractor)
    _, attachment_id = _downloaded_attachment(db, file_path="/data/INST-1/1_1_notes.docx")

    asyncio.run(processor.run_once())

    attachment = db.get_attachment(attachment_id)
    assert extractor.paths == []
    assert attachment["download_status"] == AttachmentStatus.PROCESSED.value
    assert attachment["error_message"] == "unsupported file type: .docx"
    assert attachment["audit_result"] is None


def test_extraction_failure_is_audit_failed(db):
    notifier = _FakeNotifier()
    extractor = _FakeExtractor(error=ExtractionError("vision model returned no JSON"))
    processor = _processor(db, extractor=extractor, notifier=notifier)
    instance_id, attachment_id = _downloaded_attachment(db)

    asyncio.run(processor.run_once())

    attachment = db.get_attachment(attachment_id)
    assert attachment["download_status"] == AttachmentStatus.AUDIT_FAILED.value
    assert attachment["error_message"].startswith("Audit failed")
    assert notifier.notified == [instance_id]
    assert processor.get_status()["failed_count"] == 1


def test_audit_timeout_is_audit_failed(db):
    processor = _processor(db, extractor=_FakeExtractor(delay=1.0), process_timeout=0.05)
    _, attachment_id = _downloaded_attachment(db)

    asyncio.run(processor.run_once())

    attachment = db.get_attachment(attachment_id)
    assert attachment["download_status"] == AttachmentStatus.AUDIT_FAILED.value
    assert "timed out" in attachment["error_message"]


def test_failed_check_is_degraded_not_fatal(db):
    processor = _processor(db, auditor=_BrokenPriceAuditor(company_name=COMPANY))
    _, attachment_id = _downloaded_attachment(db)

    asyncio.run(processor.run_once())

    attachment = db.get_attachment(attachment_id)
    result = attachment["audit_result"]
    assert attachment["download_status"] == AttachmentStatus.PROCESSED.value
    assert result["price_verification"]["confidence"] == 0.0
    assert "Price verification failed" in result["price_verification"]["reasoning"]
    assert result["policy_result"]["is_compliant"] is True
    assert result["overall_decision"] == AuditDecision.NEEDS_REVIEW.value


def test_slow_check_times_out_independently(db):
    processor = _processor(db, auditor=_SlowPolicyAuditor(company_name=COMPANY), check_timeout=0.05)
    _, attachment_id = _downloaded_attachment(db)

    asyncio.run(processor.run_once())

    result = db.get_attachment(attachment_id)["audit_result"]
    assert result["policy_result"]["confidence"] == 0.0
    assert result["policy_result"]["violations"][0].startswith("Policy check failed")
    assert result["price_verification"]["amount_match"] is True


def test_claimed_amount_mismatch_fails(db):
    processor = _processor(db)
    _, attachment_id = _downloaded_attachment(db, amount=150.0)

    asyncio.run(processor.run_once())

    result = db.get_attachment(attachment_id)["audit_result"]
    assert result["price_verification"]["claimed_amount"] == 150.0
    assert result["overall_decision"] == AuditDecision.FAIL.value


def test_startup_recovers_orphaned_processing_rows(db):
    processor = _processor(db)
    _, attachment_id = _downloaded_attachment(db)
    db.update_status(attachment_id, AttachmentStatus.PROCESSING.value)

    asyncio.run(processor._on_start())

    assert db.get_attachment(attachment_id)["download_status"] == AttachmentStatus.COMPLETED.value


def test_resolve_claim_fallbacks():
    invoice = _invoice(total_amount=42.0)
    items = [
        {"id": 1, "item_type": "MEAL", "amount": 30.0},
        {"id": 2, "item_type": "TRAVEL", "amount": 80.0},
    ]

    assert resolve_claim({"item_id": 2}, items, invoice) == (80.0, "TRAVEL")
    assert resolve_claim({"item_id": 99}, items, invoice) == (30.0, "MEAL")
    assert resolve_claim({"item_id": None}, [], invoice) == (42.0, "OTHER")


def test_attachments_finishing_together_notify_approver_once(db):
    platform = _YieldingPlatform()
    notifier = AuditNotifier(db, platform=platform)
    processor = _processor(db, notifier=notifier)
    instance_id = db.create_instance("INST-1", InstanceStatus.PENDING.value, applicant_user_id="u-1")
    for name in ("notes.docx", "budget.xlsx"):
        attachment_id = db.create_attachment(instance_id, name, f"https://files/{name}")
        db.mark_download_completed(attachment_id, f"/data/INST-1/{attachment_id}_{name}", 16)

    async def scenario():
        await processor.run_once()
        await notifier.background.drain(timeout=5)

    asyncio.run(scenario())

    assert platform.sent == ["ou_approver"]
    notification = db.get_notification_by_instance(instance_id)
    assert notification["status"] == NotificationStatus.SENT.value


def test_unrecordable_failure_does_not_abandon_batch(tmp_path):
    db = _LockedResultsDB(str(tmp_path / "locked.db"))
    db.initialize()
    notifier = _FakeNotifier()
    processor = _processor(db, notifier=notifier)
    first_instance, first = _downloaded_attachment(db, "INST-1")
    second_instance, second = _downloaded_attachment(db, "INST-2", file_path="/data/INST-2/2_2_invoice.pdf")

    asyncio.run(processor.run_once())

    assert db.get_attachment(first)["download_status"] == AttachmentStatus.PROCESSING.value
    assert db.get_attachment(second)["download_status"] == AttachmentStatus.PROCESSING.value
    assert notifier.notified == [first_instance, second_instance]
    assert notifier.retries == 1
    assert processor.get_status()["last_error"] == "database is locked"
