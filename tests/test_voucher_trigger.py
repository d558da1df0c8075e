import asyncio
import json
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from reimburse.core.database import ReimbursementDB
from reimburse.core.status import AttachmentStatus, InstanceStatus
from reimburse.services.audit_notifier import AuditNotifier
from reimburse.services.file_storage import LocalFileStorage
from reimburse.services.voucher_trigger import MANIFEST_FILE_NAME, ManifestVoucherGenerator, VoucherTrigger


class _BrokenGenerator:
    async def generate(self, instance, attachments):
        raise RuntimeError("template missing")


@pytest.fixture()
def db(tmp_path):
    db = ReimbursementDB(str(tmp_path / "voucher.db"))
    db.initialize()
    return db


@pytest.fixture()
def storage(tmp_path):
    return LocalFileStorage(str(tmp_path / "files"))


def test_zero_attachments_ready_for_voucher_but_not_notification(db, storage):
    trigger = VoucherTrigger(db, ManifestVoucherGenerator(storage, db))
    notifier = AuditNotifier(db)
    instance_id = db.create_instance("INST-EMPTY", InstanceStatus.PENDING.value)

    assert trigger.is_instance_fully_processed(instance_id) is True
    assert notifier.is_instance_fully_audited(instance_id) is False


def test_pending_or_failed_attachments_block_voucher(db, storage):
    trigger = VoucherTrigger(db, ManifestVoucherGenerator(storage, db))
    instance_id = db.create_instance("INST-1", InstanceStatus.PENDING.value)
    first = db.create_attachment(instance_id, "a.pdf", "https://files/a")
    second = db.create_attachment(instance_id, "b.pdf", "https://files/b")

    assert trigger.is_instance_fully_processed(instance_id) is False

    db.mark_download_completed(first, "/data/a.pdf", 1)
    db.update_status(second, AttachmentStatus.FAILED.value, "Download failed (permanent): status 404")
    assert trigger.is_instance_fully_processed(instance_id) is False

    db.requeue_failed_attachment(second)
    db.mark_download_completed(second, "/data/b.pdf", 1)
    assert trigger.is_instance_fully_processed(instance_id) is True


def test_manifest_written_into_instance_folder(db, storage):
    trigger = VoucherTrigger(db, ManifestVoucherGenerator(storage, db))
    instance_id = db.create_instance("INST-1", InstanceStatus.PENDING.value, applicant_user_id="u-1")
    item_id = db.create_item(instance_id, "TRAVEL", amount=88.0)
    attachment_id = db.create_attachment(instance_id, "a.pdf", "https://files/a", item_id=item_id)
    db.mark_download_completed(attachment_id, str(Path(storage.root) / "INST-1" / "1_1_a.pdf"), 1)

    path = asyncio.run(trigger.generate_if_ready(instance_id))

    assert path == str(Path(storage.root) / "INST-1" / MANIFEST_FILE_NAME)
    manifest = json.loads(Path(path).read_text(encoding="utf-8"))
    assert manifest["external_id"] == "INST-1"
    assert manifest["total_amount"] == 88.0
    assert manifest["attachments"][0]["file"] == "1_1_a.pdf"
    assert manifest["attachments"][0]["status"] == AttachmentStatus.COMPLETED.value


def test_not_ready_instance_generates_nothing(db, storage):
    trigger = VoucherTrigger(db, ManifestVoucherGenerator(storage, db))
    instance_id = db.create_instance("INST-1", InstanceStatus.PENDING.value)
    db.create_attachment(instance_id, "a.pdf", "https://files/a")

    assert asyncio.run(trigger.generate_if_ready(instance_id)) is None
    assert not (Path(storage.root) / "INST-1" / MANIFEST_FILE_NAME).exists()


def test_background_generation_failure_is_contained(db):
    trigger = VoucherTrigger(db, _BrokenGenerator())
    instance_id = db.create_instance("INST-1", InstanceStatus.PENDING.value)

    async def scenario():
        task = trigger.generate_async(instance_id)
        await trigger.background.drain(timeout=5)
        return task

    task = asyncio.run(scenario())

    assert isinstance(task.exception(), RuntimeError)
    assert trigger.background.pending == 0
