import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from reimburse.core.database import ReimbursementDB
from reimburse.core.status import (
    TERMINAL_ATTACHMENT_STATUSES,
    VALID_TRANSITIONS,
    AttachmentStateError,
    AttachmentStatus,
    AuditDecision,
    InstanceStatus,
    allowed_sources,
    assert_valid_transition,
    higher_priority_decision,
    map_platform_status,
)


def test_transition_table_covers_every_status():
    assert set(VALID_TRANSITIONS) == set(AttachmentStatus)
    for targets in VALID_TRANSITIONS.values():
        assert targets <= set(AttachmentStatus)


def test_terminal_statuses_have_no_successors():
    for status in (AttachmentStatus.PROCESSED, AttachmentStatus.AUDIT_FAILED):
        assert status in TERMINAL_ATTACHMENT_STATUSES
        assert VALID_TRANSITIONS[status] == frozenset()
    assert AttachmentStatus.FAILED not in TERMINAL_ATTACHMENT_STATUSES


def test_valid_and_invalid_transitions():
    assert_valid_transition("PENDING", "COMPLETED")
    assert_valid_transition("FAILED", "PENDING")
    assert_valid_transition("PROCESSING", "AUDIT_FAILED")

    with pytest.raises(AttachmentStateError):
        assert_valid_transition("PROCESSED", "PENDING")
    with pytest.raises(AttachmentStateError):
        assert_valid_transition("PENDING", "PROCESSED")
    with pytest.raises(AttachmentStateError):
        assert_valid_transition("PENDING", "DOWNLOADING")


def test_allowed_sources():
    assert allowed_sources("PENDING") == {AttachmentStatus.FAILED}
    assert allowed_sources("COMPLETED") == {AttachmentStatus.PENDING, AttachmentStatus.PROCESSING}
    assert allowed_sources("PROCESSED") == {AttachmentStatus.PROCESSING}


def test_platform_status_mapping():
    assert map_platform_status("PENDING") == InstanceStatus.PENDING
    assert map_platform_status("approved") == InstanceStatus.APPROVED
    assert map_platform_status("REJECTED") == InstanceStatus.REJECTED
    assert map_platform_status("CANCELED") == InstanceStatus.REJECTED
    assert map_platform_status("DELETED") == InstanceStatus.REJECTED
    assert map_platform_status("TRANSFERRED") == InstanceStatus.PENDING
    assert map_platform_status("") == InstanceStatus.PENDING


def test_decision_priority():
    assert higher_priority_decision("PASS", "NEEDS_REVIEW") == AuditDecision.NEEDS_REVIEW
    assert higher_priority_decision("FAIL", "NEEDS_REVIEW") == AuditDecision.FAIL
    assert higher_priority_decision("NEEDS_REVIEW", "PASS") == AuditDecision.NEEDS_REVIEW
    assert higher_priority_decision("PASS", "garbage") == AuditDecision.PASS


def test_processed_attachment_never_moves_again(tmp_path):
    db = ReimbursementDB(str(tmp_path / "status.db"))
    instance_id = db.create_instance("INST-1", InstanceStatus.PENDING.value)
    attachment_id = db.create_attachment(instance_id, "invoice.pdf", "https://files/1")
    db.mark_download_completed(attachment_id, "/data/INST-1/1_0_invoice.pdf", 10)
    db.update_status(attachment_id, AttachmentStatus.PROCESSING.value)
    db.update_processing_status(attachment_id, AttachmentStatus.PROCESSED.value, {"overall_decision": "PASS"})

    for target in AttachmentStatus:
        with pytest.raises(AttachmentStateError):
            db.update_status(attachment_id, target.value)

    assert db.recover_processing() == 0
    assert db.get_attachment(attachment_id)["download_status"] == AttachmentStatus.PROCESSED.value
