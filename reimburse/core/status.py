"""Pipeline status enums and transition helpers."""
from __future__ import annotations

from enum import Enum
from typing import Dict, FrozenSet, Iterable


class AttachmentStatus(str, Enum):
    """Download/audit status of a single attachment row."""
    PENDING = "PENDING"
    COMPLETED = "COMPLETED"
    FAILED = "FAILED"
    PROCESSING = "PROCESSING"
    PROCESSED = "PROCESSED"
    AUDIT_FAILED = "AUDIT_FAILED"


class NotificationStatus(str, Enum):
    PENDING = "PENDING"
    SENT = "SENT"
    FAILED = "FAILED"


class InstanceStatus(str, Enum):
    CREATED = "CREATED"
    PENDING = "PENDING"
    APPROVED = "APPROVED"
    REJECTED = "REJECTED"
    COMPLETED = "COMPLETED"


class AuditDecision(str, Enum):
    PASS = "PASS"
    NEEDS_REVIEW = "NEEDS_REVIEW"
    FAIL = "FAIL"

    @property
    def priority(self) -> int:
        return DECISION_PRIORITY[self]


DECISION_PRIORITY: Dict[AuditDecision, int] = {
    AuditDecision.PASS: 0,
    AuditDecision.NEEDS_REVIEW: 1,
    AuditDecision.FAIL: 2,
}


# PROCESSING -> COMPLETED is only used to recover rows orphaned by a crash.
VALID_TRANSITIONS: Dict[AttachmentStatus, FrozenSet[AttachmentStatus]] = {
    AttachmentStatus.PENDING: frozenset({AttachmentStatus.COMPLETED, AttachmentStatus.FAILED}),
    AttachmentStatus.COMPLETED: frozenset({AttachmentStatus.PROCESSING}),
    AttachmentStatus.PROCESSING: frozenset({
        AttachmentStatus.PROCESSED,
        AttachmentStatus.AUDIT_FAILED,
        AttachmentStatus.COMPLETED,
    }),
    AttachmentStatus.FAILED: frozenset({AttachmentStatus.PENDING}),
    AttachmentStatus.PROCESSED: frozenset(),
    AttachmentStatus.AUDIT_FAILED: frozenset(),
}

TERMINAL_ATTACHMENT_STATUSES = frozenset({AttachmentStatus.PROCESSED, AttachmentStatus.AUDIT_FAILED})

TERMINAL_INSTANCE_STATUSES = frozenset({
    InstanceStatus.APPROVED,
    InstanceStatus.REJECTED,
    InstanceStatus.COMPLETED,
})

# Statuses reported by the approval platform.
PLATFORM_STATUS_MAP: Dict[str, InstanceStatus] = {
    "PENDING": InstanceStatus.PENDING,
    "APPROVED": InstanceStatus.APPROVED,
    "REJECTED": InstanceStatus.REJECTED,
    "CANCELED": InstanceStatus.REJECTED,
    "DELETED": InstanceStatus.REJECTED,
}


class AttachmentStateError(ValueError):
    """Raised when an invalid attachment transition is attempted."""


def assert_valid_transition(from_status: str, to_status: str) -> None:
    try:
        source = AttachmentStatus(from_status)
        target = AttachmentStatus(to_status)
    except ValueError:
        raise AttachmentStateError(f"Unknown attachment transition: {from_status} -> {to_status}")
    if target not in VALID_TRANSITIONS[source]:
        raise AttachmentStateError(f"Invalid attachment transition: {source.value} -> {target.value}")


def allowed_sources(to_status: str) -> FrozenSet[AttachmentStatus]:
    """Statuses from which ``to_status`` may be entered."""
    target = AttachmentStatus(to_status)
    return frozenset(src for src, targets in VALID_TRANSITIONS.items() if target in targets)


def map_platform_status(raw_status: str) -> InstanceStatus:
    return PLATFORM_STATUS_MAP.get(str(raw_status or "").strip().upper(), InstanceStatus.PENDING)


def higher_priority_decision(current: str, new: str) -> AuditDecision:
    """Return whichever decision ranks higher (FAIL > NEEDS_REVIEW > PASS)."""
    current_decision = _coerce_decision(current)
    new_decision = _coerce_decision(new)
    if new_decision.priority > current_decision.priority:
        return new_decision
    return current_decision


def _coerce_decision(value: str) -> AuditDecision:
    try:
        return AuditDecision(value)
    except ValueError:
        return AuditDecision.PASS


def status_values(statuses: Iterable[Enum]) -> tuple:
    return tuple(s.value for s in statuses)
