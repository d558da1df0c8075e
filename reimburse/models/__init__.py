from reimburse.models.base import ReimburseModel
from reimburse.models.audit import (
    AggregatedAuditResult,
    ApproverInfo,
    CompletenessResult,
    FetchedFile,
    InvoiceAuditResult,
    InvoiceData,
    InvoiceItem,
    PolicyCheckResult,
    PriceVerificationResult,
    UniquenessCheck,
)

__all__ = [
    "ReimburseModel",
    "AggregatedAuditResult",
    "ApproverInfo",
    "CompletenessResult",
    "FetchedFile",
    "InvoiceAuditResult",
    "InvoiceData",
    "InvoiceItem",
    "PolicyCheckResult",
    "PriceVerificationResult",
    "UniquenessCheck",
]
