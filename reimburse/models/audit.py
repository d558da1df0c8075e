"""Invoice extraction and audit result models."""
from datetime import datetime, timezone
from typing import Any, List, Optional

from pydantic import Field, field_validator

from reimburse.core.status import AuditDecision
from reimburse.models.base import ReimburseModel


def _to_float(value: Any) -> Any:
    if value is None or value == "":
        return 0.0
    if isinstance(value, str):
        return value.replace(",", "").replace("¥", "").strip() or 0.0
    return value


class InvoiceItem(ReimburseModel):
    name: str = ""
    specification: str = ""
    unit: str = ""
    quantity: float = 0.0
    unit_price: float = 0.0
    amount: float = 0.0
    tax_rate: float = 0.0
    tax_amount: float = 0.0

    @field_validator("name", "specification", "unit", mode="before")
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        return "" if value is None else value

    @field_validator("quantity", "unit_price", "amount", "tax_rate", "tax_amount", mode="before")
    @classmethod
    def _numeric(cls, value: Any) -> Any:
        return _to_float(value)


class InvoiceData(ReimburseModel):
    """Structured fields extracted from a Chinese VAT invoice (发票)."""

    invoice_code: str = ""
    invoice_number: str = ""
    invoice_type: str = ""
    invoice_date: str = ""
    total_amount: float = 0.0
    tax_amount: float = 0.0
    amount_without_tax: float = 0.0
    seller_name: str = ""
    seller_tax_id: str = ""
    buyer_name: str = ""
    buyer_tax_id: str = ""
    items: List[InvoiceItem] = Field(default_factory=list)
    remarks: str = ""

    @field_validator(
        "invoice_code",
        "invoice_number",
        "invoice_type",
        "invoice_date",
        "seller_name",
        "seller_tax_id",
        "buyer_name",
        "buyer_tax_id",
        "remarks",
        mode="before",
    )
    @classmethod
    def _none_to_empty(cls, value: Any) -> Any:
        if value is None:
            return ""
        return str(value)

    @field_validator("total_amount", "tax_amount", "amount_without_tax", mode="before")
    @classmethod
    def _numeric(cls, value: Any) -> Any:
        return _to_float(value)

    @field_validator("items", mode="before")
    @classmethod
    def _items(cls, value: Any) -> Any:
        return value or []

    @property
    def unique_id(self) -> str:
        """Composite key used by the duplicate-invoice index."""
        return f"{self.invoice_code}-{self.invoice_number}"


class PolicyCheckResult(ReimburseModel):
    is_compliant: bool = False
    category_match: bool = False
    company_name_match: bool = False
    vat_type_valid: bool = False
    date_valid: bool = False
    violations: List[str] = Field(default_factory=list)
    confidence: float = 0.0
    reasoning: str = ""


class PriceVerificationResult(ReimburseModel):
    claimed_amount: float = 0.0
    invoice_amount: float = 0.0
    amount_match: bool = False
    deviation_percent: float = 0.0
    is_reasonable: bool = False
    market_price_min: float = 0.0
    market_price_max: float = 0.0
    confidence: float = 0.0
    reasoning: str = ""


class CompletenessResult(ReimburseModel):
    score: float = 0.0
    required_fields: List[str] = Field(default_factory=list)
    present_fields: List[str] = Field(default_factory=list)
    missing_fields: List[str] = Field(default_factory=list)
    total_matches_sum: bool = False
    reasoning: str = ""


class InvoiceAuditResult(ReimburseModel):
    """Per-attachment verdict, serialized into ``attachments.audit_result``."""

    extracted_data: Optional[InvoiceData] = None
    policy_result: Optional[PolicyCheckResult] = None
    price_verification: Optional[PriceVerificationResult] = None
    completeness: Optional[CompletenessResult] = None
    overall_confidence: float = 0.0
    overall_decision: str = AuditDecision.PASS.value
    reasoning: str = ""
    processed_at: datetime = Field(default_factory=lambda: datetime.now(timezone.utc))


class AggregatedAuditResult(ReimburseModel):
    instance_id: int
    external_id: str = ""
    decision: str = AuditDecision.PASS.value
    confidence: float = 0.0
    total_amount: float = 0.0
    violations: List[str] = Field(default_factory=list)
    attachment_count: int = 0
    processed_count: int = 0


class UniquenessCheck(ReimburseModel):
    is_unique: bool = True
    duplicate_invoice_id: Optional[int] = None
    duplicate_instance_id: Optional[int] = None
    duplicate_attachment_id: Optional[int] = None
    first_seen_at: Optional[str] = None
    message: str = ""


class ApproverInfo(ReimburseModel):
    user_id: str = ""
    open_id: str = ""
    name: str = ""

    @property
    def recipient_id(self) -> str:
        return self.open_id or self.user_id


class FetchedFile(ReimburseModel):
    content: bytes = b""
    mime_type: str = ""
    size: int = 0
    status_code: int = 0
    attempts: int = 0
