"""
Invoice audit rules

Rule-based policy and price checks over extracted invoice data, with optional
LLM-assisted category and market-price checks. Completeness scoring and the
final decision rule are plain functions so the audit processor can run the two
async checks concurrently and finish the verdict inline.
"""
from __future__ import annotations

import logging
from datetime import date, datetime
from typing import List, Optional

from reimburse.core.status import AuditDecision
from reimburse.models.audit import (
    CompletenessResult,
    InvoiceData,
    PolicyCheckResult,
    PriceVerificationResult,
)
from reimburse.services.errors import LLMError
from reimburse.services.llm import LLMClient

logger = logging.getLogger(__name__)

REQUIRED_FIELDS = [
    "invoice_code",
    "invoice_number",
    "invoice_date",
    "total_amount",
    "seller_name",
    "seller_tax_id",
    "buyer_name",
    "buyer_tax_id",
]

# Categories that normally require a VAT special invoice (增值税专用发票).
SPECIAL_INVOICE_CATEGORIES = {"EQUIPMENT", "PROCUREMENT", "ASSET"}

COMPANY_SUFFIXES = ["有限公司", "有限责任公司", "股份有限公司", "集团", "公司", "ltd", "inc", "co."]

AMOUNT_MATCH_TOLERANCE_PERCENT = 1.0


def fuzzy_match(left: str, right: str) -> bool:
    """Loose company-name comparison: case, containment and legal suffixes ignored."""
    s1 = (left or "").strip().lower()
    s2 = (right or "").strip().lower()
    if s1 == s2:
        return True
    if s1 in s2 or s2 in s1:
        return True

    clean1, clean2 = s1, s2
    for suffix in COMPANY_SUFFIXES:
        if clean1.endswith(suffix):
            clean1 = clean1[: -len(suffix)]
        if clean2.endswith(suffix):
            clean2 = clean2[: -len(suffix)]
    clean1 = clean1.strip()
    clean2 = clean2.strip()
    return clean1 == clean2 or clean2 in clean1 or clean1 in clean2


def _one_year_before(today: date) -> date:
    try:
        return today.replace(year=today.year - 1)
    except ValueError:
        # Feb 29
        return today.replace(year=today.year - 1, day=28)


def check_completeness(invoice: InvoiceData) -> CompletenessResult:
    field_checks = {
        "invoice_code": bool(invoice.invoice_code),
        "invoice_number": bool(invoice.invoice_number),
        "invoice_date": bool(invoice.invoice_date),
        "total_amount": invoice.total_amount > 0,
        "seller_name": bool(invoice.seller_name),
        "seller_tax_id": bool(invoice.seller_tax_id),
        "buyer_name": bool(invoice.buyer_name),
        "buyer_tax_id": bool(invoice.buyer_tax_id),
    }
    present = [name for name in REQUIRED_FIELDS if field_checks[name]]
    missing = [name for name in REQUIRED_FIELDS if not field_checks[name]]
    score = len(present) / len(REQUIRED_FIELDS)

    if invoice.items:
        item_sum = sum(item.amount + item.tax_amount for item in invoice.items)
        tolerance = invoice.total_amount * 0.01
        total_matches_sum = abs(invoice.total_amount - item_sum) <= tolerance
    else:
        total_matches_sum = True

    return CompletenessResult(
        score=score,
        required_fields=list(REQUIRED_FIELDS),
        present_fields=present,
        missing_fields=missing,
        total_matches_sum=total_matches_sum,
        reasoning=(
            f"Completeness: {len(present)}/{len(REQUIRED_FIELDS)} required fields present. "
            f"Score: {score * 100:.0f}%"
        ),
    )


def determine_decision(
    policy: PolicyCheckResult,
    price: PriceVerificationResult,
    completeness: CompletenessResult,
    overall_confidence: float,
    deviation_threshold: float = 10.0,
) -> AuditDecision:
    """Ordered decision rule: FAIL conditions first, then NEEDS_REVIEW, else PASS."""
    if not policy.is_compliant and len(policy.violations) > 2:
        return AuditDecision.FAIL
    if not price.amount_match and price.deviation_percent > deviation_threshold:
        return AuditDecision.FAIL
    if completeness.score < 0.5:
        return AuditDecision.FAIL

    if not policy.is_compliant:
        return AuditDecision.NEEDS_REVIEW
    if not price.is_reasonable:
        return AuditDecision.NEEDS_REVIEW
    if overall_confidence < 0.7:
        return AuditDecision.NEEDS_REVIEW
    if completeness.score < 0.8:
        return AuditDecision.NEEDS_REVIEW

    return AuditDecision.PASS


def build_reasoning(
    policy: PolicyCheckResult,
    price: PriceVerificationResult,
    completeness: CompletenessResult,
) -> str:
    parts = [policy.reasoning, price.reasoning, completeness.reasoning]
    if policy.violations:
        parts.append(f"Violations: {'; '.join(policy.violations)}")
    return " | ".join(parts)


def _describe(error: BaseException) -> str:
    return str(error) or type(error).__name__


def degraded_policy_result(error: BaseException) -> PolicyCheckResult:
    return PolicyCheckResult(
        is_compliant=False,
        violations=[f"Policy check failed: {_describe(error)}"],
        confidence=0.0,
    )


def degraded_price_result(error: BaseException) -> PriceVerificationResult:
    return PriceVerificationResult(
        is_reasonable=False,
        confidence=0.0,
        reasoning=f"Price verification failed: {_describe(error)}",
    )


class InvoiceAuditor:
    """Audit port: policy-compliance and price-reasonableness checks."""

    def __init__(
        self,
        company_name: str = "",
        company_tax_id: str = "",
        llm: Optional[LLMClient] = None,
    ):
        self.company_name = company_name
        self.company_tax_id = company_tax_id
        self.llm = llm if llm is not None and llm.is_available else None

    async def check_policy(self, invoice: InvoiceData, expense_category: str) -> PolicyCheckResult:
        result = PolicyCheckResult(is_compliant=True, confidence=1.0)
        violations: List[str] = []

        # Buyer must be our company
        if invoice.buyer_name:
            result.company_name_match = fuzzy_match(invoice.buyer_name, self.company_name)
            if not result.company_name_match:
                violations.append(
                    f"Buyer name '{invoice.buyer_name}' does not match company '{self.company_name}'"
                )
        else:
            result.company_name_match = False
            violations.append("Buyer name is missing from invoice")

        if invoice.buyer_tax_id and self.company_tax_id:
            if invoice.buyer_tax_id != self.company_tax_id:
                violations.append(
                    f"Buyer tax ID '{invoice.buyer_tax_id}' does not match company tax ID"
                )

        # Unparseable or missing dates count as a failed check without a violation.
        if invoice.invoice_date:
            try:
                invoice_date = datetime.strptime(invoice.invoice_date, "%Y-%m-%d").date()
            except ValueError:
                invoice_date = None
            if invoice_date is not None:
                today = date.today()
                if invoice_date > today:
                    violations.append("Invoice date is in the future")
                elif invoice_date < _one_year_before(today):
                    violations.append("Invoice is more than 1 year old")
                else:
                    result.date_valid = True

        result.vat_type_valid = True
        if invoice.invoice_type:
            is_special_category = (expense_category or "").upper() in SPECIAL_INVOICE_CATEGORIES
            if is_special_category and "专用" not in invoice.invoice_type:
                violations.append(
                    f"Category '{expense_category}' typically requires VAT Special Invoice (增值税专用发票)"
                )
                result.vat_type_valid = False

        result.category_match = True
        if self.llm is not None:
            try:
                category = await self._check_category_match(invoice, expense_category)
            except LLMError as exc:
                logger.warning("Category check via AI failed: %s", exc)
            else:
                result.category_match = bool(category.get("category_match", True))
                if not result.category_match:
                    violations.append(str(category.get("reasoning") or "Invoice content does not match category"))
                result.confidence = (result.confidence + float(category.get("confidence") or 0.0)) / 2

        result.violations = violations
        result.is_compliant = not violations

        checks = [
            result.company_name_match,
            result.date_valid,
            result.vat_type_valid,
            result.category_match,
        ]
        passed = sum(1 for check in checks if check)
        result.confidence = result.confidence * passed / len(checks)
        result.reasoning = (
            f"Policy check: {passed}/{len(checks)} checks passed. {len(violations)} violations found."
        )
        return result

    async def check_price(self, invoice: InvoiceData, claimed_amount: float) -> PriceVerificationResult:
        result = PriceVerificationResult(
            claimed_amount=claimed_amount,
            invoice_amount=invoice.total_amount,
            confidence=1.0,
        )

        if invoice.total_amount > 0:
            deviation = abs(claimed_amount - invoice.total_amount)
            result.deviation_percent = deviation / invoice.total_amount * 100
            if result.deviation_percent <= AMOUNT_MATCH_TOLERANCE_PERCENT:
                result.amount_match = True
            else:
                result.amount_match = False
                result.confidence *= 0.5

        if invoice.items:
            market = None
            if self.llm is not None:
                try:
                    market = await self._check_market_price(invoice)
                except LLMError as exc:
                    logger.warning("Market price check failed: %s", exc)
            if market is None:
                result.is_reasonable = True
            else:
                result.is_reasonable = bool(market.get("is_reasonable", True))
                result.market_price_min = float(market.get("market_price_min") or 0.0)
                result.market_price_max = float(market.get("market_price_max") or 0.0)
                result.confidence = (result.confidence + float(market.get("confidence") or 0.0)) / 2
                result.reasoning = str(market.get("reasoning") or "")
        else:
            result.is_reasonable = True
            result.reasoning = "No line items to verify against market prices"

        if not result.amount_match:
            result.reasoning = (
                f"Claimed amount ({claimed_amount:.2f}) differs from invoice total "
                f"({invoice.total_amount:.2f}) by {result.deviation_percent:.1f}%. {result.reasoning}"
            )
        return result

    async def _check_category_match(self, invoice: InvoiceData, expense_category: str) -> dict:
        items = "\n".join(
            f"- {item.name} (规格: {item.specification}, 金额: {item.amount:.2f})" for item in invoice.items
        )
        prompt = (
            "Analyze if this invoice content matches the claimed expense category.\n\n"
            f"Claimed Expense Category: {expense_category}\n\n"
            f"Invoice Details:\n- Seller: {invoice.seller_name}\n"
            f"- Invoice Type: {invoice.invoice_type}\n- Items:\n{items}\n\n"
            'Respond with JSON: {"category_match": boolean, "confidence": float 0.0-1.0, '
            '"reasoning": string}'
        )
        return await self.llm.chat_json([
            {
                "role": "system",
                "content": "You are an expert accountant analyzing expense reimbursements.",
            },
            {"role": "user", "content": prompt},
        ])

    async def _check_market_price(self, invoice: InvoiceData) -> dict:
        items = "\n".join(
            f"- {item.name}: 数量={item.quantity:g}, 单价={item.unit_price:.2f}, 金额={item.amount:.2f}"
            for item in invoice.items
        )
        prompt = (
            "Analyze if these prices are reasonable based on typical market prices in China:\n\n"
            f"Seller: {invoice.seller_name}\nItems:\n{items}\n\n"
            f"Total Amount: {invoice.total_amount:.2f}\n\n"
            'Respond with JSON: {"is_reasonable": boolean, "market_price_min": float, '
            '"market_price_max": float, "confidence": float 0.0-1.0, "reasoning": string}'
        )
        return await self.llm.chat_json(
            [
                {
                    "role": "system",
                    "content": "You are a market price analyst for business expenses in China.",
                },
                {"role": "user", "content": prompt},
            ],
            temperature=0.2,
        )
