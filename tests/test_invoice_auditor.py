import asyncio
import sys
from datetime import date, timedelta
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]
if str(ROOT) not in sys.path:
    sys.path.append(str(ROOT))

from reimburse.core.status import AuditDecision
from reimburse.models.audit import (
    CompletenessResult,
    InvoiceData,
    InvoiceItem,
    PolicyCheckResult,
    PriceVerificationResult,
)
from reimburse.services.invoice_auditor import (
    InvoiceAuditor,
    check_completeness,
    degraded_policy_result,
    degraded_price_result,
    determine_decision,
    fuzzy_match,
)

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


def _policy(compliant=True, violations=None, confidence=1.0):
    return PolicyCheckResult(is_compliant=compliant, violations=violations or [], confidence=confidence)


def _price(match=True, deviation=0.0, reasonable=True, confidence=1.0):
    return PriceVerificationResult(
        amount_match=match, deviation_percent=deviation, is_reasonable=reasonable, confidence=confidence
    )


def _completeness(score=1.0):
    return CompletenessResult(score=score)


def test_fuzzy_match_ignores_suffixes_and_case():
    assert fuzzy_match(COMPANY, "杭州示例科技")
    assert fuzzy_match("Acme Ltd", "ACME")
    assert fuzzy_match("杭州示例科技有限公司", "杭州示例科技股份有限公司")
    assert not fuzzy_match("北京另一家公司", COMPANY)


def test_unique_id_is_code_and_number():
    assert _invoice().unique_id == "033001900111-00012345"


def test_completeness_full_invoice():
    result = check_completeness(_invoice())

    assert result.score == 1.0
    assert result.missing_fields == []
    assert result.total_matches_sum is True


def test_completeness_missing_fields_and_mismatched_items():
    invoice = _invoice(
        seller_tax_id="",
        buyer_tax_id="",
        invoice_code="",
        items=[InvoiceItem(name="a", amount=10.0)],
    )

    result = check_completeness(invoice)

    assert result.score == pytest.approx(5 / 8)
    assert set(result.missing_fields) == {"seller_tax_id", "buyer_tax_id", "invoice_code"}
    assert result.total_matches_sum is False


@pytest.mark.parametrize(
    "policy,price,completeness,confidence,expected",
    [
        (_policy(), _price(), _completeness(), 0.95, AuditDecision.PASS),
        (_policy(False, ["a", "b", "c"]), _price(), _completeness(), 0.9, AuditDecision.FAIL),
        (_policy(), _price(match=False, deviation=15.0), _completeness(), 0.9, AuditDecision.FAIL),
        (_policy(), _price(), _completeness(0.4), 0.9, AuditDecision.FAIL),
        (_policy(False, ["a"]), _price(), _completeness(), 0.9, AuditDecision.NEEDS_REVIEW),
        (_policy(), _price(reasonable=False), _completeness(), 0.9, AuditDecision.NEEDS_REVIEW),
        (_policy(), _price(match=False, deviation=5.0), _completeness(), 0.9, AuditDecision.PASS),
        (_policy(), _price(), _completeness(0.75), 0.9, AuditDecision.NEEDS_REVIEW),
        (_policy(), _price(), _completeness(), 0.6, AuditDecision.NEEDS_REVIEW),
    ],
)
def test_decision_rule(policy, price, completeness, confidence, expected):
    assert determine_decision(policy, price, completeness, confidence) == expected


def test_degraded_results_have_zero_confidence():
    policy = degraded_policy_result(TimeoutError())
    price = degraded_price_result(RuntimeError("llm down"))

    assert policy.confidence == 0.0
    assert policy.is_compliant is False
    assert policy.violations == ["Policy check failed: TimeoutError"]
    assert price.confidence == 0.0
    assert price.reasoning == "Price verification failed: llm down"


def test_policy_check_passes_for_matching_company():
    auditor = InvoiceAuditor(company_name=COMPANY)

    result = asyncio.run(auditor.check_policy(_invoice(), "TRAVEL"))

    assert result.is_compliant is True
    assert result.violations == []
    assert result.company_name_match and result.date_valid and result.vat_type_valid
    assert result.confidence == 1.0


def test_policy_check_collects_violations():
    auditor = InvoiceAuditor(company_name=COMPANY, company_tax_id="91330100MA2YYYYY2Y")
    future = (date.today() + timedelta(days=3)).isoformat()
    invoice = _invoice(buyer_name="另一家公司", invoice_date=future)

    result = asyncio.run(auditor.check_policy(invoice, "EQUIPMENT"))

    assert result.is_compliant is False
    assert len(result.violations) == 4
    assert any("does not match company" in v for v in result.violations)
    assert any("tax ID" in v for v in result.violations)
    assert "Invoice date is in the future" in result.violations
    assert any("VAT Special Invoice" in v for v in result.violations)
    assert result.confidence == pytest.approx(0.25)


def test_old_invoice_is_flagged():
    auditor = InvoiceAuditor(company_name=COMPANY)
    invoice = _invoice(invoice_date=(date.today() - timedelta(days=400)).isoformat())

    result = asyncio.run(auditor.check_policy(invoice, "TRAVEL"))

    assert "Invoice is more than 1 year old" in result.violations


def test_price_check_matches_claim():
    auditor = InvoiceAuditor(company_name=COMPANY)

    result = asyncio.run(auditor.check_price(_invoice(), 100.0))

    assert result.amount_match is True
    assert result.is_reasonable is True
    assert result.confidence == 1.0


def test_price_check_flags_deviation():
    auditor = InvoiceAuditor(company_name=COMPANY)

    result = asyncio.run(auditor.check_price(_invoice(), 120.0))

    assert result.amount_match is False
    assert result.deviation_percent == pytest.approx(20.0)
    assert result.confidence == pytest.approx(0.5)
    assert "differs from invoice total" in result.reasoning
