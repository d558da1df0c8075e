"""Instance-level consolidation of per-attachment audit verdicts."""
import logging
from typing import Any, Dict, List, Optional

from pydantic import ValidationError

from reimburse.core.status import AuditDecision, higher_priority_decision
from reimburse.models.audit import AggregatedAuditResult, InvoiceAuditResult

logger = logging.getLogger(__name__)

AMOUNT_MISMATCH_THRESHOLD_PERCENT = 1.0
PRICE_UNREASONABLE_VIOLATION = "价格不合理：发票金额超出市场价格合理范围"


def amount_mismatch_violation(claimed: float, invoice_amount: float, deviation: float) -> str:
    return (
        f"金额不符：申请金额 ¥{claimed:.2f} 与发票金额 ¥{invoice_amount:.2f} "
        f"不一致 (偏差 {deviation:.1f}%)"
    )


def _parse_audit_result(attachment: Dict[str, Any]) -> Optional[InvoiceAuditResult]:
    raw = attachment.get("audit_result")
    if not raw:
        return None
    try:
        if isinstance(raw, str):
            return InvoiceAuditResult.model_validate_json(raw)
        return InvoiceAuditResult.model_validate(raw)
    except ValidationError as exc:
        logger.warning(
            "Failed to parse audit result for attachment %s: %s", attachment.get("id"), exc
        )
        return None


class AuditAggregator:
    """
    Consolidates audit results from all processed attachments of an instance.

    Decision priority is FAIL > NEEDS_REVIEW > PASS, confidence is the mean over
    attachments whose payload could be parsed, and violations are the
    first-seen-ordered union of policy violations plus narrative entries for
    amount mismatches and unreasonable prices.
    """

    def aggregate(
        self, attachments: List[Dict[str, Any]], instance: Dict[str, Any]
    ) -> AggregatedAuditResult:
        result = AggregatedAuditResult(
            instance_id=instance["id"],
            external_id=instance.get("external_id") or "",
            decision=AuditDecision.PASS.value,
            attachment_count=len(attachments),
        )
        if not attachments:
            result.confidence = 1.0
            return result

        decision = AuditDecision.PASS
        total_confidence = 0.0
        processed_count = 0
        seen = set()
        violations: List[str] = []

        def add_violation(text: str) -> None:
            if text not in seen:
                seen.add(text)
                violations.append(text)

        for attachment in attachments:
            audit = _parse_audit_result(attachment)
            if audit is None:
                continue

            processed_count += 1
            total_confidence += audit.overall_confidence

            if audit.extracted_data is not None:
                result.total_amount += audit.extracted_data.total_amount

            decision = higher_priority_decision(decision.value, audit.overall_decision)

            if audit.policy_result is not None:
                for violation in audit.policy_result.violations:
                    add_violation(violation)

            price = audit.price_verification
            if price is not None:
                if not price.amount_match and price.deviation_percent > AMOUNT_MISMATCH_THRESHOLD_PERCENT:
                    add_violation(
                        amount_mismatch_violation(
                            price.claimed_amount, price.invoice_amount, price.deviation_percent
                        )
                    )
                if not price.is_reasonable:
                    add_violation(PRICE_UNREASONABLE_VIOLATION)

        result.decision = decision.value
        result.violations = violations
        result.processed_count = processed_count
        result.confidence = total_confidence / processed_count if processed_count else 0.0

        logger.info(
            "Aggregated audit results for instance %s: decision=%s confidence=%.3f violations=%s",
            result.instance_id,
            result.decision,
            result.confidence,
            len(result.violations),
        )
        return result
