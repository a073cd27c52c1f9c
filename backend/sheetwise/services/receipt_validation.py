"""Consistency checks for extracted receipt numbers.

Validation rules:
1. sum(item prices) ~= subtotal (or total - tax when no subtotal was read)
2. subtotal + tax ~= total (tax treated as 0 when missing)
3. an item priced at exactly zero is suspicious
4. an item priced above the receipt total is suspicious

Differences up to ``TOLERANCE`` are accepted to absorb rounding on the
receipt itself. Findings never change a receipt's status; the
orchestrator records each as a ``VALIDATION_WARNING``.
"""

from __future__ import annotations

import logging
from decimal import Decimal
from typing import List

from sheetwise.models.schemas import ExtractedReceipt, ValidationIssue

logger = logging.getLogger(__name__)

TOLERANCE = Decimal("0.03")


def _money(value: Decimal) -> str:
    return f"{value.quantize(Decimal('0.01'))}"


def validate_extracted_receipt(receipt: ExtractedReceipt) -> List[ValidationIssue]:
    """Return every inconsistency found in ``receipt`` (empty when clean)."""
    issues: List[ValidationIssue] = []
    total = receipt.total
    tax = receipt.tax or Decimal("0")

    if receipt.items:
        items_sum = sum((item.price for item in receipt.items), Decimal("0"))
        if receipt.subtotal is not None:
            expected, label = receipt.subtotal, "subtotal"
        else:
            expected, label = total - tax, "total"
        if abs(items_sum - expected) > TOLERANCE:
            issues.append(
                ValidationIssue(
                    type="ITEMS_SUM_MISMATCH",
                    message=f"Line items sum to {_money(items_sum)} but {label} is {_money(expected)}",
                    details={
                        "items_sum": str(items_sum),
                        "expected": str(expected),
                        "compared_to": label,
                        "difference": str(items_sum - expected),
                    },
                )
            )

    if receipt.subtotal is not None:
        computed = receipt.subtotal + tax
        if abs(computed - total) > TOLERANCE:
            issues.append(
                ValidationIssue(
                    type="TOTAL_MISMATCH",
                    message=f"Subtotal + tax is {_money(computed)} but total is {_money(total)}",
                    details={
                        "subtotal": str(receipt.subtotal),
                        "tax": str(tax),
                        "total": str(total),
                        "difference": str(computed - total),
                    },
                )
            )

    for index, item in enumerate(receipt.items):
        if item.price == 0:
            issues.append(
                ValidationIssue(
                    type="ZERO_PRICE",
                    message=f"Item '{item.description}' has a price of zero",
                    severity="info",
                    details={"item_index": index, "description": item.description},
                )
            )
        elif total > 0 and item.price > total:
            issues.append(
                ValidationIssue(
                    type="EXTREME_PRICE",
                    message=f"Item '{item.description}' costs {_money(item.price)}, more than the total {_money(total)}",
                    details={"item_index": index, "description": item.description, "price": str(item.price)},
                )
            )

    if issues:
        logger.debug("[validation] %d issue(s): %s", len(issues), [i.type for i in issues])
    return issues
