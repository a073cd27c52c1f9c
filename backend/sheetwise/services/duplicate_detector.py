"""Duplicate receipt detection.

Scores a freshly extracted receipt against the same user's other
processed receipts using five fuzzy factors (see
:mod:`sheetwise.services.duplicate_factors`) so OCR misreads, blurred
digits and model guesses still line up with the receipt already on
file. The best-scoring candidate is classified into a confidence band:

* ``>= 95`` DEFINITE_DUPLICATE
* ``>= 85`` LIKELY_DUPLICATE (and anything at or above this is a duplicate)
* ``>= 70`` POSSIBLE_DUPLICATE (recorded as a ``DuplicateMatch``)
* ``>= 50`` UNCERTAIN
* otherwise NOT_DUPLICATE

The detector works inside the caller's session and never commits, so
the orchestrator can keep each receipt's writes in one transaction.
"""

from __future__ import annotations

import datetime as dt
import logging
from decimal import Decimal
from typing import Dict, List, Optional

from sqlalchemy import func, select, update
from sqlalchemy.orm import Session

from sheetwise.core.errors import ReceiptNotFoundError
from sheetwise.models.enums import ConfidenceLevel, DuplicateUserAction, ReceiptStatus
from sheetwise.models.schemas import DuplicateCheckResult, MatchFactors
from sheetwise.models.tables import DuplicateMatch, LineItem, Receipt, UploadJob
from sheetwise.services.duplicate_factors import score_factors

logger = logging.getLogger(__name__)

DATE_WINDOW_DAYS = 3
MIN_REPORT_SCORE = 70
DUPLICATE_SCORE = 85

CONFIDENCE_BANDS = (
    (95, ConfidenceLevel.DEFINITE_DUPLICATE),
    (85, ConfidenceLevel.LIKELY_DUPLICATE),
    (70, ConfidenceLevel.POSSIBLE_DUPLICATE),
    (50, ConfidenceLevel.UNCERTAIN),
)


def classify_confidence(score: float) -> ConfidenceLevel:
    """Map a 0-100 score to its confidence band."""
    for threshold, level in CONFIDENCE_BANDS:
        if score >= threshold:
            return level
    return ConfidenceLevel.NOT_DUPLICATE


def _not_duplicate() -> DuplicateCheckResult:
    return DuplicateCheckResult(
        is_duplicate=False,
        confidence_score=0.0,
        confidence_level=ConfidenceLevel.NOT_DUPLICATE,
    )


class DuplicateDetector:
    """Score receipts for duplicates and record the user's decisions."""

    def __init__(self, session: Session) -> None:
        self.session = session

    def _candidates(self, receipt: Receipt, user_id: int) -> List[Receipt]:
        stmt = (
            select(Receipt)
            .join(UploadJob, Receipt.upload_id == UploadJob.id)
            .where(
                UploadJob.user_id == user_id,
                Receipt.status == ReceiptStatus.PROCESSED,
                Receipt.id != receipt.id,
            )
        )
        if receipt.transaction_date is not None:
            window = dt.timedelta(days=DATE_WINDOW_DAYS)
            stmt = stmt.where(
                Receipt.transaction_date.between(
                    receipt.transaction_date - window,
                    receipt.transaction_date + window,
                )
            )
        return list(self.session.execute(stmt.order_by(Receipt.id)).scalars().all())

    def _item_counts(self, receipt_ids: List[int]) -> Dict[int, int]:
        stmt = (
            select(LineItem.receipt_id, func.count(LineItem.id))
            .where(LineItem.receipt_id.in_(receipt_ids))
            .group_by(LineItem.receipt_id)
        )
        return {receipt_id: count for receipt_id, count in self.session.execute(stmt).all()}

    def score(self, receipt: Receipt, user_id: int) -> DuplicateCheckResult:
        """Find the prior receipt that ``receipt`` most resembles.

        ``receipt`` must already carry its extracted fields and line items
        (they are flushed here). At most one ``DuplicateMatch`` row is added
        when the best score reaches ``MIN_REPORT_SCORE``; neither receipt is
        modified.
        """
        self.session.flush()
        candidates = self._candidates(receipt, user_id)
        if not candidates:
            logger.debug("[duplicates] receipt=%s no candidates", receipt.id)
            return _not_duplicate()

        counts = self._item_counts([receipt.id] + [c.id for c in candidates])
        current_count = counts.get(receipt.id, 0)

        best: Optional[Receipt] = None
        best_factors: Optional[MatchFactors] = None
        highest = 0
        for candidate in candidates:
            factors = score_factors(receipt, candidate, current_count, counts.get(candidate.id, 0))
            # strictly greater: ties keep the first candidate
            if factors.total > highest:
                highest = factors.total
                best = candidate
                best_factors = factors

        level = classify_confidence(highest)
        is_duplicate = highest >= DUPLICATE_SCORE
        logger.info(
            "[duplicates] receipt=%s best=%s score=%s level=%s",
            receipt.id,
            best.id if best else None,
            highest,
            level.value,
        )

        if best is not None and highest >= MIN_REPORT_SCORE:
            self.session.add(
                DuplicateMatch(
                    receipt_id=receipt.id,
                    potential_duplicate_id=best.id,
                    confidence_score=Decimal(highest).quantize(Decimal("0.01")),
                    match_factors=best_factors.model_dump(exclude_none=True) if best_factors else None,
                    user_action=DuplicateUserAction.PENDING,
                )
            )
            self.session.flush()

        return DuplicateCheckResult(
            is_duplicate=is_duplicate,
            confidence_score=float(highest),
            confidence_level=level,
            matched_receipt_id=best.id if best else None,
            match_factors=best_factors,
        )

    def _get_receipt(self, receipt_id: int) -> Receipt:
        receipt = self.session.get(Receipt, receipt_id)
        if receipt is None:
            raise ReceiptNotFoundError(receipt_id)
        return receipt

    def mark_as_duplicate(self, receipt_id: int, duplicate_of_id: int, confidence_score: float) -> Receipt:
        """Flag ``receipt_id`` as a duplicate of ``duplicate_of_id``."""
        receipt = self._get_receipt(receipt_id)
        receipt.is_duplicate = True
        receipt.duplicate_of_receipt_id = duplicate_of_id
        receipt.duplicate_confidence_score = Decimal(str(confidence_score)).quantize(Decimal("0.01"))
        receipt.duplicate_checked_at = dt.datetime.now(dt.timezone.utc)
        self.session.flush()
        return receipt

    def override_duplicate_flag(self, receipt_id: int) -> Receipt:
        """Record that the user says ``receipt_id`` is not a duplicate."""
        receipt = self._get_receipt(receipt_id)
        receipt.is_duplicate = False
        receipt.duplicate_override = True
        self.session.execute(
            update(DuplicateMatch)
            .where(DuplicateMatch.receipt_id == receipt_id)
            .values(user_action=DuplicateUserAction.OVERRIDE)
        )
        self.session.flush()
        return receipt

    def confirm_duplicate(self, receipt_id: int) -> Receipt:
        """Record that the user agrees ``receipt_id`` is a duplicate.

        Pending matches become ``confirmed_duplicate`` and the receipt is
        flagged against the best of them, even when its score sat below the
        automatic threshold.
        """
        receipt = self._get_receipt(receipt_id)
        best_match = self.session.execute(
            select(DuplicateMatch)
            .where(
                DuplicateMatch.receipt_id == receipt_id,
                DuplicateMatch.user_action == DuplicateUserAction.PENDING,
            )
            .order_by(DuplicateMatch.confidence_score.desc(), DuplicateMatch.id)
            .limit(1)
        ).scalar_one_or_none()
        if best_match is None:
            return receipt

        self.session.execute(
            update(DuplicateMatch)
            .where(
                DuplicateMatch.receipt_id == receipt_id,
                DuplicateMatch.user_action == DuplicateUserAction.PENDING,
            )
            .values(user_action=DuplicateUserAction.CONFIRMED_DUPLICATE)
        )
        receipt.is_duplicate = True
        receipt.duplicate_override = False
        receipt.duplicate_of_receipt_id = best_match.potential_duplicate_id
        receipt.duplicate_confidence_score = best_match.confidence_score
        receipt.duplicate_checked_at = dt.datetime.now(dt.timezone.utc)
        self.session.flush()
        return receipt
