"""Factor scorers for duplicate detection.

Each factor maps a raw measurement (name similarity, amount difference,
day difference, item-count difference) to a bounded number of points.
The bands are ordered ``(threshold, points)`` tables evaluated by one
helper, :func:`band_points`, which returns the points of the first
band the value satisfies. The five maxima add up to 100.
"""

from __future__ import annotations

import datetime as dt
from decimal import Decimal
from typing import Any, Optional, Sequence, Tuple

from sheetwise.models.schemas import FactorScore, MatchFactors
from sheetwise.utils.helpers import parse_amount
from sheetwise.utils.similarity import string_similarity

Band = Tuple[Any, int]

# similarity percentage, higher is better
STORE_NAME_BANDS: Sequence[Band] = ((100, 30), (90, 28), (80, 23), (70, 18), (60, 12))
# absolute differences, lower is better
TOTAL_AMOUNT_BANDS: Sequence[Band] = (
    (Decimal("0"), 25),
    (Decimal("0.01"), 23),
    (Decimal("0.10"), 20),
    (Decimal("1.00"), 15),
    (Decimal("5.00"), 10),
)
TAX_AMOUNT_BANDS: Sequence[Band] = ((Decimal("0"), 10), (Decimal("0.01"), 8), (Decimal("0.10"), 5))
DATE_BANDS: Sequence[Band] = ((0, 20), (1, 15), (3, 10))
ITEM_COUNT_BANDS: Sequence[Band] = ((0, 15), (1, 12), (2, 8), (3, 5))


def band_points(value: Any, bands: Sequence[Band], at_most: bool = False) -> int:
    """Return the points of the first band whose threshold ``value`` satisfies.

    With ``at_most=False`` a band is satisfied when ``value >= threshold``
    (bands ordered from the highest threshold down); with ``at_most=True``
    when ``value <= threshold`` (ordered from the lowest up). No band
    satisfied means 0 points.
    """
    for threshold, points in bands:
        if (value <= threshold) if at_most else (value >= threshold):
            return points
    return 0


def _amount_difference(a: Any, b: Any) -> Optional[Decimal]:
    first, second = parse_amount(a), parse_amount(b)
    if first is None or second is None:
        return None
    return abs(first - second)


def score_store_name(name1: Optional[str], name2: Optional[str]) -> FactorScore:
    """0-30 points from normalised edit-distance similarity."""
    if not name1 or not name2:
        return FactorScore(score=0, similarity=0)
    similarity = string_similarity(name1, name2)
    return FactorScore(score=band_points(similarity, STORE_NAME_BANDS), similarity=round(similarity))


def score_total_amount(amount1: Any, amount2: Any) -> FactorScore:
    """0-25 points from the absolute difference between totals."""
    difference = _amount_difference(amount1, amount2)
    if difference is None:
        return FactorScore(score=0)
    return FactorScore(
        score=band_points(difference, TOTAL_AMOUNT_BANDS, at_most=True),
        difference=float(round(difference, 2)),
    )


def score_date(date1: Optional[dt.date], date2: Optional[dt.date]) -> FactorScore:
    """0-20 points from the number of days between transaction dates."""
    if date1 is None or date2 is None:
        return FactorScore(score=0)
    days = abs((date1 - date2).days)
    return FactorScore(score=band_points(days, DATE_BANDS, at_most=True), days_difference=days)


def score_item_count(count1: int, count2: int) -> FactorScore:
    """0-15 points from the difference in line-item counts."""
    difference = abs(count1 - count2)
    return FactorScore(score=band_points(difference, ITEM_COUNT_BANDS, at_most=True), difference=difference)


def score_tax_amount(tax1: Any, tax2: Any) -> FactorScore:
    """0-10 points from the absolute difference between tax amounts."""
    difference = _amount_difference(tax1, tax2)
    if difference is None:
        return FactorScore(score=0)
    return FactorScore(
        score=band_points(difference, TAX_AMOUNT_BANDS, at_most=True),
        difference=float(round(difference, 2)),
    )


def score_factors(current: Any, candidate: Any, current_item_count: int, candidate_item_count: int) -> MatchFactors:
    """Score all five factors between two receipt rows."""
    return MatchFactors(
        store_name=score_store_name(current.store_name, candidate.store_name),
        total_amount=score_total_amount(current.total_amount, candidate.total_amount),
        date=score_date(current.transaction_date, candidate.transaction_date),
        item_count=score_item_count(current_item_count, candidate_item_count),
        tax_amount=score_tax_amount(current.tax_amount, candidate.tax_amount),
    )
