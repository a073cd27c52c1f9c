import datetime as dt
from decimal import Decimal
from types import SimpleNamespace

import pytest

from sheetwise.services.duplicate_factors import (
    DATE_BANDS,
    STORE_NAME_BANDS,
    band_points,
    score_date,
    score_factors,
    score_item_count,
    score_store_name,
    score_tax_amount,
    score_total_amount,
)


def test_band_points_highest_satisfied_threshold():
    assert band_points(100, STORE_NAME_BANDS) == 30
    assert band_points(85, STORE_NAME_BANDS) == 23
    assert band_points(59, STORE_NAME_BANDS) == 0
    assert band_points(0, DATE_BANDS, at_most=True) == 20
    assert band_points(2, DATE_BANDS, at_most=True) == 10
    assert band_points(4, DATE_BANDS, at_most=True) == 0


def test_identical_store_names_score_thirty():
    result = score_store_name("Corner Cafe", "Corner Cafe")
    assert result.score == 30
    assert result.similarity == 100


def test_missing_store_name_scores_zero():
    assert score_store_name(None, "Corner Cafe").score == 0


def test_equal_amounts_score_maximum():
    assert score_total_amount(Decimal("12.50"), Decimal("12.50")).score == 25
    assert score_tax_amount(Decimal("1.00"), Decimal("1.00")).score == 10


def test_total_amount_score_is_non_increasing():
    base = Decimal("100.00")
    diffs = ["0", "0.01", "0.05", "0.10", "0.50", "1.00", "3.00", "5.00", "5.01", "50"]
    scores = [score_total_amount(base, base + Decimal(d)).score for d in diffs]
    assert scores == sorted(scores, reverse=True)
    assert scores[0] == 25 and scores[-1] == 0


def test_tax_amount_score_is_non_increasing():
    base = Decimal("2.00")
    diffs = ["0", "0.01", "0.05", "0.10", "0.11", "1"]
    scores = [score_tax_amount(base, base + Decimal(d)).score for d in diffs]
    assert scores == [10, 8, 5, 5, 0, 0]


def test_missing_amount_scores_zero():
    assert score_total_amount(None, Decimal("1")).score == 0
    assert score_tax_amount(Decimal("1"), None).score == 0


@pytest.mark.parametrize("days,points", [(0, 20), (1, 15), (2, 10), (3, 10), (4, 0), (30, 0)])
def test_date_score_bands(days, points):
    day = dt.date(2024, 3, 10)
    result = score_date(day, day + dt.timedelta(days=days))
    assert result.score == points
    assert result.days_difference == days


def test_missing_date_scores_zero():
    assert score_date(None, dt.date(2024, 1, 1)).score == 0


@pytest.mark.parametrize("a,b,points", [(3, 3, 15), (3, 4, 12), (1, 3, 8), (0, 3, 5), (0, 4, 0)])
def test_item_count_bands(a, b, points):
    assert score_item_count(a, b).score == points


def test_identical_receipts_score_one_hundred():
    row = SimpleNamespace(
        store_name="Corner Cafe",
        total_amount=Decimal("12.50"),
        tax_amount=Decimal("1.00"),
        transaction_date=dt.date(2024, 3, 10),
    )
    factors = score_factors(row, row, 2, 2)
    assert factors.total == 100
