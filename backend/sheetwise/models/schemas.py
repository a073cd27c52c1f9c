"""Pydantic schemas exchanged with the pipeline's collaborators.

The segmenter and extractor return loosely structured JSON produced
by a vision model. These schemas validate that output before it
reaches the orchestrator, and describe the structured results the
orchestrator and scoring engine hand back to callers.

Schemas are intentionally separate from the ORM models in
:mod:`sheetwise.models.tables`.
"""

from __future__ import annotations

from datetime import datetime
from decimal import Decimal
from typing import Any, Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator

from .enums import ConfidenceLevel, UploadStatus


# ---------------------------------------------------------------------------
# Segmenter output


class Region(BaseModel):
    """Bounding box of one receipt on a 0-1000 normalised grid.

    ``x``/``y`` are the left/top edge; ``width``/``height`` the full extent.
    """

    x: float
    y: float
    width: float
    height: float

    @field_validator("x", "y", "width", "height", mode="before")
    @classmethod
    def _must_be_number(cls, v: Any) -> Any:
        # bool is an int subclass; reject it along with numeric strings
        if isinstance(v, bool) or not isinstance(v, (int, float)):
            raise ValueError("coordinate must be a number")
        return v


# ---------------------------------------------------------------------------
# Extractor output


class ExtractedItem(BaseModel):
    """Line item as read off the receipt."""

    model_config = ConfigDict(populate_by_name=True)

    description: str = ""
    quantity: Decimal = Decimal("1")
    unit: Optional[str] = Field(default=None, alias="quantityUnit")
    price: Decimal
    unit_price: Optional[Decimal] = Field(default=None, alias="unitPrice")
    keywords: List[str] = Field(default_factory=list)

    @field_validator("quantity", mode="before")
    @classmethod
    def _default_quantity(cls, v: Any) -> Any:
        return Decimal("1") if v in (None, "") else v

    @field_validator("keywords", mode="before")
    @classmethod
    def _keywords_list(cls, v: Any) -> Any:
        return [] if v is None else v


class ExtractedReceipt(BaseModel):
    """Structured record for one cropped receipt image.

    ``total`` is mandatory; everything else is best effort.
    """

    model_config = ConfigDict(populate_by_name=True)

    merchant_name: Optional[str] = Field(default=None, alias="merchantName")
    transaction_date: Optional[str] = Field(default=None, alias="transactionDate")
    transaction_time: Optional[str] = Field(default=None, alias="transactionTime")
    items: List[ExtractedItem] = Field(default_factory=list)
    subtotal: Optional[Decimal] = None
    tax: Optional[Decimal] = None
    total: Decimal
    currency: Optional[str] = None
    keywords: List[str] = Field(default_factory=list)

    @field_validator("items", "keywords", mode="before")
    @classmethod
    def _none_to_list(cls, v: Any) -> Any:
        return [] if v is None else v


# ---------------------------------------------------------------------------
# Consistency checks


class ValidationIssue(BaseModel):
    """Numerical inconsistency found in an extracted receipt."""

    type: str
    message: str
    severity: str = "warning"
    details: Dict[str, Any] = Field(default_factory=dict)


# ---------------------------------------------------------------------------
# Duplicate scoring


class FactorScore(BaseModel):
    """Points awarded by one factor plus the raw measurement behind them."""

    score: int
    similarity: Optional[int] = None
    difference: Optional[float] = None
    days_difference: Optional[int] = None


class MatchFactors(BaseModel):
    store_name: FactorScore
    total_amount: FactorScore
    date: FactorScore
    item_count: FactorScore
    tax_amount: FactorScore

    @property
    def total(self) -> int:
        return (
            self.store_name.score
            + self.total_amount.score
            + self.date.score
            + self.item_count.score
            + self.tax_amount.score
        )


class DuplicateCheckResult(BaseModel):
    """Outcome of scoring one receipt against the user's prior receipts."""

    is_duplicate: bool
    confidence_score: float
    confidence_level: ConfidenceLevel
    matched_receipt_id: Optional[int] = None
    match_factors: Optional[MatchFactors] = None


# ---------------------------------------------------------------------------
# Upload lifecycle


class UploadOutcome(BaseModel):
    """What one orchestrator run did to an upload."""

    upload_id: int
    status: UploadStatus
    has_receipts: bool
    receipt_ids: List[int] = Field(default_factory=list)
    processed: int = 0
    failed: int = 0
    unreadable: int = 0
    duplicates: int = 0


class UploadSummary(BaseModel):
    """User-facing progress summary derived from the database alone."""

    upload_id: int
    status: UploadStatus
    has_receipts: Optional[bool] = None
    marked_image_url: Optional[str] = None
    total_receipts: int = 0
    processed: int = 0
    failed: int = 0
    unreadable: int = 0
    pending: int = 0
    duplicates: int = 0
    message: str = ""
    updated_at: Optional[datetime] = None
