"""SQLAlchemy ORM models for the receipt sheet pipeline.

These models define the relational schema: an upload job per ingested
sheet, one receipt per detected region, line items per processed
receipt, an append-only log of processing errors and the duplicate
matches reported by the scoring engine. Enumerated fields are stored
as their string values. Monetary columns use ``Numeric`` so totals are
held as ``Decimal`` rather than floats.

If you extend or modify these models call the ``init_db`` helper during
development to recreate the tables.
"""

from __future__ import annotations

import datetime as dt

from sqlalchemy import (
    Column,
    Integer,
    String,
    Date,
    DateTime,
    Boolean,
    Enum,
    ForeignKey,
    Numeric,
    Text,
    JSON,
    UniqueConstraint,
)
from sqlalchemy.orm import relationship

from sheetwise.core.database import Base
from .enums import UploadStatus, ReceiptStatus, ErrorCategory, DuplicateUserAction


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _enum(enum_cls, name: str) -> Enum:
    """Enum column type persisting ``.value`` rather than the member name."""
    return Enum(enum_cls, name=name, values_callable=lambda members: [m.value for m in members])


class User(Base):
    """Account that owns uploads."""

    __tablename__ = "users"

    id = Column(Integer, primary_key=True, index=True)
    email = Column(String(255), unique=True, nullable=False)
    name = Column(String(255), nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    uploads = relationship("UploadJob", back_populates="user")


class UploadJob(Base):
    """One ingested sheet and its overall processing lifecycle."""

    __tablename__ = "receipt_uploads"

    id = Column(Integer, primary_key=True, index=True)
    user_id = Column(Integer, ForeignKey("users.id"), nullable=False, index=True)
    original_image_url = Column(String(2048), nullable=False)
    marked_image_url = Column(String(2048), nullable=True)
    status = Column(_enum(UploadStatus, "upload_status"), default=UploadStatus.PROCESSING, nullable=False)
    # None until segmentation has run
    has_receipts = Column(Boolean, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)
    updated_at = Column(DateTime, default=_utcnow, onupdate=_utcnow, nullable=False)

    user = relationship("User", back_populates="uploads")
    receipts = relationship(
        "Receipt",
        back_populates="upload",
        cascade="all, delete-orphan",
        order_by="Receipt.region_index",
    )
    errors = relationship("ProcessingError", back_populates="upload", cascade="all, delete-orphan")


class Receipt(Base):
    """One detected receipt within an upload."""

    __tablename__ = "receipts"
    __table_args__ = (UniqueConstraint("upload_id", "region_index", name="uq_receipts_upload_region"),)

    id = Column(Integer, primary_key=True, index=True)
    upload_id = Column(Integer, ForeignKey("receipt_uploads.id"), nullable=False, index=True)
    # Position of the region in the segmenter's output
    region_index = Column(Integer, nullable=False)
    store_name = Column(String(255), nullable=True)
    total_amount = Column(Numeric(13, 4), nullable=True)
    tax_amount = Column(Numeric(13, 4), nullable=True)
    transaction_date = Column(Date, nullable=True, index=True)
    # ISO 4217 code, e.g. USD
    currency = Column(String(3), nullable=True)
    status = Column(_enum(ReceiptStatus, "receipt_status"), default=ReceiptStatus.PENDING, nullable=False)
    image_url = Column(String(2048), nullable=True)
    keywords = Column(JSON, nullable=True)

    # Duplicate detection
    is_duplicate = Column(Boolean, default=False, nullable=False)
    duplicate_of_receipt_id = Column(Integer, ForeignKey("receipts.id"), nullable=True)
    duplicate_confidence_score = Column(Numeric(5, 2), nullable=True)
    duplicate_checked_at = Column(DateTime, nullable=True)
    # User confirmed this is not a duplicate
    duplicate_override = Column(Boolean, default=False, nullable=False)

    upload = relationship("UploadJob", back_populates="receipts")
    line_items = relationship("LineItem", back_populates="receipt", cascade="all, delete-orphan")


class LineItem(Base):
    """Individual purchased item on a processed receipt."""

    __tablename__ = "line_items"

    id = Column(Integer, primary_key=True, index=True)
    receipt_id = Column(Integer, ForeignKey("receipts.id"), nullable=False, index=True)
    description = Column(String(255), nullable=False)
    # Count, weight or volume depending on unit
    quantity = Column(Numeric(10, 3), default=1, nullable=False)
    unit = Column(String(50), nullable=True)
    price_per_unit = Column(Numeric(13, 4), nullable=True)
    total_price = Column(Numeric(13, 4), nullable=False)
    keywords = Column(JSON, nullable=True)

    receipt = relationship("Receipt", back_populates="line_items")


class ProcessingError(Base):
    """Append-only audit record of something that went wrong."""

    __tablename__ = "processing_errors"

    id = Column(Integer, primary_key=True, index=True)
    upload_id = Column(Integer, ForeignKey("receipt_uploads.id"), nullable=False, index=True)
    # None for whole-upload failures
    receipt_id = Column(Integer, ForeignKey("receipts.id"), nullable=True)
    category = Column(_enum(ErrorCategory, "error_category"), nullable=False)
    message = Column(Text, nullable=True)
    # "metadata" is reserved on declarative classes
    details = Column("metadata", JSON, nullable=True)
    created_at = Column(DateTime, default=_utcnow, nullable=False)

    upload = relationship("UploadJob", back_populates="errors")


class DuplicateMatch(Base):
    """A significant scoring decision linking a receipt to a prior one."""

    __tablename__ = "duplicate_matches"

    id = Column(Integer, primary_key=True, index=True)
    # The newly scored receipt
    receipt_id = Column(Integer, ForeignKey("receipts.id"), nullable=False, index=True)
    # The existing receipt it matches
    potential_duplicate_id = Column(Integer, ForeignKey("receipts.id"), nullable=False)
    confidence_score = Column(Numeric(5, 2), nullable=False)
    match_factors = Column(JSON, nullable=True)
    user_action = Column(
        _enum(DuplicateUserAction, "duplicate_user_action"),
        default=DuplicateUserAction.PENDING,
        nullable=False,
    )
    created_at = Column(DateTime, default=_utcnow, nullable=False)
