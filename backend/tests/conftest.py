from __future__ import annotations

import sys
from decimal import Decimal
from io import BytesIO
from pathlib import Path

import pytest
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

# Add backend folder to sys.path so `import sheetwise...` works when running from backend root
BACKEND_DIR = Path(__file__).resolve().parents[1]
if str(BACKEND_DIR) not in sys.path:
    sys.path.insert(0, str(BACKEND_DIR))

from sheetwise.core.database import Base  # noqa: E402
from sheetwise.models import tables  # noqa: E402,F401
from sheetwise.models.enums import ReceiptStatus, UploadStatus  # noqa: E402
from sheetwise.models.schemas import ExtractedItem, ExtractedReceipt  # noqa: E402
from sheetwise.models.tables import LineItem, Receipt, UploadJob, User  # noqa: E402
from sheetwise.services.storage_service import StorageService  # noqa: E402


class FakeSegmenter:
    """Returns canned regions (or raises) and records every call."""

    def __init__(self, regions=None, error: Exception | None = None):
        self.regions = list(regions or [])
        self.error = error
        self.calls = 0

    def segment(self, image_data: bytes):
        self.calls += 1
        if self.error is not None:
            raise self.error
        return list(self.regions)


class FakeExtractor:
    """Hands out queued results in call order; exceptions are raised."""

    def __init__(self, results=None):
        self.results = list(results or [])
        self.calls = 0

    def extract(self, image_data: bytes):
        self.calls += 1
        result = self.results.pop(0)
        if isinstance(result, BaseException):
            raise result
        return result


@pytest.fixture
def engine():
    eng = create_engine("sqlite://", connect_args={"check_same_thread": False}, poolclass=StaticPool)
    Base.metadata.create_all(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def session(session_factory):
    s = session_factory()
    yield s
    s.close()


@pytest.fixture
def user(session):
    u = User(email="sam@example.com", name="Sam")
    session.add(u)
    session.commit()
    return u


@pytest.fixture
def storage(tmp_path):
    return StorageService(base_dir=tmp_path / "storage", backend="filesystem")


@pytest.fixture
def make_image():
    def _make(width: int = 1000, height: int = 800, color: str = "white") -> bytes:
        buf = BytesIO()
        Image.new("RGB", (width, height), color).save(buf, format="JPEG")
        return buf.getvalue()

    return _make


@pytest.fixture
def sheet_path(storage, user, make_image):
    return storage.save_bytes(make_image(), f"{user.id}/uploads/source.jpg")


@pytest.fixture
def fake_segmenter():
    return FakeSegmenter


@pytest.fixture
def fake_extractor():
    return FakeExtractor


@pytest.fixture
def make_extracted():
    def _make(
        merchant: str | None = "Corner Cafe",
        total: str = "12.50",
        tax: str | None = "1.00",
        date: str | None = "2024-03-10",
        items=None,
        subtotal: str | None = None,
        currency: str | None = "usd",
    ) -> ExtractedReceipt:
        if items is None:
            items = [("Latte", "11.50")]
        return ExtractedReceipt(
            merchant_name=merchant,
            transaction_date=date,
            items=[ExtractedItem(description=d, price=Decimal(p)) for d, p in items],
            subtotal=Decimal(subtotal) if subtotal is not None else None,
            tax=Decimal(tax) if tax is not None else None,
            total=Decimal(total),
            currency=currency,
        )

    return _make


@pytest.fixture
def make_upload(session, user):
    def _make(status: UploadStatus = UploadStatus.PROCESSING, image: str = "source.jpg") -> UploadJob:
        upload = UploadJob(user_id=user.id, original_image_url=image, status=status)
        session.add(upload)
        session.commit()
        return upload

    return _make


@pytest.fixture
def make_receipt(session, make_upload):
    """Insert an already-processed receipt in its own completed upload."""

    def _make(
        store: str | None = "Corner Cafe",
        total: str | None = "12.50",
        tax: str | None = "1.00",
        date=None,
        items: int = 1,
        status: ReceiptStatus = ReceiptStatus.PROCESSED,
        upload: UploadJob | None = None,
        region_index: int = 0,
    ) -> Receipt:
        upload = upload or make_upload(UploadStatus.COMPLETED)
        receipt = Receipt(
            upload_id=upload.id,
            region_index=region_index,
            status=status,
            store_name=store,
            total_amount=Decimal(total) if total is not None else None,
            tax_amount=Decimal(tax) if tax is not None else None,
            transaction_date=date,
            currency="USD",
        )
        session.add(receipt)
        session.flush()
        for n in range(items):
            session.add(LineItem(receipt_id=receipt.id, description=f"item {n}", total_price=Decimal("1.00")))
        session.commit()
        return receipt

    return _make
