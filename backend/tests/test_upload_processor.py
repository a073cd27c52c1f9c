import datetime as dt
from decimal import Decimal

import pytest
from dramatiq.middleware import TimeLimitExceeded
from sqlalchemy import select

from sheetwise.core.errors import (
    CollaboratorUnavailableError,
    ExtractionError,
    FileNotFoundInStorageError,
    SegmentationError,
    UnreadableReceiptError,
    UploadNotFoundError,
)
from sheetwise.models.enums import ErrorCategory, ReceiptStatus, UploadStatus
from sheetwise.models.schemas import Region
from sheetwise.models.tables import LineItem, ProcessingError, Receipt
from sheetwise.services.upload_processor import UploadProcessor

LEFT = Region(x=50, y=50, width=250, height=800)
MIDDLE = Region(x=375, y=50, width=250, height=800)
RIGHT = Region(x=700, y=50, width=250, height=800)
OUTSIDE = Region(x=1500, y=50, width=100, height=100)


@pytest.fixture
def run(session_factory, storage, fake_segmenter, fake_extractor):
    """Build a processor around fakes and run it for one upload."""

    def _run(upload, image_path, regions=None, results=None, segment_error=None, progress=None):
        segmenter = fake_segmenter(regions, error=segment_error)
        extractor = fake_extractor(results)
        processor = UploadProcessor(session_factory, storage, segmenter, extractor, progress=progress)
        return processor.process(upload.id, image_path), segmenter, extractor

    return _run


def _receipts(session, upload_id):
    session.expire_all()
    return session.execute(
        select(Receipt).where(Receipt.upload_id == upload_id).order_by(Receipt.region_index)
    ).scalars().all()


def _errors(session, upload_id, category=None):
    stmt = select(ProcessingError).where(ProcessingError.upload_id == upload_id)
    if category is not None:
        stmt = stmt.where(ProcessingError.category == category)
    return session.execute(stmt).scalars().all()


def test_zero_regions_completes_without_receipts(session, make_upload, sheet_path, run):
    upload = make_upload()
    outcome, _, extractor = run(upload, sheet_path, regions=[])
    session.refresh(upload)
    assert outcome.has_receipts is False
    assert upload.has_receipts is False
    assert upload.status == UploadStatus.COMPLETED
    assert _receipts(session, upload.id) == []
    assert extractor.calls == 0


def test_single_receipt_is_processed(session, user, make_upload, sheet_path, run, make_extracted, storage):
    upload = make_upload()
    progress = []
    outcome, _, _ = run(
        upload,
        sheet_path,
        regions=[LEFT],
        results=[make_extracted(items=[("Latte", "4.50"), ("Bagel", "7.00")])],
        progress=lambda user_id, upload_id, pct: progress.append((user_id, upload_id, pct)),
    )
    session.refresh(upload)
    assert upload.status == UploadStatus.COMPLETED
    assert upload.has_receipts is True
    assert upload.marked_image_url == f"{user.id}/uploads/{upload.id}/marked.jpg"
    assert storage.load(upload.marked_image_url)

    [receipt] = _receipts(session, upload.id)
    assert receipt.status == ReceiptStatus.PROCESSED
    assert receipt.region_index == 0
    assert receipt.store_name == "Corner Cafe"
    assert receipt.total_amount == Decimal("12.50")
    assert receipt.tax_amount == Decimal("1.00")
    assert receipt.transaction_date == dt.date(2024, 3, 10)
    assert receipt.currency == "USD"
    assert receipt.image_url == f"{user.id}/uploads/{upload.id}/receipt-0.jpg"
    assert storage.load(receipt.image_url)

    items = session.execute(select(LineItem).where(LineItem.receipt_id == receipt.id)).scalars().all()
    assert sorted(i.description for i in items) == ["Bagel", "Latte"]
    assert all(i.unit == "pc" for i in items)
    assert all(i.quantity == 1 for i in items)

    assert outcome.processed == 1 and outcome.failed == 0
    assert outcome.receipt_ids == [receipt.id]
    assert {(u, up) for u, up, _ in progress} == {(user.id, upload.id)}
    percents = [pct for _, _, pct in progress]
    assert percents[0] == 0 and percents[-1] == 100
    assert percents == sorted(percents)


def test_failed_extraction_yields_partly_completed(session, make_upload, sheet_path, run):
    upload = make_upload()
    outcome, _, _ = run(upload, sheet_path, regions=[LEFT], results=[ExtractionError("no total")])
    session.refresh(upload)
    assert upload.status == UploadStatus.PARTLY_COMPLETED
    [receipt] = _receipts(session, upload.id)
    assert receipt.status == ReceiptStatus.FAILED
    [error] = _errors(session, upload.id, ErrorCategory.EXTRACTION_FAILURE)
    assert error.receipt_id == receipt.id
    assert error.details["exception"] == "ExtractionError"
    assert outcome.failed == 1


def test_two_of_three_succeed(session, make_upload, sheet_path, run, make_extracted):
    upload = make_upload()
    results = [
        make_extracted(merchant="Corner Cafe"),
        UnreadableReceiptError("blurry"),
        make_extracted(merchant="Hardware Hut", total="40.00", tax="4.00", items=[("Nails", "36.00")]),
    ]
    outcome, _, extractor = run(upload, sheet_path, regions=[LEFT, MIDDLE, RIGHT], results=results)
    session.refresh(upload)
    assert upload.status == UploadStatus.PARTLY_COMPLETED
    receipts = _receipts(session, upload.id)
    assert [r.status for r in receipts] == [ReceiptStatus.PROCESSED, ReceiptStatus.FAILED, ReceiptStatus.PROCESSED]
    assert [r.region_index for r in receipts] == [0, 1, 2]
    assert extractor.calls == 3
    [error] = _errors(session, upload.id, ErrorCategory.EXTRACTION_FAILURE)
    assert error.details["unreadable"] is True
    assert (outcome.processed, outcome.failed) == (2, 1)


def test_unexpected_extractor_exception_only_fails_that_receipt(session, make_upload, sheet_path, run, make_extracted):
    upload = make_upload()
    run(upload, sheet_path, regions=[LEFT, RIGHT], results=[RuntimeError("boom"), make_extracted()])
    receipts = _receipts(session, upload.id)
    assert [r.status for r in receipts] == [ReceiptStatus.FAILED, ReceiptStatus.PROCESSED]
    [error] = _errors(session, upload.id, ErrorCategory.EXTRACTION_FAILURE)
    assert error.details["exception"] == "RuntimeError"


def test_region_outside_image_is_unreadable(session, make_upload, sheet_path, run, make_extracted):
    upload = make_upload()
    outcome, _, extractor = run(upload, sheet_path, regions=[OUTSIDE, LEFT], results=[make_extracted()])
    receipts = _receipts(session, upload.id)
    assert [r.status for r in receipts] == [ReceiptStatus.UNREADABLE, ReceiptStatus.PROCESSED]
    assert extractor.calls == 1
    [error] = _errors(session, upload.id, ErrorCategory.IMAGE_QUALITY)
    assert error.receipt_id == receipts[0].id
    assert outcome.unreadable == 1


def test_validation_warnings_are_recorded(session, make_upload, sheet_path, run, make_extracted):
    upload = make_upload()
    run(upload, sheet_path, regions=[LEFT], results=[make_extracted(items=[("Latte", "2.00")])])
    session.refresh(upload)
    assert upload.status == UploadStatus.COMPLETED
    [warning] = _errors(session, upload.id, ErrorCategory.VALIDATION_WARNING)
    assert warning.details["type"] == "ITEMS_SUM_MISMATCH"


def test_duplicate_across_uploads_is_flagged(session, make_upload, sheet_path, run, make_extracted):
    first = make_upload()
    run(first, sheet_path, regions=[LEFT], results=[make_extracted()])
    second = make_upload()
    outcome, _, _ = run(second, sheet_path, regions=[LEFT], results=[make_extracted()])
    [original] = _receipts(session, first.id)
    [copy] = _receipts(session, second.id)
    assert copy.is_duplicate is True
    assert copy.duplicate_of_receipt_id == original.id
    assert copy.duplicate_confidence_score == Decimal("100.00")
    assert original.is_duplicate is False
    assert outcome.duplicates == 1


def test_segmentation_failure_fails_whole_job(session, make_upload, sheet_path, run):
    upload = make_upload()
    with pytest.raises(SegmentationError):
        run(upload, sheet_path, segment_error=SegmentationError("garbage"))
    session.refresh(upload)
    assert upload.status == UploadStatus.FAILED
    [error] = _errors(session, upload.id, ErrorCategory.SYSTEM_ERROR)
    assert error.receipt_id is None
    assert error.details == {"exception": "SegmentationError", "stage": "segmentation"}


def test_missing_source_image_fails_whole_job(session, make_upload, run):
    upload = make_upload()
    with pytest.raises(FileNotFoundInStorageError):
        run(upload, "missing.jpg", regions=[LEFT])
    session.refresh(upload)
    assert upload.status == UploadStatus.FAILED
    [error] = _errors(session, upload.id, ErrorCategory.SYSTEM_ERROR)
    assert error.details["stage"] == "load_image"


def test_unavailable_extractor_fails_whole_job(session, make_upload, sheet_path, run, make_extracted):
    upload = make_upload()
    with pytest.raises(CollaboratorUnavailableError):
        run(upload, sheet_path, regions=[LEFT, RIGHT], results=[make_extracted(), CollaboratorUnavailableError("timeout")])
    session.refresh(upload)
    assert upload.status == UploadStatus.FAILED
    receipts = _receipts(session, upload.id)
    assert [r.status for r in receipts] == [ReceiptStatus.PROCESSED, ReceiptStatus.PENDING]


def test_unknown_upload_raises(sheet_path, run):
    class Missing:
        id = 4242

    with pytest.raises(UploadNotFoundError):
        run(Missing, sheet_path, regions=[LEFT])


def test_retry_reuses_receipts_without_duplicates(session, make_upload, sheet_path, run, make_extracted):
    upload = make_upload()
    with pytest.raises(CollaboratorUnavailableError):
        run(upload, sheet_path, regions=[LEFT, RIGHT], results=[make_extracted(), CollaboratorUnavailableError("timeout")])
    first_pass = _receipts(session, upload.id)

    outcome, _, extractor = run(
        upload,
        sheet_path,
        regions=[LEFT, RIGHT],
        results=[make_extracted(merchant="Hardware Hut", total="40.00", tax="4.00", items=[("Nails", "36.00")])],
    )
    session.refresh(upload)
    receipts = _receipts(session, upload.id)
    assert upload.status == UploadStatus.COMPLETED
    assert [r.id for r in receipts] == [r.id for r in first_pass]
    assert [r.status for r in receipts] == [ReceiptStatus.PROCESSED, ReceiptStatus.PROCESSED]
    # the already processed receipt is not extracted again
    assert extractor.calls == 1
    assert outcome.processed == 2


def test_retry_with_fewer_regions_discards_stale_receipts(session, make_upload, sheet_path, run, make_extracted):
    upload = make_upload()
    run(upload, sheet_path, regions=[LEFT, RIGHT], results=[make_extracted(), ExtractionError("bad")])
    run(upload, sheet_path, regions=[LEFT], results=[])
    receipts = _receipts(session, upload.id)
    assert [r.region_index for r in receipts] == [0]
    assert _errors(session, upload.id, ErrorCategory.EXTRACTION_FAILURE) == []


def test_time_limit_interrupt_marks_job_failed(session, make_upload, sheet_path, run, make_extracted):
    upload = make_upload()
    with pytest.raises(TimeLimitExceeded):
        run(upload, sheet_path, regions=[LEFT, RIGHT], results=[make_extracted(), TimeLimitExceeded()])
    session.refresh(upload)
    assert upload.status == UploadStatus.FAILED
    [error] = _errors(session, upload.id, ErrorCategory.SYSTEM_ERROR)
    assert error.details == {"exception": "TimeLimitExceeded", "stage": "regions"}
