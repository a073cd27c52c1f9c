"""Upload lifecycle operations outside the worker run.

Creating an upload enqueues it for the worker; reprocessing clears
everything a previous run produced and enqueues it again; the summary
answers "how far along is this sheet" from the database alone. The
user's duplicate decisions are exposed here too, each committed as its
own small transaction.

``enqueue`` arguments are callables taking ``(upload_id, image_path)``;
production code passes :func:`sheetwise.core.tasks.enqueue_upload`.
"""

from __future__ import annotations

import logging
from collections import Counter
from typing import Callable, Iterable, List

from sqlalchemy import delete, func, or_, select, update
from sqlalchemy.orm import Session

from sheetwise.core.errors import UploadNotFoundError
from sheetwise.models.enums import ReceiptStatus, UploadStatus
from sheetwise.models.schemas import UploadSummary
from sheetwise.models.tables import DuplicateMatch, LineItem, ProcessingError, Receipt, UploadJob
from sheetwise.services.duplicate_detector import DuplicateDetector

logger = logging.getLogger(__name__)

EnqueueFn = Callable[[int, str], None]


def _get_upload(session: Session, upload_id: int) -> UploadJob:
    upload = session.get(UploadJob, upload_id)
    if upload is None:
        raise UploadNotFoundError(upload_id)
    return upload


def delete_receipt_rows(session: Session, receipt_ids: Iterable[int]) -> int:
    """Delete receipts and every row that hangs off them.

    Removes their line items, processing errors and duplicate matches on
    either side, and clears duplicate flags on surviving receipts that
    pointed at them. Does not commit.
    """
    ids: List[int] = list(receipt_ids)
    if not ids:
        return 0
    session.execute(delete(LineItem).where(LineItem.receipt_id.in_(ids)))
    session.execute(delete(ProcessingError).where(ProcessingError.receipt_id.in_(ids)))
    session.execute(
        delete(DuplicateMatch).where(
            or_(DuplicateMatch.receipt_id.in_(ids), DuplicateMatch.potential_duplicate_id.in_(ids))
        )
    )
    session.execute(
        update(Receipt)
        .where(Receipt.duplicate_of_receipt_id.in_(ids), Receipt.id.not_in(ids))
        .values(
            is_duplicate=False,
            duplicate_of_receipt_id=None,
            duplicate_confidence_score=None,
            duplicate_checked_at=None,
        )
    )
    session.execute(delete(Receipt).where(Receipt.id.in_(ids)))
    return len(ids)


def create_upload(session: Session, user_id: int, image_path: str, enqueue: EnqueueFn) -> UploadJob:
    """Record an accepted sheet and hand it to the worker."""
    upload = UploadJob(user_id=user_id, original_image_url=image_path, status=UploadStatus.PROCESSING)
    session.add(upload)
    session.commit()
    enqueue(upload.id, image_path)
    logger.info("[uploads] created upload=%s user=%s image=%s", upload.id, user_id, image_path)
    return upload


def reprocess_upload(session: Session, upload_id: int, enqueue: EnqueueFn) -> UploadJob:
    """Clear a previous run's results and resubmit the same source image.

    This is the only sanctioned way to re-run an upload without creating a
    new one: the status goes back to ``processing`` and ``has_receipts`` /
    ``marked_image_url`` are cleared before the job is enqueued again.
    """
    upload = _get_upload(session, upload_id)
    receipt_ids = session.execute(select(Receipt.id).where(Receipt.upload_id == upload_id)).scalars().all()
    delete_receipt_rows(session, receipt_ids)
    session.execute(delete(ProcessingError).where(ProcessingError.upload_id == upload_id))

    upload.status = UploadStatus.PROCESSING
    upload.has_receipts = None
    upload.marked_image_url = None
    session.commit()

    enqueue(upload.id, upload.original_image_url)
    logger.info("[uploads] reprocess upload=%s purged_receipts=%d", upload_id, len(receipt_ids))
    return upload


def _summary_message(status: UploadStatus, has_receipts, counts: Counter, total: int) -> str:
    if status == UploadStatus.PROCESSING:
        if has_receipts is None:
            return "Looking for receipts in the image."
        return f"Processing receipts: {counts[ReceiptStatus.PROCESSED]} of {total} done."
    if status == UploadStatus.FAILED:
        return "Processing failed. Reprocess the upload to try again."
    if not has_receipts:
        return "No receipts were found in the image."
    not_processed = counts[ReceiptStatus.FAILED] + counts[ReceiptStatus.UNREADABLE]
    message = f"{counts[ReceiptStatus.PROCESSED]} of {total} receipts processed"
    if not_processed:
        message += f", {not_processed} could not be read"
    return message + "."


def summarize_upload(session: Session, upload_id: int) -> UploadSummary:
    """Derive the user-facing status of an upload from its rows."""
    upload = _get_upload(session, upload_id)
    rows = session.execute(
        select(Receipt.status, func.count(Receipt.id))
        .where(Receipt.upload_id == upload_id)
        .group_by(Receipt.status)
    ).all()
    counts: Counter = Counter({ReceiptStatus(status): count for status, count in rows})
    duplicates = session.execute(
        select(func.count(Receipt.id)).where(Receipt.upload_id == upload_id, Receipt.is_duplicate.is_(True))
    ).scalar_one()
    total = sum(counts.values())
    status = UploadStatus(upload.status)
    return UploadSummary(
        upload_id=upload.id,
        status=status,
        has_receipts=upload.has_receipts,
        marked_image_url=upload.marked_image_url,
        total_receipts=total,
        processed=counts[ReceiptStatus.PROCESSED],
        failed=counts[ReceiptStatus.FAILED],
        unreadable=counts[ReceiptStatus.UNREADABLE],
        pending=counts[ReceiptStatus.PENDING],
        duplicates=duplicates,
        message=_summary_message(status, upload.has_receipts, counts, total),
        updated_at=upload.updated_at,
    )


def override_duplicate(session: Session, receipt_id: int) -> Receipt:
    """User says the receipt is not a duplicate."""
    receipt = DuplicateDetector(session).override_duplicate_flag(receipt_id)
    session.commit()
    return receipt


def confirm_duplicate(session: Session, receipt_id: int) -> Receipt:
    """User agrees the receipt is a duplicate."""
    receipt = DuplicateDetector(session).confirm_duplicate(receipt_id)
    session.commit()
    return receipt
