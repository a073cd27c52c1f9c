"""Process one uploaded sheet of receipts end to end.

The processor is the body of the worker job. For a single upload it:

1. loads the source image and normalises its EXIF orientation,
2. asks the segmenter for receipt regions,
3. stores a marked copy of the sheet with every region outlined,
4. crops, stores, extracts, validates and duplicate-scores each region
   in segmentation order,
5. settles the upload as ``completed`` or ``partly_completed``.

Each receipt is committed as soon as it exists (``pending``) and again
when its extraction result lands, so progress is visible while the job
runs. One bad receipt never sinks the upload; anything that goes wrong
outside the per-receipt boundary marks the whole upload ``failed``,
records a ``SYSTEM_ERROR`` and re-raises so the job scheduler can retry.

Retries are safe: receipts are keyed by ``(upload_id, region_index)``,
already-processed receipts are kept and storage keys are deterministic.
"""

from __future__ import annotations

import logging
import time
from typing import Callable, List, Optional

import sentry_sdk
from dramatiq.middleware import Interrupt
from sqlalchemy import delete, select
from sqlalchemy.orm import Session, sessionmaker

from sheetwise.core.config import settings
from sheetwise.core.errors import CollaboratorUnavailableError, UnreadableReceiptError, UploadNotFoundError
from sheetwise.core.observability import sentry_breadcrumb, sentry_metric_inc
from sheetwise.models.enums import ErrorCategory, ReceiptStatus, UploadStatus
from sheetwise.models.schemas import ExtractedReceipt, Region, UploadOutcome
from sheetwise.models.tables import DuplicateMatch, LineItem, ProcessingError, Receipt, UploadJob
from sheetwise.services.duplicate_detector import DuplicateDetector
from sheetwise.services.extraction_service import FieldExtractor
from sheetwise.services.receipt_validation import validate_extracted_receipt
from sheetwise.services.segmentation_service import ImageSegmenter
from sheetwise.services.storage_service import StorageService, upload_object_key
from sheetwise.services.upload_service import delete_receipt_rows
from sheetwise.utils.helpers import normalise_currency, parse_iso_date
from sheetwise.utils.image_processing import crop_region, draw_region_overlay, normalise_orientation

logger = logging.getLogger(__name__)

ProgressCallback = Callable[[int, int, int], None]

DEFAULT_ITEM_UNIT = "pc"
MARKED_IMAGE_NAME = "marked.jpg"


def receipt_image_name(index: int) -> str:
    return f"receipt-{index}.jpg"


def _span(op: str, name: str):
    return sentry_sdk.start_span(op=op, name=name)


class UploadProcessor:
    """Run the segmentation and extraction pipeline for uploads.

    ``progress`` is called as ``progress(user_id, upload_id, percent)`` at stage
    boundaries; it is observability only and may be omitted.
    """

    def __init__(
        self,
        session_factory: sessionmaker,
        storage: StorageService,
        segmenter: ImageSegmenter,
        extractor: FieldExtractor,
        progress: Optional[ProgressCallback] = None,
        padding_ratio: Optional[float] = None,
        stroke_width: Optional[int] = None,
        default_currency: Optional[str] = None,
    ) -> None:
        self.session_factory = session_factory
        self.storage = storage
        self.segmenter = segmenter
        self.extractor = extractor
        self.progress = progress
        self.padding_ratio = settings.CROP_PADDING_RATIO if padding_ratio is None else padding_ratio
        self.stroke_width = settings.OVERLAY_STROKE_WIDTH if stroke_width is None else stroke_width
        self.default_currency = default_currency or settings.DEFAULT_CURRENCY

    def _report(self, upload: UploadJob, percent: int) -> None:
        if self.progress is not None:
            self.progress(upload.user_id, upload.id, percent)

    def process(self, upload_id: int, image_path: str) -> UploadOutcome:
        start_time = time.time()
        session: Session = self.session_factory()
        stage = "load_upload"
        try:
            upload = session.get(UploadJob, upload_id)
            if upload is None:
                raise UploadNotFoundError(upload_id)
            sentry_breadcrumb(category="upload", message="process.start", data={"upload_id": upload_id})
            self._report(upload, 0)

            stage = "load_image"
            with _span("upload.load_image", "Load source image"):
                image = normalise_orientation(self.storage.load(image_path))

            stage = "segmentation"
            with _span("upload.segmentation", "Segment receipts"):
                regions = self.segmenter.segment(image)
            logger.info("[upload] upload=%s regions=%d", upload_id, len(regions))
            self._report(upload, 10)

            if not regions:
                self._discard_stale_receipts(session, upload_id, 0)
                upload.has_receipts = False
                upload.status = UploadStatus.COMPLETED
                session.commit()
                self._report(upload, 100)
                sentry_metric_inc("uploads.processed", tags={"status": "no_receipts"})
                return UploadOutcome(upload_id=upload_id, status=UploadStatus.COMPLETED, has_receipts=False)

            upload.has_receipts = True
            session.commit()

            stage = "overlay"
            upload.marked_image_url = self._store_marked_image(upload, image, regions)
            session.commit()
            self._report(upload, 15)

            stage = "regions"
            self._discard_stale_receipts(session, upload_id, len(regions))
            session.commit()
            outcome = UploadOutcome(upload_id=upload_id, status=UploadStatus.PROCESSING, has_receipts=True)
            for index, region in enumerate(regions):
                receipt = self._process_region(session, upload, image, index, region)
                outcome.receipt_ids.append(receipt.id)
                if receipt.status == ReceiptStatus.PROCESSED:
                    outcome.processed += 1
                elif receipt.status == ReceiptStatus.UNREADABLE:
                    outcome.unreadable += 1
                else:
                    outcome.failed += 1
                if receipt.is_duplicate:
                    outcome.duplicates += 1
                self._report(upload, 15 + (85 * (index + 1)) // len(regions))

            stage = "finalise"
            if outcome.processed == len(regions):
                upload.status = UploadStatus.COMPLETED
            else:
                upload.status = UploadStatus.PARTLY_COMPLETED
            session.commit()
            outcome.status = UploadStatus(upload.status)

            duration = time.time() - start_time
            logger.info(
                "[upload] done upload=%s status=%s processed=%d failed=%d unreadable=%d duplicates=%d in %.2fs",
                upload_id,
                outcome.status.value,
                outcome.processed,
                outcome.failed,
                outcome.unreadable,
                outcome.duplicates,
                duration,
            )
            sentry_metric_inc("uploads.processed", tags={"status": outcome.status.value})
            sentry_breadcrumb(
                category="upload",
                message="process.done",
                data={"upload_id": upload_id, "status": outcome.status.value, "duration_s": round(duration, 2)},
            )
            return outcome
        except UploadNotFoundError:
            logger.error("[upload] upload=%s not found", upload_id)
            raise
        except (Exception, Interrupt) as exc:
            # Interrupt (time limit, worker shutdown) is a BaseException
            session.rollback()
            logger.exception("[upload] upload=%s failed during %s", upload_id, stage)
            self._record_job_failure(session, upload_id, exc, stage)
            sentry_metric_inc("uploads.processed", tags={"status": "failed", "stage": stage})
            raise
        finally:
            session.close()

    def _store_marked_image(self, upload: UploadJob, image: bytes, regions: List[Region]) -> str:
        try:
            marked = draw_region_overlay(image, regions, self.stroke_width)
        except Exception:
            logger.warning("[upload] upload=%s overlay failed; storing source image", upload.id, exc_info=True)
            marked = image
        key = upload_object_key(upload.user_id, upload.id, MARKED_IMAGE_NAME)
        return self.storage.save_bytes(marked, key)

    def _discard_stale_receipts(self, session: Session, upload_id: int, region_count: int) -> None:
        stale = (
            session.execute(
                select(Receipt.id).where(Receipt.upload_id == upload_id, Receipt.region_index >= region_count)
            )
            .scalars()
            .all()
        )
        if stale:
            logger.info("[upload] upload=%s discarding %d receipts from an earlier attempt", upload_id, len(stale))
            delete_receipt_rows(session, stale)

    def _prepare_receipt(self, session: Session, upload_id: int, index: int) -> Receipt:
        receipt = session.execute(
            select(Receipt).where(Receipt.upload_id == upload_id, Receipt.region_index == index)
        ).scalar_one_or_none()
        if receipt is None:
            receipt = Receipt(upload_id=upload_id, region_index=index, status=ReceiptStatus.PENDING)
            session.add(receipt)
            return receipt
        if receipt.status == ReceiptStatus.PROCESSED:
            return receipt

        session.execute(delete(LineItem).where(LineItem.receipt_id == receipt.id))
        session.execute(delete(DuplicateMatch).where(DuplicateMatch.receipt_id == receipt.id))
        session.execute(delete(ProcessingError).where(ProcessingError.receipt_id == receipt.id))
        receipt.status = ReceiptStatus.PENDING
        receipt.store_name = None
        receipt.total_amount = None
        receipt.tax_amount = None
        receipt.transaction_date = None
        receipt.currency = None
        receipt.keywords = None
        receipt.is_duplicate = False
        receipt.duplicate_of_receipt_id = None
        receipt.duplicate_confidence_score = None
        receipt.duplicate_checked_at = None
        receipt.duplicate_override = False
        return receipt

    def _process_region(self, session: Session, upload: UploadJob, image: bytes, index: int, region: Region) -> Receipt:
        receipt = self._prepare_receipt(session, upload.id, index)
        if receipt.status == ReceiptStatus.PROCESSED:
            logger.info("[upload] upload=%s region=%d already processed as receipt=%s", upload.id, index, receipt.id)
            return receipt

        crop = crop_region(image, region, self.padding_ratio)
        if crop is None:
            receipt.status = ReceiptStatus.UNREADABLE
            receipt.image_url = None
            session.flush()
            session.add(
                ProcessingError(
                    upload_id=upload.id,
                    receipt_id=receipt.id,
                    category=ErrorCategory.IMAGE_QUALITY,
                    message=f"Receipt region {index} lies outside the image",
                    details={"region_index": index, "region": region.model_dump()},
                )
            )
            session.commit()
            logger.warning("[upload] upload=%s region=%d outside image bounds", upload.id, index)
            return receipt

        receipt.image_url = self.storage.save_bytes(crop, upload_object_key(upload.user_id, upload.id, receipt_image_name(index)))
        session.commit()
        receipt_id = receipt.id

        try:
            with _span("upload.extraction", f"Extract receipt {index}"):
                extracted = self.extractor.extract(crop)
            self._apply_extraction(session, upload, receipt, extracted)
            session.commit()
        except CollaboratorUnavailableError:
            raise
        except Exception as exc:
            session.rollback()
            return self._fail_receipt(session, upload.id, receipt_id, index, exc)
        logger.info(
            "[upload] upload=%s region=%d receipt=%s processed duplicate=%s",
            upload.id,
            index,
            receipt.id,
            receipt.is_duplicate,
        )
        return receipt

    def _apply_extraction(self, session: Session, upload: UploadJob, receipt: Receipt, extracted: ExtractedReceipt) -> None:
        receipt.status = ReceiptStatus.PROCESSED
        receipt.store_name = extracted.merchant_name[:255] if extracted.merchant_name else None
        receipt.total_amount = extracted.total
        receipt.tax_amount = extracted.tax
        receipt.transaction_date = parse_iso_date(extracted.transaction_date)
        receipt.currency = normalise_currency(extracted.currency, self.default_currency)
        receipt.keywords = extracted.keywords or None

        for item in extracted.items:
            session.add(
                LineItem(
                    receipt_id=receipt.id,
                    description=(item.description or "Unknown item")[:255],
                    quantity=item.quantity,
                    unit=item.unit or DEFAULT_ITEM_UNIT,
                    price_per_unit=item.unit_price,
                    total_price=item.price,
                    keywords=item.keywords or None,
                )
            )

        for issue in validate_extracted_receipt(extracted):
            session.add(
                ProcessingError(
                    upload_id=upload.id,
                    receipt_id=receipt.id,
                    category=ErrorCategory.VALIDATION_WARNING,
                    message=issue.message,
                    details={"type": issue.type, "severity": issue.severity, **issue.details},
                )
            )

        detector = DuplicateDetector(session)
        with _span("upload.duplicates", "Score duplicates"):
            result = detector.score(receipt, upload.user_id)
        if result.is_duplicate and result.matched_receipt_id is not None:
            detector.mark_as_duplicate(receipt.id, result.matched_receipt_id, result.confidence_score)
            sentry_metric_inc("receipts.duplicate", tags={"confidence": result.confidence_level.value})

    def _fail_receipt(self, session: Session, upload_id: int, receipt_id: int, index: int, exc: Exception) -> Receipt:
        receipt = session.get(Receipt, receipt_id)
        receipt.status = ReceiptStatus.FAILED
        session.add(
            ProcessingError(
                upload_id=upload_id,
                receipt_id=receipt_id,
                category=ErrorCategory.EXTRACTION_FAILURE,
                message=str(exc) or type(exc).__name__,
                details={
                    "exception": type(exc).__name__,
                    "region_index": index,
                    "unreadable": isinstance(exc, UnreadableReceiptError),
                },
            )
        )
        session.commit()
        logger.warning("[upload] upload=%s region=%d receipt=%s failed: %s", upload_id, index, receipt_id, exc)
        sentry_metric_inc("receipts.failed", tags={"exception": type(exc).__name__})
        return receipt

    def _record_job_failure(self, session: Session, upload_id: int, exc: BaseException, stage: str) -> None:
        try:
            upload = session.get(UploadJob, upload_id)
            if upload is None:
                return
            upload.status = UploadStatus.FAILED
            session.add(
                ProcessingError(
                    upload_id=upload_id,
                    receipt_id=None,
                    category=ErrorCategory.SYSTEM_ERROR,
                    message=str(exc) or type(exc).__name__,
                    details={"exception": type(exc).__name__, "stage": stage},
                )
            )
            session.commit()
        except Exception:
            # the original failure is re-raised by the caller
            session.rollback()
            logger.exception("[upload] upload=%s could not record failure", upload_id)
