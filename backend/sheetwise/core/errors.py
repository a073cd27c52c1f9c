"""Exception types raised across the processing pipeline.

Per-region failures (unreadable or unusable extraction output) are
recovered inside the orchestrator. Everything else is a whole-job
failure: it is recorded and re-raised so the worker's retry policy
decides what happens next.
"""

from __future__ import annotations


class SheetwiseError(Exception):
    """Base class for errors raised by this package."""


class UploadNotFoundError(SheetwiseError):
    """The upload job row does not exist; retrying cannot help."""

    def __init__(self, upload_id: int) -> None:
        super().__init__(f"Upload job {upload_id} not found")
        self.upload_id = upload_id


class ReceiptNotFoundError(SheetwiseError):
    """A receipt referenced by id does not exist."""

    def __init__(self, receipt_id: int) -> None:
        super().__init__(f"Receipt {receipt_id} not found")
        self.receipt_id = receipt_id


class SegmentationError(SheetwiseError):
    """The segmenter's output could not be parsed into regions."""


class ExtractionError(SheetwiseError):
    """The extractor ran but produced unusable data."""


class UnreadableReceiptError(ExtractionError):
    """The extractor explicitly reported the image as unreadable."""


class StorageError(SheetwiseError):
    """The storage backend failed to read or write an object."""


class FileNotFoundInStorageError(StorageError):
    """The requested object or file does not exist."""


class CollaboratorUnavailableError(SheetwiseError):
    """A model endpoint could not be reached; the whole job should retry."""
