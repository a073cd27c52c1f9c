"""Enumeration types used throughout the processing pipeline.

Enumerations constrain the values that can be stored in the database
and make the upload/receipt lifecycles readable. When modifying these
enums update the corresponding database columns as well.
"""

from enum import Enum


class UploadStatus(str, Enum):
    """Lifecycle of one ingested sheet."""

    PROCESSING = "processing"
    COMPLETED = "completed"
    PARTLY_COMPLETED = "partly_completed"
    FAILED = "failed"


class ReceiptStatus(str, Enum):
    """Processing states for a single detected receipt."""

    PENDING = "pending"
    PROCESSED = "processed"
    FAILED = "failed"
    UNREADABLE = "unreadable"


class ErrorCategory(str, Enum):
    """Categories of processing error records."""

    IMAGE_QUALITY = "IMAGE_QUALITY"
    EXTRACTION_FAILURE = "EXTRACTION_FAILURE"
    SYSTEM_ERROR = "SYSTEM_ERROR"
    VALIDATION_WARNING = "VALIDATION_WARNING"


class DuplicateUserAction(str, Enum):
    """What the user decided about a reported duplicate match."""

    PENDING = "pending"
    CONFIRMED_DUPLICATE = "confirmed_duplicate"
    OVERRIDE = "override"


class ConfidenceLevel(str, Enum):
    """Named bands derived from a duplicate confidence score."""

    DEFINITE_DUPLICATE = "DEFINITE_DUPLICATE"
    LIKELY_DUPLICATE = "LIKELY_DUPLICATE"
    POSSIBLE_DUPLICATE = "POSSIBLE_DUPLICATE"
    UNCERTAIN = "UNCERTAIN"
    NOT_DUPLICATE = "NOT_DUPLICATE"
