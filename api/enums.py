"""
Centralized enums for status values used throughout the application.
Using str-based enums for database compatibility.
"""

from enum import Enum


class RequestStatus(str, Enum):
    """Lifecycle of a conversion request.

    IN_REVIEW is set once at submission; COMPLETED and FAILED are terminal.
    """

    IN_REVIEW = "in_review"
    COMPLETED = "completed"
    FAILED = "failed"

    @property
    def is_terminal(self) -> bool:
        return self is not RequestStatus.IN_REVIEW


class StorageBackend(str, Enum):
    """Blob storage implementations selectable via VCMPRS_STORAGE_BACKEND."""

    LOCAL = "local"
    S3 = "s3"
