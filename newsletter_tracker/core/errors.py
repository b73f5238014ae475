from __future__ import annotations


class NewsletterError(Exception):
    """Base error for the newsletter tracker."""


class ValidationError(NewsletterError):
    """Missing or malformed required field; correctable by the caller."""


class NotFoundError(NewsletterError):
    """Referenced subscriber or trash entry does not exist."""


class ConflictError(NewsletterError):
    """Duplicate email on subscriber creation."""


class ExternalServiceError(NewsletterError):
    """Directory reconciliation unreachable or returned an error."""


class DirectoryConfigError(ExternalServiceError):
    """Directory provider configuration missing required fields."""


class StorageError(NewsletterError):
    """Backend-level persistence failure."""


class StorageConfigError(StorageError):
    """Unknown or misconfigured storage backend."""


class LocalStoreError(NewsletterError):
    """Client-side durable store could not be read or written (quota, I/O)."""


class DeliveryError(NewsletterError):
    """Client could not deliver a payload to the ingestion endpoint."""

    def __init__(self, message: str, *, status_code: int | None = None) -> None:
        super().__init__(message)
        # None means the request never produced a response (network failure).
        self.status_code = status_code
