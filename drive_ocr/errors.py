"""Exception hierarchy for the Drive OCR broker.

Every per-item failure is one of these; the pipeline and batch controller
convert them into failed results so nothing reaches the HTTP layer uncaught.
"""

from __future__ import annotations


class OcrBrokerError(Exception):
    """Base class for all broker failures."""


class NoCredentialsAvailable(OcrBrokerError):
    """Raised when no credential strategy yields a usable identity."""


class AuthenticationFailed(OcrBrokerError):
    """Raised when the token endpoint rejects an assertion or answers garbage."""

    def __init__(self, message: str, *, status_code: int | None = None, detail: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail
        # Label of the credential that was rejected, once the rotator knows it.
        self.label: str | None = None


class DriveApiError(OcrBrokerError):
    """Raised when a Drive endpoint answers with a non-success status."""

    def __init__(self, message: str, *, status_code: int | None = None, detail: str | None = None) -> None:
        super().__init__(message)
        self.status_code = status_code
        self.detail = detail


class UploadFailed(DriveApiError):
    """Create-and-convert failed or returned no file id."""


class ExportFailed(DriveApiError):
    """Export as plain text failed."""


class CleanupFailed(DriveApiError):
    """Deleting the temporary Google Doc failed; the artifact leaked."""


class ValidationFailed(OcrBrokerError):
    """Raised when client input is malformed or oversized."""


class TransportError(OcrBrokerError):
    """Raised when an outbound call fails below the HTTP status level."""


class TransportTimeout(TransportError):
    """Raised when an outbound call exceeds its timeout."""


__all__ = [
    "AuthenticationFailed",
    "CleanupFailed",
    "DriveApiError",
    "ExportFailed",
    "NoCredentialsAvailable",
    "OcrBrokerError",
    "TransportError",
    "TransportTimeout",
    "UploadFailed",
    "ValidationFailed",
]
