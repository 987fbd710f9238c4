"""Exception types shared across the pipeline."""

from __future__ import annotations

from typing import Optional


class DeckReviewError(Exception):
    """Base error for all deckreview exceptions."""


class ConfigurationError(DeckReviewError):
    """Raised when configuration is invalid or incomplete."""


class ExtractionError(DeckReviewError):
    """Raised when a source document cannot be rendered to page images."""


class UploadError(DeckReviewError):
    """Raised when a page image cannot be stored."""

    def __init__(self, message: str, page_number: Optional[int] = None) -> None:
        super().__init__(message)
        self.page_number = page_number


class SignedUrlError(DeckReviewError):
    """Raised when a signed URL is malformed, tampered with or expired."""


class AuthenticationError(DeckReviewError):
    """Raised when no usable credential is available."""


class InsufficientCreditsError(DeckReviewError):
    """Raised when the owner cannot pay for the requested work."""

    def __init__(self, current_balance: int, required_credits: int) -> None:
        super().__init__(
            f"Insufficient credits: {current_balance} available, {required_credits} required"
        )
        self.current_balance = current_balance
        self.required_credits = required_credits


class JobNotFoundError(DeckReviewError):
    """Raised when a job id is unknown to the server."""


class InvalidTransitionError(DeckReviewError):
    """Raised when a job status change would break the state machine."""


class AnalysisError(DeckReviewError):
    """Raised when the external analysis capability fails."""


class ApiError(DeckReviewError):
    """Raised for unexpected responses from the job API."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code
