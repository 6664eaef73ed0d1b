"""
Ingestion errors.

Only these errors become HTTP error responses; billing-path failures are
absorbed into logs and usage event status instead.
"""

from typing import Optional


class IngestionError(Exception):
    """Base error carrying the HTTP status it maps to."""

    status_code = 500

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(IngestionError):
    """Malformed or missing input. Nothing was written."""
    status_code = 400


class AuthenticationError(IngestionError):
    """Caller could not be identified."""
    status_code = 401


class ResolutionError(IngestionError):
    """A number or account could not be found."""
    status_code = 404
