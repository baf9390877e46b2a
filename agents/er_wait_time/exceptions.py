"""
Error kinds raised by the ER wait time agent.

Only InputValidationError and DataUnavailableError ever reach a caller of the
API; ExternalServiceError is absorbed by the weather and AI fallbacks and
AggregationDataError by the feature pipeline's quarantine.
"""

from typing import Optional


class WaitTimeError(Exception):
    """Base class for all agent errors."""


class InputValidationError(WaitTimeError):
    """Bad request input, e.g. (0, 0) or non-finite coordinates."""


class DataUnavailableError(WaitTimeError):
    """Historical profile or coordinate artifacts are missing or unreadable."""


class ExternalServiceError(WaitTimeError):
    """Weather or generative-text provider failed (network, timeout, parse)."""

    def __init__(self, service: str, message: str) -> None:
        super().__init__(f"{service}: {message}")
        self.service = service


class AggregationDataError(WaitTimeError):
    """A raw visit record failed validation and must be quarantined."""

    def __init__(self, message: str, field: Optional[str] = None) -> None:
        super().__init__(message)
        self.field = field
