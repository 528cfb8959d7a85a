"""
Exception hierarchy for the donor sync service.

Remote failures are raised by the DonorPerfect client and converted into
structured sync results by the reconciliation engine.
"""

from typing import Optional


class DonorSyncError(Exception):
    """Base exception for donor sync errors."""

    retryable = False


class NotConfiguredError(DonorSyncError):
    """DonorPerfect API key is missing; no remote call is possible."""

    def __init__(self, message: str = "API key not configured"):
        super().__init__(message)


class DonationValidationError(DonorSyncError):
    """Donation payload from the source platform cannot be normalized."""
    pass


class DonationNotFoundError(DonorSyncError):
    """Donation id does not exist on the source platform."""
    pass


class DonorPerfectAPIError(DonorSyncError):
    """Base exception for DonorPerfect API errors."""
    pass


class RemoteTransportError(DonorPerfectAPIError):
    """Network, timeout or non-200 HTTP failure."""

    retryable = True


class RemoteProtocolError(DonorPerfectAPIError):
    """Response body could not be parsed or carried no usable id."""

    retryable = True


class RemoteRejectedError(DonorPerfectAPIError):
    """DonorPerfect rejected the call (invalid code, bad parameter, ...)."""

    def __init__(self, reason: Optional[str] = None):
        self.reason = reason or "Unknown error"
        super().__init__(self.reason)
