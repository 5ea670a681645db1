"""
Error taxonomy for the integration and sync layer.
"""

from typing import Optional


class IssueSyncError(Exception):
    """Base class for every error raised by the sync layer."""


class ConfigurationError(IssueSyncError):
    """Missing or malformed configuration (base URL, tenant config, URL template)."""


class AuthenticationError(IssueSyncError):
    """Credential handshake failed, token expired, or credentials are missing."""


class NotSupportedError(IssueSyncError):
    """The adapter does not support the requested operation."""


class ProviderRequestError(IssueSyncError):
    """A provider API answered with a non-success status."""

    def __init__(self, message: str, status_code: Optional[int] = None, response_text: Optional[str] = None):
        super().__init__(message)
        self.status_code = status_code
        self.response_text = response_text


class IssueNotFoundError(IssueSyncError):
    """No local issue matches the incoming external issue."""


class IntegrationNotFoundError(IssueSyncError):
    """The integration record does not exist."""


class IntegrationInactiveError(IssueSyncError):
    """The integration record exists but is not ACTIVE."""


class JobValidationError(IssueSyncError):
    """A queued job payload is missing required fields."""
