"""Exception hierarchy for custodian integration."""

from typing import Optional


class CustodianIntegrationError(RuntimeError):
    """Base class for all custodian integration failures."""


class ConfigurationError(CustodianIntegrationError):
    """Connection configuration is missing or malformed."""


class ConnectivityError(CustodianIntegrationError):
    """Network or authentication failure that survived the retry policy."""

    def __init__(self, message: str, status_code: Optional[int] = None):
        super().__init__(message)
        self.status_code = status_code


class CustodianApiError(CustodianIntegrationError):
    """Non-retryable HTTP error returned by a custodian API."""

    def __init__(self, message: str, status_code: int):
        super().__init__(message)
        self.status_code = status_code


class RetrievalError(CustodianIntegrationError):
    """Data could not be retrieved for the requested feed."""


class RecordValidationError(CustodianIntegrationError):
    """A single record failed validation."""

    def __init__(self, message: str, field_name: Optional[str] = None):
        super().__init__(message)
        self.field_name = field_name


class NotFoundError(CustodianIntegrationError):
    """Requested connection does not exist."""


class UnsupportedOperationError(CustodianIntegrationError):
    """The custodian does not offer the requested capability."""
