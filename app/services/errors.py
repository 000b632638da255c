"""Exceptions raised by service modules and mapped to HTTP errors by controllers."""
from __future__ import annotations


class ServiceError(Exception):
    """Base class carrying the HTTP status a controller should answer with."""

    status_code = 500

    def __init__(self, message: str, status_code: int | None = None):
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ConfigurationError(ServiceError):
    """A required secret or setting is missing."""

    status_code = 500


class UpstreamError(ServiceError):
    """External provider failed: transport error or non-2xx response."""

    status_code = 502

    @classmethod
    def from_status(cls, provider_status: int, message: str) -> "UpstreamError":
        """Provider 5xx becomes 502; anything else is treated as a bad request."""
        return cls(message, 502 if provider_status >= 500 else 400)


class InvalidEstimateError(ServiceError):
    """Provider answered, but the payload does not match the estimate schema."""

    status_code = 502


class EntitlementServiceError(ServiceError):
    """Remote entitlement lookup failed; callers may retry."""

    status_code = 502


class UsageStoreUnavailable(ServiceError):
    """The shared usage counter cannot be reached."""

    status_code = 503


__all__ = [
    "ServiceError",
    "ConfigurationError",
    "UpstreamError",
    "InvalidEstimateError",
    "EntitlementServiceError",
    "UsageStoreUnavailable",
]
