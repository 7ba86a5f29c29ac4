from __future__ import annotations


class StackSearchError(Exception):
    """Base error for stacksearch."""


class AuthenticationError(StackSearchError):
    """Bad, expired or revoked stack credential; the stack must re-authorize."""


class NoCredentialError(AuthenticationError):
    """No credential stored for the stack."""


class RefreshFailedError(AuthenticationError):
    """Refresh token rejected by the provider; terminal until re-authorization."""


class RefreshRejectedError(AuthenticationError):
    """Token endpoint refused the refresh token (400/401)."""


class PermissionDeniedError(StackSearchError):
    """Provider refused access to a resource (403); the credential itself stays valid."""


class ProviderUnavailableError(StackSearchError):
    """Timeout, network failure or 5xx from an external service; retriable."""


class IntegrationUnavailableError(ProviderUnavailableError):
    """Circuit breaker is open for an integration."""


class IndexProvisionTimeoutError(ProviderUnavailableError):
    """Vector index did not report ready within the provisioning timeout."""


class RateLimitedError(StackSearchError):
    """Provider returned 429; retriable with backoff."""

    def __init__(self, message: str, retry_after_s: float | None = None) -> None:
        super().__init__(message)
        self.retry_after_s = retry_after_s


class InputValidationError(StackSearchError):
    """Malformed caller input; not retriable."""


class NotFoundError(StackSearchError):
    """Missing tenant, entry or index."""


class IndexNotFoundError(NotFoundError):
    """Tenant vector index does not exist."""


class EntryNotFoundError(NotFoundError):
    """CMS entry or asset does not exist."""


class DatabaseError(StackSearchError):
    """Database layer failure."""


def is_retriable(exc: BaseException) -> bool:
    # Timeouts share the provider-unavailable class rather than getting their own.
    return isinstance(exc, (ProviderUnavailableError, RateLimitedError, TimeoutError))


def error_from_status(status_code: int, message: str, *, retry_after_s: float | None = None) -> StackSearchError:
    # Single translation point from provider HTTP status to the error taxonomy.
    if status_code == 401:
        return AuthenticationError(message)
    if status_code == 403:
        return PermissionDeniedError(message)
    if status_code == 404:
        return NotFoundError(message)
    if status_code == 429:
        return RateLimitedError(message, retry_after_s=retry_after_s)
    if status_code >= 500:
        return ProviderUnavailableError(message)
    return InputValidationError(message)
