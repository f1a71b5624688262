"""Error taxonomy shared by connectors, authorization flows and the orchestrator.

Errors local to one message (``ItemGoneError``, ``NormalizationError``) are
logged and skipped by connectors. ``StateInvalidatedError`` is absorbed by the
fallback to a full import. ``TransientProviderError`` is retried. Everything
else reaches the orchestrator.
"""

from __future__ import annotations

from typing import Optional

GOOGLE_RATE_LIMIT_REASONS = frozenset(
    {"rateLimitExceeded", "userRateLimitExceeded", "quotaExceeded", "backendError"}
)


class MailSyncError(Exception):
    """Base class for all synchronization errors."""


class AuthError(MailSyncError):
    """Authentication or authorization problem."""


class AuthConfigurationError(AuthError):
    """OAuth client configuration is missing or invalid."""


class AuthorizationDeniedOrExpired(AuthError):
    """The user denied the request or the authorization attempt expired."""


class AuthorizationFailedError(AuthError):
    """Terminal failure of an authorization attempt.

    ``remediation`` tells the operator how to recover.
    """

    def __init__(self, message: str, remediation: Optional[str] = None) -> None:
        super().__init__(message)
        self.remediation = remediation


class UnknownSourceError(AuthError):
    """The ingestion source referenced by an auth flow does not exist."""


class ProviderError(MailSyncError):
    """Error returned by an email provider."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        super().__init__(message)
        self.status_code = status_code


class ProviderAuthError(AuthError, ProviderError):
    """Provider rejected the credentials (401/403)."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        ProviderError.__init__(self, message, status_code)


class NetworkError(ProviderError):
    """Transport-level failure talking to a provider."""


class TransientProviderError(NetworkError):
    """Timeout, connection reset, 5xx or rate limiting. Safe to retry."""


class ItemGoneError(ProviderError):
    """A specific message disappeared between discovery and fetch."""


class StateInvalidatedError(ProviderError):
    """Provider can no longer compute changes from the stored cursor."""


class NormalizationError(MailSyncError):
    """A raw message could not be parsed."""


class UnrecoverableCycleError(MailSyncError):
    """Aborts the current sync cycle without advancing the cursor."""


class ProviderRequestError(UnrecoverableCycleError, ProviderError):
    """Non-retryable request failure (4xx other than rate limiting, malformed response)."""

    def __init__(self, message: str, status_code: Optional[int] = None) -> None:
        ProviderError.__init__(self, message, status_code)


class RetriesExhaustedError(UnrecoverableCycleError):
    """A transient failure persisted through every allowed attempt."""

    def __init__(self, message: str, attempts: int) -> None:
        super().__init__(message)
        self.attempts = attempts


def classify_status(
    status_code: int, message: str, reason: Optional[str] = None
) -> ProviderError:
    """Map an HTTP status (and optional Google error reason) onto the taxonomy."""
    if status_code == 429 or status_code >= 500:
        return TransientProviderError(message, status_code)
    if status_code == 403 and reason in GOOGLE_RATE_LIMIT_REASONS:
        return TransientProviderError(message, status_code)
    if status_code in (401, 403):
        return ProviderAuthError(message, status_code)
    if status_code == 404:
        return ItemGoneError(message, status_code)
    return ProviderRequestError(message, status_code)


class SourceNotReadyError(MailSyncError):
    """The source is paused, awaiting authorization or has no credentials."""
