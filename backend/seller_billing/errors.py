"""Billing error taxonomy.

Every error carries the HTTP status it maps to; the API layer renders them as
`{"error": message}`.
"""

from collections.abc import Iterator
from contextlib import contextmanager


class BillingError(Exception):
    """Base class for errors surfaced to API callers."""

    status_code: int = 500

    def __init__(self, message: str, status_code: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        if status_code is not None:
            self.status_code = status_code


class ValidationError(BillingError):
    """Bad tier, cycle or request body."""

    status_code = 400


class AuthError(BillingError):
    """Missing or rejected bearer token."""

    status_code = 401


class NotFoundError(BillingError):
    """No resolvable subscription or customer."""

    status_code = 404


class ConflictError(BillingError):
    """Remote subscription is missing fields it must have."""

    status_code = 409


class UpstreamError(BillingError):
    """Stripe or the profile store failed."""

    status_code = 502


class SignatureError(BillingError):
    """Webhook signature or timestamp did not verify."""

    status_code = 400


class ServiceUnavailableError(BillingError):
    """A required integration is not configured."""

    status_code = 503


class GatewayError(Exception):
    """Stripe returned a non-2xx response or could not be reached.

    `status` is None for transport failures; those are `retryable`.
    """

    def __init__(self, status: int | None, message: str, *, retryable: bool = False) -> None:
        super().__init__(message)
        self.status = status
        self.message = message
        self.retryable = retryable


class StoreError(Exception):
    """The profile store is unavailable or rejected a request."""

    def __init__(self, message: str, status: int | None = None) -> None:
        super().__init__(message)
        self.message = message
        self.status = status


@contextmanager
def translate_upstream_errors() -> Iterator[None]:
    """Re-raise gateway/store failures as UpstreamError."""
    try:
        yield
    except (GatewayError, StoreError) as e:
        raise upstream_error_from(e) from e


def upstream_error_from(exc: GatewayError | StoreError) -> UpstreamError:
    """Translate a gateway/store failure, keeping the upstream status when usable."""
    status = exc.status
    if isinstance(status, int) and 400 <= status < 600:
        return UpstreamError(exc.message, status_code=status)
    return UpstreamError(exc.message or "upstream_failed", status_code=500)
