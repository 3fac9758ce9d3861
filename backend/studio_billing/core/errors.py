"""Billing error taxonomy.

Every error raised by the billing core is one of these categories. Routers
translate them to HTTP responses through the handlers registered in
``studio_billing.main``.
"""

from typing import Optional


class BillingError(Exception):
    """Base class for billing errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class ValidationError(BillingError):
    """Malformed input, e.g. a missing price id."""
    pass


class NotFoundError(BillingError):
    """A local entity addressed by id does not exist for the tenant."""
    pass


class PreconditionError(BillingError):
    """The request is well formed but the tenant or student is not ready for it."""

    def __init__(self, message: str, hint: Optional[str] = None):
        super().__init__(message)
        self.hint = hint


class ExternalServiceError(BillingError):
    """The payment processor failed or rejected a call.

    Never retried inline; retrying is left to the caller or to webhook
    redelivery.
    """

    def __init__(
        self,
        message: str,
        operation: Optional[str] = None,
        code: Optional[str] = None,
        http_status: Optional[int] = None,
    ):
        super().__init__(message)
        self.operation = operation
        self.code = code
        self.http_status = http_status


class ReconciliationGap(BillingError):
    """Local mirror is missing an entity the processor references."""

    def __init__(self, message: str, kind: str, remote_id: Optional[str] = None):
        super().__init__(message)
        self.kind = kind
        self.remote_id = remote_id
