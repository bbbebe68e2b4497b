"""Billing error taxonomy

Every failure raised by the reconciliation engine is one of these. The
``retryable`` flag decides whether the webhook acknowledgement asks Stripe to
re-deliver (server error) or not.
"""
from typing import Optional


class BillingError(Exception):
    """Base class for billing failures"""
    status_code = 500
    default_code = "BILLING_ERROR"
    retryable = False

    def __init__(self, message: str, code: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.code = code or self.default_code

    def to_dict(self) -> dict:
        return {"success": False, "message": self.message, "code": self.code}


class ValidationFailure(BillingError):
    """Malformed event, unpaid session or missing snapshot field. Never retried."""
    status_code = 400
    default_code = "VALIDATION_ERROR"


class AuthorizationFailure(BillingError):
    """Session or subscription does not belong to the requesting user"""
    status_code = 403
    default_code = "UNAUTHORIZED_SESSION"


class NotFoundFailure(BillingError):
    """Nothing to reconcile yet"""
    status_code = 404
    default_code = "NOT_FOUND"


class UpstreamFailure(BillingError):
    """Stripe unreachable, timed out or returned a server error"""
    status_code = 502
    default_code = "STRIPE_UNAVAILABLE"
    retryable = True


class PersistenceFailure(BillingError):
    """A write to Subscription, Payment or User did not commit"""
    status_code = 500
    default_code = "PERSISTENCE_ERROR"
    retryable = True
