"""Read-only Stripe access for checkout reconciliation"""
import logging
from contextlib import contextmanager
from typing import Protocol

import stripe

from app.core.config import settings
from app.core.exceptions import UpstreamFailure, ValidationFailure
from app.schemas.subscriptions import CheckoutSessionSnapshot, SubscriptionSnapshot

logger = logging.getLogger(__name__)


def configure_stripe():
    """Apply key, timeout and retry settings to the Stripe SDK"""
    stripe.api_key = settings.STRIPE_SECRET_KEY
    stripe.max_network_retries = settings.STRIPE_MAX_NETWORK_RETRIES
    stripe.default_http_client = stripe.RequestsClient(timeout=settings.STRIPE_API_TIMEOUT_SECONDS)


configure_stripe()


@contextmanager
def stripe_errors(action: str):
    """Translate Stripe SDK exceptions into billing errors"""
    try:
        yield
    except stripe.InvalidRequestError as e:
        if e.http_status == 404 or e.code == "resource_missing":
            logger.warning(f"Stripe {action}: resource not found ({e.user_message or e})")
            raise ValidationFailure(f"Stripe {action}: resource not found", "STRIPE_RESOURCE_MISSING") from e
        logger.warning(f"Stripe {action}: invalid request ({e})")
        raise ValidationFailure(f"Stripe error: {e.user_message or e}", "STRIPE_ERROR") from e
    except stripe.StripeError as e:
        # Connection errors, timeouts, rate limits, 5xx and auth problems
        logger.error(f"Stripe {action} failed: {type(e).__name__}: {e}")
        raise UpstreamFailure(f"Stripe unavailable during {action}") from e


class CheckoutGateway(Protocol):
    def retrieve_session(self, session_id: str) -> CheckoutSessionSnapshot: ...

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot: ...


class StripeCheckoutGateway:
    """CheckoutGateway backed by the Stripe API"""

    def retrieve_session(self, session_id: str) -> CheckoutSessionSnapshot:
        with stripe_errors("session retrieval"):
            session = stripe.checkout.Session.retrieve(session_id)
        return CheckoutSessionSnapshot.from_provider(session)

    def retrieve_subscription(self, subscription_id: str) -> SubscriptionSnapshot:
        with stripe_errors("subscription retrieval"):
            subscription = stripe.Subscription.retrieve(subscription_id, expand=["items.data.price"])
        return SubscriptionSnapshot.from_provider(subscription)


def get_checkout_gateway() -> CheckoutGateway:
    """FastAPI dependency"""
    return StripeCheckoutGateway()
