"""SQLAlchemy models package - imports all models so they register with Base.metadata"""
from app.models.base import Base
from app.models.user import User
from app.models.subscription import Subscription
from app.models.payment import Payment, PaymentRefund, PaymentDispute, PaymentWebhookEvent
from app.models.stripe_event import StripeEvent

# Export all for convenience
__all__ = [
    "Base", "User", "Subscription", "Payment", "PaymentRefund",
    "PaymentDispute", "PaymentWebhookEvent", "StripeEvent"
]
