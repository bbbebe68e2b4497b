"""CORS and request logging for the billing API"""
import logging
from fastapi import Request
from fastapi.middleware.cors import CORSMiddleware

from app.core.config import settings
from app.core.security import log_api_access

logger = logging.getLogger(__name__)

WEBHOOK_PATH = "/api/subscriptions/webhook"
UNLOGGED_PATHS = ("/health", "/metrics")


def get_allowed_origins():
    """Origins allowed to call the account routes (Stripe calls the webhook server-side)"""
    allowed_origins = [settings.FRONTEND_URL.rstrip("/")]
    if settings.ENVIRONMENT == "development":
        allowed_origins.extend(["http://localhost:3000", "http://127.0.0.1:3000"])
    return allowed_origins


def setup_cors_middleware(app):
    app.add_middleware(
        CORSMiddleware,
        allow_origins=get_allowed_origins(),
        allow_credentials=True,
        allow_methods=["GET", "POST"],
        allow_headers=["Content-Type"],
    )


async def access_log_middleware(request: Request, call_next):
    """Log every request; webhook lines carry the Stripe event id and outcome

    The webhook route stores both on ``request.state`` once the event is parsed.
    """
    request.state.stripe_event_id = None
    request.state.webhook_outcome = None
    status_code = 500
    error = None
    try:
        response = await call_next(request)
        status_code = response.status_code
        return response
    except Exception as e:
        error = str(e)
        raise
    finally:
        path = request.url.path
        if path == WEBHOOK_PATH:
            log_api_access(request, status_code, error, extra={
                "stripe_event_id": request.state.stripe_event_id,
                "outcome": request.state.webhook_outcome,
                "stripe_redelivery_expected": status_code >= 500,
            })
        elif path not in UNLOGGED_PATHS:
            log_api_access(request, status_code, error)
