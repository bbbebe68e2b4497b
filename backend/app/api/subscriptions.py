"""Subscriptions API routes"""
import logging
from fastapi import APIRouter, Depends, HTTPException, Request
from fastapi.responses import JSONResponse
from sqlalchemy.orm import Session

from app.core.exceptions import BillingError
from app.core.security import require_auth, require_active_subscription
from app.db.session import get_db
from app.schemas.subscriptions import CheckoutRequest, SyncFromSessionRequest
from app.services.plan_catalog import list_available_plans
from app.services.reconciliation import ReconciliationController, get_reconciliation_controller
from app.services.stripe_gateway import CheckoutGateway, get_checkout_gateway
from app.services.subscription_service import (
    cancel_user_subscription, create_subscription_checkout, get_checkout_session_status,
    get_current_subscription, get_user_invoices, process_stripe_webhook, reactivate_user_subscription
)

router = APIRouter(prefix="/api/subscriptions", tags=["subscriptions"])
logger = logging.getLogger(__name__)


def billing_error_response(e: BillingError) -> JSONResponse:
    return JSONResponse(status_code=e.status_code, content=e.to_dict())


@router.get("/plans")
def get_plans():
    """List available subscription plans"""
    return list_available_plans()


@router.post("/create-checkout")
def create_checkout(
    checkout_request: CheckoutRequest,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db)
):
    """Create Stripe checkout session for a plan"""
    try:
        return create_subscription_checkout(
            user_id,
            checkout_request.plan,
            checkout_request.success_url,
            checkout_request.cancel_url,
            db
        )
    except BillingError as e:
        logger.warning(f"Checkout creation failed for user {user_id}: {e.code}")
        return billing_error_response(e)


@router.get("/current")
def get_current(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Get user's current subscription"""
    try:
        return get_current_subscription(user_id, db)
    except BillingError as e:
        if e.code == "USER_NOT_FOUND":
            # 401 so the frontend logs out a deleted user whose session survived
            raise HTTPException(401, e.message)
        return billing_error_response(e)


@router.post("/cancel")
def cancel_subscription(
    user_id: int = Depends(require_active_subscription),
    db: Session = Depends(get_db)
):
    """Cancel the current subscription at the end of the period"""
    try:
        return cancel_user_subscription(user_id, db)
    except BillingError as e:
        return billing_error_response(e)


@router.post("/reactivate")
def reactivate_subscription(user_id: int = Depends(require_auth), db: Session = Depends(get_db)):
    """Undo a scheduled cancellation"""
    try:
        return reactivate_user_subscription(user_id, db)
    except BillingError as e:
        return billing_error_response(e)


@router.get("/invoices")
def get_invoices(
    user_id: int = Depends(require_active_subscription),
    db: Session = Depends(get_db)
):
    """Last invoices of the user's Stripe customer"""
    try:
        return {"success": True, "data": get_user_invoices(user_id, db)}
    except BillingError as e:
        logger.error(f"Invoice listing failed for user {user_id}: {e.code}")
        return billing_error_response(e)


@router.get("/session/{session_id}")
def get_session_status(
    session_id: str,
    user_id: int = Depends(require_auth),
    gateway: CheckoutGateway = Depends(get_checkout_gateway)
):
    """Check the status of a checkout session owned by the user"""
    try:
        return {"success": True, "data": get_checkout_session_status(user_id, session_id, gateway)}
    except BillingError as e:
        return billing_error_response(e)


@router.post("/sync-from-stripe")
def sync_from_stripe(
    sync_request: SyncFromSessionRequest,
    user_id: int = Depends(require_auth),
    db: Session = Depends(get_db),
    controller: ReconciliationController = Depends(get_reconciliation_controller)
):
    """Reconcile a completed checkout session without waiting for the webhook"""
    try:
        data = controller.sync_from_session(user_id, sync_request.session_id, db)
    except BillingError as e:
        logger.warning(f"Session sync failed for user {user_id}: {e.code}: {e.message}")
        return billing_error_response(e)
    return {"success": True, "message": "Abonnement synchronisé avec succès", "data": data}


@router.post("/webhook")
async def stripe_webhook(
    request: Request,
    db: Session = Depends(get_db),
    controller: ReconciliationController = Depends(get_reconciliation_controller)
):
    """Handle Stripe webhook events

    Note: This route must be excluded from any global JSON parsing middleware
    to ensure the request body remains as raw bytes for signature verification.
    Retryable failures answer 500 so Stripe re-delivers the event.
    """
    payload = await request.body()
    sig_header = request.headers.get("stripe-signature")

    try:
        result = process_stripe_webhook(payload, sig_header, db, controller)
        request.state.stripe_event_id = result["event_id"]
        request.state.webhook_outcome = result["status"]
        return result
    except BillingError as e:
        if e.retryable:
            logger.error(f"Webhook processing failed, Stripe will retry: {e.code}: {e.message}")
            return JSONResponse(status_code=500, content={"status": "error", "code": e.code})
        logger.error(f"Invalid webhook: {e.message}")
        raise HTTPException(400, e.message)
