"""Plan catalog

Static mapping of the subscription plans sold on the site. Stripe price IDs
come from settings, everything else is fixed.
"""
from decimal import Decimal
from typing import Dict, Optional

from app.core.config import settings

PLAN_KEYS = ("monthly", "quarterly", "annually")


def get_plans() -> Dict[str, Dict]:
    """Return the plan catalog keyed by plan key"""
    return {
        "monthly": {
            "name": "Mensuel",
            "price": Decimal("9.99"),
            "duration": 30,
            "stripe_price_id": settings.STRIPE_MONTHLY_PRICE_ID or None,
            "savings": None,
        },
        "quarterly": {
            "name": "Trimestriel",
            "price": Decimal("24.88"),
            "duration": 90,
            "stripe_price_id": settings.STRIPE_QUARTERLY_PRICE_ID or None,
            "savings": "17%",
        },
        "annually": {
            "name": "Annuel",
            "price": Decimal("89.91"),
            "duration": 365,
            "stripe_price_id": settings.STRIPE_ANNUAL_PRICE_ID or None,
            "savings": "25%",
        },
    }


def get_plan(plan_key: Optional[str]) -> Optional[Dict]:
    if not plan_key:
        return None
    return get_plans().get(plan_key)


def plan_for_price_id(price_id: Optional[str]) -> Optional[str]:
    """Find the plan key configured for a Stripe price ID"""
    if not price_id:
        return None
    for plan_key, plan in get_plans().items():
        if plan["stripe_price_id"] and plan["stripe_price_id"] == price_id:
            return plan_key
    return None


def get_plan_duration_days(plan_key: str) -> int:
    plan = get_plan(plan_key)
    if not plan:
        raise ValueError(f"Unknown plan: {plan_key}")
    return plan["duration"]


def list_available_plans() -> Dict:
    """List plans with price formatting

    Returns:
        Dict with 'plans' list containing plan data with prices
    """
    plans_list = []
    for plan_key, plan in get_plans().items():
        plans_list.append({
            "key": plan_key,
            "name": plan["name"],
            "duration_days": plan["duration"],
            "stripe_price_id": plan["stripe_price_id"],
            "savings": plan["savings"],
            "price": {
                "amount": float(plan["price"]),
                "currency": settings.DEFAULT_CURRENCY,
                "formatted": f"{plan['price']:.2f} {settings.DEFAULT_CURRENCY}",
            },
        })
    return {"plans": plans_list}
