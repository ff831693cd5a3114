"""Cancel subscription and subscription status endpoints."""
import logging

from fastapi import APIRouter, Request

from app.api.dependencies import CurrentIdentityDep, ServicesDep
from app.api.rate_limit import RATE_LIMITS, limiter
from app.models.models import SubscriptionPlan

from .schemas import CancelSubscriptionOut, SubscriptionStatusOut

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/cancel", response_model=CancelSubscriptionOut)
@limiter.limit(RATE_LIMITS["subscription_mutation"])
def cancel_subscription(
    request: Request,
    identity: CurrentIdentityDep,
    services: ServicesDep,
):
    """
    Cancel the user's Mercado Pago agreement (stop auto-renewal).

    **Important:** This stops future charges but does NOT immediately downgrade.
    The user keeps Plus until ``expires_at``; the expiration sweep moves them
    back to free afterwards.

    **Errors:**
    - 400 SUB200: no agreement on file
    - 404 SUB201: Mercado Pago does not know the agreement
    - 502 PAY300: Mercado Pago unavailable, nothing was changed
    """
    record = services.lifecycle.cancel(identity.uid)
    until = record.expires_at.strftime("%d/%m/%Y") if record.expires_at else "the end of the billing period"
    return {
        "success": True,
        "plan": record.plan.value,
        "expires_at": record.expires_at,
        "message": f"Subscription cancelled. Plus features remain active until {until}.",
    }


@router.get("/status", response_model=SubscriptionStatusOut)
def get_subscription_status(
    identity: CurrentIdentityDep,
    services: ServicesDep,
):
    """
    Current plan of the user, after applying any due expiration.

    ``remaining_messages`` is only reported for users without Plus.
    """
    record = services.lifecycle.ensure_current(identity.uid)
    is_plus = record.plan == SubscriptionPlan.PLUS
    return {
        "plan": record.plan.value,
        "is_plus": is_plus,
        "subscription_status": record.subscription_status.value if record.subscription_status else None,
        "expires_at": record.expires_at,
        "cancelled_at": record.cancelled_at,
        "upgraded_at": record.upgraded_at,
        "remaining_messages": None if is_plus else record.remaining_messages,
    }
