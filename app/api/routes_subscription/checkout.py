"""Checkout endpoint: creates the Mercado Pago recurring agreement."""
import logging

from fastapi import APIRouter, HTTPException, Request

from app import metrics
from app.api.dependencies import CurrentIdentityDep, ServicesDep
from app.api.rate_limit import RATE_LIMITS, limiter

from .schemas import CheckoutOut

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/checkout", response_model=CheckoutOut)
@limiter.limit(RATE_LIMITS["subscription_checkout"])
def create_checkout(
    request: Request,
    identity: CurrentIdentityDep,
    services: ServicesDep,
):
    """
    Start a Plus subscription.

    **Flow:**
    1. We create a pending preapproval tagged with the user's uid
    2. The user authorizes it on Mercado Pago (``init_point``)
    3. The webhook (or ``/subscriptions/activate``) moves the user to Plus
    """
    record = services.lifecycle.ensure_current(identity.uid)
    email = identity.email or record.email
    if not email:
        # Mercado Pago refuses preapprovals without a payer email
        raise HTTPException(status_code=400, detail="An email address is required to subscribe")

    cfg = services.settings
    preapproval = services.gateway.create_preapproval(
        payer_email=email,
        external_reference=identity.uid,
        reason=cfg.PLUS_REASON,
        amount=cfg.PLUS_PRICE,
        currency=cfg.PLUS_CURRENCY,
        back_url=cfg.FRONTEND_URL,
    )
    metrics.checkout_created()
    logger.info("Checkout created for user %s (preapproval=%s)", identity.uid, preapproval.id)
    return {"init_point": preapproval.init_point}
