"""Manual activation endpoint (called by the frontend after checkout)."""
import logging

from fastapi import APIRouter, Request

from app.api.dependencies import CurrentIdentityDep, ServicesDep
from app.api.rate_limit import RATE_LIMITS, limiter

from .schemas import ActivateSubscriptionIn, ActivateSubscriptionOut

logger = logging.getLogger(__name__)
router = APIRouter()


@router.post("/activate", response_model=ActivateSubscriptionOut)
@limiter.limit(RATE_LIMITS["subscription_mutation"])
def activate_subscription(
    request: Request,
    body: ActivateSubscriptionIn,
    identity: CurrentIdentityDep,
    services: ServicesDep,
):
    """
    Record the Mercado Pago preapproval the user just authorized.

    Calling it again with the same ``preapproval_id`` is harmless: the
    stored record is left as is and ``changed`` is false.
    """
    changed = services.lifecycle.activate(identity.uid, body.preapproval_id, source="manual")
    return {"success": True, "changed": changed}
