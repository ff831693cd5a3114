"""Chat access gate.

The assistant itself lives elsewhere; it calls this endpoint before
answering to find out whether the user may send another message.
"""
from fastapi import APIRouter, Request
from pydantic import BaseModel

from app.api.dependencies import CurrentIdentityDep, ServicesDep
from app.api.rate_limit import RATE_LIMITS, limiter

router = APIRouter()


class ChatAllowanceOut(BaseModel):
    plan: str
    remaining_messages: int | None = None


@router.post("/allowance", response_model=ChatAllowanceOut)
@limiter.limit(RATE_LIMITS["chat_allowance"])
def chat_allowance(
    request: Request,
    identity: CurrentIdentityDep,
    services: ServicesDep,
):
    """Spend one message of today's quota (403 SUB202 once it is used up).

    Plus users are unlimited and get ``remaining_messages: null``.
    """
    allowance = services.chat_gate.admit(identity.uid)
    return {"plan": allowance.plan.value, "remaining_messages": allowance.remaining_messages}
