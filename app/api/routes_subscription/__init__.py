"""Subscription management and Mercado Pago checkout.

Sub-modules:
- activate: record an authorized preapproval after the checkout redirect
- cancel: stop renewal, plus the status read
- checkout: create the preapproval and hand back its init_point
"""
from fastapi import APIRouter

from .activate import router as activate_router
from .cancel import router as cancel_router
from .checkout import router as checkout_router

router = APIRouter()
router.include_router(activate_router)
router.include_router(cancel_router)
router.include_router(checkout_router)

__all__ = ["router"]
