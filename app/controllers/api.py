from fastapi import APIRouter

from . import barcode, billing, entitlement, estimates

router = APIRouter(prefix="/api")
router.include_router(estimates.router)
router.include_router(barcode.router)
# checkout, portal, verify-session and the Stripe webhook
router.include_router(billing.router)
router.include_router(entitlement.router)
