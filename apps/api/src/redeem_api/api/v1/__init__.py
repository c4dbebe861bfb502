from fastapi import APIRouter

from .endpoints import health, observability, redeem, redeem_admin

router = APIRouter()
router.include_router(health.router, tags=["Health"])
router.include_router(redeem.router)
router.include_router(redeem_admin.router)
router.include_router(observability.router)
