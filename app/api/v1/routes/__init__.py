from fastapi import APIRouter

from app.api.v1.routes import features, subscription

router = APIRouter()
router.include_router(subscription.router, prefix="/subscription")
router.include_router(features.router, prefix="/features")
