"""
API Routes
"""
from fastapi import APIRouter

from app.api.routes.webhook_retries import router as webhook_retries_router

router = APIRouter()

router.include_router(
    webhook_retries_router,
    prefix="/admin/webhook-retries",
    tags=["Webhook Retries"],
)
