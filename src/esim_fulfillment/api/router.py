from fastapi import APIRouter

from esim_fulfillment.api.jobs import router as jobs_router
from esim_fulfillment.api.webhooks import router as webhooks_router

api_router = APIRouter()

# Note: Health endpoints are defined in main.py
api_router.include_router(webhooks_router)
api_router.include_router(jobs_router)
