from fastapi import APIRouter

from app.api.v1.charts import router as charts_router
from app.api.v1.cron import router as cron_router
from app.api.v1.webhooks import router as webhooks_router

api_v1_router = APIRouter(prefix="/api/v1")
api_v1_router.include_router(webhooks_router)
api_v1_router.include_router(cron_router)
api_v1_router.include_router(charts_router)
