import logging

from fastapi import FastAPI

from app.api.endpoints import health, pricing
from app.settings import settings

logging.basicConfig(level=settings.log_level.upper(), format=settings.log_format)

app = FastAPI(title="Stationery Pricing Pipeline")

app.include_router(health.router, prefix="/health", tags=["Health"])
app.include_router(pricing.router, prefix="/api/pricing", tags=["Pricing"])
