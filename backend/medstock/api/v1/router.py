"""MedStock — API v1 router aggregation."""
from fastapi import APIRouter

from medstock.api.v1.endpoints import alerts, monitoring, quarantine, tiers

api_router = APIRouter()

api_router.include_router(tiers.router, prefix="/expiry/tiers", tags=["expiry-tiers"])
api_router.include_router(monitoring.router, prefix="/expiry/monitoring", tags=["expiry-monitoring"])
api_router.include_router(alerts.router, prefix="/expiry/alerts", tags=["expiry-alerts"])
api_router.include_router(quarantine.router, prefix="/quarantine", tags=["quarantine"])
