from fastapi import APIRouter

from tryon.api.routes import accounts, billing, health, tryon

api_router = APIRouter()

api_router.include_router(health.router, tags=["health"])
api_router.include_router(tryon.router, tags=["tryon"])
api_router.include_router(accounts.router, prefix="/accounts", tags=["accounts"])
api_router.include_router(billing.router, tags=["billing"])
