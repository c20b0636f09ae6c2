"""
API v1 Router
Aggregates all API endpoints.
"""
from fastapi import APIRouter

from mentorsub.api.v1.endpoints import admin, billing, seats

api_router = APIRouter()


# Health check for API
@api_router.get("/ping", tags=["Health"])
async def ping():
    """Simple ping endpoint to verify API is responding"""
    return {"message": "pong", "api_version": "v1"}


# Include endpoint routers
api_router.include_router(billing.router, prefix="/billing", tags=["Billing"])
api_router.include_router(seats.router, prefix="/seats", tags=["Seats"])
api_router.include_router(admin.router, prefix="/admin", tags=["Admin"])
