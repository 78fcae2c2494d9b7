"""
Main API router that includes all endpoint routers.
"""
from fastapi import APIRouter

from app.api.v1.endpoints import extractions, health, imports


# Create main API router
api_router = APIRouter()

api_router.include_router(
    imports.router,
    prefix="/imports",
    tags=["Imports"]
)
api_router.include_router(
    extractions.router,
    prefix="/extractions",
    tags=["Extractions"]
)
api_router.include_router(
    health.router,
    prefix="/health",
    tags=["Health"]
)
