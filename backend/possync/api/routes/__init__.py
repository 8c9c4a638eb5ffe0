"""API routes."""

from fastapi import APIRouter

from possync.api.routes import offline

api_router = APIRouter()

api_router.include_router(offline.router, prefix="/offline", tags=["offline", "sync"])
