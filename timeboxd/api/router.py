from fastapi import APIRouter

from timeboxd.api.routes import health, releases

api_router = APIRouter()
api_router.include_router(health.router, tags=["health"])
api_router.include_router(releases.router, prefix="/releases", tags=["releases"])
