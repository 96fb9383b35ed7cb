from fastapi import APIRouter

from .scheduler import scheduler_router

admin_router = APIRouter()

admin_router.include_router(
    scheduler_router, prefix="/scheduler", tags=["Admin - Scheduler"]
)
