from fastapi import APIRouter, Request

from app.config.settings import settings
from app.utils.responses import ResponseBuilder

health_router = APIRouter()


@health_router.get("")
async def health_check(request: Request):
    """Liveness plus a one-line view of the in-process scheduler."""
    scheduler = getattr(request.app.state, "scheduler", None)
    return ResponseBuilder.success(
        request=request,
        data={
            "status": "healthy",
            "service": settings.NAME,
            "version": settings.VERSION,
            "schedulerJobs": scheduler.get_status()["total_jobs"] if scheduler else 0,
        },
        message="Service is running",
    )
