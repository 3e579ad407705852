from fastapi import APIRouter, Request
from sqlalchemy import text

from app.core import database

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """Basic health check"""
    service = request.app.state.experiment_service
    return {
        "status": "healthy",
        "service": "assessment-experiments",
        "event_dispatcher": "running" if service.dispatcher.is_running else "stopped",
        "events_dropped": service.dispatcher.dropped,
    }


@router.get("/health/db")
async def health_check_db():
    """Database health check"""
    if database.async_session_maker is None:
        return {"status": "healthy", "database": "disabled"}

    try:
        async with database.async_session_maker() as db:
            await db.execute(text("SELECT 1"))
        return {"status": "healthy", "database": "connected"}
    except Exception as e:
        return {"status": "unhealthy", "database": "disconnected", "error": str(e)}
