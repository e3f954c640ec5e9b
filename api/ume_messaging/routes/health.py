import time

import aiosqlite
import psutil  # type: ignore[import-untyped]
from fastapi import APIRouter, Request

router = APIRouter()


@router.get("/health")
async def health_check(request: Request):
    """
    Health check endpoint reporting system resources and database reachability.

    Returns "initializing" until the lifespan has built the message service.
    """
    memory = psutil.virtual_memory()

    services = {"messaging": "initializing", "database": "unknown"}
    if getattr(request.app.state, "message_service", None) is not None:
        services["messaging"] = "healthy"

    settings = getattr(request.app.state, "settings", None)
    if settings is not None:
        try:
            async with aiosqlite.connect(settings.MESSAGING_DB_PATH) as db:
                await db.execute("SELECT 1")
            services["database"] = "healthy"
        except aiosqlite.Error:
            services["database"] = "unhealthy"

    healthy = all(value == "healthy" for value in services.values())
    return {
        "status": "healthy" if healthy else "initializing",
        "timestamp": int(time.time()),
        "system": {
            "cpu_percent": psutil.cpu_percent(),
            "memory_percent": memory.percent,
        },
        "services": services,
    }


@router.get("/health/live")
async def liveness_check():
    return {"status": "alive"}
