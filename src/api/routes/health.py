"""Health and readiness endpoints."""

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from src.config import settings
from src.db.database import check_db

router = APIRouter(tags=["health"])


@router.get("/health")
async def health() -> dict:
    from src.main import get_uptime

    return {
        "status": "healthy",
        "version": settings.app_version,
        "uptime_seconds": get_uptime(),
    }


@router.get("/ready")
async def ready(request: Request) -> JSONResponse:
    db_ok = await check_db()
    # Kafka is optional; alert publishing is skipped when it is not configured
    kafka_configured = bool(settings.kafka_bootstrap_servers)
    kafka_ok = getattr(request.app.state, "kafka_producer", None) is not None

    all_ready = db_ok and (kafka_ok or not kafka_configured)
    return JSONResponse(
        status_code=200 if all_ready else 503,
        content={
            "status": "ready" if all_ready else "degraded",
            "database": db_ok,
            "kafka": kafka_ok,
        },
    )
