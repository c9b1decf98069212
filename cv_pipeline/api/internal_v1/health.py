"""Internal readiness endpoint."""

from fastapi import APIRouter, Depends
from fastapi.responses import JSONResponse

from cv_pipeline import __version__
from cv_pipeline.core.config import settings
from cv_pipeline.core.security import verify_internal_request
from cv_pipeline.db.database import check_database
from cv_pipeline.services.cv_storage import CVStorageService, get_cv_storage_service
from cv_pipeline.workers.cv_extraction_worker import get_cv_extraction_worker

router = APIRouter(tags=["Internal Health"])


@router.get("/health")
async def internal_health(
    service_name: str = Depends(verify_internal_request),
    storage: CVStorageService = Depends(get_cv_storage_service),
):
    """Database reachability, blob store health and worker state."""
    database_ok = await check_database()
    storage_health = await storage.health_check()
    worker = get_cv_extraction_worker()

    healthy = database_ok and storage_health["status"] == "healthy"
    body = {
        "status": "healthy" if healthy else "unhealthy",
        "service": settings.APP_NAME,
        "version": __version__,
        "database": "connected" if database_ok else "unreachable",
        "storage": storage_health,
        "worker": {
            "enabled": settings.CV_WORKER_ENABLED,
            "running": worker.is_running,
            "mode": settings.CV_EXTRACTION_MODE,
            "last_tick_at": worker.last_tick_at.isoformat() if worker.last_tick_at else None,
            **worker.stats,
        },
    }
    return JSONResponse(status_code=200 if healthy else 503, content=body)
