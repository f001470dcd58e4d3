"""Health check endpoint."""

from fastapi import APIRouter, Depends

from services.container import Services, get_services

router = APIRouter(prefix="/api", tags=["health"])


@router.get("/health")
async def health_check(services: Services = Depends(get_services)):
    """Liveness probe plus backend reachability."""
    store_ok = await services.store.ping()
    return {
        "status": "healthy" if store_ok else "degraded",
        "store_backend": services.settings.store_backend,
        "realtime_backend": services.settings.realtime_backend,
        "pending_side_effects": services.runner.pending,
    }
