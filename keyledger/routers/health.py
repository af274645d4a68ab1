"""
Health endpoints.

GET /api/health        - liveness + in-memory state sizes (no store I/O)
GET /api/health/deep   - also round-trips the document store
"""

import logging

from fastapi import APIRouter, Depends, HTTPException, status

from keyledger import __version__
from keyledger.core.structured_logging import get_uptime_s
from keyledger.dependencies import Services, get_services
from keyledger.models.keys import PENDING_KEYS
from keyledger.services.document_store import DocumentStoreError

logger = logging.getLogger(__name__)

router = APIRouter()


@router.get("/health")
async def health(services: Services = Depends(get_services)):
    return {
        "status": "ok",
        "version": __version__,
        "uptime_s": round(get_uptime_s(), 1),
        "cache_entries": len(services.cache),
        "cooldowns": services.limiter.cooldown_count,
        "in_flight": services.limiter.in_flight_count,
        "background_refreshes": services.reconciler.background_count,
        "sweeper_running": services.sweeper.running,
    }


@router.get("/health/deep")
async def deep_health(services: Services = Depends(get_services)):
    """Liveness plus a store round-trip."""
    try:
        pending = await services.store.count(PENDING_KEYS)
    except DocumentStoreError as e:
        logger.error("deep_health_store_unreachable", extra={"error.message": str(e)})
        raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail="Document store unavailable")
    return {
        "status": "ok",
        "version": __version__,
        "store": {"backend": services.settings.store_backend, "pending_keys": pending},
    }
