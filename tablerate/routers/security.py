from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..dependencies import Services, get_services, require_admin
from ..schemas.security import SecurityEventOut, ValidationStatsOut

router = APIRouter(prefix="/security", tags=["security"])


@router.get("/events", response_model=list[SecurityEventOut])
async def list_security_events(
    limit: int = Query(100, ge=1, le=500),
    event_type: Optional[str] = Query(None),
    services: Services = Depends(get_services),
):
    """Persisted security events, newest first."""
    return await services.store.list_security_events(limit=limit, event_type=event_type)


@router.get("/recent", response_model=list[SecurityEventOut])
async def recent_security_events(
    limit: int = Query(50, ge=1, le=100),
    services: Services = Depends(get_services),
):
    """Events held in this process's in-memory ring."""
    return services.gate.security_events(limit)


@router.get("/stats", response_model=ValidationStatsOut)
async def validation_stats(services: Services = Depends(get_services)):
    return services.gate.validation_stats()


@router.get("/rate-limits/{user_id}")
async def rate_limit_status(user_id: str, services: Services = Depends(get_services)):
    return services.gate.rate_limit_status(user_id)


@router.delete("/rate-limits", dependencies=[Depends(require_admin)])
async def clear_rate_limits(user_id: Optional[str] = Query(None), services: Services = Depends(get_services)):
    """Resets rate-limit windows and cadence stamps. Admin only."""
    services.gate.clear_rate_limits(user_id)
    return {"cleared": user_id or "all"}
