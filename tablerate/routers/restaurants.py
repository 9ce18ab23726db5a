from typing import Optional

from fastapi import APIRouter, Depends, Query

from ..dependencies import Services, get_services
from ..schemas.restaurant import RecalculateRequest, RecalculationOut

router = APIRouter(prefix="/restaurants", tags=["restaurants"])


@router.get("/{restaurant_id}/aggregate")
async def get_aggregate(
    restaurant_id: str,
    force_refresh: bool = Query(False),
    services: Services = Depends(get_services),
):
    """Live aggregate when online; cached or locally derived one otherwise."""
    aggregate = await services.offline.get_aggregate(restaurant_id, force_refresh=force_refresh)
    return aggregate.to_dict()


@router.get("/{restaurant_id}/statistics")
async def get_statistics(restaurant_id: str, services: Services = Depends(get_services)):
    stats = await services.engine.get_statistics(restaurant_id)
    return {
        **stats.aggregate.to_dict(),
        "recent_ratings": stats.recent_ratings,
        "trend": stats.trend,
        "consistency": stats.consistency,
    }


@router.post("/recalculate", response_model=list[RecalculationOut])
async def recalculate(payload: RecalculateRequest, services: Services = Depends(get_services)):
    if payload.restaurant_ids is None:
        results = await services.engine.recalculate_all()
    else:
        results = await services.engine.batch_recalculate(payload.restaurant_ids)

    out = []
    for result in results:
        aggregate = result.get("aggregate")
        out.append(
            RecalculationOut(
                restaurant_id=result["restaurant_id"],
                success=result["success"],
                average_score=aggregate.average_score if aggregate else None,
                total_ratings=aggregate.total_ratings if aggregate else None,
                error=result.get("error"),
            )
        )
    return out


@router.get("/cache/status")
async def cache_status(services: Services = Depends(get_services)):
    return services.engine.cache_status()


@router.delete("/cache")
async def clear_cache(restaurant_id: Optional[str] = Query(None), services: Services = Depends(get_services)):
    if restaurant_id:
        services.engine.invalidate(restaurant_id)
    else:
        services.engine.clear_cache()
    return {"cleared": restaurant_id or "all"}


@router.get("/history")
async def calculation_history(
    restaurant_id: Optional[str] = Query(None),
    limit: int = Query(100, ge=1, le=1000),
    services: Services = Depends(get_services),
):
    return services.engine.history(restaurant_id, limit)
