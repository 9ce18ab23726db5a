import logging
from typing import Any

from fastapi import APIRouter, Body, Depends, status
from fastapi.responses import JSONResponse

from ..dependencies import Services, get_services
from ..errors import TransientInfrastructureError
from ..schemas.rating import RatingOut, SubmissionOut
from ..schemas.validation import ValidationResult

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/ratings", tags=["ratings"])


async def _queue_offline(payload: dict[str, Any], services: Services) -> JSONResponse:
    queued = await services.offline.submit_offline(payload)
    return JSONResponse(
        status_code=status.HTTP_202_ACCEPTED,
        content={"client_ref": queued.client_ref, "queue_id": queued.queue_id, "queued": True},
    )


@router.post("/validate", response_model=ValidationResult)
async def validate_rating(payload: dict[str, Any] = Body(...), services: Services = Depends(get_services)):
    """Run the validation gate without writing anything or using rate-limit budget."""
    return await services.ratings.check(payload)


@router.post("", response_model=SubmissionOut, status_code=status.HTTP_201_CREATED)
async def submit_rating(payload: dict[str, Any] = Body(...), services: Services = Depends(get_services)):
    # While offline the rating is queued locally and replayed on reconnect
    if not services.policy.online:
        return await _queue_offline(payload, services)
    try:
        result = await services.ratings.submit(payload)
    except TransientInfrastructureError as exc:
        logger.warning("Store unavailable after retries, queueing rating offline: %s", exc)
        return await _queue_offline(payload, services)
    return SubmissionOut(rating_id=result.rating_id, is_update=result.is_update)


@router.get("/{restaurant_id}", response_model=list[RatingOut])
async def list_ratings(restaurant_id: str, services: Services = Depends(get_services)):
    """Visible ratings for a restaurant, newest first."""
    return await services.ratings.list_ratings(restaurant_id)
