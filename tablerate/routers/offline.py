from typing import Any

from fastapi import APIRouter, Body, Depends, Response, status

from ..dependencies import Services, get_services
from ..schemas.offline import ConnectivityUpdate, QueuedRatingOut, SyncOperationOut, SyncReportOut

router = APIRouter(prefix="/offline", tags=["offline"])


@router.post("/ratings", response_model=QueuedRatingOut, status_code=status.HTTP_202_ACCEPTED)
async def queue_rating(payload: dict[str, Any] = Body(...), services: Services = Depends(get_services)):
    queued = await services.offline.submit_offline(payload)
    return QueuedRatingOut(client_ref=queued.client_ref, queue_id=queued.queue_id)


@router.post("/sync", response_model=SyncReportOut)
async def synchronize(services: Services = Depends(get_services)):
    return await services.offline.synchronize()


@router.get("/status")
async def offline_status(services: Services = Depends(get_services)):
    return await services.offline.status()


@router.get("/rejected", response_model=list[SyncOperationOut])
async def rejected_operations(services: Services = Depends(get_services)):
    """Queued writes the validation gate refused during sync."""
    return await services.offline.rejected_operations()


@router.post("/connectivity")
async def update_connectivity(payload: ConnectivityUpdate, services: Services = Depends(get_services)):
    """Platform online/offline signal. Coming back online triggers a sync."""
    if payload.online is not None:
        await services.monitor.set_online(payload.online)
    if payload.force_offline is not None:
        await services.offline.set_force_offline(payload.force_offline)
    return await services.offline.status()


@router.delete("/data", status_code=status.HTTP_204_NO_CONTENT)
async def clear_offline_data(services: Services = Depends(get_services)):
    await services.offline.clear_offline_data()
    return Response(status_code=status.HTTP_204_NO_CONTENT)
