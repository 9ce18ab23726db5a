import asyncio
import logging
from typing import Optional

from fastapi import APIRouter, Depends, Query, WebSocket, WebSocketDisconnect

from ..dependencies import Services, get_services
from ..schemas.aggregate import Aggregate

logger = logging.getLogger(__name__)

router = APIRouter(prefix="/realtime", tags=["realtime"])

# per-connection backlog; the oldest update is dropped when a client lags
STREAM_BACKLOG = 100


@router.get("/status")
async def realtime_status(services: Services = Depends(get_services)):
    return {**services.propagator.status(), "metrics": services.propagator.metrics()}


@router.post("/{restaurant_id}/refresh")
async def force_refresh(restaurant_id: str, services: Services = Depends(get_services)):
    """Recompute immediately and notify observers, skipping the debounce."""
    aggregate = await services.propagator.force_update(restaurant_id)
    return aggregate.to_dict()


@router.websocket("/ws/aggregates")
async def aggregate_stream(websocket: WebSocket, restaurant_id: Optional[str] = Query(None)):
    services: Services = websocket.app.state.services
    await websocket.accept()
    queue: asyncio.Queue = asyncio.Queue(maxsize=STREAM_BACKLOG)

    def push(updated_id: str, aggregate: Aggregate) -> None:
        if queue.full():
            queue.get_nowait()
        queue.put_nowait(
            {"type": "aggregate_updated", "restaurant_id": updated_id, "aggregate": aggregate.to_dict()}
        )

    async def forward() -> None:
        while True:
            await websocket.send_json(await queue.get())

    async def wait_for_disconnect() -> None:
        # anything the client sends is ignored
        while True:
            message = await websocket.receive()
            if message["type"] == "websocket.disconnect":
                return

    if restaurant_id:
        handle = services.propagator.subscribe(restaurant_id, push)
    else:
        handle = services.propagator.subscribe_all(push)

    await websocket.send_json(
        {"type": "connection_established", "restaurant_id": restaurant_id}
    )
    tasks = {asyncio.create_task(forward()), asyncio.create_task(wait_for_disconnect())}
    try:
        done, _ = await asyncio.wait(tasks, return_when=asyncio.FIRST_COMPLETED)
        for task in done:
            error = task.exception()
            if error is not None and not isinstance(error, WebSocketDisconnect):
                logger.warning("Aggregate stream for %s failed: %s", restaurant_id or "all restaurants", error)
    finally:
        for task in tasks:
            task.cancel()
        await asyncio.gather(*tasks, return_exceptions=True)
        handle.unsubscribe()
        logger.info("Aggregate stream closed for %s", restaurant_id or "all restaurants")
