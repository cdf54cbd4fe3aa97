"""
Queue administration routes.
Stats plus pause / resume / clear by queue key or broker name.
"""

from typing import Literal

from fastapi import APIRouter, Depends, HTTPException, status

from zapninja.models.api.session_response import QueueActionResponse, QueueStatsResponse
from zapninja.queues.orchestrator import UnknownQueueError
from zapninja.routes.deps import get_services
from zapninja.services.container import ServiceContainer

router = APIRouter(prefix="/queues", tags=["queues"])

QueueAction = Literal["pause", "resume", "clear"]


@router.get("/stats", response_model=QueueStatsResponse)
async def get_queue_stats(services: ServiceContainer = Depends(get_services)):
    return QueueStatsResponse(queues=await services.orchestrator.get_queue_stats())


@router.post("/{queue_name}/{action}", response_model=QueueActionResponse)
async def run_queue_action(
    queue_name: str, action: QueueAction, services: ServiceContainer = Depends(get_services)
):
    orchestrator = services.orchestrator
    try:
        orchestrator.get_queue(queue_name)
    except UnknownQueueError as e:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=str(e))

    handlers = {
        "pause": orchestrator.pause_queue,
        "resume": orchestrator.resume_queue,
        "clear": orchestrator.clear_queue,
    }
    if not await handlers[action](queue_name):
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR,
            detail=f"Could not {action} queue '{queue_name}'",
        )

    return QueueActionResponse(
        success=True, queue=queue_name, action=action, message=f"Queue {queue_name} {action}d"
    )
