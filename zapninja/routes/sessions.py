"""
Session management routes.
Launch, stop, restart and inspect supervised session processes.
"""

from fastapi import APIRouter, Depends, HTTPException, status
from fastapi.responses import StreamingResponse

from zapninja.infrastructure.observability.logging import get_logger
from zapninja.models.api.session_request import LaunchSessionRequest
from zapninja.models.api.session_response import (
    ActiveSessionResponse,
    SessionOperationResponse,
    SessionProcessResponse,
)
from zapninja.routes.deps import get_services
from zapninja.services.container import ServiceContainer
from zapninja.services.sessions.port_allocator import PortExhausted

logger = get_logger(__name__)

router = APIRouter(prefix="/sessions", tags=["sessions"])


@router.get("", response_model=list[SessionProcessResponse])
async def list_session_processes(services: ServiceContainer = Depends(get_services)):
    return [record.to_dict() for record in services.supervisor.get_running_processes()]


@router.get("/ports")
async def get_port_statistics(services: ServiceContainer = Depends(get_services)):
    return services.port_allocator.get_port_statistics()


@router.get("/active", response_model=list[ActiveSessionResponse])
async def list_active_sessions(services: ServiceContainer = Depends(get_services)):
    return services.port_allocator.get_active_sessions()


@router.post("/{session_name}/launch", response_model=SessionOperationResponse)
async def launch_session(
    session_name: str,
    body: LaunchSessionRequest | None = None,
    services: ServiceContainer = Depends(get_services),
):
    port = body.port if body else None
    if port is None:
        try:
            port = services.port_allocator.get_available_port()
        except PortExhausted as e:
            logger.error("No port available for session", session_name=session_name, error=str(e))
            raise HTTPException(status_code=status.HTTP_503_SERVICE_UNAVAILABLE, detail=str(e))

    if not await services.supervisor.launch_session(session_name, port):
        reason = services.supervisor.get_last_failure(session_name) or "launch failed"
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=reason)

    return SessionOperationResponse(
        success=True, session_name=session_name, port=port, message="Session started"
    )


@router.post("/{session_name}/stop", response_model=SessionOperationResponse)
async def stop_session(session_name: str, services: ServiceContainer = Depends(get_services)):
    record = services.supervisor.get_session_process(session_name)
    port = record.port if record else None

    if not await services.supervisor.stop_session(session_name):
        reason = services.supervisor.get_last_failure(session_name) or "stop failed"
        raise HTTPException(status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail=reason)

    return SessionOperationResponse(
        success=True,
        session_name=session_name,
        port=port,
        message="Session stopped" if record else "Session was not running",
    )


@router.post("/{session_name}/restart", response_model=SessionOperationResponse)
async def restart_session(session_name: str, services: ServiceContainer = Depends(get_services)):
    if not await services.supervisor.restart_session(session_name):
        reason = services.supervisor.get_last_failure(session_name) or "restart failed"
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail=reason)

    record = services.supervisor.get_session_process(session_name)
    return SessionOperationResponse(
        success=True,
        session_name=session_name,
        port=record.port if record else None,
        message="Session restarted",
    )


@router.get("/{session_name}/status")
async def get_session_status(session_name: str, services: ServiceContainer = Depends(get_services)):
    session_status = await services.supervisor.show_session_status(session_name)
    if not session_status["found"]:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")
    return session_status


@router.get("/{session_name}/logs")
async def follow_session_logs(session_name: str, services: ServiceContainer = Depends(get_services)):
    """Stream buffered and live output lines as plain text until the process exits."""
    if services.supervisor.get_session_process(session_name) is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")

    async def lines():
        async for line in services.supervisor.follow_logs(session_name):
            yield line + "\n"

    return StreamingResponse(lines(), media_type="text/plain")
