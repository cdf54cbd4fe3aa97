"""
Timing routes.
Admission-control statistics per session, the named pacing presets and
per-session configuration updates.
"""

from fastapi import APIRouter, Depends, HTTPException, status

from zapninja.infrastructure.observability.logging import get_logger
from zapninja.models.api.session_request import TimingConfigUpdateRequest
from zapninja.models.domain.timing_domain import TIMING_PRESETS
from zapninja.routes.deps import get_services
from zapninja.services.container import ServiceContainer

logger = get_logger(__name__)

router = APIRouter(prefix="/timing", tags=["timing"])


@router.get("/presets")
async def list_timing_presets():
    return {name: preset.model_dump() for name, preset in TIMING_PRESETS.items()}


@router.get("/{session_name}/stats")
async def get_timing_stats(session_name: str, services: ServiceContainer = Depends(get_services)):
    return await services.admission.get_timing_stats(session_name)


@router.put("/{session_name}/config")
async def update_timing_config(
    session_name: str,
    body: TimingConfigUpdateRequest,
    services: ServiceContainer = Depends(get_services),
):
    if body.preset is not None:
        config = TIMING_PRESETS.get(body.preset)
        if config is None:
            raise HTTPException(
                status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown timing preset '{body.preset}'"
            )
    else:
        config = body.config

    try:
        updated = await services.session_configs.update_timing_config(session_name, config)
    except Exception as e:
        logger.error("Timing config update failed", session_name=session_name, error=str(e))
        raise HTTPException(
            status_code=status.HTTP_500_INTERNAL_SERVER_ERROR, detail="Timing config update failed"
        )

    if not updated:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Session not found")

    return {"success": True, "session_name": session_name, "config": config.model_dump()}
