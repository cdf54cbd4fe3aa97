"""
Session management response models.
Used by routes for output formatting.
"""

from typing import Any

from pydantic import BaseModel, Field


class SessionOperationResponse(BaseModel):
    """Outcome of a lifecycle operation (launch / stop / restart)."""

    success: bool = Field(..., description="Whether the operation succeeded")
    session_name: str = Field(..., description="Target session")
    port: int | None = Field(None, description="Port bound by the session, when known")
    message: str = Field(..., description="Human-readable outcome or failure reason")


class ActiveSessionResponse(BaseModel):
    name: str = Field(..., description="Session name")
    port: int = Field(..., description="Assigned port")


class SessionProcessResponse(BaseModel):
    session_name: str
    port: int
    pid: int
    status: str
    start_time: str
    uptime_seconds: float
    exit_code: int | None = None


class QueueActionResponse(BaseModel):
    success: bool
    queue: str
    action: str
    message: str


class QueueStatsResponse(BaseModel):
    queues: dict[str, dict[str, Any]] = Field(..., description="Per-queue job counts")
