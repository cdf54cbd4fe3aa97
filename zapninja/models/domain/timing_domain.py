"""
Timing domain models for admission control.

``TimingConfig`` mirrors the ``whatsapp_sessions.timing_config`` JSONB
column. Every field is optional so the controller can tell an absent
value (use the default) from an explicit zero.
"""

from dataclasses import dataclass
from typing import Any

from pydantic import BaseModel, ConfigDict, Field, field_validator

DEFAULT_RESPONSE_TIME_MS = 2000
DEFAULT_MESSAGE_DELAY_MS = 1000
DEFAULT_MESSAGE_LIMIT = 100


def time_to_minutes(value: str) -> int:
    """Convert "HH:MM" to minutes since midnight."""
    hours, minutes = value.split(":")
    return int(hours) * 60 + int(minutes)


class WorkingHours(BaseModel):
    start: str = Field(..., description="Start of the window, HH:MM")
    end: str = Field(..., description="End of the window, HH:MM")

    @field_validator("start", "end")
    @classmethod
    def _validate_hhmm(cls, value: str) -> str:
        minutes = time_to_minutes(value)
        if not 0 <= minutes < 24 * 60:
            raise ValueError(f"Invalid time of day: {value}")
        return value

    def contains(self, current_minutes: int) -> bool:
        start = time_to_minutes(self.start)
        end = time_to_minutes(self.end)
        if start <= end:
            return start <= current_minutes <= end
        # Window wraps midnight (e.g. 22:00 - 06:00)
        return current_minutes >= start or current_minutes <= end


class TimingConfig(BaseModel):
    """Per-session pacing configuration. Durations are milliseconds."""

    model_config = ConfigDict(extra="ignore")

    response_time: int | None = None
    message_delay: int | None = None
    rest_period: int | None = None
    working_hours: WorkingHours | None = None
    message_limit: int | None = None
    typing_simulation: bool = False
    burst_protection: bool = False
    adaptive_timing: bool = False


@dataclass(slots=True)
class UserRateWindow:
    phone: str
    message_count: int
    window_start: float
    last_message: float


@dataclass(slots=True)
class RateLimitDecision:
    allowed: bool
    remaining: float
    reset_time: float

    def to_dict(self) -> dict[str, Any]:
        return {"allowed": self.allowed, "remaining": self.remaining, "reset_time": self.reset_time}


@dataclass(slots=True)
class BurstDecision:
    blocked: bool
    reason: str | None = None


TIMING_PRESETS: dict[str, TimingConfig] = {
    "empresarial": TimingConfig(
        response_time=2000,
        message_delay=1000,
        rest_period=0,
        working_hours=WorkingHours(start="08:00", end="18:00"),
        message_limit=30,
        typing_simulation=True,
        burst_protection=True,
        adaptive_timing=False,
    ),
    "chatbot_rapido": TimingConfig(
        response_time=1000,
        message_delay=500,
        rest_period=0,
        working_hours=WorkingHours(start="00:00", end="23:59"),
        message_limit=100,
        typing_simulation=False,
        burst_protection=True,
        adaptive_timing=False,
    ),
    "humano_realista": TimingConfig(
        response_time=4000,
        message_delay=2000,
        rest_period=10000,
        working_hours=WorkingHours(start="07:00", end="22:00"),
        message_limit=50,
        typing_simulation=True,
        burst_protection=True,
        adaptive_timing=True,
    ),
    "suporte_24h": TimingConfig(
        response_time=1500,
        message_delay=800,
        rest_period=5000,
        working_hours=WorkingHours(start="00:00", end="23:59"),
        message_limit=80,
        typing_simulation=True,
        burst_protection=True,
        adaptive_timing=True,
    ),
}
