"""
Session management request models.
Used by routes for input validation.
"""

from pydantic import BaseModel, Field, model_validator

from zapninja.models.domain.timing_domain import TimingConfig


class LaunchSessionRequest(BaseModel):
    """Request body for launching a session process."""

    port: int | None = Field(
        None, ge=1, le=65535, description="Port to bind; allocated from the pool when omitted"
    )


class TimingConfigUpdateRequest(BaseModel):
    """Either a named preset or an explicit timing configuration."""

    preset: str | None = Field(None, description="Name of a built-in timing preset")
    config: TimingConfig | None = Field(None, description="Explicit timing configuration")

    @model_validator(mode="after")
    def exactly_one_source(self):
        if (self.preset is None) == (self.config is None):
            raise ValueError("Provide exactly one of 'preset' or 'config'")
        return self
