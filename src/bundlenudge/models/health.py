"""Health requirement models: critical events, endpoints and routes."""

from typing import Literal, Optional

from pydantic import ConfigDict, Field, field_validator

from bundlenudge.models.base import CamelModel


class CriticalEvent(CamelModel):
    """An application lifecycle event that must fire after an update."""

    model_config = ConfigDict(frozen=True)

    name: str = Field(..., min_length=1, examples=["app_loaded"])
    required: bool = True
    timeout_ms: Optional[int] = Field(None, gt=0)


class CriticalEndpoint(CamelModel):
    """An HTTP endpoint whose outcome proves the update healthy."""

    model_config = ConfigDict(frozen=True)

    method: Literal["GET", "POST", "PUT", "DELETE"]
    url: str = Field(..., min_length=1, examples=["/api/health"])
    expected_status: tuple[int, ...] = Field(..., min_length=1, examples=[[200, 204]])
    required: bool = True

    @field_validator("method", mode="before")
    @classmethod
    def upper_method(cls, v):
        """Accept lowercase methods."""
        if isinstance(v, str):
            return v.upper()
        return v

    @property
    def key(self) -> str:
        return f"{self.method}:{self.url}"


class CriticalRoute(CamelModel):
    """A route pattern that must succeed at least once (team/enterprise)."""

    model_config = ConfigDict(frozen=True)

    id: str = Field(..., min_length=1)
    method: str = Field(default="*", description="HTTP method or '*' for any")
    url: str = Field(
        ..., min_length=1, description="Glob pattern, e.g. /api/users/* or https://api.x.com/**"
    )
    required: bool = True

    @field_validator("method")
    @classmethod
    def upper_method(cls, v: str) -> str:
        return v.upper()


class HealthConfig(CamelModel):
    """Health configuration fetched from the API."""

    events: list[CriticalEvent] = Field(default_factory=list)
    endpoints: list[CriticalEndpoint] = Field(default_factory=list)
