"""Pydantic models for the local agent HTTP API."""

from typing import Optional

from pydantic import BaseModel, Field

from bundlenudge.models.health import CriticalEndpoint
from bundlenudge.models.status import RollbackReason, UpdateStatus, VerificationPhase


class EventReport(BaseModel):
    """POST /api/v1.0/events payload.

    Example:
        {"name": "app_loaded"}
    """

    name: str = Field(..., min_length=1, examples=["app_loaded", "user_logged_in"])


class EndpointReport(BaseModel):
    """POST /api/v1.0/endpoints payload.

    Example:
        {"method": "GET", "url": "/api/health", "status": 200}
    """

    method: str = Field(..., examples=["GET", "POST"])
    url: str = Field(..., min_length=1, examples=["/api/health"])
    status: int = Field(..., ge=100, le=599, examples=[200, 503])


class RollbackRequest(BaseModel):
    """POST /api/v1.0/rollback payload."""

    reason: RollbackReason = Field(
        default=RollbackReason.MANUAL,
        description="Only manual and server_triggered are accepted from the host",
    )


class StatusData(BaseModel):
    """Agent status nested in the status response."""

    status: UpdateStatus
    current_version: Optional[str] = None
    previous_version: Optional[str] = None
    pending_version: Optional[str] = None
    verification_phase: VerificationPhase
    health_verified: bool = False
    missing_events: list[str] = Field(default_factory=list)
    missing_endpoints: list[CriticalEndpoint] = Field(default_factory=list)
    can_rollback: bool = False
    crash_count: int = 0


class StatusResponse(BaseModel):
    """GET /api/v1.0/status response."""

    code: int = Field(default=200, description="Application-level status code")
    msg: str = Field(default="success")
    data: StatusData


class SuccessResponse(BaseModel):
    """Success response for command endpoints."""

    code: int = Field(default=200, description="Application-level status code (200)")
    msg: str = Field(default="success", description="Success message")
    data: Optional[dict] = Field(None, description="Optional response data")


class ErrorResponse(BaseModel):
    """Error response for all endpoints.

    HTTP status code is always 200, real status in 'code' field.
    """

    code: int = Field(..., description="Application-level error code (404/409/500/503)")
    msg: str = Field(..., description="Error message with error code prefix")
