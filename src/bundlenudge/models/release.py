"""Release, telemetry and download progress models."""

import time
from typing import Any, Optional

from pydantic import Field

from bundlenudge.models.health import CriticalRoute
from bundlenudge.models.base import CamelModel


class UpdateInfo(CamelModel):
    """Release metadata returned by the update-check endpoint."""

    version: str = Field(..., min_length=1, examples=["2.0.0"])
    bundle_url: str = Field(..., pattern=r"^https?://.+")
    bundle_size: int = Field(default=0, ge=0)
    bundle_hash: str = Field(
        ..., pattern=r"^[a-fA-F0-9]{64}$", description="Expected SHA-256 hash"
    )
    release_id: str = Field(..., min_length=1)
    release_notes: Optional[str] = None
    critical_routes: list[CriticalRoute] = Field(default_factory=list)


class UpdateCheckResponse(CamelModel):
    """Raw POST /v1/updates/check response body."""

    update_available: bool = False
    requires_app_store_update: bool = False
    app_store_message: Optional[str] = None
    release: Optional[UpdateInfo] = None


class UpdateCheckResult(CamelModel):
    """Outcome of an update check as seen by the host."""

    update_available: bool
    update: Optional[UpdateInfo] = None
    requires_app_store_update: bool = False
    app_store_message: Optional[str] = None


class DownloadProgress(CamelModel):
    """Bundle download progress passed to on_download_progress."""

    bytes_downloaded: int = Field(..., ge=0)
    total_bytes: int = Field(..., ge=0)
    percentage: int = Field(..., ge=0, le=100)


class TelemetryEvent(CamelModel):
    """Payload for POST /v1/telemetry."""

    device_id: str
    app_id: str
    event_type: str = Field(..., examples=["rollback_triggered", "update_downloaded"])
    metadata: dict[str, Any] = Field(default_factory=dict)
    timestamp: float = Field(default_factory=time.time)


class DeviceRegistration(CamelModel):
    """POST /v1/devices/register response body."""

    access_token: str = Field(..., min_length=1)
    expires_at: Optional[float] = None
