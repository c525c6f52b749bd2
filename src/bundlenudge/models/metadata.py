"""Persistent per-device metadata model."""

import time
import uuid
from typing import Optional

from pydantic import Field

from bundlenudge.models.base import CamelModel
from bundlenudge.models.health import CriticalRoute


class VerificationState(CamelModel):
    """Open verification window for the running bundle.

    Both flags must be true before previous_version may be cleared.
    """

    app_ready: bool = Field(default=False, description="Set by notify_app_ready()")
    health_passed: bool = Field(
        default=False, description="Set when all critical events/endpoints pass"
    )
    started_at: Optional[float] = Field(
        None, description="Epoch seconds when the verification window opened"
    )
    verified_at: Optional[float] = Field(
        None, description="Epoch seconds when both flags became true"
    )


class AppVersionInfo(CamelModel):
    """Host app version, used to detect app store updates."""

    app_version: str = Field(..., min_length=1, examples=["2.1.0"])
    build_number: str = Field(..., min_length=1, examples=["142"])
    recorded_at: float = Field(default_factory=time.time)


def generate_device_id() -> str:
    """Generate a stable opaque device identifier."""
    return str(uuid.uuid4())


class StoredMetadata(CamelModel):
    """Device metadata persisted at <data_dir>/metadata.json.

    Survives restarts; overwritten in place by every apply, rollback and
    verify operation.
    """

    device_id: str = Field(default_factory=generate_device_id, min_length=1)
    access_token: Optional[str] = Field(None, description="Bearer token for API calls")
    current_version: Optional[str] = Field(None, description="Bundle presently running")
    current_version_hash: Optional[str] = None
    previous_version: Optional[str] = Field(
        None, description="Last known-good bundle, rollback target"
    )
    pending_version: Optional[str] = Field(
        None, description="Downloaded but not yet applied bundle"
    )
    pending_update_flag: bool = False
    pending_critical_routes: list[CriticalRoute] = Field(
        default_factory=list, description="Critical routes shipped with the pending bundle"
    )
    critical_routes: list[CriticalRoute] = Field(
        default_factory=list, description="Critical routes of the running bundle"
    )
    last_check_time: Optional[float] = None
    crash_count: int = Field(default=0, ge=0, le=100)
    last_crash_time: Optional[float] = None
    verification_state: Optional[VerificationState] = None
    app_version_info: Optional[AppVersionInfo] = None
    bundle_hashes: dict[str, str] = Field(default_factory=dict)
