"""API route handlers for the local agent endpoints."""

import logging

from fastapi import APIRouter, BackgroundTasks
from fastapi.responses import JSONResponse

from bundlenudge.api.models import (
    EndpointReport,
    EventReport,
    RollbackRequest,
    StatusData,
    StatusResponse,
    SuccessResponse,
)
from bundlenudge.client import BundleNudge
from bundlenudge.errors import RollbackUnavailableError
from bundlenudge.models.status import RollbackReason

router = APIRouter(prefix="/api/v1.0")

logger = logging.getLogger("bundlenudge.api")

HOST_ROLLBACK_REASONS = (RollbackReason.MANUAL, RollbackReason.SERVER_TRIGGERED)


def _error(code: int, msg: str) -> JSONResponse:
    return JSONResponse(status_code=200, content={"code": code, "msg": msg})


def _ok(data=None) -> JSONResponse:
    return JSONResponse(status_code=200, content={"code": 200, "msg": "success", "data": data})


def _not_ready() -> JSONResponse:
    return _error(503, "AGENT_NOT_READY: BundleNudge not initialized")


@router.get("/status", response_model=StatusResponse)
async def get_status():
    """GET /api/v1.0/status - Query the device's update state.

    Response format:
        {
            "code": 200,
            "msg": "success",
            "data": {
                "status": "idle",
                "current_version": "2.0.0",
                "previous_version": "1.0.0",
                "verification_phase": "waiting_health",
                "missing_events": ["app_loaded"],
                ...
            }
        }
    """
    if not BundleNudge.is_initialized():
        return _not_ready()
    sdk = BundleNudge.get_instance()
    metadata = sdk.storage.get()
    monitor = sdk.health_monitor

    data = StatusData(
        status=sdk.get_status(),
        current_version=metadata.current_version,
        previous_version=metadata.previous_version,
        pending_version=metadata.pending_version,
        verification_phase=sdk.crash_detector.phase,
        health_verified=monitor.is_fully_verified() if monitor else False,
        missing_events=monitor.get_missing_events() if monitor else [],
        missing_endpoints=monitor.get_missing_endpoints() if monitor else [],
        can_rollback=sdk.can_rollback(),
        crash_count=metadata.crash_count,
    )
    return StatusResponse(data=data)


@router.post("/events", response_model=SuccessResponse)
async def post_event(request: EventReport):
    """POST /api/v1.0/events - Report a critical application event."""
    if not BundleNudge.is_initialized():
        return _not_ready()
    sdk = BundleNudge.get_instance()
    await sdk.report_event(request.name)
    return _ok()


@router.post("/endpoints", response_model=SuccessResponse)
async def post_endpoint(request: EndpointReport):
    """POST /api/v1.0/endpoints - Report the outcome of an endpoint call."""
    if not BundleNudge.is_initialized():
        return _not_ready()
    sdk = BundleNudge.get_instance()
    await sdk.report_endpoint(request.method, request.url, request.status)
    return _ok()


@router.post("/app-ready", response_model=SuccessResponse)
async def post_app_ready():
    """POST /api/v1.0/app-ready - Host app finished starting."""
    if not BundleNudge.is_initialized():
        return _not_ready()
    sdk = BundleNudge.get_instance()
    await sdk.notify_app_ready()
    return _ok({"verification_phase": sdk.crash_detector.phase.value})


@router.post("/rollback", response_model=SuccessResponse)
async def post_rollback(request: RollbackRequest):
    """POST /api/v1.0/rollback - Roll back to the previous bundle.

    Returns code 400 for reasons reserved to the agent and 409 when there
    is no previous version.
    """
    if request.reason not in HOST_ROLLBACK_REASONS:
        return _error(400, f"Invalid rollback reason: {request.reason.value}")

    if not BundleNudge.is_initialized():
        return _not_ready()
    sdk = BundleNudge.get_instance()
    try:
        version = await sdk.rollback(request.reason)
    except RollbackUnavailableError as e:
        return _error(409, f"ROLLBACK_UNAVAILABLE: {e}")
    except RuntimeError as e:
        # Versions were restored but the host restart failed
        logger.error(f"Rollback restart failed: {e}")
        return _error(500, str(e))

    return _ok({"rolled_back_to": version})


@router.post("/sync", response_model=SuccessResponse)
async def post_sync(background_tasks: BackgroundTasks):
    """POST /api/v1.0/sync - Check for and install an update in the background."""
    if not BundleNudge.is_initialized():
        return _not_ready()
    background_tasks.add_task(_sync_workflow)
    return _ok()


async def _sync_workflow() -> None:
    """Background task for sync workflow."""
    if not BundleNudge.is_initialized():
        logger.warning("Sync skipped: agent shut down")
        return
    sdk = BundleNudge.get_instance()
    try:
        await sdk.sync()
    except Exception as e:
        # on_error and status already updated by the agent
        logger.warning(f"Sync failed: {e}")
