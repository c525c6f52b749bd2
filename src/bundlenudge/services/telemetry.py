"""Best-effort telemetry reporting to the BundleNudge API."""

import asyncio
import logging
from typing import Any, Callable, Optional

import httpx

from bundlenudge.config import DEFAULT_API_URL
from bundlenudge.models.release import TelemetryEvent


def auth_headers(access_token: Optional[str]) -> dict[str, str]:
    """JSON headers with an optional Bearer token."""
    headers = {"Content-Type": "application/json"}
    if access_token:
        headers["Authorization"] = f"Bearer {access_token}"
    return headers


class TelemetryReporter:
    """Sends telemetry events to POST /v1/telemetry.

    Failures are logged but never raised: telemetry must not block
    update or rollback operations.
    """

    def __init__(
        self,
        app_id: str,
        get_device_id: Callable[[], str],
        get_access_token: Callable[[], Optional[str]],
        api_url: str = DEFAULT_API_URL,
    ):
        """Initialize telemetry reporter.

        Args:
            app_id: Application identifier sent with every event
            get_device_id: Returns the stable device id
            get_access_token: Returns the current Bearer token, if any
            api_url: Base URL of the BundleNudge API
        """
        self.logger = logging.getLogger("bundlenudge.telemetry")
        self.app_id = app_id
        self.api_url = api_url.rstrip("/")
        self.telemetry_endpoint = f"{self.api_url}/v1/telemetry"
        self._get_device_id = get_device_id
        self._get_access_token = get_access_token
        self._pending: set[asyncio.Task] = set()

    async def report_event(
        self, event_type: str, metadata: Optional[dict[str, Any]] = None
    ) -> None:
        """Send a telemetry event and wait for the response.

        Args:
            event_type: Event name, e.g. "rollback_triggered"
            metadata: Event-specific fields
        """
        payload = TelemetryEvent(
            device_id=self._get_device_id(),
            app_id=self.app_id,
            event_type=event_type,
            metadata=metadata or {},
        )

        self.logger.debug(f"Reporting telemetry: {event_type}")

        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                response = await client.post(
                    self.telemetry_endpoint,
                    json=payload.model_dump(mode="json", by_alias=True),
                    headers=auth_headers(self._get_access_token()),
                )
                response.raise_for_status()
                self.logger.debug(f"Telemetry {event_type} sent successfully")

        except httpx.HTTPError as e:
            self.logger.warning(
                f"Failed to report {event_type} telemetry: {e}. Continuing..."
            )
        except Exception as e:
            self.logger.error(
                f"Unexpected error reporting {event_type} telemetry: {e}",
                exc_info=True,
            )

    def dispatch(
        self, event_type: str, metadata: Optional[dict[str, Any]] = None
    ) -> asyncio.Task:
        """Fire-and-forget: schedule report_event() as a detached task.

        The caller never awaits the task; use flush() to drain pending
        reports before shutdown.
        """
        task = asyncio.create_task(self.report_event(event_type, metadata))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    @property
    def pending_count(self) -> int:
        return len(self._pending)

    async def flush(self, timeout: float = 5.0) -> None:
        """Wait for dispatched reports to finish, cancelling stragglers."""
        if not self._pending:
            return
        tasks = list(self._pending)
        done, not_done = await asyncio.wait(tasks, timeout=timeout)
        for task in not_done:
            task.cancel()
        if not_done:
            self.logger.warning(f"Cancelled {len(not_done)} pending telemetry reports")
