"""Health monitor tracking critical events and endpoints after an update."""

import logging
from typing import Any, Callable, Optional, Sequence
from urllib.parse import urlsplit

from bundlenudge.models.health import CriticalEndpoint, CriticalEvent
from bundlenudge.services.crash_detector import CrashDetector
from bundlenudge.utils.callbacks import invoke_callback


class HealthMonitor:
    """Declares health passed once every required signal has been observed.

    Session state (passed events, passed endpoint keys, completion flag) is
    scoped to one verification window; reset() clears it for reuse.
    Endpoint failures are surfaced through on_endpoint_failed only, the
    decision to roll back belongs to the caller.
    """

    def __init__(
        self,
        crash_detector: CrashDetector,
        events: Sequence[CriticalEvent] = (),
        endpoints: Sequence[CriticalEndpoint] = (),
        on_all_passed: Optional[Callable[[], Any]] = None,
        on_endpoint_failed: Optional[Callable[[CriticalEndpoint, int], Any]] = None,
    ):
        self.logger = logging.getLogger("bundlenudge.health_monitor")
        self.crash_detector = crash_detector
        self.events: tuple[CriticalEvent, ...] = tuple(events)
        self.endpoints: tuple[CriticalEndpoint, ...] = tuple(endpoints)
        self.on_all_passed = on_all_passed
        self.on_endpoint_failed = on_endpoint_failed

        self._passed_events: set[str] = set()
        self._passed_endpoints: set[str] = set()
        self._complete = False
        self._stopped = False

    async def start(self) -> None:
        """Begin the session; an empty required set verifies immediately."""
        await self.check_completion()

    async def report_event(self, name: str) -> None:
        """Mark a configured event as passed. Unknown names are ignored."""
        if self._complete or self._stopped:
            return

        if not any(event.name == name for event in self.events):
            self.logger.debug(f"Ignoring unknown event: {name}")
            return

        if name not in self._passed_events:
            self._passed_events.add(name)
            self.logger.info(f"Critical event passed: {name}")

        await self.check_completion()

    async def report_endpoint(self, method: str, url: str, status: int) -> None:
        """Record an endpoint outcome.

        Args:
            method: HTTP method of the call
            url: Full URL or path that was called
            status: Response status code
        """
        if self._complete or self._stopped:
            return

        endpoint = self._find_endpoint(method, url)
        if endpoint is None:
            return

        if status in endpoint.expected_status:
            if endpoint.key not in self._passed_endpoints:
                self._passed_endpoints.add(endpoint.key)
                self.logger.info(f"Critical endpoint passed: {endpoint.key} ({status})")
            await self.check_completion()
            return

        if endpoint.required:
            self.logger.warning(
                f"Critical endpoint failed: {endpoint.key} returned {status}, "
                f"expected {list(endpoint.expected_status)}"
            )
            await invoke_callback(self.on_endpoint_failed, endpoint, status)

    async def check_completion(self) -> bool:
        """Notify the crash detector on the first transition to fully passed.

        Returns:
            True if every required event and endpoint has passed
        """
        if self._complete:
            return True
        if self._stopped:
            return False

        if self.get_missing_events() or self.get_missing_endpoints():
            return False

        self._complete = True
        self.logger.info("All critical events and endpoints passed")
        await self.crash_detector.notify_health_passed()
        await invoke_callback(self.on_all_passed)
        return True

    def is_fully_verified(self) -> bool:
        return self._complete

    def get_missing_events(self) -> list[str]:
        return [
            event.name
            for event in self.events
            if event.required and event.name not in self._passed_events
        ]

    def get_missing_endpoints(self) -> list[CriticalEndpoint]:
        return [
            endpoint
            for endpoint in self.endpoints
            if endpoint.required and endpoint.key not in self._passed_endpoints
        ]

    def reset(self) -> None:
        """Clear session state for the next update cycle."""
        self._passed_events.clear()
        self._passed_endpoints.clear()
        self._complete = False
        self._stopped = False

    def stop(self) -> None:
        """Ignore further reports until reset(); used once the update is rolled back."""
        self._stopped = True

    def _find_endpoint(self, method: str, url: str) -> Optional[CriticalEndpoint]:
        method = method.upper()
        path = urlsplit(url).path or url
        for endpoint in self.endpoints:
            if endpoint.method != method:
                continue
            if endpoint.url == url:
                return endpoint
            # Configured as a bare path: match the path of a full URL
            if endpoint.url.startswith("/") and endpoint.url == path:
                return endpoint
        return None
