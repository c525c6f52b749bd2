"""Critical route monitoring for team and enterprise tiers.

Outgoing HTTP calls of the host application are observed through an
httpx transport decorator installed explicitly by the host:

    monitor = RouteMonitor(routes, on_rollback=..., on_verified=...)
    client = httpx.AsyncClient(transport=monitor.wrap(httpx.AsyncHTTPTransport()))
    monitor.start()

Every required route must receive at least one 2xx response. A single
failure on a required route triggers rollback immediately.
"""

import asyncio
import logging
import re
from enum import Enum
from typing import Any, Awaitable, Callable, Optional, Sequence

import httpx

from bundlenudge.models.health import CriticalRoute
from bundlenudge.models.status import RollbackReason, Tier
from bundlenudge.utils.callbacks import invoke_callback, invoke_callback_safely

DEFAULT_ROUTE_TIMEOUT_SECONDS = 300.0

ROUTE_MONITOR_TIERS = frozenset({Tier.TEAM, Tier.ENTERPRISE})


class RouteState(str, Enum):
    PENDING = "pending"
    PASSED = "passed"
    FAILED = "failed"


def glob_to_regex(pattern: str) -> re.Pattern:
    """Convert a URL glob to an anchored regex.

    '**' matches across path segments, '*' within one segment and
    '?' a single non-slash character.
    """
    parts = []
    i = 0
    while i < len(pattern):
        if pattern.startswith("**", i):
            parts.append(".*")
            i += 2
        elif pattern[i] == "*":
            parts.append("[^/]*")
            i += 1
        elif pattern[i] == "?":
            parts.append("[^/]")
            i += 1
        else:
            parts.append(re.escape(pattern[i]))
            i += 1
    return re.compile("^" + "".join(parts) + "$")


class _CompiledRoute:
    def __init__(self, route: CriticalRoute):
        self.route = route
        self.regex = glob_to_regex(route.url)
        self.match_path = route.url.startswith("/")

    def matches(self, method: str, url: httpx.URL) -> bool:
        if self.route.method != "*" and self.route.method != method.upper():
            return False
        if self.match_path:
            target = url.path
        else:
            target = f"{url.scheme}://{url.netloc.decode('ascii')}{url.path}"
        return bool(self.regex.match(target))


class RouteMonitor:
    """Requires every critical route to succeed once before an update is safe."""

    def __init__(
        self,
        routes: Sequence[CriticalRoute],
        on_rollback: Callable[[RollbackReason], Awaitable[Any]],
        on_verified: Optional[Callable[[], Any]] = None,
        on_route_result: Optional[Callable[[str, bool, int], Any]] = None,
        timeout: float = DEFAULT_ROUTE_TIMEOUT_SECONDS,
    ):
        """Initialize route monitor.

        Args:
            routes: Critical routes, immutable for the session
            on_rollback: Awaited once with RollbackReason.ROUTE_FAILURE
            on_verified: Called once when the routes are considered safe
            on_route_result: Called with (route_id, success, status) per match
            timeout: Seconds before unresolved sessions are decided
        """
        self.logger = logging.getLogger("bundlenudge.route_monitor")
        self._routes = [_CompiledRoute(route) for route in routes]
        self.on_rollback = on_rollback
        self.on_verified = on_verified
        self.on_route_result = on_route_result
        self.timeout = timeout

        self._states: dict[str, RouteState] = {r.route.id: RouteState.PENDING for r in self._routes}
        self._active = False
        self._complete = False
        self._timer: Optional[asyncio.Task] = None

    @staticmethod
    def is_enabled_for(tier: Tier) -> bool:
        return tier in ROUTE_MONITOR_TIERS

    @property
    def is_active(self) -> bool:
        return self._active

    @property
    def is_complete(self) -> bool:
        return self._complete

    def get_route_states(self) -> dict[str, RouteState]:
        return dict(self._states)

    def wrap(self, transport: httpx.AsyncBaseTransport) -> "RouteMonitorTransport":
        """Return a transport that reports responses of `transport` to this monitor."""
        return RouteMonitorTransport(self, transport)

    def start(self) -> None:
        """Arm the timeout and begin observing requests."""
        if self._active or self._complete:
            return
        self._active = True
        self._timer = asyncio.create_task(self._timeout_timer())
        self.logger.info(
            f"Route monitoring started: {len(self._routes)} routes, timeout {self.timeout}s"
        )

    def stop(self) -> None:
        """Stop observing. Idempotent; detaches the transport synchronously."""
        self._active = False
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None

    async def record(self, method: str, url: httpx.URL, status_code: int) -> None:
        """Classify a response for every critical route it matches."""
        if not self._active or self._complete:
            return

        for compiled in self._routes:
            if not compiled.matches(method, url):
                continue

            route = compiled.route
            success = 200 <= status_code < 300
            if success:
                if self._states[route.id] == RouteState.PENDING:
                    self._states[route.id] = RouteState.PASSED
            else:
                self._states[route.id] = RouteState.FAILED

            self.logger.debug(
                f"Route {route.id} {method} {url.path} -> {status_code} "
                f"({'ok' if success else 'failed'})"
            )
            await invoke_callback_safely(self.on_route_result, route.id, success, status_code)

            if self._complete:
                return

            if not success and route.required:
                self.logger.error(
                    f"Critical route {route.id} failed with {status_code}, rolling back"
                )
                await self._finish_with_rollback()
                return

        if self._all_required_passed():
            await self._finish_verified()

    def _all_required_passed(self) -> bool:
        return all(
            self._states[c.route.id] == RouteState.PASSED
            for c in self._routes
            if c.route.required
        )

    async def _finish_with_rollback(self) -> None:
        self._complete = True
        self.stop()
        await invoke_callback(self.on_rollback, RollbackReason.ROUTE_FAILURE)

    async def _finish_verified(self) -> None:
        self._complete = True
        self.stop()
        self.logger.info("All critical routes passed")
        await invoke_callback(self.on_verified)

    async def _timeout_timer(self) -> None:
        await asyncio.sleep(self.timeout)
        self._timer = None
        if self._complete:
            return

        if any(state == RouteState.FAILED for state in self._states.values()):
            self.logger.error("Route monitoring timed out with failed routes, rolling back")
            await self._finish_with_rollback()
            return

        pending = [rid for rid, state in self._states.items() if state == RouteState.PENDING]
        if pending:
            self.logger.info(f"Routes never called before timeout, assuming safe: {pending}")
        await self._finish_verified()


class RouteMonitorTransport(httpx.AsyncBaseTransport):
    """Transport decorator reporting every response to a RouteMonitor.

    Once the monitor is stopped, requests pass straight through.
    """

    def __init__(self, monitor: RouteMonitor, transport: httpx.AsyncBaseTransport):
        self.monitor = monitor
        self.transport = transport

    async def handle_async_request(self, request: httpx.Request) -> httpx.Response:
        # Transport errors propagate unrecorded
        response = await self.transport.handle_async_request(request)
        if self.monitor.is_active:
            await self.monitor.record(request.method, request.url, response.status_code)
        return response

    async def aclose(self) -> None:
        await self.transport.aclose()
