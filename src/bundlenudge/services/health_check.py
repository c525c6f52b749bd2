"""Active endpoint health checks run after a bundle update."""

import asyncio
import logging
import time
from datetime import datetime, timezone
from typing import Callable, Literal, Optional

import httpx
from pydantic import BaseModel, Field

from bundlenudge.config import DEFAULT_API_URL
from bundlenudge.models.base import CamelModel
from bundlenudge.services.telemetry import auth_headers

DEFAULT_TIMEOUT_SECONDS = 10.0
DEFAULT_RETRY_COUNT = 3
DEFAULT_RETRY_DELAY_SECONDS = 5.0


class EndpointConfig(CamelModel):
    """An endpoint probed by the agent itself."""

    id: str
    name: str
    url: str = Field(..., pattern=r"^https?://.+")
    method: Literal["GET", "POST"] = "GET"
    headers: dict[str, str] = Field(default_factory=dict)
    body: Optional[str] = None
    expected_status: int = 200
    timeout: float = Field(default=DEFAULT_TIMEOUT_SECONDS, gt=0)


class EndpointHealthCheckConfig(BaseModel):
    enabled: bool = True
    endpoints: list[EndpointConfig] = Field(default_factory=list)
    retry_count: int = Field(default=DEFAULT_RETRY_COUNT, ge=0)
    retry_delay: float = Field(default=DEFAULT_RETRY_DELAY_SECONDS, ge=0)


class EndpointResult(CamelModel):
    endpoint_id: str
    status: Literal["pass", "fail", "timeout", "error"]
    response_status: Optional[int] = None
    response_time_ms: int
    error_message: Optional[str] = None
    retry_count: int = 0


class EndpointHealthCheckResult(CamelModel):
    passed: bool
    results: list[EndpointResult] = Field(default_factory=list)
    duration_ms: int = 0


class HealthCheckService:
    """Probes endpoints with retries and reports the outcome to the API."""

    def __init__(
        self,
        app_id: str,
        get_access_token: Callable[[], Optional[str]],
        api_url: str = DEFAULT_API_URL,
    ):
        self.logger = logging.getLogger("bundlenudge.health_check")
        self.app_id = app_id
        self.api_url = api_url.rstrip("/")
        self._get_access_token = get_access_token
        self._pending: set[asyncio.Task] = set()

    async def verify_health(
        self, check_config: EndpointHealthCheckConfig
    ) -> EndpointHealthCheckResult:
        """Probe every endpoint sequentially; passed only if all pass."""
        if not check_config.enabled or not check_config.endpoints:
            return EndpointHealthCheckResult(passed=True)

        start = time.monotonic()
        results = []
        for endpoint in check_config.endpoints:
            results.append(
                await self._check_with_retries(
                    endpoint, check_config.retry_count, check_config.retry_delay
                )
            )

        passed = all(r.status == "pass" for r in results)
        duration_ms = int((time.monotonic() - start) * 1000)
        log = self.logger.info if passed else self.logger.warning
        log(f"Endpoint health check {'passed' if passed else 'failed'} in {duration_ms}ms")
        return EndpointHealthCheckResult(passed=passed, results=results, duration_ms=duration_ms)

    async def _check_with_retries(
        self, endpoint: EndpointConfig, max_retries: int, retry_delay: float
    ) -> EndpointResult:
        result = await self._check_endpoint(endpoint)
        for attempt in range(1, max_retries + 1):
            if result.status == "pass":
                break
            self.logger.debug(
                f"Endpoint {endpoint.id} {result.status}, retry {attempt}/{max_retries}"
            )
            await asyncio.sleep(retry_delay)
            result = await self._check_endpoint(endpoint)
            result.retry_count = attempt
        return result

    async def _check_endpoint(self, endpoint: EndpointConfig) -> EndpointResult:
        start = time.monotonic()
        try:
            async with httpx.AsyncClient(timeout=endpoint.timeout) as client:
                response = await client.request(
                    endpoint.method,
                    endpoint.url,
                    headers=endpoint.headers,
                    content=endpoint.body if endpoint.method == "POST" else None,
                )
        except httpx.TimeoutException:
            return EndpointResult(
                endpoint_id=endpoint.id,
                status="timeout",
                response_time_ms=self._elapsed_ms(start),
                error_message=f"Timeout after {endpoint.timeout}s",
            )
        except httpx.HTTPError as e:
            return EndpointResult(
                endpoint_id=endpoint.id,
                status="error",
                response_time_ms=self._elapsed_ms(start),
                error_message=str(e) or type(e).__name__,
            )

        if response.status_code == endpoint.expected_status:
            return EndpointResult(
                endpoint_id=endpoint.id,
                status="pass",
                response_status=response.status_code,
                response_time_ms=self._elapsed_ms(start),
            )
        return EndpointResult(
            endpoint_id=endpoint.id,
            status="fail",
            response_status=response.status_code,
            response_time_ms=self._elapsed_ms(start),
            error_message=f"Expected {endpoint.expected_status}, got {response.status_code}",
        )

    def report_to_server(
        self, release_id: str, device_id: str, result: EndpointHealthCheckResult
    ) -> asyncio.Task:
        """Fire-and-forget report to POST /v1/health/endpoint-check."""
        task = asyncio.create_task(self._send_report(release_id, device_id, result))
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _send_report(
        self, release_id: str, device_id: str, result: EndpointHealthCheckResult
    ) -> None:
        body = {
            "appId": self.app_id,
            "releaseId": release_id,
            "deviceId": device_id,
            **result.model_dump(mode="json", by_alias=True),
            "timestamp": datetime.now(timezone.utc).isoformat(),
        }
        try:
            async with httpx.AsyncClient(timeout=5.0) as client:
                await client.post(
                    f"{self.api_url}/v1/health/endpoint-check",
                    json=body,
                    headers=auth_headers(self._get_access_token()),
                )
        except httpx.HTTPError as e:
            self.logger.warning(f"Failed to report endpoint health check: {e}")

    @staticmethod
    def _elapsed_ms(start: float) -> int:
        return int((time.monotonic() - start) * 1000)
