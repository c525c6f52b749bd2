"""Fail-safe fetch of the app's health configuration."""

import logging
from typing import Callable, Optional

import httpx
from pydantic import ValidationError

from bundlenudge.config import DEFAULT_API_URL
from bundlenudge.models.health import HealthConfig
from bundlenudge.services.telemetry import auth_headers

CONFIG_FETCH_TIMEOUT_SECONDS = 10.0


class HealthConfigFetcher:
    """Fetches critical events and endpoints during agent initialization.

    Never raises: a missing health config must not break the host app.
    """

    def __init__(
        self,
        app_id: str,
        get_access_token: Callable[[], Optional[str]],
        api_url: str = DEFAULT_API_URL,
    ):
        self.logger = logging.getLogger("bundlenudge.health_config")
        self.app_id = app_id
        self.api_url = api_url.rstrip("/")
        self._get_access_token = get_access_token

    @property
    def config_url(self) -> str:
        return f"{self.api_url}/v1/apps/{self.app_id}/health-config"

    async def fetch_config(self) -> HealthConfig:
        """Return the remote health config, or an empty one on any error."""
        try:
            async with httpx.AsyncClient(timeout=CONFIG_FETCH_TIMEOUT_SECONDS) as client:
                response = await client.get(
                    self.config_url, headers=auth_headers(self._get_access_token())
                )
        except httpx.HTTPError as e:
            self.logger.warning(f"Health config fetch failed: {e}, using defaults")
            return HealthConfig()

        if response.status_code >= 300:
            self.logger.warning(
                f"Health config fetch returned {response.status_code}, using defaults"
            )
            return HealthConfig()

        try:
            config = HealthConfig.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            self.logger.warning(f"Invalid health config payload: {e}, using defaults")
            return HealthConfig()

        self.logger.info(
            f"Health config loaded: {len(config.events)} events, "
            f"{len(config.endpoints)} endpoints"
        )
        return config
