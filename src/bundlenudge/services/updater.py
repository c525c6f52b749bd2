"""Update check, bundle download and installation."""

import asyncio
import logging
import platform
import time
from pathlib import Path
from typing import Callable, Optional

import aiofiles
import httpx
from pydantic import ValidationError

from bundlenudge.config import DEFAULT_API_URL
from bundlenudge.errors import (
    BundleDownloadError,
    BundleHashMismatchError,
    DeviceRegistrationError,
    UpdateCheckError,
)
from bundlenudge.models.release import (
    DeviceRegistration,
    DownloadProgress,
    UpdateCheckResponse,
    UpdateCheckResult,
    UpdateInfo,
)
from bundlenudge.services.storage import MetadataStore
from bundlenudge.services.telemetry import TelemetryReporter, auth_headers
from bundlenudge.utils.verification import compute_sha256

MAX_ATTEMPTS = 3
BASE_DELAY_SECONDS = 1.0


class Updater:
    """Checks for releases and installs downloaded bundles as pending updates."""

    def __init__(
        self,
        storage: MetadataStore,
        telemetry: TelemetryReporter,
        app_id: str,
        bundles_dir: Path = Path("./data/bundles"),
        api_url: str = DEFAULT_API_URL,
        app_version: Optional[str] = None,
        on_progress: Optional[Callable[[DownloadProgress], None]] = None,
    ):
        self.logger = logging.getLogger("bundlenudge.updater")
        self.storage = storage
        self.telemetry = telemetry
        self.app_id = app_id
        self.bundles_dir = Path(bundles_dir)
        self.api_url = api_url.rstrip("/")
        self.app_version = app_version or "1.0.0"
        self.on_progress = on_progress
        self.chunk_size = 64 * 1024  # 64KB chunks for progress granularity

    async def register_device(self) -> str:
        """Register the device and store its access token.

        Raises:
            DeviceRegistrationError: If the API rejects the registration
        """
        body = {
            "appId": self.app_id,
            "deviceId": self.storage.get_device_id(),
            "platform": platform.system().lower(),
            "appVersion": self.app_version,
        }
        try:
            async with httpx.AsyncClient(timeout=10.0) as client:
                response = await client.post(
                    f"{self.api_url}/v1/devices/register",
                    json=body,
                    headers=auth_headers(None),
                )
        except httpx.HTTPError as e:
            raise DeviceRegistrationError(f"Device registration failed: {e}") from e

        if response.status_code >= 400:
            raise DeviceRegistrationError(
                f"Device registration failed: {response.status_code}"
            )

        try:
            registration = DeviceRegistration.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise DeviceRegistrationError(f"Invalid registration response: {e}") from e

        await self.storage.set_access_token(registration.access_token)
        self.logger.info(f"Device registered: {self.storage.get_device_id()}")
        return registration.access_token

    async def check_for_update(self) -> UpdateCheckResult:
        """Ask the API whether a newer bundle is available.

        Raises:
            UpdateCheckError: On a non-2xx response, invalid body, or after
                all retries failed
        """
        body = {
            "appId": self.app_id,
            "deviceId": self.storage.get_device_id(),
            "platform": platform.system().lower(),
            "appVersion": self.app_version,
            "currentBundleVersion": self.storage.get_current_version(),
        }

        response = await self._post_with_retry(f"{self.api_url}/v1/updates/check", body)
        if response.status_code >= 400:
            raise UpdateCheckError(f"Update check failed: {response.status_code}")

        try:
            data = UpdateCheckResponse.model_validate(response.json())
        except (ValueError, ValidationError) as e:
            raise UpdateCheckError(f"Invalid update check response: {e}") from e

        await self.storage.update(last_check_time=time.time())

        if data.update_available and data.release:
            self.logger.info(f"Update available: {data.release.version}")
            return UpdateCheckResult(update_available=True, update=data.release)

        if data.requires_app_store_update:
            self.logger.info("Update requires an app store release")
            return UpdateCheckResult(
                update_available=False,
                requires_app_store_update=True,
                app_store_message=data.app_store_message,
            )

        self.logger.debug("No update available")
        return UpdateCheckResult(update_available=False)

    async def _post_with_retry(self, url: str, body: dict) -> httpx.Response:
        """POST with exponential backoff on transport errors and 5xx."""
        headers = auth_headers(self.storage.get_access_token())
        last_error: Optional[Exception] = None

        for attempt in range(MAX_ATTEMPTS):
            try:
                async with httpx.AsyncClient(timeout=30.0) as client:
                    response = await client.post(url, json=body, headers=headers)
                if response.status_code < 500:
                    return response
                last_error = UpdateCheckError(f"Update check failed: {response.status_code}")
            except httpx.HTTPError as e:
                last_error = e

            if attempt < MAX_ATTEMPTS - 1:
                delay = BASE_DELAY_SECONDS * (2 ** attempt)
                self.logger.warning(
                    f"Update check attempt {attempt + 1}/{MAX_ATTEMPTS} failed: "
                    f"{last_error}. Retrying in {delay}s"
                )
                await asyncio.sleep(delay)

        raise UpdateCheckError(f"Update check failed after {MAX_ATTEMPTS} attempts: {last_error}")

    async def download_and_install(self, update: UpdateInfo) -> Path:
        """Download, verify and stage a bundle for the next launch.

        Returns:
            Path to the verified bundle file

        Raises:
            BundleDownloadError: If the download fails
            BundleHashMismatchError: If the SHA-256 does not match
        """
        target_path = self.bundles_dir / f"{update.version}.bundle"
        self.logger.info(
            f"Starting download: version={update.version}, url={update.bundle_url}, "
            f"size={update.bundle_size} bytes"
        )

        try:
            await self._download(update, target_path)
        except httpx.HTTPError as e:
            target_path.unlink(missing_ok=True)
            self.logger.error(f"Download failed: {e}", exc_info=True)
            raise BundleDownloadError(f"DOWNLOAD_FAILED: {e}") from e

        actual_hash = compute_sha256(target_path)
        if actual_hash != update.bundle_hash.lower():
            target_path.unlink(missing_ok=True)  # Delete corrupted file
            self.logger.error(f"Bundle hash mismatch for {update.version}")
            raise BundleHashMismatchError(update.bundle_hash.lower(), actual_hash)

        await self.storage.set_bundle_hash(update.version, actual_hash)
        await self.storage.set_pending_update(
            update.version, actual_hash, update.critical_routes
        )

        self.telemetry.dispatch(
            "update_downloaded",
            {"releaseId": update.release_id, "bundleVersion": update.version},
        )
        self.logger.info(f"Bundle {update.version} verified and pending install")
        return target_path

    async def _download(self, update: UpdateInfo, target_path: Path) -> None:
        """Stream the bundle to disk, reporting progress every 5%."""
        self.bundles_dir.mkdir(parents=True, exist_ok=True)

        async with httpx.AsyncClient(timeout=30.0) as client:
            async with client.stream("GET", update.bundle_url) as response:
                response.raise_for_status()

                total = int(response.headers.get("content-length") or update.bundle_size or 0)
                bytes_downloaded = 0
                last_progress = -5

                async with aiofiles.open(target_path, "wb") as f:
                    async for chunk in response.aiter_bytes(chunk_size=self.chunk_size):
                        await f.write(chunk)
                        bytes_downloaded += len(chunk)

                        if total <= 0 or self.on_progress is None:
                            continue
                        percentage = min(int(bytes_downloaded / total * 100), 100)
                        if percentage >= last_progress + 5:
                            last_progress = percentage
                            self.on_progress(
                                DownloadProgress(
                                    bytes_downloaded=bytes_downloaded,
                                    total_bytes=total,
                                    percentage=percentage,
                                )
                            )

        self.logger.info(f"Downloaded {bytes_downloaded} bytes")

    def bundle_path(self, version: str) -> Path:
        return self.bundles_dir / f"{version}.bundle"
