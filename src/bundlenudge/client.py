"""BundleNudge agent facade: the public API used by the host application."""

import asyncio
import logging
from dataclasses import dataclass
from typing import Any, Callable, Optional, Sequence

from bundlenudge.config import Settings, get_settings
from bundlenudge.errors import DeviceRegistrationError
from bundlenudge.models.health import CriticalEndpoint, CriticalRoute
from bundlenudge.models.metadata import AppVersionInfo
from bundlenudge.models.release import DownloadProgress, UpdateInfo
from bundlenudge.models.status import InstallMode, RollbackReason, UpdateStatus
from bundlenudge.services.crash_detector import CrashDetector
from bundlenudge.services.health_check import (
    EndpointHealthCheckConfig,
    EndpointHealthCheckResult,
    HealthCheckService,
)
from bundlenudge.services.health_config import HealthConfigFetcher
from bundlenudge.services.health_monitor import HealthMonitor
from bundlenudge.services.host import HostController, NoopHost, ProcessHost
from bundlenudge.services.rollback import RollbackManager
from bundlenudge.services.route_monitor import RouteMonitor
from bundlenudge.services.storage import MetadataStore
from bundlenudge.services.telemetry import TelemetryReporter
from bundlenudge.services.updater import Updater
from bundlenudge.utils.callbacks import invoke_callback_safely


@dataclass
class BundleNudgeCallbacks:
    """Host hooks; each may be a plain function or a coroutine function."""

    on_status_change: Optional[Callable[[UpdateStatus], Any]] = None
    on_download_progress: Optional[Callable[[DownloadProgress], Any]] = None
    on_update_available: Optional[Callable[[UpdateInfo], Any]] = None
    on_error: Optional[Callable[[Exception], Any]] = None
    on_rollback: Optional[Callable[[RollbackReason], Any]] = None
    on_verified: Optional[Callable[[], Any]] = None
    on_route_result: Optional[Callable[[str, bool, int], Any]] = None
    on_endpoint_failed: Optional[Callable[[CriticalEndpoint, int], Any]] = None


class BundleNudge:
    """Singleton agent coordinating one device's update lifecycle."""

    _instance: Optional["BundleNudge"] = None

    def __init__(
        self,
        settings: Settings,
        callbacks: Optional[BundleNudgeCallbacks] = None,
        host: Optional[HostController] = None,
    ):
        self.logger = logging.getLogger("bundlenudge.client")
        self.settings = settings
        self.callbacks = callbacks or BundleNudgeCallbacks()

        if host is None:
            host = ProcessHost(settings.restart_command) if settings.restart_command else NoopHost()
        self.host = host

        self.storage = MetadataStore(settings.metadata_path)
        self.telemetry = TelemetryReporter(
            app_id=settings.app_id,
            get_device_id=self.storage.get_device_id,
            get_access_token=self.storage.get_access_token,
            api_url=settings.api_url,
        )
        self.rollback_manager = RollbackManager(
            storage=self.storage,
            telemetry=self.telemetry,
            host=self.host,
            on_rollback_reported=self._handle_rollback_reported,
        )
        self.crash_detector = CrashDetector(
            storage=self.storage,
            on_rollback=self._rollback_for_crash,
            on_verified=self._handle_verified,
            on_crash_reported=self._handle_crash_reported,
            verification_window=settings.verification_window_seconds,
            crash_threshold=settings.crash_threshold,
            crash_window=settings.crash_window_seconds,
        )
        self.updater = Updater(
            storage=self.storage,
            telemetry=self.telemetry,
            app_id=settings.app_id,
            bundles_dir=settings.bundles_dir,
            api_url=settings.api_url,
            app_version=settings.app_version,
            on_progress=self._handle_download_progress,
        )
        self.health_config_fetcher = HealthConfigFetcher(
            app_id=settings.app_id,
            get_access_token=self.storage.get_access_token,
            api_url=settings.api_url,
        )
        self.health_check = HealthCheckService(
            app_id=settings.app_id,
            get_access_token=self.storage.get_access_token,
            api_url=settings.api_url,
        )
        self.health_monitor: Optional[HealthMonitor] = None
        self.route_monitor: Optional[RouteMonitor] = None

        self._status = UpdateStatus.IDLE
        self._initialized = False
        self._background: set[asyncio.Task] = set()

    @classmethod
    async def initialize(
        cls,
        settings: Optional[Settings] = None,
        callbacks: Optional[BundleNudgeCallbacks] = None,
        host: Optional[HostController] = None,
    ) -> "BundleNudge":
        """Create and start the agent once; later calls return the same instance."""
        if cls._instance is not None:
            return cls._instance
        instance = cls(settings or get_settings(), callbacks, host)
        await instance._init()
        cls._instance = instance
        return instance

    @classmethod
    def is_initialized(cls) -> bool:
        return cls._instance is not None

    @classmethod
    def get_instance(cls) -> "BundleNudge":
        if cls._instance is None:
            raise RuntimeError("BundleNudge not initialized. Call initialize() first.")
        return cls._instance

    async def _init(self) -> None:
        if self._initialized:
            return

        await self.storage.initialize()
        await self._check_app_store_update()

        if not self.storage.get_access_token():
            try:
                await self.updater.register_device()
            except DeviceRegistrationError as e:
                # Registration is retried on the next launch
                self.logger.warning(f"{e}; continuing unregistered")

        metadata = self.storage.get()
        if metadata.pending_update_flag and metadata.pending_version:
            await self.storage.apply_pending_update()

        rolled_back = await self.crash_detector.check_for_crash()

        health_config = await self.health_config_fetcher.fetch_config()
        self.health_monitor = HealthMonitor(
            crash_detector=self.crash_detector,
            events=health_config.events,
            endpoints=health_config.endpoints,
            on_endpoint_failed=self.callbacks.on_endpoint_failed,
        )

        if not rolled_back and await self.crash_detector.start_verification_window():
            await self.health_monitor.start()

        if self.settings.check_on_launch:
            self._spawn(self._background_check())

        self._initialized = True
        self.logger.info(
            f"BundleNudge initialized: app={self.settings.app_id}, "
            f"version={self.storage.get_current_version()}"
        )

    async def _check_app_store_update(self) -> None:
        """Clear bundles when the host app binary changed version."""
        if not self.settings.app_version:
            return

        info = AppVersionInfo(
            app_version=self.settings.app_version,
            build_number=self.settings.build_number or "0",
        )
        recorded = self.storage.get_app_version_info()
        if recorded is not None:
            if (recorded.app_version, recorded.build_number) == (
                info.app_version,
                info.build_number,
            ):
                return
            self.logger.info(
                f"App store update detected ({recorded.app_version} -> {info.app_version}), "
                f"clearing bundles"
            )
            await self.storage.clear_all_bundles()
        await self.storage.set_app_version_info(info)

    async def check_for_update(self) -> Optional[UpdateInfo]:
        """Check for updates, returning the release if one is available."""
        await self._set_status(UpdateStatus.CHECKING)
        try:
            result = await self.updater.check_for_update()
        except Exception as e:
            await self._set_status(UpdateStatus.ERROR)
            await invoke_callback_safely(self.callbacks.on_error, e)
            raise

        if result.update_available and result.update:
            await self._set_status(UpdateStatus.UPDATE_AVAILABLE)
            await invoke_callback_safely(self.callbacks.on_update_available, result.update)
            return result.update

        await self._set_status(UpdateStatus.UP_TO_DATE)
        return None

    async def download_and_install(self, update: UpdateInfo) -> None:
        """Download and stage an update, restarting now if install_mode is immediate."""
        await self._set_status(UpdateStatus.DOWNLOADING)
        try:
            await self.updater.download_and_install(update)
        except Exception as e:
            await self._set_status(UpdateStatus.ERROR)
            await invoke_callback_safely(self.callbacks.on_error, e)
            raise

        await self._set_status(UpdateStatus.INSTALLING)
        if self.settings.install_mode == InstallMode.IMMEDIATE:
            await self.restart_app()
        else:
            await self._set_status(UpdateStatus.IDLE)

    async def sync(self) -> None:
        """Check for an update and install it if available."""
        update = await self.check_for_update()
        if update:
            await self.download_and_install(update)

    async def notify_app_ready(self) -> None:
        """Call once the host's main UI or service loop is up."""
        await self.crash_detector.notify_app_ready()
        await self.host.notify_app_ready()

    async def report_event(self, name: str) -> None:
        if self.health_monitor is not None:
            await self.health_monitor.report_event(name)

    async def report_endpoint(self, method: str, url: str, status: int) -> None:
        if self.health_monitor is not None:
            await self.health_monitor.report_endpoint(method, url, status)

    async def verify_endpoint_health(
        self,
        check_config: EndpointHealthCheckConfig,
        release_id: Optional[str] = None,
        rollback_on_failure: bool = False,
    ) -> EndpointHealthCheckResult:
        """Actively probe endpoints after an update.

        The result is reported to the server when release_id is given. With
        rollback_on_failure, a failed check rolls back locally without
        waiting for the server.
        """
        result = await self.health_check.verify_health(check_config)
        if release_id:
            self.health_check.report_to_server(release_id, self.storage.get_device_id(), result)

        if not result.passed and rollback_on_failure and self.can_rollback():
            await self._rollback(RollbackReason.ROUTE_FAILURE)
        return result

    def create_route_monitor(
        self, routes: Optional[Sequence[CriticalRoute]] = None
    ) -> Optional[RouteMonitor]:
        """Build a route monitor for the running update.

        Returns None when the tier does not include route monitoring, there
        is nothing to roll back to, or no routes are configured. The host
        wraps its transport with monitor.wrap() and calls monitor.start().
        """
        if not RouteMonitor.is_enabled_for(self.settings.tier):
            self.logger.debug(f"Route monitoring unavailable on tier {self.settings.tier.value}")
            return None
        if not self.rollback_manager.can_rollback():
            return None

        routes = list(routes) if routes is not None else self.storage.get_critical_routes()
        if not routes:
            return None

        if self.route_monitor is not None:
            self.route_monitor.stop()
        self.route_monitor = RouteMonitor(
            routes=routes,
            on_rollback=self._rollback_for_route,
            on_verified=self._handle_routes_verified,
            on_route_result=self._handle_route_result,
            timeout=self.settings.route_timeout_seconds,
        )
        return self.route_monitor

    async def restart_app(self) -> None:
        await self.host.restart_app(True)

    def get_status(self) -> UpdateStatus:
        return self._status

    def get_current_version(self) -> Optional[str]:
        return self.storage.get_current_version()

    def can_rollback(self) -> bool:
        return self.rollback_manager.can_rollback()

    async def rollback(self, reason: RollbackReason = RollbackReason.MANUAL) -> str:
        """Trigger a rollback (manual or server-triggered)."""
        return await self._rollback(reason)

    async def shutdown(self) -> None:
        """Clean host shutdown: stop timers, drain telemetry, release the singleton."""
        if self.route_monitor is not None:
            self.route_monitor.stop()
        await self.crash_detector.end_session()
        for task in list(self._background):
            task.cancel()
        await self.telemetry.flush()
        if BundleNudge._instance is self:
            BundleNudge._instance = None
        self.logger.info("BundleNudge shut down")

    async def _rollback(self, reason: RollbackReason) -> str:
        """Close every open verification path, then roll back."""
        if self.rollback_manager.can_rollback():
            await self.crash_detector.abort_verification()
            if self.health_monitor is not None:
                self.health_monitor.stop()
            if self.route_monitor is not None:
                self.route_monitor.stop()
        return await self.rollback_manager.rollback(reason)

    async def _rollback_for_crash(self) -> None:
        await self._rollback(RollbackReason.CRASH_DETECTED)

    async def _rollback_for_route(self, reason: RollbackReason) -> None:
        if not self.rollback_manager.can_rollback():
            self.logger.error("Route failure detected but no previous version to restore")
            return
        await self._rollback(reason)

    async def _handle_verified(self) -> None:
        await self.rollback_manager.mark_update_verified()
        await invoke_callback_safely(self.callbacks.on_verified)

    def _handle_crash_reported(self, crash_count: int) -> None:
        self.telemetry.dispatch(
            "crash_detected",
            {"crashCount": crash_count, "version": self.storage.get_current_version()},
        )

    async def _handle_rollback_reported(self, reason: RollbackReason, from_version: str) -> None:
        await invoke_callback_safely(self.callbacks.on_rollback, reason)

    async def _handle_route_result(self, route_id: str, success: bool, status: int) -> None:
        self.telemetry.dispatch(
            "route_result", {"routeId": route_id, "success": success, "statusCode": status}
        )
        await invoke_callback_safely(self.callbacks.on_route_result, route_id, success, status)

    async def _handle_routes_verified(self) -> None:
        self.logger.info(f"Critical routes verified for {self.storage.get_current_version()}")
        self.telemetry.dispatch("routes_verified", {"version": self.storage.get_current_version()})

    def _handle_download_progress(self, progress: DownloadProgress) -> None:
        callback = self.callbacks.on_download_progress
        if callback is not None:
            self._spawn(invoke_callback_safely(callback, progress))

    async def _set_status(self, status: UpdateStatus) -> None:
        self._status = status
        await invoke_callback_safely(self.callbacks.on_status_change, status)

    async def _background_check(self) -> None:
        try:
            await self.check_for_update()
        except Exception as e:
            self.logger.warning(f"Background update check failed: {e}")

    def _spawn(self, coro) -> asyncio.Task:
        task = asyncio.create_task(coro)
        self._background.add(task)
        task.add_done_callback(self._background.discard)
        return task
