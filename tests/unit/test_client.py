"""Tests for the BundleNudge facade wiring all components together."""

import hashlib
import json
import time
import pytest
from unittest.mock import AsyncMock, MagicMock

import httpx

from bundlenudge.client import BundleNudge, BundleNudgeCallbacks
from bundlenudge.config import Settings
from bundlenudge.errors import RollbackUnavailableError, UpdateCheckError
from bundlenudge.models.health import CriticalRoute
from bundlenudge.models.metadata import AppVersionInfo
from bundlenudge.models.status import (
    InstallMode,
    RollbackReason,
    Tier,
    UpdateStatus,
    VerificationPhase,
)
from bundlenudge.services.health_check import EndpointConfig, EndpointHealthCheckConfig
from bundlenudge.services.storage import MetadataStore

API_URL = "http://test-api"
BUNDLE_BYTES = b"bundle-v2" * 1000
BUNDLE_HASH = hashlib.sha256(BUNDLE_BYTES).hexdigest()


class FakeApi:
    """Minimal BundleNudge API served through httpx.MockTransport."""

    def __init__(self, events=(), update=None, check_status=200):
        self.events = list(events)
        self.update = update
        self.check_status = check_status
        self.telemetry = []
        self.registrations = 0

    def __call__(self, request: httpx.Request) -> httpx.Response:
        path = request.url.path
        if path == "/v1/devices/register":
            self.registrations += 1
            return httpx.Response(200, json={"accessToken": "tok-new"})
        if path == "/v1/apps/app_123/health-config":
            return httpx.Response(
                200, json={"events": [{"name": name} for name in self.events], "endpoints": []}
            )
        if path == "/v1/telemetry":
            self.telemetry.append(request)
            return httpx.Response(200)
        if path == "/v1/updates/check":
            if self.check_status != 200:
                return httpx.Response(self.check_status)
            if self.update:
                return httpx.Response(200, json={"updateAvailable": True, "release": self.update})
            return httpx.Response(200, json={"updateAvailable": False})
        if path == "/bundles/2.0.0.js":
            return httpx.Response(200, content=BUNDLE_BYTES)
        if path == "/health":
            return httpx.Response(503)
        return httpx.Response(404)


def _release():
    return {
        "version": "2.0.0",
        "bundleUrl": "https://cdn.example.com/bundles/2.0.0.js",
        "bundleSize": len(BUNDLE_BYTES),
        "bundleHash": BUNDLE_HASH,
        "releaseId": "rel_42",
        "criticalRoutes": [{"id": "orders", "method": "GET", "url": "/api/orders"}],
    }


@pytest.fixture
def settings(tmp_path):
    return Settings(
        app_id="app_123",
        api_url=API_URL,
        data_dir=tmp_path / "data",
        check_on_launch=False,
        log_file=str(tmp_path / "logs" / "agent.log"),
    )


@pytest.fixture
def callbacks():
    return BundleNudgeCallbacks(
        on_status_change=MagicMock(),
        on_update_available=MagicMock(),
        on_error=MagicMock(),
        on_rollback=AsyncMock(),
        on_verified=MagicMock(),
    )


async def _seed(settings, **changes):
    """Write metadata as a previous session would have left it."""
    store = MetadataStore(settings.metadata_path)
    await store.initialize()
    await store.update(access_token="tok", **changes)
    return store


@pytest.mark.unit
class TestInitialize:
    """Launch sequence."""

    @pytest.mark.asyncio
    async def test_first_launch_registers_device(self, settings, mock_host, patch_async_client):
        api = FakeApi()
        patch_async_client(api)

        sdk = await BundleNudge.initialize(settings, host=mock_host)

        assert BundleNudge.get_instance() is sdk
        assert await BundleNudge.initialize(settings) is sdk
        assert api.registrations == 1
        assert sdk.storage.get_access_token() == "tok-new"
        assert sdk.get_status() == UpdateStatus.IDLE
        assert sdk.get_current_version() is None
        assert sdk.can_rollback() is False
        assert sdk.crash_detector.phase == VerificationPhase.IDLE
        await sdk.shutdown()

    def test_get_instance_before_initialize(self):
        with pytest.raises(RuntimeError, match="not initialized"):
            BundleNudge.get_instance()

    @pytest.mark.asyncio
    async def test_registration_failure_is_not_fatal(self, settings, mock_host, patch_async_client):
        patch_async_client(lambda request: httpx.Response(500))

        sdk = await BundleNudge.initialize(settings, host=mock_host)

        assert sdk.storage.get_access_token() is None
        assert sdk.health_monitor is not None
        await sdk.shutdown()

    @pytest.mark.asyncio
    async def test_pending_update_applied_and_verified(
        self, settings, callbacks, mock_host, patch_async_client
    ):
        """A pending bundle is applied and committed only after both signals."""
        patch_async_client(FakeApi(events=["app_loaded"]))
        await _seed(
            settings,
            current_version="1.0.0",
            pending_version="2.0.0",
            pending_update_flag=True,
            bundle_hashes={"1.0.0": "1" * 64, "2.0.0": BUNDLE_HASH},
        )

        sdk = await BundleNudge.initialize(settings, callbacks, host=mock_host)

        metadata = sdk.storage.get()
        assert metadata.current_version == "2.0.0"
        assert metadata.previous_version == "1.0.0"
        assert sdk.crash_detector.phase == VerificationPhase.WAITING_BOTH

        await sdk.report_event("app_loaded")
        assert sdk.crash_detector.phase == VerificationPhase.WAITING_READY
        callbacks.on_verified.assert_not_called()

        await sdk.notify_app_ready()

        assert sdk.crash_detector.phase == VerificationPhase.VERIFIED
        assert sdk.can_rollback() is False
        callbacks.on_verified.assert_called_once()
        mock_host.notify_app_ready.assert_awaited_once()
        await sdk.shutdown()

    @pytest.mark.asyncio
    async def test_crash_loop_rolls_back(self, settings, callbacks, mock_host, patch_async_client):
        """The third crash inside the window restores the previous bundle."""
        api = FakeApi(events=["app_loaded"])
        patch_async_client(api)
        await _seed(
            settings,
            current_version="2.0.0",
            previous_version="1.0.0",
            bundle_hashes={"1.0.0": "1" * 64, "2.0.0": BUNDLE_HASH},
            crash_count=2,
            last_crash_time=time.time(),
            verification_state={"app_ready": False, "health_passed": False, "started_at": time.time()},
        )

        sdk = await BundleNudge.initialize(settings, callbacks, host=mock_host)
        await sdk.telemetry.flush()

        metadata = sdk.storage.get()
        assert metadata.current_version == "1.0.0"
        assert metadata.previous_version is None
        assert metadata.crash_count == 0
        assert sdk.crash_detector.phase == VerificationPhase.CRASHED
        callbacks.on_rollback.assert_awaited_once_with(RollbackReason.CRASH_DETECTED)
        mock_host.restart_app.assert_awaited_once_with(False)
        events = [json.loads(request.content) for request in api.telemetry]
        assert sorted(event["eventType"] for event in events) == [
            "crash_detected",
            "rollback_triggered",
        ]
        crash = next(event for event in events if event["eventType"] == "crash_detected")
        assert crash["metadata"] == {"crashCount": 3, "version": "2.0.0"}
        await sdk.shutdown()

    @pytest.mark.asyncio
    async def test_crash_rollback_restart_failure_still_starts(
        self, settings, callbacks, mock_host, patch_async_client
    ):
        """The agent comes up on the restored version when the restart fails."""
        patch_async_client(FakeApi())
        mock_host.restart_app.side_effect = RuntimeError("RESTART_FAILED: exit code 1")
        await _seed(
            settings,
            current_version="2.0.0",
            previous_version="1.0.0",
            crash_count=2,
            last_crash_time=time.time(),
            verification_state={"app_ready": False, "health_passed": False, "started_at": time.time()},
        )

        sdk = await BundleNudge.initialize(settings, callbacks, host=mock_host)

        assert BundleNudge.is_initialized()
        assert sdk.get_current_version() == "1.0.0"
        assert sdk.crash_detector.phase == VerificationPhase.CRASHED
        callbacks.on_rollback.assert_awaited_once_with(RollbackReason.CRASH_DETECTED)
        await sdk.shutdown()

    @pytest.mark.asyncio
    async def test_app_store_update_clears_bundles(self, settings, mock_host, patch_async_client):
        patch_async_client(FakeApi())
        await _seed(
            settings,
            current_version="2.0.0",
            previous_version="1.0.0",
            bundle_hashes={"1.0.0": "1" * 64},
            app_version_info=AppVersionInfo(app_version="3.0.0", build_number="100").model_dump(),
        )
        settings.app_version = "3.1.0"
        settings.build_number = "101"

        sdk = await BundleNudge.initialize(settings, host=mock_host)

        metadata = sdk.storage.get()
        assert metadata.current_version is None
        assert metadata.previous_version is None
        assert metadata.bundle_hashes == {}
        assert metadata.app_version_info.app_version == "3.1.0"
        assert sdk.crash_detector.phase == VerificationPhase.IDLE
        await sdk.shutdown()


@pytest.mark.unit
class TestUpdateFlow:
    """check_for_update / download_and_install / sync."""

    @pytest.mark.asyncio
    async def test_sync_next_launch(self, settings, callbacks, mock_host, patch_async_client):
        patch_async_client(FakeApi(update=_release()))
        await _seed(settings, current_version="1.0.0")
        sdk = await BundleNudge.initialize(settings, callbacks, host=mock_host)

        await sdk.sync()

        statuses = [c.args[0] for c in callbacks.on_status_change.call_args_list]
        assert statuses == [
            UpdateStatus.CHECKING,
            UpdateStatus.UPDATE_AVAILABLE,
            UpdateStatus.DOWNLOADING,
            UpdateStatus.INSTALLING,
            UpdateStatus.IDLE,
        ]
        callbacks.on_update_available.assert_called_once()
        assert sdk.storage.get().pending_version == "2.0.0"
        assert sdk.get_current_version() == "1.0.0"
        mock_host.restart_app.assert_not_called()
        await sdk.shutdown()

    @pytest.mark.asyncio
    async def test_release_routes_monitored_after_relaunch(
        self, settings, mock_host, patch_async_client
    ):
        """Routes shipped with a release are available on the launch that runs it."""
        patch_async_client(FakeApi(update=_release()))
        settings.tier = Tier.TEAM
        await _seed(settings, current_version="1.0.0")
        sdk = await BundleNudge.initialize(settings, host=mock_host)
        await sdk.sync()
        await sdk.shutdown()

        relaunched = await BundleNudge.initialize(settings, host=mock_host)
        monitor = relaunched.create_route_monitor()

        assert relaunched.get_current_version() == "2.0.0"
        assert relaunched.can_rollback() is True
        assert monitor is not None
        assert list(monitor.get_route_states()) == ["orders"]
        await relaunched.shutdown()

    @pytest.mark.asyncio
    async def test_immediate_install_restarts(self, settings, mock_host, patch_async_client):
        patch_async_client(FakeApi(update=_release()))
        settings.install_mode = InstallMode.IMMEDIATE
        sdk = await BundleNudge.initialize(settings, host=mock_host)

        await sdk.sync()

        mock_host.restart_app.assert_awaited_once_with(True)
        await sdk.shutdown()

    @pytest.mark.asyncio
    async def test_up_to_date(self, settings, callbacks, mock_host, patch_async_client):
        patch_async_client(FakeApi())
        sdk = await BundleNudge.initialize(settings, callbacks, host=mock_host)

        assert await sdk.check_for_update() is None
        assert sdk.get_status() == UpdateStatus.UP_TO_DATE
        await sdk.shutdown()

    @pytest.mark.asyncio
    async def test_check_error_reports(self, settings, callbacks, mock_host, patch_async_client):
        patch_async_client(FakeApi(check_status=403))
        sdk = await BundleNudge.initialize(settings, callbacks, host=mock_host)

        with pytest.raises(UpdateCheckError):
            await sdk.check_for_update()

        assert sdk.get_status() == UpdateStatus.ERROR
        callbacks.on_error.assert_called_once()
        await sdk.shutdown()


@pytest.mark.unit
class TestRollbackAndMonitoring:
    """Manual rollback, route monitoring and endpoint health checks."""

    @pytest.mark.asyncio
    async def test_manual_rollback_without_previous(self, settings, mock_host, patch_async_client):
        patch_async_client(FakeApi())
        sdk = await BundleNudge.initialize(settings, host=mock_host)

        with pytest.raises(RollbackUnavailableError):
            await sdk.rollback()
        await sdk.shutdown()

    @pytest.mark.asyncio
    async def test_route_monitor_gated_by_tier(self, settings, mock_host, patch_async_client):
        patch_async_client(FakeApi())
        await _seed(settings, current_version="2.0.0", previous_version="1.0.0")
        sdk = await BundleNudge.initialize(settings, host=mock_host)

        assert sdk.create_route_monitor([CriticalRoute(id="A", url="/api/a")]) is None
        await sdk.shutdown()

    @pytest.mark.asyncio
    async def test_route_monitor_needs_routes(self, settings, mock_host, patch_async_client):
        patch_async_client(FakeApi())
        settings.tier = Tier.TEAM
        await _seed(settings, current_version="2.0.0", previous_version="1.0.0")
        sdk = await BundleNudge.initialize(settings, host=mock_host)

        assert sdk.create_route_monitor() is None
        await sdk.shutdown()

    @pytest.mark.asyncio
    async def test_route_failure_rolls_back(
        self, settings, callbacks, mock_host, patch_async_client
    ):
        patch_async_client(FakeApi())
        settings.tier = Tier.ENTERPRISE
        await _seed(settings, current_version="2.0.0", previous_version="1.0.0")
        sdk = await BundleNudge.initialize(settings, callbacks, host=mock_host)

        monitor = sdk.create_route_monitor([CriticalRoute(id="A", method="GET", url="/api/a")])
        monitor.start()
        transport = monitor.wrap(httpx.MockTransport(lambda request: httpx.Response(500)))
        await transport.handle_async_request(httpx.Request("GET", "https://app.example.com/api/a"))

        assert sdk.get_current_version() == "1.0.0"
        assert sdk.can_rollback() is False
        callbacks.on_rollback.assert_awaited_once_with(RollbackReason.ROUTE_FAILURE)
        mock_host.restart_app.assert_awaited_once_with(False)
        await sdk.shutdown()

    @pytest.mark.asyncio
    async def test_signals_after_route_rollback_do_not_verify(
        self, settings, callbacks, mock_host, patch_async_client
    ):
        """After a route rollback, app-ready plus the last event never verify."""
        patch_async_client(FakeApi(events=["app_loaded"]))
        settings.tier = Tier.TEAM
        await _seed(settings, current_version="2.0.0", previous_version="1.0.0")
        sdk = await BundleNudge.initialize(settings, callbacks, host=mock_host)
        assert sdk.crash_detector.phase == VerificationPhase.WAITING_BOTH

        monitor = sdk.create_route_monitor([CriticalRoute(id="A", method="GET", url="/api/a")])
        monitor.start()
        transport = monitor.wrap(httpx.MockTransport(lambda request: httpx.Response(500)))
        await transport.handle_async_request(httpx.Request("GET", "https://app.example.com/api/a"))
        callbacks.on_rollback.assert_awaited_once_with(RollbackReason.ROUTE_FAILURE)

        await sdk.notify_app_ready()
        await sdk.report_event("app_loaded")

        assert sdk.crash_detector.phase == VerificationPhase.CRASHED
        assert sdk.health_monitor.is_fully_verified() is False
        assert sdk.storage.get_verification_state() is None
        assert sdk.get_current_version() == "1.0.0"
        callbacks.on_verified.assert_not_called()
        await sdk.shutdown()

    @pytest.mark.asyncio
    async def test_manual_rollback_closes_verification_window(
        self, settings, callbacks, mock_host, patch_async_client
    ):
        patch_async_client(FakeApi())
        await _seed(settings, current_version="2.0.0", previous_version="1.0.0")
        sdk = await BundleNudge.initialize(settings, callbacks, host=mock_host)
        assert sdk.crash_detector.phase == VerificationPhase.WAITING_READY

        assert await sdk.rollback() == "1.0.0"
        await sdk.notify_app_ready()

        assert sdk.crash_detector.phase == VerificationPhase.CRASHED
        callbacks.on_verified.assert_not_called()
        await sdk.shutdown()

        mock_host.restart_app.assert_awaited_once_with(False)
        await sdk.shutdown()

    @pytest.mark.asyncio
    async def test_endpoint_health_failure_rolls_back(
        self, settings, mock_host, patch_async_client
    ):
        patch_async_client(FakeApi())
        await _seed(settings, current_version="2.0.0", previous_version="1.0.0")
        sdk = await BundleNudge.initialize(settings, host=mock_host)
        check_config = EndpointHealthCheckConfig(
            endpoints=[EndpointConfig(id="h", name="health", url="https://app.example.com/health")],
            retry_count=0,
        )

        result = await sdk.verify_endpoint_health(check_config, rollback_on_failure=True)

        assert result.passed is False
        assert sdk.get_current_version() == "1.0.0"
        await sdk.shutdown()

    @pytest.mark.asyncio
    async def test_shutdown_ends_session(self, settings, mock_host, patch_async_client):
        """A clean shutdown closes the window so the next launch sees no crash."""
        patch_async_client(FakeApi(events=["app_loaded"]))
        await _seed(settings, current_version="2.0.0", previous_version="1.0.0")
        sdk = await BundleNudge.initialize(settings, host=mock_host)
        assert sdk.crash_detector.is_verifying

        await sdk.shutdown()

        assert not BundleNudge.is_initialized()
        assert sdk.storage.get_verification_state() is None
