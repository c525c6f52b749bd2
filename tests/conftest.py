"""Global pytest fixtures and configuration."""

import sys
from pathlib import Path
from unittest.mock import AsyncMock, MagicMock

import httpx
import pytest
import pytest_asyncio

# Add src to path
sys.path.insert(0, str(Path(__file__).parent.parent / "src"))

from bundlenudge.client import BundleNudge  # noqa: E402
from bundlenudge.services.storage import MetadataStore  # noqa: E402

SAMPLE_HASH = "a" * 64


@pytest.fixture(autouse=True)
def reset_singleton():
    """Reset the agent singleton so tests never share state."""
    BundleNudge._instance = None
    yield
    BundleNudge._instance = None


@pytest.fixture
def temp_dir(tmp_path):
    """Create a temporary directory for test files."""
    yield tmp_path


@pytest_asyncio.fixture
async def store(tmp_path):
    """Initialized MetadataStore backed by a temp file."""
    metadata_store = MetadataStore(tmp_path / "metadata.json")
    await metadata_store.initialize()
    return metadata_store


@pytest_asyncio.fixture
async def updated_store(store):
    """Store where 2.0.0 was just applied over 1.0.0."""
    await store.update(current_version="1.0.0")
    await store.set_bundle_hash("1.0.0", "1" * 64)
    await store.set_bundle_hash("2.0.0", "2" * 64)
    await store.set_pending_update("2.0.0", "2" * 64)
    await store.apply_pending_update()
    return store


@pytest.fixture
def mock_telemetry():
    """Mock TelemetryReporter; dispatch() is synchronous."""
    telemetry = MagicMock()
    telemetry.dispatch = MagicMock()
    telemetry.report_event = AsyncMock()
    telemetry.flush = AsyncMock()
    return telemetry


@pytest.fixture
def mock_host():
    """Mock host controller."""
    host = MagicMock()
    host.restart_app = AsyncMock()
    host.notify_app_ready = AsyncMock()
    return host


@pytest.fixture
def patch_async_client(monkeypatch):
    """Route every httpx.AsyncClient through a MockTransport handler.

    Usage:
        patch_async_client(lambda request: httpx.Response(200, json={...}))
    """
    real_client = httpx.AsyncClient

    def install(handler):
        def client_factory(*args, **kwargs):
            kwargs["transport"] = httpx.MockTransport(handler)
            return real_client(*args, **kwargs)

        monkeypatch.setattr(httpx, "AsyncClient", client_factory)

    return install
