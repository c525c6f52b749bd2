"""Metadata store for persistent per-device update state."""

import json
import logging
import time
from pathlib import Path
from typing import Any, Optional, Sequence

import aiofiles
from pydantic import ValidationError

from bundlenudge.errors import StorageNotInitializedError
from bundlenudge.models.health import CriticalRoute
from bundlenudge.models.metadata import AppVersionInfo, StoredMetadata, VerificationState

MAX_CRASH_COUNT = 100


class MetadataStore:
    """Persists StoredMetadata as JSON on disk.

    Manages:
    - In-memory metadata snapshot (read synchronously via get())
    - Persistent file at <data_dir>/metadata.json (written on every update)

    Single-writer: one agent per device process owns the file.
    """

    def __init__(self, path: Path = Path("./data/metadata.json")):
        self.logger = logging.getLogger("bundlenudge.storage")
        self.path = Path(path)
        self._metadata: Optional[StoredMetadata] = None

    async def initialize(self) -> None:
        """Load metadata from disk, resetting to defaults when missing or corrupted."""
        if not self.path.exists():
            self.logger.info("No metadata file found, creating device defaults")
            self._metadata = StoredMetadata()
            await self._persist()
            return

        try:
            async with aiofiles.open(self.path, "r", encoding="utf-8") as f:
                data = json.loads(await f.read())
            self._metadata = StoredMetadata.model_validate(data)
            self.logger.info(
                f"Loaded metadata: device={self._metadata.device_id}, "
                f"current={self._metadata.current_version}, "
                f"previous={self._metadata.previous_version}"
            )
        except (json.JSONDecodeError, ValidationError, UnicodeDecodeError) as e:
            self.logger.warning(f"Corrupted metadata detected, resetting: {e}")
            self._metadata = StoredMetadata()
            await self._persist()

    @property
    def initialized(self) -> bool:
        return self._metadata is not None

    def get(self) -> StoredMetadata:
        """Return a snapshot of the current metadata.

        Raises:
            StorageNotInitializedError: If initialize() has not run
        """
        if self._metadata is None:
            raise StorageNotInitializedError()
        return self._metadata.model_copy(deep=True)

    async def update(self, **changes: Any) -> StoredMetadata:
        """Merge changes into metadata and persist.

        Args:
            **changes: StoredMetadata field names and new values

        Returns:
            Updated metadata snapshot
        """
        if self._metadata is None:
            raise StorageNotInitializedError()

        merged = self._metadata.model_dump()
        merged.update(changes)
        self._metadata = StoredMetadata.model_validate(merged)
        await self._persist()
        return self.get()

    def get_device_id(self) -> str:
        return self.get().device_id

    def get_access_token(self) -> Optional[str]:
        return self.get().access_token

    async def set_access_token(self, token: str) -> None:
        await self.update(access_token=token)

    def get_current_version(self) -> Optional[str]:
        return self.get().current_version

    async def set_pending_update(
        self, version: str, bundle_hash: str, critical_routes: Sequence[CriticalRoute] = ()
    ) -> None:
        """Mark a downloaded bundle as pending for the next launch.

        The release's critical routes are stored with it so the launch that
        runs the bundle can monitor them.
        """
        await self.update(
            pending_version=version,
            pending_update_flag=True,
            pending_critical_routes=[route.model_dump() for route in critical_routes],
        )
        self.logger.info(f"Pending update set: {version}")

    async def apply_pending_update(self) -> bool:
        """Move pending to current; the old current becomes previous.

        Returns:
            True if a pending version was applied
        """
        metadata = self.get()
        if not metadata.pending_version:
            return False

        await self.update(
            previous_version=metadata.current_version,
            current_version=metadata.pending_version,
            current_version_hash=metadata.bundle_hashes.get(metadata.pending_version),
            pending_version=None,
            pending_update_flag=False,
            critical_routes=[route.model_dump() for route in metadata.pending_critical_routes],
            pending_critical_routes=[],
            crash_count=0,
            last_crash_time=None,
        )
        self.logger.info(
            f"Applied pending update: {metadata.current_version} -> {metadata.pending_version}"
        )
        return True

    async def record_crash(self) -> int:
        """Record a crash and return the new crash count."""
        new_count = min(self.get().crash_count + 1, MAX_CRASH_COUNT)
        await self.update(crash_count=new_count, last_crash_time=time.time())
        self.logger.warning(f"Crash recorded, count={new_count}")
        return new_count

    async def clear_crash_count(self) -> None:
        await self.update(crash_count=0, last_crash_time=None)

    async def rollback(self) -> Optional[str]:
        """Restore the previous version as current.

        previous_version is cleared, never swapped with current.

        Returns:
            Version rolled back to, or None if there was no previous version
        """
        metadata = self.get()
        if not metadata.previous_version:
            return None

        target = metadata.previous_version
        await self.update(
            current_version=target,
            current_version_hash=metadata.bundle_hashes.get(target),
            previous_version=None,
            pending_version=None,
            pending_update_flag=False,
            pending_critical_routes=[],
            critical_routes=[],
            crash_count=0,
            last_crash_time=None,
            verification_state=None,
        )
        self.logger.info(f"Rolled back metadata: {metadata.current_version} -> {target}")
        return target

    async def clear_previous_version(self) -> None:
        """Commit the running bundle permanently."""
        await self.update(previous_version=None)

    def get_critical_routes(self) -> list[CriticalRoute]:
        """Critical routes of the running bundle."""
        return self.get().critical_routes

    def get_verification_state(self) -> Optional[VerificationState]:
        return self.get().verification_state

    async def start_verification(self) -> VerificationState:
        """Open a verification window, keeping flags from a window already open."""
        current = self.get_verification_state()
        state = VerificationState(
            app_ready=current.app_ready if current else False,
            health_passed=current.health_passed if current else False,
            started_at=time.time(),
        )
        await self.update(verification_state=state.model_dump())
        return state

    async def set_app_ready(self) -> VerificationState:
        current = self.get_verification_state() or VerificationState()
        state = current.model_copy(update={"app_ready": True})
        if state.health_passed and state.verified_at is None:
            state.verified_at = time.time()
        await self.update(verification_state=state.model_dump())
        return state

    async def set_health_passed(self) -> VerificationState:
        current = self.get_verification_state() or VerificationState()
        state = current.model_copy(update={"health_passed": True})
        if state.app_ready and state.verified_at is None:
            state.verified_at = time.time()
        await self.update(verification_state=state.model_dump())
        return state

    def is_fully_verified(self) -> bool:
        state = self.get_verification_state()
        if state is None:
            return False
        return state.app_ready and state.health_passed

    async def reset_verification_state(self) -> None:
        await self.update(verification_state=None)

    def get_app_version_info(self) -> Optional[AppVersionInfo]:
        return self.get().app_version_info

    async def set_app_version_info(self, info: AppVersionInfo) -> None:
        await self.update(app_version_info=info.model_dump())

    async def clear_all_bundles(self) -> None:
        """Forget every bundle version (host app was updated from the store)."""
        await self.update(
            current_version=None,
            current_version_hash=None,
            previous_version=None,
            pending_version=None,
            pending_update_flag=False,
            pending_critical_routes=[],
            critical_routes=[],
            bundle_hashes={},
        )
        self.logger.info("Cleared all bundle versions")

    def get_bundle_hash(self, version: str) -> Optional[str]:
        return self.get().bundle_hashes.get(version)

    async def set_bundle_hash(self, version: str, bundle_hash: str) -> None:
        hashes = dict(self.get().bundle_hashes)
        hashes[version] = bundle_hash
        await self.update(bundle_hashes=hashes)

    async def remove_bundle_version(self, version: str) -> None:
        """Remove a version and its hash, clearing any pointer to it."""
        metadata = self.get()
        changes: dict[str, Any] = {
            "bundle_hashes": {
                v: h for v, h in metadata.bundle_hashes.items() if v != version
            }
        }
        if metadata.current_version == version:
            changes["current_version"] = None
        if metadata.previous_version == version:
            changes["previous_version"] = None
        if metadata.pending_version == version:
            changes["pending_version"] = None
            changes["pending_critical_routes"] = []
        await self.update(**changes)

    async def _persist(self) -> None:
        """Write metadata atomically (temp file + rename)."""
        if self._metadata is None:
            return

        try:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            tmp_path = self.path.parent / f"{self.path.name}.tmp"
            async with aiofiles.open(tmp_path, "w", encoding="utf-8") as f:
                await f.write(
                    json.dumps(self._metadata.model_dump(mode="json", by_alias=True), indent=2)
                )
            tmp_path.replace(self.path)
            self.logger.debug(f"Saved metadata to {self.path}")
        except OSError as e:
            self.logger.error(f"Failed to save metadata file: {e}", exc_info=True)
            raise
