"""Rollback orchestration: restore, report, restart."""

import logging
from typing import Any, Callable, Optional

from bundlenudge.errors import RollbackUnavailableError
from bundlenudge.models.status import RollbackReason
from bundlenudge.services.host import HostController
from bundlenudge.services.storage import MetadataStore
from bundlenudge.services.telemetry import TelemetryReporter
from bundlenudge.utils.callbacks import invoke_callback_safely


class RollbackManager:
    """Reverts the device to its previous bundle version."""

    def __init__(
        self,
        storage: MetadataStore,
        telemetry: TelemetryReporter,
        host: HostController,
        on_rollback_reported: Optional[Callable[[RollbackReason, str], Any]] = None,
    ):
        """Initialize rollback manager.

        Args:
            storage: Metadata store holding current/previous versions
            telemetry: Reporter used for the rollback_triggered event
            host: Host controller used to restart the app
            on_rollback_reported: Called with (reason, rolled_back_from)
        """
        self.logger = logging.getLogger("bundlenudge.rollback")
        self.storage = storage
        self.telemetry = telemetry
        self.host = host
        self.on_rollback_reported = on_rollback_reported

    def can_rollback(self) -> bool:
        return self.storage.get().previous_version is not None

    def get_rollback_version(self) -> Optional[str]:
        return self.storage.get().previous_version

    async def rollback(self, reason: RollbackReason) -> str:
        """Roll back to the previous version and restart the host app.

        Order: storage rollback, telemetry dispatch (detached, best effort),
        local callback, host restart.

        Args:
            reason: Why the rollback was triggered

        Returns:
            Version rolled back to

        Raises:
            RollbackUnavailableError: If there is no previous version
        """
        reason = RollbackReason(reason)
        metadata = self.storage.get()
        if not metadata.previous_version:
            self.logger.error(f"Rollback ({reason.value}) requested without a previous version")
            raise RollbackUnavailableError()

        from_version = metadata.current_version
        target = metadata.previous_version
        self.logger.warning(
            f"Rolling back {from_version} -> {target} (reason={reason.value})"
        )

        await self.storage.rollback()

        self.telemetry.dispatch(
            "rollback_triggered",
            {"reason": reason.value, "rolledBackTo": target, "rolledBackFrom": from_version},
        )

        # Nothing meaningful to tell the host without a version to report
        if from_version:
            await invoke_callback_safely(self.on_rollback_reported, reason, from_version)

        await self.host.restart_app(False)
        return target

    async def mark_update_verified(self) -> None:
        """Commit the running update by clearing previous_version."""
        await self.storage.clear_previous_version()
        self.logger.info(f"Update verified: {self.storage.get().current_version}")
