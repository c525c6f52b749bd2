"""Crash detection over post-update verification windows."""

import asyncio
import logging
import time
from typing import Awaitable, Callable, Optional

from bundlenudge.models.status import VerificationPhase
from bundlenudge.services.storage import MetadataStore
from bundlenudge.utils.callbacks import invoke_callback, invoke_callback_safely

DEFAULT_CRASH_THRESHOLD = 3
DEFAULT_CRASH_WINDOW_SECONDS = 10.0
DEFAULT_VERIFICATION_WINDOW_SECONDS = 60.0


class CrashDetector:
    """Detects crashes after an update and decides between verify and rollback.

    A verification window opens after a new bundle is loaded. The update is
    verified only when both the app-ready and health-passed signals arrive;
    surviving the window alone never commits it.
    """

    def __init__(
        self,
        storage: MetadataStore,
        on_rollback: Callable[[], Awaitable[None]],
        on_verified: Callable[[], Awaitable[None]],
        on_crash_reported: Optional[Callable[[int], None]] = None,
        verification_window: float = DEFAULT_VERIFICATION_WINDOW_SECONDS,
        crash_threshold: int = DEFAULT_CRASH_THRESHOLD,
        crash_window: float = DEFAULT_CRASH_WINDOW_SECONDS,
    ):
        """Initialize crash detector.

        Args:
            storage: Metadata store holding crash counters and window state
            on_rollback: Awaited when the crash threshold is reached
            on_verified: Awaited once when both signals have arrived
            on_crash_reported: Called with the new count for every crash
            verification_window: Seconds to wait for both signals
            crash_threshold: Crashes that trigger a rollback
            crash_window: Seconds within which consecutive crashes accumulate
        """
        self.logger = logging.getLogger("bundlenudge.crash_detector")
        self.storage = storage
        self.on_rollback = on_rollback
        self.on_verified = on_verified
        self.on_crash_reported = on_crash_reported
        self.verification_window = verification_window
        self.crash_threshold = crash_threshold
        self.crash_window = crash_window

        self._phase = VerificationPhase.IDLE
        self._timer: Optional[asyncio.Task] = None

    @property
    def phase(self) -> VerificationPhase:
        return self._phase

    @property
    def is_verifying(self) -> bool:
        return self._phase in (
            VerificationPhase.WAITING_BOTH,
            VerificationPhase.WAITING_HEALTH,
            VerificationPhase.WAITING_READY,
        )

    async def check_for_crash(self) -> bool:
        """Check, on process start, whether the last session crashed.

        A verification window still open in storage means the previous
        session ended before the window resolved.

        Returns:
            True if the crash threshold was reached and rollback ran
        """
        metadata = self.storage.get()

        if not metadata.previous_version:
            return False

        # Pending flag without a version: the apply itself was interrupted
        if metadata.pending_update_flag and not metadata.pending_version:
            return False

        now = time.time()
        last_crash = metadata.last_crash_time
        crash_is_stale = last_crash is not None and (now - last_crash) >= self.crash_window
        window_open = (
            metadata.verification_state is not None
            and metadata.verification_state.verified_at is None
        )

        if not window_open:
            if crash_is_stale:
                await self.storage.clear_crash_count()
            return False

        if crash_is_stale:
            await self.storage.clear_crash_count()

        crash_count = await self.storage.record_crash()
        await invoke_callback_safely(self.on_crash_reported, crash_count)

        if crash_count >= self.crash_threshold:
            self.logger.error(
                f"Crash threshold reached ({crash_count}/{self.crash_threshold}) "
                f"on version {metadata.current_version}, rolling back"
            )
            self._cancel_timer()
            self._phase = VerificationPhase.CRASHED
            await self.storage.reset_verification_state()
            try:
                await invoke_callback(self.on_rollback)
            except RuntimeError as e:
                # Metadata already points at the restored version
                self.logger.error(f"Crash rollback did not restart the app: {e}")
            return True

        self.logger.warning(
            f"Abnormal exit detected ({crash_count}/{self.crash_threshold})"
        )
        return False

    async def start_verification_window(self) -> bool:
        """Open the verification window after loading a new bundle.

        Returns:
            True if a window was started
        """
        if self.is_verifying:
            return False

        metadata = self.storage.get()
        if not metadata.previous_version:
            # Nothing to roll back to, nothing to verify
            return False

        state = await self.storage.start_verification()
        if state.app_ready:
            self._phase = VerificationPhase.WAITING_HEALTH
        elif state.health_passed:
            self._phase = VerificationPhase.WAITING_READY
        else:
            self._phase = VerificationPhase.WAITING_BOTH

        self._timer = asyncio.create_task(self._verification_timer(self.verification_window))
        self.logger.info(
            f"Verification window started for {metadata.current_version} "
            f"({self.verification_window}s)"
        )
        return True

    async def notify_app_ready(self) -> None:
        """Mark the app as ready. Alone this does not verify the update."""
        if not self.is_verifying:
            return

        await self.storage.set_app_ready()
        if self._phase == VerificationPhase.WAITING_BOTH:
            self._phase = VerificationPhase.WAITING_HEALTH
        elif self._phase == VerificationPhase.WAITING_READY:
            await self._complete_verification()

    async def notify_health_passed(self) -> None:
        """Mark health checks as passed. Alone this does not verify the update."""
        if not self.is_verifying:
            return

        await self.storage.set_health_passed()
        if self._phase == VerificationPhase.WAITING_BOTH:
            self._phase = VerificationPhase.WAITING_READY
        elif self._phase == VerificationPhase.WAITING_HEALTH:
            await self._complete_verification()

    async def _complete_verification(self) -> None:
        self._phase = VerificationPhase.VERIFIED
        self._cancel_timer()

        await self.storage.clear_crash_count()
        await self.storage.reset_verification_state()
        self.logger.info("Update verified: app ready and health passed")
        await invoke_callback(self.on_verified)

    async def abort_verification(self) -> None:
        """End the window because the update was rolled back.

        Later app-ready or health signals are ignored until a new window opens.
        """
        self._cancel_timer()
        if self._phase == VerificationPhase.CRASHED:
            return
        self._phase = VerificationPhase.CRASHED
        await self.storage.reset_verification_state()
        self.logger.warning("Verification window aborted by rollback")

    def stop(self) -> None:
        """Stop waiting (cleanup on shutdown). Persisted state is kept."""
        self._cancel_timer()
        if self.is_verifying:
            self._phase = VerificationPhase.IDLE

    async def end_session(self) -> None:
        """Record a clean host shutdown so it is not counted as a crash."""
        was_verifying = self.is_verifying
        self.stop()
        if was_verifying:
            await self.storage.reset_verification_state()

    async def _verification_timer(self, window: float) -> None:
        await asyncio.sleep(window)
        self._timer = None
        await self._handle_verification_timeout()

    async def _handle_verification_timeout(self) -> None:
        """Stop waiting without verifying.

        previous_version is kept; only both signals commit the update.
        """
        if not self.is_verifying:
            return
        self.logger.warning(
            f"Verification window elapsed in phase {self._phase.value}; "
            f"keeping previous version for rollback"
        )
        self._phase = VerificationPhase.IDLE
        # The session survived the window: clear the open-window marker
        await self.storage.reset_verification_state()

    def _cancel_timer(self) -> None:
        if self._timer is not None and not self._timer.done():
            self._timer.cancel()
        self._timer = None
