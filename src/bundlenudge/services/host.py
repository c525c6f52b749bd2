"""Host application control: restarts and readiness notifications."""

import asyncio
import logging
from typing import Protocol


class HostController(Protocol):
    """Operations the agent needs from the host application."""

    async def restart_app(self, user_initiated: bool) -> None:
        ...

    async def notify_app_ready(self) -> None:
        ...


class ProcessHost:
    """Restarts the host application by running a service manager command.

    Example restart_command: ["systemctl", "restart", "myapp.service"]
    """

    def __init__(self, restart_command: list[str]):
        self.logger = logging.getLogger("bundlenudge.host")
        self.restart_command = list(restart_command)

    async def restart_app(self, user_initiated: bool) -> None:
        """Run the restart command.

        Args:
            user_initiated: True for host-requested restarts, False for
                automatic ones (rollback)

        Raises:
            RuntimeError: If no command is configured or it exits non-zero
        """
        if not self.restart_command:
            raise RuntimeError("RESTART_FAILED: no restart command configured")

        self.logger.info(
            f"Restarting host app (user_initiated={user_initiated}): "
            f"{' '.join(self.restart_command)}"
        )

        try:
            process = await asyncio.create_subprocess_exec(
                *self.restart_command,
                stdout=asyncio.subprocess.PIPE,
                stderr=asyncio.subprocess.PIPE,
            )
            stdout, stderr = await process.communicate()
        except OSError as e:
            self.logger.error(f"Failed to launch restart command: {e}")
            raise RuntimeError(f"RESTART_FAILED: {e}") from e

        if process.returncode != 0:
            raise RuntimeError(
                f"RESTART_FAILED: exit code {process.returncode}, "
                f"stderr: {stderr.decode().strip()}"
            )

        self.logger.info("Host app restart command completed")

    async def notify_app_ready(self) -> None:
        self.logger.debug("Host app reported ready")


class NoopHost:
    """Host used when no restart command is configured; logs instead."""

    def __init__(self):
        self.logger = logging.getLogger("bundlenudge.host")

    async def restart_app(self, user_initiated: bool) -> None:
        self.logger.warning(
            f"Restart requested (user_initiated={user_initiated}) "
            f"but no restart command is configured; restart the app manually"
        )

    async def notify_app_ready(self) -> None:
        self.logger.debug("Host app reported ready")
