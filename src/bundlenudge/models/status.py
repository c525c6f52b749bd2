"""Status enums for the update lifecycle."""

from enum import Enum


class UpdateStatus(str, Enum):
    """SDK-level update status reported to the host.

    idle → checking → update-available → downloading → installing → idle
                 ↓                             ↓
            up-to-date                       error
    """

    IDLE = "idle"
    CHECKING = "checking"
    UPDATE_AVAILABLE = "update-available"
    UP_TO_DATE = "up-to-date"
    DOWNLOADING = "downloading"
    INSTALLING = "installing"
    ERROR = "error"


class VerificationPhase(str, Enum):
    """Two-of-two barrier over the app-ready and health-passed signals.

    State transitions:
    idle → waiting_both → waiting_health ─┐
                ↓                          ├→ verified
           waiting_ready ──────────────────┘
    any waiting state → crashed (threshold reached)
    any waiting state → idle (window timed out)
    """

    IDLE = "idle"
    WAITING_BOTH = "waiting_both"
    WAITING_HEALTH = "waiting_health"
    WAITING_READY = "waiting_ready"
    VERIFIED = "verified"
    CRASHED = "crashed"


class RollbackReason(str, Enum):
    """Why a rollback was triggered, attached to every rollback event."""

    CRASH_DETECTED = "crash_detected"
    ROUTE_FAILURE = "route_failure"
    SERVER_TRIGGERED = "server_triggered"
    MANUAL = "manual"


class InstallMode(str, Enum):
    """When a downloaded bundle becomes active."""

    IMMEDIATE = "immediate"
    NEXT_LAUNCH = "next_launch"


class Tier(str, Enum):
    """Subscription tier of the app, gates route monitoring."""

    FREE = "free"
    PRO = "pro"
    TEAM = "team"
    ENTERPRISE = "enterprise"
