"""Exception hierarchy for the update agent."""


class BundleNudgeError(Exception):
    """Base class for all agent errors."""


class StorageNotInitializedError(BundleNudgeError):
    """Metadata accessed before MetadataStore.initialize()."""

    def __init__(self):
        super().__init__("Storage not initialized. Call initialize() first.")


class RollbackUnavailableError(BundleNudgeError):
    """rollback() called without a previous version to return to."""

    def __init__(self):
        super().__init__("No previous version to rollback to")


class UpdateCheckError(BundleNudgeError):
    """Update check request failed."""


class BundleDownloadError(BundleNudgeError):
    """Bundle download failed."""


class BundleHashMismatchError(BundleNudgeError):
    """Downloaded bundle does not match the expected hash."""

    def __init__(self, expected: str, actual: str):
        self.expected = expected
        self.actual = actual
        super().__init__(f"HASH_MISMATCH: expected {expected}, got {actual}")


class DeviceRegistrationError(BundleNudgeError):
    """Device registration request failed."""
