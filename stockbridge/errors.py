class SyncError(Exception):
    pass


class ConfigurationError(SyncError):
    """Credentials or settings missing; fatal for the whole sync invocation."""


class SyncInProgressError(SyncError):
    pass


class DuplicateChangeError(SyncError):
    pass


class PlatformError(SyncError):
    """A platform answered with something we cannot use."""

    def __init__(self, platform: str, message: str, status: int | None = None):
        super().__init__(f"{platform}: {message}" + (f" (HTTP {status})" if status else ""))
        self.platform = platform
        self.status = status


class PlatformUnavailable(PlatformError):
    """Network failure, 5xx after retries, or rejected credentials."""


class PlatformTimeout(PlatformError):
    pass
