# authwatch/errors.py


class AuthwatchError(Exception):
    """Base class for every error raised by authwatch."""


class ConfigError(AuthwatchError):
    pass


class SourceMissingError(AuthwatchError):
    """A log source does not exist when watching starts. Fatal."""

    def __init__(self, path: str):
        super().__init__(f"log source not found: {path}")
        self.path = path


class SourceUnavailableError(AuthwatchError):
    """A log source could not be read, even after one retry.

    The cycle is skipped and the source is tried again on the next
    notification.
    """

    def __init__(self, path: str, cause: Exception):
        super().__init__(f"log source unavailable: {path} ({cause})")
        self.path = path
        self.cause = cause


class WatchFacilityError(AuthwatchError):
    """Filesystem change notifications could not be set up. Fatal."""
