"""Exception types raised across the mirror.

Absence at the origin and transient upstream failures are *outcomes*
(see ``ResolveStatus``), not exceptions. Only conditions that abort the
current request are raised.
"""


class MirrorError(Exception):
    """Base class for mirror errors."""


class ConfigurationError(MirrorError):
    """A required binding (credentials, storage location) is missing."""


class StorageUnavailableError(MirrorError):
    """The metadata or blob store could not be reached."""


class RateLimitExceededError(MirrorError):
    def __init__(self, client_id: str, endpoint: str, retry_after_seconds: int):
        self.client_id = client_id
        self.endpoint = endpoint
        self.retry_after_seconds = retry_after_seconds
        super().__init__(
            f"Too many requests for {endpoint}. Retry after {retry_after_seconds} seconds"
        )
