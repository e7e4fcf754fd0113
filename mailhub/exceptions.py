"""Error taxonomy shared by the engine, the HTTP API and the client."""

from typing import Any, Optional


class MailHubError(Exception):
    """Base exception for all mailhub errors."""


class ConfigurationError(MailHubError):
    """Raised for missing or invalid configuration."""


class StorageError(MailHubError):
    """Persistence layer failure. Fatal to the current operation."""


class NotFoundError(MailHubError):
    """Raised when a thread, message or link does not exist."""


class SyncProviderError(MailHubError):
    """Transient provider failure during a refresh.

    ``unavailable`` distinguishes "could not reach the provider at all" from
    "provider answered with an error".
    """

    def __init__(self, message: str, unavailable: bool = False):
        super().__init__(message)
        self.unavailable = unavailable


class SyncInProgress(MailHubError):
    """Another refresh holds the lease for this account."""

    def __init__(self, account_id: str, retry_after: int = 5):
        super().__init__(f"Sync already in progress for account {account_id}")
        self.account_id = account_id
        self.retry_after = retry_after


class RefreshThrottled(MailHubError):
    """A non-forced refresh was requested inside the cooldown window."""

    def __init__(self, retry_after: int):
        super().__init__(f"Please wait {retry_after}s between refreshes")
        self.retry_after = retry_after


class ConflictError(MailHubError):
    """The link already exists. ``existing`` holds the stored link when known."""

    def __init__(self, message: str, existing: Optional[Any] = None):
        super().__init__(message)
        self.existing = existing


class InvalidEntityType(MailHubError):
    """Entity type is not one of the supported business record kinds."""

    def __init__(self, value: Any):
        super().__init__(f"Invalid entity type: {value!r}")
        self.value = value
