"""Error taxonomy for the provisioning pipeline."""

from __future__ import annotations

from typing import Optional


class ProvisioningError(Exception):
    """Base class for all provisioning errors."""


class TransientExternalError(ProvisioningError):
    """Network, timeout or throttling error from the account service.

    The call is retried under the same claim until max_attempts is reached.
    """

    def __init__(self, message: str, retry_after: Optional[float] = None) -> None:
        super().__init__(message)
        self.retry_after = retry_after


class StructuralError(ProvisioningError):
    """Invalid input or a logically impossible request (e.g. duplicate).

    Never retried: the record fails permanently after one attempt.
    """


class ClaimConflictError(ProvisioningError):
    """Another worker already holds or resolved the record."""

    def __init__(self, record_id: str) -> None:
        super().__init__(f"record {record_id} was claimed by another worker")
        self.record_id = record_id


class StoreWriteError(ProvisioningError):
    """The record store is unreachable; the current batch must stop."""


class InvalidCursorError(ProvisioningError, ValueError):
    """A resume cursor could not be decoded."""


class ConfigError(ProvisioningError, ValueError):
    """Configuration is missing or out of range."""
