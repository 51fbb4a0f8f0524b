"""Custom exception hierarchy for beaconpresence."""

from __future__ import annotations


class PresenceError(Exception):
    """Base exception for all beaconpresence errors."""


class PresenceConfigError(PresenceError):
    """Invalid or missing configuration."""


class DirectoryError(PresenceError):
    """Agent or beacon directory failure."""


class DirectoryTransportError(DirectoryError):
    """HTTP-level failure (network, unexpected status, invalid JSON)."""

    def __init__(
        self,
        message: str,
        *,
        status_code: int | None = None,
        endpoint: str = "",
    ) -> None:
        self.status_code = status_code
        self.endpoint = endpoint
        super().__init__(message)


class PublishError(PresenceError):
    """An event could not be handed to the publisher sink."""
