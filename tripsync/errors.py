"""Exceptions raised by the sync engine."""
from __future__ import annotations


class SyncError(Exception):
    """Base class for sync failures surfaced to callers."""


class ConfigurationError(SyncError):
    """Raised when an owner is missing a spreadsheet, token or OAuth client."""


class InvalidLocationIdError(SyncError):
    """Raised when a location id does not have the ``loc-N`` form."""

    def __init__(self, location_id: str) -> None:
        super().__init__(f"Invalid location id: {location_id!r}")
        self.location_id = location_id


class PlaceNotFoundError(SyncError):
    """Raised when a pasted maps link cannot be resolved to a place."""

    def __init__(self, url: str) -> None:
        super().__init__(f"Could not find a place for {url!r}")
        self.url = url


class SharedTripNotFoundError(SyncError):
    """Raised when a share link is unknown or its trip is no longer public."""

    def __init__(self, slug: str, reason: str = "Trip not found") -> None:
        super().__init__(f"{reason}: {slug!r}")
        self.slug = slug


class InvalidEmailError(SyncError):
    def __init__(self, email: str) -> None:
        super().__init__(f"Invalid collaborator email: {email!r}")
        self.email = email


__all__ = [
    "ConfigurationError",
    "InvalidEmailError",
    "InvalidLocationIdError",
    "PlaceNotFoundError",
    "SharedTripNotFoundError",
    "SyncError",
]
