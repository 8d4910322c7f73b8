"""Exceptions raised by the sync orchestration layer."""

from .models import InvalidTransitionError, Provider


class SyncError(Exception):
    """Base exception for sync orchestration errors."""
    pass


class NotConnectedError(SyncError):
    """The user has no connection for the requested provider."""

    def __init__(self, provider: Provider):
        super().__init__(f"{provider.label} is not connected")
        self.provider = provider


class SyncDisabledError(SyncError):
    """Sync is turned off for the connection."""

    def __init__(self, provider: Provider):
        super().__init__(f"Sync is disabled for {provider.label}")
        self.provider = provider


class NoCalendarSelectedError(SyncError):
    """The connection has no target calendar yet."""

    def __init__(self, provider: Provider):
        super().__init__(f"No calendar selected for {provider.label}")
        self.provider = provider


class TokenRefreshError(SyncError):
    """A usable access token could not be obtained."""
    pass


class OAuthError(SyncError):
    """An authorization callback could not be completed."""
    pass


class LocalEventNotFoundError(SyncError):
    """A local calendar event does not exist for the user."""
    pass


__all__ = [
    'SyncError',
    'NotConnectedError',
    'SyncDisabledError',
    'NoCalendarSelectedError',
    'TokenRefreshError',
    'OAuthError',
    'LocalEventNotFoundError',
    'InvalidTransitionError',
]
