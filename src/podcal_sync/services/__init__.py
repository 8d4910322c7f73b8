"""Calendar provider interfaces and implementations."""

from .base import (
    BaseCalendarProvider,
    CalendarServiceError,
    AuthenticationError,
    EventNotFoundError,
    ProviderNotConfiguredError,
    RateLimitError,
    SyncTokenExpiredError,
)
from .google import GoogleCalendarProvider
from .outlook import OutlookCalendarProvider
from .registry import ProviderRegistry

__all__ = [
    'BaseCalendarProvider',
    'CalendarServiceError',
    'AuthenticationError',
    'EventNotFoundError',
    'ProviderNotConfiguredError',
    'RateLimitError',
    'SyncTokenExpiredError',
    'GoogleCalendarProvider',
    'OutlookCalendarProvider',
    'ProviderRegistry',
]
