"""Registry of calendar providers enabled for this deployment."""

import logging
from typing import Dict, Iterable, List, Optional

from .base import BaseCalendarProvider, ProviderNotConfiguredError
from .google import GoogleCalendarProvider
from .outlook import OutlookCalendarProvider
from ..config import Settings
from ..models import Provider

logger = logging.getLogger(__name__)


class ProviderRegistry:
    """Providers resolved once at startup from configured credentials."""

    def __init__(self, providers: Iterable[BaseCalendarProvider]):
        self._providers: Dict[Provider, BaseCalendarProvider] = {p.provider: p for p in providers}

    @classmethod
    def from_settings(cls, settings: Settings) -> "ProviderRegistry":
        candidates = [GoogleCalendarProvider(settings), OutlookCalendarProvider(settings)]
        enabled = [p for p in candidates if p.is_configured]
        for provider in candidates:
            if not provider.is_configured:
                logger.info(f"{provider.provider.label} integration disabled: no client credentials")
        return cls(enabled)

    def enabled(self) -> List[Provider]:
        return [p for p in Provider if p in self._providers]

    def is_enabled(self, provider: Provider) -> bool:
        return provider in self._providers

    def get(self, provider: Provider) -> BaseCalendarProvider:
        """Look up an enabled provider.

        Raises:
            ProviderNotConfiguredError: If the provider has no credentials
        """
        try:
            return self._providers[Provider(provider)]
        except KeyError:
            raise ProviderNotConfiguredError(Provider(provider))

    def find(self, provider: Provider) -> Optional[BaseCalendarProvider]:
        return self._providers.get(Provider(provider))

    async def close(self) -> None:
        for provider in self._providers.values():
            await provider.close()
