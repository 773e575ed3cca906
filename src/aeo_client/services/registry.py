import logging
from typing import Any, Dict, Mapping, Optional

from aeo_client.config import Settings
from aeo_client.services.client import (
    ApiClient,
    CredentialProvider,
    LoginCredentialProvider,
    StaticTokenProvider,
)
from aeo_client.services.coordinator import LifecycleCoordinator
from aeo_client.services.features import FEATURES, FeatureSpec
from aeo_client.services.tasks import Task

logger = logging.getLogger(__name__)


def build_credentials(settings: Settings) -> CredentialProvider:
    """A static token wins over email/password login."""
    if settings.auth_token:
        return StaticTokenProvider(settings.auth_token)
    if settings.api_email and settings.api_password and settings.api_base_url:
        return LoginCredentialProvider(settings.api_base_url, settings.api_email, settings.api_password)
    return StaticTokenProvider()


class CoordinatorRegistry:
    """Registry-based lookup of one lifecycle coordinator per feature"""

    def __init__(self, client: ApiClient, settings: Optional[Settings] = None, features: Optional[Mapping[str, FeatureSpec]] = None):
        self.client = client
        self.settings = settings or Settings()
        # Registry of available features - maps name to definition
        self.features: Dict[str, FeatureSpec] = dict(features or FEATURES)
        self._coordinators: Dict[str, LifecycleCoordinator] = {}

    @classmethod
    def from_settings(cls, settings: Settings) -> "CoordinatorRegistry":
        client = ApiClient(
            base_url=settings.api_base_url,
            credentials=build_credentials(settings),
            timeout=settings.http_timeout,
        )
        return cls(client, settings)

    def coordinator(self, name: str) -> LifecycleCoordinator:
        """
        Get or create the coordinator for a feature.

        Raises:
            KeyError: unknown feature name.
        """
        if name not in self.features:
            raise KeyError(f"Unknown feature: {name}. Available: {list(self.features.keys())}")
        if name not in self._coordinators:
            polling = self.settings.polling_for(name) if name in FEATURES else None
            self._coordinators[name] = LifecycleCoordinator(
                self.features[name],
                self.client,
                poll_interval=polling.interval if polling else None,
                max_attempts=polling.max_attempts if polling else None,
                max_wall_clock=self.settings.max_wall_clock,
                backoff_cap=self.settings.backoff_cap,
            )
        return self._coordinators[name]

    async def start(self, name: str, **params: Any) -> Task:
        return await self.coordinator(name).start(params)

    def describe(self) -> Dict[str, Dict[str, Any]]:
        info = {}
        for name, feature in self.features.items():
            coordinator = self.coordinator(name)
            info[name] = {
                "name": name,
                "description": " ".join(feature.description.split()),
                "poll_interval": coordinator.poll_interval,
                "max_attempts": coordinator.max_attempts,
                "supports_retry": feature.supports_retry,
            }
        return info

    async def close(self) -> None:
        """Tear down every coordinator, then the transport"""
        for name, coordinator in self._coordinators.items():
            if coordinator.is_active:
                logger.info("Cancelling active %s task on shutdown", name)
            await coordinator.close()
        self._coordinators.clear()
        await self.client.close()
