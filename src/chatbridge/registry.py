"""Lookup table from provider id to adapter instance."""

from __future__ import annotations

from chatbridge.providers.base import BaseProvider


class ProviderRegistry:
    """Populated during setup and only read once requests are dispatched."""

    def __init__(self) -> None:
        self._providers: dict[str, BaseProvider] = {}

    def register(self, provider: BaseProvider) -> None:
        """Register ``provider`` under its id, replacing any previous adapter."""
        self._providers[provider.id] = provider

    def get(self, provider_id: str) -> BaseProvider | None:
        return self._providers.get(provider_id)

    def has(self, provider_id: str) -> bool:
        return provider_id in self._providers

    __contains__ = has

    def ids(self) -> list[str]:
        return list(self._providers)

    def values(self) -> list[BaseProvider]:
        return list(self._providers.values())
