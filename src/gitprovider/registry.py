"""Lookup of the Git provider responsible for a repository URL."""

from __future__ import annotations

import logging
from typing import Iterable

from config import settings
from gitprovider.base import GitProvider

logger = logging.getLogger(__name__)


class GitProviderRegistry:
    """Ordered collection of configured Git providers."""

    def __init__(self, providers: Iterable[GitProvider] = ()) -> None:
        """Initialize the registry with provider instances in priority order."""
        self._providers = list(providers)
        if self._providers:
            logger.info(
                "Git providers registered: %s",
                ", ".join(provider.provider_id for provider in self._providers),
            )

    @property
    def providers(self) -> list[GitProvider]:
        """Return registered providers."""
        return list(self._providers)

    def find_provider(self, repository_url: str) -> GitProvider | None:
        """Return the first provider supporting the URL, if any."""
        for provider in self._providers:
            if provider.supports(repository_url):
                return provider
        return None


def build_default_registry() -> GitProviderRegistry:
    """Build a registry from the enabled provider settings."""
    providers: list[GitProvider] = []
    if settings.github.enabled:
        from gitprovider.github import GitHubProvider

        providers.append(GitHubProvider())
    return GitProviderRegistry(providers)
