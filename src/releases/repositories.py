"""Source repository records keyed by normalized URL."""

from __future__ import annotations

import logging
import re

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gitprovider.registry import GitProviderRegistry
from models import Repository

logger = logging.getLogger(__name__)

_OWNER_NAME_PATTERN = re.compile(r"(?:github|gitlab)\.com[/:]([^/]+)/([^/]+)")
_UNKNOWN_PROVIDER = "unknown"


def normalize_repository_url(url: str) -> str:
    """Lowercase a repository URL and strip a trailing slash and .git suffix."""
    normalized = url.strip().lower()
    normalized = normalized.removesuffix("/")
    normalized = normalized.removesuffix(".git")
    return normalized.removesuffix("/")


def parse_owner_and_name(url: str) -> tuple[str | None, str | None]:
    """Extract owner and repository name from GitHub or GitLab URLs."""
    match = _OWNER_NAME_PATTERN.search(url)
    if match is None:
        return None, None
    return match.group(1), match.group(2).removesuffix(".git")


class RepositoryService:
    """Find-or-create access to repository records."""

    def __init__(self, registry: GitProviderRegistry | None = None) -> None:
        """Initialize with the registry used to attribute a provider."""
        self._registry = registry or GitProviderRegistry()

    def find_by_url(self, session: Session, url: str) -> Repository | None:
        """Return the repository for a URL, matching on the normalized form."""
        normalized = normalize_repository_url(url)
        return session.query(Repository).filter(Repository.url == normalized).first()

    def find_or_create(self, session: Session, raw_url: str) -> Repository:
        """Return the repository for a URL, creating it on first sight."""
        normalized = normalize_repository_url(raw_url)
        existing = session.query(Repository).filter(Repository.url == normalized).first()
        if existing is not None:
            return existing

        provider = self._registry.find_provider(raw_url)
        provider_id = provider.provider_id if provider is not None else _UNKNOWN_PROVIDER
        owner, name = parse_owner_and_name(normalized)
        repository = Repository(url=normalized, provider=provider_id, owner=owner, name=name)
        try:
            with session.begin_nested():
                session.add(repository)
                session.flush()
        except IntegrityError:
            # Another ingest created the same repository concurrently.
            return session.query(Repository).filter(Repository.url == normalized).one()
        logger.info("Created repository record for %s (provider: %s)", normalized, provider_id)
        return repository
