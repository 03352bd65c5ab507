"""Git provider contracts and release value types."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Protocol


class GitProviderError(RuntimeError):
    """Raised when a provider call fails for reasons other than not-found."""

    def __init__(self, provider_id: str, message: str) -> None:
        """Initialize the error with the failing provider id."""
        super().__init__(f"{provider_id}: {message}")
        self.provider_id = provider_id


@dataclass(frozen=True)
class ReleaseAuthor:
    """Author attribution for an upstream release."""

    login: str
    avatar_url: str | None = None

    def to_dict(self) -> dict[str, str | None]:
        """Return a JSON-serializable mapping for persistence."""
        return {"login": self.login, "avatar_url": self.avatar_url}


@dataclass(frozen=True)
class ReleaseInfo:
    """Provider-neutral release metadata returned by a lookup."""

    provider: str
    tag_name: str
    name: str | None = None
    body: str | None = None
    published_at: datetime | None = None
    html_url: str | None = None
    authors: tuple[ReleaseAuthor, ...] = field(default_factory=tuple)
    is_draft: bool = False
    is_prerelease: bool = False


class GitProvider(Protocol):
    """Protocol implemented by Git hosting integrations."""

    provider_id: str

    def supports(self, repository_url: str) -> bool:
        """Return True when this provider can handle the repository URL."""
        ...

    def fetch_release(self, repository_url: str, version: str) -> ReleaseInfo | None:
        """Return release metadata for the version, or None when not found.

        Transport and server failures raise ``GitProviderError``.
        """
        ...


def tag_candidates(version: str) -> list[str]:
    """Return tag names to try for a version: exact, v-prefixed, v-stripped."""
    candidates: list[str] = []
    for candidate in (version, f"v{version}", version.removeprefix("v")):
        if candidate and candidate not in candidates:
            candidates.append(candidate)
    return candidates
