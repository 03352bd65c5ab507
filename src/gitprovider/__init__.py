"""Git hosting integrations used to look up release metadata."""

from gitprovider.base import GitProvider, GitProviderError, ReleaseAuthor, ReleaseInfo, tag_candidates
from gitprovider.registry import GitProviderRegistry, build_default_registry

__all__ = [
    "GitProvider",
    "GitProviderError",
    "GitProviderRegistry",
    "ReleaseAuthor",
    "ReleaseInfo",
    "build_default_registry",
    "tag_candidates",
]
