"""GitHub Releases integration."""

from __future__ import annotations

import logging
import re
from datetime import datetime

import httpx
from pydantic import BaseModel, ConfigDict, ValidationError

from config import settings
from gitprovider.base import GitProviderError, ReleaseAuthor, ReleaseInfo, tag_candidates
from services.http_client import HttpClient, RetryConfig

logger = logging.getLogger(__name__)

_API_VERSION = "2022-11-28"
_URL_PATTERN = re.compile(r"github\.com[/:]([^/]+)/([^/]+?)(?:\.git)?/?$", re.IGNORECASE)


class _GitHubUser(BaseModel):
    """Subset of the GitHub user payload attached to a release."""

    model_config = ConfigDict(extra="ignore")

    login: str
    avatar_url: str | None = None


class _GitHubRelease(BaseModel):
    """Subset of the GitHub release payload used for linking."""

    model_config = ConfigDict(extra="ignore")

    tag_name: str
    name: str | None = None
    body: str | None = None
    published_at: datetime | None = None
    html_url: str | None = None
    draft: bool = False
    prerelease: bool = False
    author: _GitHubUser | None = None


def parse_repository_url(repository_url: str) -> tuple[str, str]:
    """Return (owner, repo) for https, ssh and bare GitHub URLs."""
    match = _URL_PATTERN.search(repository_url.strip())
    if match is None:
        raise ValueError(f"Invalid GitHub repository URL: {repository_url}")
    return match.group(1), match.group(2)


class GitHubProvider:
    """Fetches release metadata from the GitHub Releases API."""

    provider_id = "github"

    def __init__(
        self,
        *,
        api_base_url: str | None = None,
        token: str | None = None,
        http_client: HttpClient | None = None,
    ) -> None:
        """Initialize with API location, credentials and an HTTP client."""
        self._api_base_url = (api_base_url or settings.github.api_base_url).rstrip("/")
        self._token = token if token is not None else settings.github.token
        self._http = http_client or HttpClient(
            retry_config=RetryConfig(max_attempts=2, backoff_factor=0.5),
        )

    def supports(self, repository_url: str) -> bool:
        """Return True for github.com repository URLs."""
        return "github.com" in repository_url.lower()

    def fetch_release(self, repository_url: str, version: str) -> ReleaseInfo | None:
        """Try each tag candidate in order and return the first release found."""
        owner, repo = parse_repository_url(repository_url)
        logger.debug("Fetching release for %s/%s version %s", owner, repo, version)

        for tag in tag_candidates(version):
            release = self._get_release_by_tag(owner, repo, tag)
            if release is not None:
                logger.info("Found release for %s/%s with tag %s", owner, repo, tag)
                return self._to_release_info(release)

        logger.debug("No release found for %s/%s version %s", owner, repo, version)
        return None

    def _headers(self) -> dict[str, str]:
        headers = {
            "Accept": "application/vnd.github+json",
            "X-GitHub-Api-Version": _API_VERSION,
        }
        if self._token:
            headers["Authorization"] = f"Bearer {self._token}"
        return headers

    def _get_release_by_tag(self, owner: str, repo: str, tag: str) -> _GitHubRelease | None:
        """Return the release for a tag, None on 404, raise on other failures."""
        url = f"{self._api_base_url}/repos/{owner}/{repo}/releases/tags/{tag}"
        try:
            response = self._http.get(url, headers=self._headers())
        except httpx.HTTPStatusError as exc:
            if exc.response.status_code == 404:
                logger.debug("Release not found for tag %s in %s/%s", tag, owner, repo)
                return None
            raise GitProviderError(
                self.provider_id,
                f"HTTP {exc.response.status_code} fetching {owner}/{repo}@{tag}",
            ) from exc
        except httpx.RequestError as exc:
            raise GitProviderError(
                self.provider_id,
                f"request failed fetching {owner}/{repo}@{tag}: {exc}",
            ) from exc

        try:
            return _GitHubRelease.model_validate(response.json())
        except (ValueError, ValidationError) as exc:
            raise GitProviderError(
                self.provider_id,
                f"malformed release payload for {owner}/{repo}@{tag}",
            ) from exc

    def _to_release_info(self, release: _GitHubRelease) -> ReleaseInfo:
        authors: tuple[ReleaseAuthor, ...] = ()
        if release.author is not None:
            authors = (ReleaseAuthor(login=release.author.login, avatar_url=release.author.avatar_url),)
        return ReleaseInfo(
            provider=self.provider_id,
            tag_name=release.tag_name,
            name=release.name,
            body=release.body,
            published_at=release.published_at,
            html_url=release.html_url,
            authors=authors,
            is_draft=release.draft,
            is_prerelease=release.prerelease,
        )
