"""Release records and their links to version history rows."""

from __future__ import annotations

import logging
from datetime import datetime

from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from gitprovider.base import ReleaseInfo, tag_candidates
from models import Release, Repository, VersionHistory, Workload, WorkloadInstance

logger = logging.getLogger(__name__)


def tag_variants(tag_name: str) -> set[str]:
    """Return the versions a release tag can be deployed as."""
    stripped = tag_name.removeprefix("v")
    return {tag_name, stripped, f"v{stripped}"}


def _apply_release_info(release: Release, info: ReleaseInfo, fetched_at: datetime) -> None:
    release.name = info.name
    release.body = info.body
    release.html_url = info.html_url
    release.published_at = info.published_at
    release.is_draft = info.is_draft
    release.is_prerelease = info.is_prerelease
    release.authors = [author.to_dict() for author in info.authors]
    release.provider = info.provider
    release.fetched_at = fetched_at


class ReleaseService:
    """Session-scoped release lookups, upserts and linking."""

    def find_release(self, session: Session, repository_id: int, tag_name: str) -> Release | None:
        """Return the release with an exact tag name."""
        return (
            session.query(Release)
            .filter(Release.repository_id == repository_id, Release.tag_name == tag_name)
            .first()
        )

    def find_release_for_version(
        self,
        session: Session,
        repository_id: int,
        version: str,
    ) -> Release | None:
        """Return the first release matching the version's tag candidates."""
        for tag in tag_candidates(version):
            release = self.find_release(session, repository_id, tag)
            if release is not None:
                logger.debug("Found release for repository %s with tag variant %s", repository_id, tag)
                return release
        return None

    def upsert_release(
        self,
        session: Session,
        repository: Repository,
        info: ReleaseInfo,
        *,
        now: datetime,
    ) -> Release:
        """Create the release for (repository, tag) or refresh the stored one."""
        existing = self.find_release(session, repository.id, info.tag_name)
        if existing is not None:
            logger.debug("Updating existing release %s for %s", info.tag_name, repository.url)
            _apply_release_info(existing, info, now)
            session.flush()
            return existing

        release = Release(repository_id=repository.id, tag_name=info.tag_name)
        _apply_release_info(release, info, now)
        try:
            with session.begin_nested():
                session.add(release)
                session.flush()
        except IntegrityError:
            existing = self.find_release(session, repository.id, info.tag_name)
            if existing is None:
                raise
            _apply_release_info(existing, info, now)
            session.flush()
            return existing
        logger.info("Created release %s for %s", info.tag_name, repository.url)
        return release

    def link_pending_entries(self, session: Session, repository_id: int, release: Release) -> int:
        """Link unlinked rows of the repository whose version matches the release tag."""
        instance_ids = (
            session.query(WorkloadInstance.id)
            .join(Workload, WorkloadInstance.workload_id == Workload.id)
            .filter(Workload.repository_id == repository_id)
        )
        pending = (
            session.query(VersionHistory)
            .filter(
                VersionHistory.release_id.is_(None),
                VersionHistory.workload_instance_id.in_(instance_ids.scalar_subquery()),
                VersionHistory.current_version.in_(sorted(tag_variants(release.tag_name))),
            )
            .all()
        )
        for entry in pending:
            entry.release_id = release.id
            logger.info("Linked pending version history %s to release %s", entry.id, release.tag_name)
        session.flush()
        return len(pending)
