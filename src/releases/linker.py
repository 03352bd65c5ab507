"""Links version history rows to upstream release metadata.

New rows get an immediate local lookup. Rows that stay unlinked are picked up
by the periodic batch, which processes every row in its own session so that a
provider failure, malformed payload or constraint violation on one row never
rolls back or blocks its siblings.
"""

from __future__ import annotations

import logging
from contextlib import closing
from datetime import datetime, timezone
from typing import Callable

from sqlalchemy.orm import Session

from config import settings
from gitprovider.registry import GitProviderRegistry
from logging_config import log_context
from models import Release, Repository, VersionHistory
from releases.attempt_ledger import AttemptLedger
from releases.release_service import ReleaseService
from releases.work_queue import ReleaseFetchItem, ReleaseFetchQueue

logger = logging.getLogger(__name__)

OUTCOME_LINKED = "linked"
OUTCOME_FETCHED = "fetched"
OUTCOME_MISSED = "missed"
OUTCOME_SKIPPED = "skipped"
OUTCOME_FAILED = "failed"
_OUTCOMES = (OUTCOME_LINKED, OUTCOME_FETCHED, OUTCOME_MISSED, OUTCOME_SKIPPED, OUTCOME_FAILED)


def empty_batch_counts() -> dict[str, int]:
    """Return a zeroed batch summary."""
    counts = {"selected": 0}
    counts.update({outcome: 0 for outcome in _OUTCOMES})
    return counts


class ReleaseLinker:
    """Matches timeline rows to releases, locally first and then via providers."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        registry: GitProviderRegistry | None = None,
        release_service: ReleaseService | None = None,
        queue: ReleaseFetchQueue | None = None,
        batch_size: int | None = None,
        now_provider: Callable[[], datetime] | None = None,
    ) -> None:
        """Initialize with persistence, provider lookup and batch settings."""
        self._session_factory = session_factory
        self._registry = registry or GitProviderRegistry()
        self._releases = release_service or ReleaseService()
        self._queue = queue or ReleaseFetchQueue(session_factory, ledger=AttemptLedger())
        self._batch_size = batch_size or settings.release_fetch.batch_size
        self._now_provider = now_provider or (lambda: datetime.now(timezone.utc))

    def queue_release_fetch(self, version_history_id: int, *, session: Session | None = None) -> bool:
        """Try to link a freshly created row against releases already stored.

        Returns True when the row is linked. Unlinked rows are left for the
        periodic batch. When ``session`` is given the work joins the caller's
        transaction; otherwise a dedicated session is committed.
        """
        if session is not None:
            return self._link_existing(session, version_history_id)

        with closing(self._session_factory()) as own_session:
            own_session.expire_on_commit = False
            try:
                linked = self._link_existing(own_session, version_history_id)
                own_session.commit()
            except Exception:
                own_session.rollback()
                raise
        return linked

    def _link_existing(self, session: Session, version_history_id: int) -> bool:
        entry = session.get(VersionHistory, version_history_id)
        if entry is None:
            logger.debug("Version history %s no longer exists", version_history_id)
            return False
        if entry.release_id is not None:
            return True

        workload = entry.workload_instance.workload
        if workload.repository_id is None:
            logger.debug("No repository for workload %s; release lookup skipped", workload.name)
            return False

        release = self._releases.find_release_for_version(session, workload.repository_id, entry.current_version)
        if release is None:
            logger.debug(
                "No stored release for %s version %s; deferred to background fetch",
                workload.name,
                entry.current_version,
            )
            return False

        self._link(entry, release)
        logger.info(
            "Linked version history %s (version %s) to existing release %s",
            entry.id,
            entry.current_version,
            release.tag_name,
        )
        return True

    def process_pending(self, *, limit: int | None = None) -> dict[str, int]:
        """Process one batch of unlinked rows and return outcome counts."""
        now = self._now_provider()
        counts = empty_batch_counts()
        candidate_ids = self._queue.poll(limit=limit or self._batch_size, now=now)
        counts["selected"] = len(candidate_ids)
        if not candidate_ids:
            return counts

        logger.info("Processing %s pending release fetches", len(candidate_ids))
        for version_history_id in candidate_ids:
            with log_context({"version_history_id": version_history_id}):
                outcome = self._process_item(version_history_id, now)
            counts[outcome] += 1

        logger.info(
            "Release fetch batch finished: linked=%s fetched=%s missed=%s skipped=%s failed=%s",
            counts[OUTCOME_LINKED],
            counts[OUTCOME_FETCHED],
            counts[OUTCOME_MISSED],
            counts[OUTCOME_SKIPPED],
            counts[OUTCOME_FAILED],
        )
        return counts

    def _process_item(self, version_history_id: int, now: datetime) -> str:
        """Process one row inside its own session and commit."""
        item: ReleaseFetchItem | None = None
        with closing(self._session_factory()) as session:
            session.expire_on_commit = False
            try:
                item = self._queue.claim(session, version_history_id, now=now)
                if item is None:
                    session.rollback()
                    return OUTCOME_SKIPPED
                outcome = self._resolve(session, item, now)
                session.commit()
                return outcome
            except Exception:
                session.rollback()
                logger.exception("Release fetch failed for version history %s", version_history_id)

        if item is not None:
            self._nack_after_failure(item, now)
        return OUTCOME_FAILED

    def _resolve(self, session: Session, item: ReleaseFetchItem, now: datetime) -> str:
        entry = session.get(VersionHistory, item.version_history_id)

        release = self._releases.find_release_for_version(session, item.repository_id, item.version)
        if release is not None:
            self._link(entry, release)
            self._queue.ack(session, item)
            logger.info(
                "Linked version history %s (version %s) to existing release %s",
                entry.id,
                item.version,
                release.tag_name,
            )
            return OUTCOME_LINKED

        provider = self._registry.find_provider(item.repository_url)
        if provider is None:
            logger.warning("No provider found for repository URL: %s", item.repository_url)
            self._queue.nack(session, item, now=now)
            return OUTCOME_SKIPPED

        logger.info(
            "Fetching release from %s for %s version %s",
            provider.provider_id,
            item.repository_url,
            item.version,
        )
        info = provider.fetch_release(item.repository_url, item.version)
        if info is None:
            self._queue.nack(session, item, now=now)
            logger.info(
                "No release found for %s version %s (retry after %s)",
                item.repository_url,
                item.version,
                self._queue.ledger.retry_after,
            )
            return OUTCOME_MISSED

        repository = session.get(Repository, item.repository_id)
        release = self._releases.upsert_release(session, repository, info, now=now)
        self._link(entry, release)
        self._releases.link_pending_entries(session, item.repository_id, release)
        self._queue.ack(session, item)
        logger.info("Fetched release %s and linked pending version histories", release.tag_name)
        return OUTCOME_FETCHED

    def _nack_after_failure(self, item: ReleaseFetchItem, now: datetime) -> None:
        """Record a backoff entry for a failed item in a fresh session."""
        with closing(self._session_factory()) as session:
            try:
                self._queue.nack(session, item, now=now)
                session.commit()
            except Exception:
                session.rollback()
                logger.exception(
                    "Could not record failed fetch attempt for version history %s",
                    item.version_history_id,
                )

    @staticmethod
    def _link(entry: VersionHistory, release: Release) -> None:
        entry.release_id = release.id
        entry.release = release
