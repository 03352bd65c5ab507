"""Work queue over version history rows awaiting release metadata.

The queue is backed by the ``version_history`` table and the attempt ledger:

- **poll** selects candidate row ids (no release, repository known, no recent
  ledger entry) skipping rows another worker currently holds;
- **claim** locks one row in the caller's session and re-checks eligibility;
- **ack** clears the ledger entry after a successful link;
- **nack** records a miss so the row backs off for the ledger window.

Keeping the steps explicit lets the transport move to a real broker without
changing the linker.
"""

from __future__ import annotations

import logging
from contextlib import closing
from dataclasses import dataclass
from datetime import datetime
from typing import Callable

from sqlalchemy.orm import Session

from models import Repository, VersionHistory, Workload, WorkloadInstance
from releases.attempt_ledger import AttemptLedger

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class ReleaseFetchItem:
    """A claimed row together with the repository it should link against."""

    version_history_id: int
    repository_id: int
    repository_url: str
    version: str


class ReleaseFetchQueue:
    """Claim, acknowledge and back off release lookups."""

    def __init__(
        self,
        session_factory: Callable[[], Session],
        *,
        ledger: AttemptLedger | None = None,
    ) -> None:
        """Initialize with a session factory and the attempt ledger."""
        self._session_factory = session_factory
        self._ledger = ledger or AttemptLedger()

    @property
    def ledger(self) -> AttemptLedger:
        """Return the backing attempt ledger."""
        return self._ledger

    def poll(self, *, limit: int, now: datetime) -> list[int]:
        """Return up to ``limit`` eligible row ids, oldest detection first."""
        with closing(self._session_factory()) as session:
            try:
                rows = (
                    session.query(VersionHistory.id)
                    .join(WorkloadInstance, VersionHistory.workload_instance_id == WorkloadInstance.id)
                    .join(Workload, WorkloadInstance.workload_id == Workload.id)
                    .filter(
                        VersionHistory.release_id.is_(None),
                        Workload.repository_id.isnot(None),
                        ~self._ledger.recent_attempt_clause(
                            Workload.repository_id,
                            VersionHistory.current_version,
                            now,
                        ),
                    )
                    .order_by(VersionHistory.detected_at.asc(), VersionHistory.id.asc())
                    .limit(limit)
                    .with_for_update(skip_locked=True, of=VersionHistory)
                    .all()
                )
                session.commit()
            except Exception:
                session.rollback()
                raise
        return [row.id for row in rows]

    def claim(self, session: Session, version_history_id: int, *, now: datetime) -> ReleaseFetchItem | None:
        """Lock a row for this session, or return None if it is no longer eligible."""
        locked_id = (
            session.query(VersionHistory.id)
            .filter(VersionHistory.id == version_history_id, VersionHistory.release_id.is_(None))
            .with_for_update(skip_locked=True)
            .scalar()
        )
        if locked_id is None:
            logger.debug("Version history %s already linked or claimed; skipping", version_history_id)
            return None

        row = (
            session.query(VersionHistory.current_version, Repository.id, Repository.url)
            .join(WorkloadInstance, VersionHistory.workload_instance_id == WorkloadInstance.id)
            .join(Workload, WorkloadInstance.workload_id == Workload.id)
            .join(Repository, Workload.repository_id == Repository.id)
            .filter(VersionHistory.id == locked_id)
            .first()
        )
        if row is None:
            logger.debug("Version history %s has no repository; skipping", version_history_id)
            return None

        version, repository_id, repository_url = row
        if self._ledger.was_recently_attempted(session, repository_id, version, now=now):
            logger.debug("Version history %s attempted recently; skipping", version_history_id)
            return None
        return ReleaseFetchItem(
            version_history_id=locked_id,
            repository_id=repository_id,
            repository_url=repository_url,
            version=version,
        )

    def ack(self, session: Session, item: ReleaseFetchItem) -> None:
        """Mark the item done by clearing its ledger entry."""
        self._ledger.clear(session, item.repository_id, item.version)

    def nack(self, session: Session, item: ReleaseFetchItem, *, now: datetime) -> None:
        """Back the item off for the ledger window."""
        self._ledger.record_failed_attempt(session, item.repository_id, item.version, now=now)
