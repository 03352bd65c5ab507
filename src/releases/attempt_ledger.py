"""Negative cache of failed release lookups per repository and version."""

from __future__ import annotations

import logging
from datetime import datetime, timedelta

from sqlalchemy import and_, case, exists, func
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session

from config import settings
from models import ReleaseFetchAttempt

logger = logging.getLogger(__name__)


def normalize_version(version: str) -> str:
    """Strip one leading ``v`` or ``V`` so v1.2.3 and 1.2.3 share an entry."""
    if version[:1] in ("v", "V"):
        return version[1:]
    return version


def normalized_version_expression(column):
    """SQL form of ``normalize_version`` for use in selection queries."""
    return case(
        (func.lower(func.substr(column, 1, 1)) == "v", func.substr(column, 2)),
        else_=column,
    )


class AttemptLedger:
    """Records misses so the same lookup is not retried inside the backoff window."""

    def __init__(self, *, retry_after: timedelta | None = None) -> None:
        """Initialize with the backoff window (defaults to configuration)."""
        self._retry_after = retry_after or timedelta(hours=settings.release_fetch.retry_after_hours)

    @property
    def retry_after(self) -> timedelta:
        """Return the backoff window."""
        return self._retry_after

    def cutoff(self, now: datetime) -> datetime:
        """Return the instant before which attempts no longer block retries."""
        return now - self._retry_after

    def recent_attempt_clause(self, repository_id_column, version_column, now: datetime):
        """Return an EXISTS clause matching a blocking ledger entry for a row."""
        return exists().where(
            and_(
                ReleaseFetchAttempt.repository_id == repository_id_column,
                ReleaseFetchAttempt.version == normalized_version_expression(version_column),
                ReleaseFetchAttempt.attempted_at > self.cutoff(now),
            )
        )

    def find(self, session: Session, repository_id: int, version: str) -> ReleaseFetchAttempt | None:
        """Return the ledger entry for a repository and version, if any."""
        return (
            session.query(ReleaseFetchAttempt)
            .filter(
                ReleaseFetchAttempt.repository_id == repository_id,
                ReleaseFetchAttempt.version == normalize_version(version),
            )
            .first()
        )

    def was_recently_attempted(
        self,
        session: Session,
        repository_id: int,
        version: str,
        *,
        now: datetime,
    ) -> bool:
        """Return True when a miss was recorded inside the backoff window."""
        entry = self.find(session, repository_id, version)
        return entry is not None and entry.attempted_at > self.cutoff(now)

    def record_failed_attempt(
        self,
        session: Session,
        repository_id: int,
        version: str,
        *,
        now: datetime,
    ) -> ReleaseFetchAttempt:
        """Create or refresh the ledger entry with ``attempted_at = now``."""
        normalized = normalize_version(version)
        entry = self.find(session, repository_id, version)
        if entry is not None:
            entry.attempted_at = now
            session.flush()
            logger.debug("Refreshed failed fetch attempt for repository %s version %s", repository_id, normalized)
            return entry

        entry = ReleaseFetchAttempt(repository_id=repository_id, version=normalized, attempted_at=now)
        try:
            with session.begin_nested():
                session.add(entry)
                session.flush()
        except IntegrityError:
            entry = self.find(session, repository_id, version)
            if entry is None:
                raise
            entry.attempted_at = now
            session.flush()
        logger.debug("Recorded failed fetch attempt for repository %s version %s", repository_id, normalized)
        return entry

    def clear(self, session: Session, repository_id: int, version: str) -> int:
        """Delete the ledger entry once a release has been linked."""
        deleted = (
            session.query(ReleaseFetchAttempt)
            .filter(
                ReleaseFetchAttempt.repository_id == repository_id,
                ReleaseFetchAttempt.version == normalize_version(version),
            )
            .delete(synchronize_session=False)
        )
        if deleted:
            logger.debug("Cleared failed fetch attempt for repository %s version %s", repository_id, version)
        return deleted
