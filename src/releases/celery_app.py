"""Celery entry point for background release linking."""

from __future__ import annotations

import logging
from typing import Callable

from celery import Celery
from celery.signals import setup_logging

from config import settings
from gitprovider.registry import build_default_registry
from logging_config import configure_logging
from releases.linker import ReleaseLinker, empty_batch_counts
from services.database import get_sync_session

LOGGER = logging.getLogger(__name__)

PROCESS_PENDING_TASK_NAME = "releases.process_pending_fetches"

celery_app = Celery("deploytrail.releases")
celery_app.conf.broker_url = settings.celery.broker_url
celery_app.conf.result_backend = settings.celery.result_backend
celery_app.conf.task_default_queue = settings.celery.queue
celery_app.conf.task_serializer = "json"
celery_app.conf.result_serializer = "json"
celery_app.conf.accept_content = ["json"]
celery_app.conf.enable_utc = True
celery_app.conf.timezone = "UTC"

beat_schedule = celery_app.conf.get("beat_schedule")
if beat_schedule is None:
    beat_schedule = {}
if settings.release_fetch.enabled:
    beat_schedule[PROCESS_PENDING_TASK_NAME] = {
        "task": PROCESS_PENDING_TASK_NAME,
        "schedule": float(settings.release_fetch.interval_seconds),
    }
celery_app.conf.beat_schedule = beat_schedule


@setup_logging.connect
def _configure_worker_logging(**_kwargs) -> None:
    """Replace Celery's logging setup with the service stdout handler."""
    configure_logging(
        level=settings.log_level,
        json_output=settings.log_json,
        service="deploytrail-releases",
    )


def _session_factory():
    """Return a new synchronous SQLAlchemy session for release tasks."""
    return get_sync_session()


def _default_linker_factory() -> ReleaseLinker:
    """Build the production release linker."""
    return ReleaseLinker(
        session_factory=_session_factory,
        registry=build_default_registry(),
    )


_linker_factory: Callable[[], ReleaseLinker] = _default_linker_factory


@celery_app.task(name=PROCESS_PENDING_TASK_NAME)
def process_pending_fetches() -> dict[str, int]:
    """Run one batch of deferred release lookups."""
    if not settings.release_fetch.enabled:
        LOGGER.debug("Release fetching disabled; skipping batch")
        return empty_batch_counts()
    return _linker_factory().process_pending()
