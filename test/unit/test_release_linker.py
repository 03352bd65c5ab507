"""Unit tests for release linking and the pending fetch batch."""

from __future__ import annotations

from contextlib import closing
from datetime import datetime, timedelta, timezone

from gitprovider.base import GitProviderError, ReleaseAuthor, ReleaseInfo
from gitprovider.registry import GitProviderRegistry
from models import Release, ReleaseFetchAttempt, Repository, VersionHistory
from releases.attempt_ledger import AttemptLedger
from releases.linker import ReleaseLinker
from releases.work_queue import ReleaseFetchQueue

T0 = datetime(2026, 3, 2, 12, 0, tzinfo=timezone.utc)
REPO_URL = "https://github.com/acme/checkout"


class _Clock:
    """Mutable clock for deterministic batch timing."""

    def __init__(self, now: datetime) -> None:
        self.now = now

    def __call__(self) -> datetime:
        return self.now


class _StubProvider:
    """Git provider stub answering from a version map."""

    provider_id = "github"

    def __init__(self, releases=None, errors=None) -> None:
        self.releases: dict[str, ReleaseInfo] = releases or {}
        self.errors: dict[str, Exception] = errors or {}
        self.calls: list[tuple[str, str]] = []

    def supports(self, repository_url: str) -> bool:
        """Handle github.com URLs only."""
        return "github.com" in repository_url

    def fetch_release(self, repository_url: str, version: str) -> ReleaseInfo | None:
        """Return the configured release, raise the configured error, or None."""
        self.calls.append((repository_url, version))
        if version in self.errors:
            raise self.errors[version]
        return self.releases.get(version)


def _info(tag: str) -> ReleaseInfo:
    """Build release metadata for a tag."""
    return ReleaseInfo(
        provider="github",
        tag_name=tag,
        name=f"Release {tag}",
        body="Bug fixes",
        published_at=T0 - timedelta(days=1),
        html_url=f"{REPO_URL}/releases/tag/{tag}",
        authors=(ReleaseAuthor(login="octocat", avatar_url="https://avatars.example/octocat"),),
    )


def _seed(factory, make_instance, versions, *, repository_url=REPO_URL, cluster="prod-eu-1"):
    """Persist an instance with one unlinked row per version and return the row ids."""
    with closing(factory()) as session:
        instance = make_instance(session, cluster=cluster, repository_url=repository_url)
        ids = []
        for offset, version in enumerate(versions):
            entry = VersionHistory(
                workload_instance_id=instance.id,
                current_version=version,
                detected_at=T0 + timedelta(minutes=offset),
            )
            session.add(entry)
            session.flush()
            ids.append(entry.id)
        session.commit()
    return ids


def _repository_id(factory, url=REPO_URL) -> int:
    with closing(factory()) as session:
        return session.query(Repository).filter_by(url=url).one().id


def _entry(factory, entry_id) -> VersionHistory:
    with closing(factory()) as session:
        return session.get(VersionHistory, entry_id)


def _linker(factory, provider=None, clock=None) -> ReleaseLinker:
    providers = [provider] if provider is not None else []
    return ReleaseLinker(
        factory,
        registry=GitProviderRegistry(providers),
        queue=ReleaseFetchQueue(factory, ledger=AttemptLedger(retry_after=timedelta(hours=24))),
        batch_size=10,
        now_provider=clock or _Clock(T0 + timedelta(hours=1)),
    )


def _store_release(factory, tag: str) -> int:
    repository_id = _repository_id(factory)
    with closing(factory()) as session:
        release = Release(
            repository_id=repository_id,
            tag_name=tag,
            provider="github",
            fetched_at=T0,
        )
        session.add(release)
        session.commit()
        return release.id


def test_queue_release_fetch_links_stored_release(sqlite_session_factory, make_instance) -> None:
    """A new row is linked immediately to a stored release under a tag variant."""
    (entry_id,) = _seed(sqlite_session_factory, make_instance, ["1.2.0"])
    release_id = _store_release(sqlite_session_factory, "v1.2.0")

    linked = _linker(sqlite_session_factory).queue_release_fetch(entry_id)

    assert linked is True
    assert _entry(sqlite_session_factory, entry_id).release_id == release_id


def test_queue_release_fetch_defers_unknown_release(sqlite_session_factory, make_instance) -> None:
    """Without a stored release the row stays unlinked for the batch."""
    (entry_id,) = _seed(sqlite_session_factory, make_instance, ["v9.9.9"])

    assert _linker(sqlite_session_factory).queue_release_fetch(entry_id) is False
    assert _entry(sqlite_session_factory, entry_id).release_id is None


def test_queue_release_fetch_without_repository(sqlite_session_factory, make_instance) -> None:
    """Rows of workloads without a repository are never linked."""
    (entry_id,) = _seed(sqlite_session_factory, make_instance, ["v1.0.0"], repository_url=None)

    assert _linker(sqlite_session_factory).queue_release_fetch(entry_id) is False


def test_process_pending_links_stored_release_without_provider_call(
    sqlite_session_factory, make_instance
) -> None:
    """The batch links against stored releases before asking a provider."""
    (entry_id,) = _seed(sqlite_session_factory, make_instance, ["v1.2.0"])
    release_id = _store_release(sqlite_session_factory, "1.2.0")
    provider = _StubProvider()

    counts = _linker(sqlite_session_factory, provider).process_pending()

    assert counts["linked"] == 1
    assert provider.calls == []
    assert _entry(sqlite_session_factory, entry_id).release_id == release_id


def test_process_pending_fetches_and_links_siblings(sqlite_session_factory, make_instance) -> None:
    """A fetched release links every pending row of the repository with a matching version."""
    (first_id,) = _seed(sqlite_session_factory, make_instance, ["v1.2.0"], cluster="prod-eu-1")
    (second_id,) = _seed(sqlite_session_factory, make_instance, ["1.2.0"], cluster="prod-us-1")
    repository_id = _repository_id(sqlite_session_factory)
    with closing(sqlite_session_factory()) as session:
        session.add(
            ReleaseFetchAttempt(
                repository_id=repository_id,
                version="1.2.0",
                attempted_at=T0 - timedelta(hours=30),
            )
        )
        session.commit()
    provider = _StubProvider(releases={"v1.2.0": _info("v1.2.0")})

    counts = _linker(sqlite_session_factory, provider).process_pending()

    assert counts["selected"] == 2
    assert counts["fetched"] == 1
    assert counts["skipped"] == 1
    assert provider.calls == [(REPO_URL, "v1.2.0")]
    first = _entry(sqlite_session_factory, first_id)
    second = _entry(sqlite_session_factory, second_id)
    assert first.release_id is not None
    assert second.release_id == first.release_id
    with closing(sqlite_session_factory()) as session:
        release = session.get(Release, first.release_id)
        assert release.tag_name == "v1.2.0"
        assert release.authors == [{"login": "octocat", "avatar_url": "https://avatars.example/octocat"}]
        assert session.query(ReleaseFetchAttempt).count() == 0


def test_process_pending_miss_backs_off(sqlite_session_factory, make_instance) -> None:
    """A miss is recorded and the row is not retried until the window passes."""
    (entry_id,) = _seed(sqlite_session_factory, make_instance, ["v1.3.0"])
    provider = _StubProvider()
    clock = _Clock(T0 + timedelta(hours=1))
    linker = _linker(sqlite_session_factory, provider, clock)

    first = linker.process_pending()
    clock.now += timedelta(hours=2)
    second = linker.process_pending()
    clock.now += timedelta(hours=23)
    third = linker.process_pending()

    assert first["missed"] == 1
    assert second["selected"] == 0
    assert third["selected"] == 1
    assert len(provider.calls) == 2
    with closing(sqlite_session_factory()) as session:
        attempt = session.query(ReleaseFetchAttempt).one()
        assert attempt.version == "1.3.0"
        assert attempt.attempted_at == clock.now
    assert _entry(sqlite_session_factory, entry_id).release_id is None


def test_process_pending_isolates_failures(sqlite_session_factory, make_instance) -> None:
    """A provider error on one row does not stop its siblings."""
    failing_id, ok_id = _seed(sqlite_session_factory, make_instance, ["v2.0.0", "v2.1.0"])
    provider = _StubProvider(
        releases={"v2.1.0": _info("v2.1.0")},
        errors={"v2.0.0": GitProviderError("github", "HTTP 500")},
    )

    counts = _linker(sqlite_session_factory, provider).process_pending()

    assert counts["failed"] == 1
    assert counts["fetched"] == 1
    assert _entry(sqlite_session_factory, failing_id).release_id is None
    assert _entry(sqlite_session_factory, ok_id).release_id is not None
    with closing(sqlite_session_factory()) as session:
        attempt = session.query(ReleaseFetchAttempt).one()
        assert attempt.version == "2.0.0"


def test_process_pending_without_provider_backs_off(sqlite_session_factory, make_instance) -> None:
    """A repository no provider supports is skipped and backed off."""
    _seed(sqlite_session_factory, make_instance, ["v1.0.0"], repository_url="https://gitlab.com/acme/checkout")
    linker = _linker(sqlite_session_factory, _StubProvider())

    first = linker.process_pending()
    second = linker.process_pending()

    assert first["skipped"] == 1
    assert second["selected"] == 0


def test_process_pending_ignores_rows_without_repository(sqlite_session_factory, make_instance) -> None:
    """Only rows whose workload has a repository are candidates."""
    _seed(sqlite_session_factory, make_instance, ["v1.0.0"], repository_url=None)

    counts = _linker(sqlite_session_factory, _StubProvider()).process_pending()

    assert counts["selected"] == 0


def test_process_pending_respects_limit(sqlite_session_factory, make_instance) -> None:
    """The batch selects at most the requested number of rows, oldest first."""
    ids = _seed(sqlite_session_factory, make_instance, ["v1.0.0", "v1.1.0", "v1.2.0"])
    provider = _StubProvider()

    counts = _linker(sqlite_session_factory, provider).process_pending(limit=2)

    assert counts["selected"] == 2
    assert [version for _, version in provider.calls] == ["v1.0.0", "v1.1.0"]
    assert len(ids) == 3


def test_claim_skips_linked_row(sqlite_session_factory, make_instance) -> None:
    """claim returns None once a row has a release."""
    (entry_id,) = _seed(sqlite_session_factory, make_instance, ["v1.0.0"])
    release_id = _store_release(sqlite_session_factory, "v1.0.0")
    queue = ReleaseFetchQueue(sqlite_session_factory, ledger=AttemptLedger(retry_after=timedelta(hours=24)))
    with closing(sqlite_session_factory()) as session:
        session.get(VersionHistory, entry_id).release_id = release_id
        session.commit()

        assert queue.claim(session, entry_id, now=T0) is None


def test_claim_returns_item(sqlite_session_factory, make_instance) -> None:
    """claim returns the repository and version for an eligible row."""
    (entry_id,) = _seed(sqlite_session_factory, make_instance, ["v1.0.0"])
    queue = ReleaseFetchQueue(sqlite_session_factory, ledger=AttemptLedger(retry_after=timedelta(hours=24)))
    with closing(sqlite_session_factory()) as session:
        item = queue.claim(session, entry_id, now=T0)

    assert item.version_history_id == entry_id
    assert item.repository_url == REPO_URL
    assert item.version == "v1.0.0"
