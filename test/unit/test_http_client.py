"""Unit tests for HTTP client wrapper with error handling and retries."""

from __future__ import annotations

import logging
import time

import httpx
import pytest

from config import settings
from services.http_client import HttpClient, RetryConfig


def _build_response(
    status_code: int,
    *,
    json_data: object | None = None,
    method: str = "GET",
    url: str = "http://test.example",
) -> httpx.Response:
    """Create a synthetic httpx response with a bound request."""
    request = httpx.Request(method, url)
    return httpx.Response(status_code=status_code, json=json_data, request=request)


class StubSyncClient:
    """Synchronous client stub returning configured responses."""

    def __init__(self, responses: list[httpx.Response | Exception] | None = None) -> None:
        """Initialize the stub with a sequence of responses or exceptions."""
        self.responses = responses or []
        self.call_count = 0
        self.calls: list[tuple[str, str, dict]] = []

    def __enter__(self) -> "StubSyncClient":
        """Enter the context manager."""
        return self

    def __exit__(self, exc_type, exc, tb) -> None:
        """Exit the context manager."""
        pass

    def request(self, method: str, url: str, **kwargs) -> httpx.Response:
        """Return the next configured response or raise the next configured error."""
        self.calls.append((method, url, kwargs))
        if self.call_count >= len(self.responses):
            return _build_response(200, json_data={}, method=method, url=url)

        response_or_error = self.responses[self.call_count]
        self.call_count += 1

        if isinstance(response_or_error, Exception):
            raise response_or_error
        return response_or_error


def _no_sleep(monkeypatch) -> list[float]:
    """Replace time.sleep with a recorder and return the recorded delays."""
    delays: list[float] = []
    monkeypatch.setattr(time, "sleep", delays.append)
    return delays


def test_sync_client_default_timeout_from_settings(monkeypatch) -> None:
    """HttpClient uses settings.http.timeout by default."""
    monkeypatch.setattr(settings.http, "timeout", 42, raising=False)
    monkeypatch.setattr(settings.http, "connect_timeout", 7, raising=False)

    client = HttpClient()
    assert client.timeout == 42
    assert client.connect_timeout == 7


def test_sync_client_custom_timeout_override(monkeypatch) -> None:
    """HttpClient accepts custom timeout overrides."""
    monkeypatch.setattr(settings.http, "timeout", 30, raising=False)

    client = HttpClient(timeout=120, connect_timeout=15)
    assert client.timeout == 120
    assert client.connect_timeout == 15


def test_sync_client_get_success_passes_headers(monkeypatch) -> None:
    """HttpClient.get returns the response and forwards request kwargs."""
    response = _build_response(200, json_data={"result": "ok"})
    stub = StubSyncClient(responses=[response])
    monkeypatch.setattr(httpx, "Client", lambda **kwargs: stub)

    client = HttpClient()
    result = client.get("http://test.example/api", headers={"Accept": "application/json"})

    assert result is not None
    assert result.json() == {"result": "ok"}
    assert stub.calls[0][2] == {"headers": {"Accept": "application/json"}}


def test_sync_client_raises_status_errors(monkeypatch) -> None:
    """HttpClient without retries re-raises status errors."""
    stub = StubSyncClient(responses=[_build_response(500, json_data={"error": "fail"})])
    monkeypatch.setattr(httpx, "Client", lambda **kwargs: stub)

    client = HttpClient()

    with pytest.raises(httpx.HTTPStatusError):
        client.get("http://test.example/api")


def test_sync_client_raises_request_errors(monkeypatch) -> None:
    """Transport errors propagate when no retries are configured."""
    request = httpx.Request("GET", "http://test.example/api")
    stub = StubSyncClient(responses=[httpx.ConnectError("refused", request=request)])
    monkeypatch.setattr(httpx, "Client", lambda **kwargs: stub)

    client = HttpClient()

    with pytest.raises(httpx.ConnectError):
        client.get("http://test.example/api")
    assert stub.call_count == 1


def test_sync_client_retry_on_500_error(monkeypatch) -> None:
    """HttpClient retries on 500 errors when configured."""
    stub = StubSyncClient(
        responses=[
            _build_response(500, json_data={"error": "fail"}),
            _build_response(200, json_data={"result": "ok"}),
        ]
    )
    monkeypatch.setattr(httpx, "Client", lambda **kwargs: stub)
    delays = _no_sleep(monkeypatch)

    client = HttpClient(retry_config=RetryConfig(max_attempts=3, retry_status_codes={500}))
    result = client.get("http://test.example/api")

    assert result is not None
    assert result.status_code == 200
    assert stub.call_count == 2
    assert delays == [1.0]


def test_sync_client_never_retries_not_found(monkeypatch) -> None:
    """A 404 is returned to the caller on the first attempt."""
    stub = StubSyncClient(responses=[_build_response(404)])
    monkeypatch.setattr(httpx, "Client", lambda **kwargs: stub)
    _no_sleep(monkeypatch)

    client = HttpClient(retry_config=RetryConfig(max_attempts=3))

    with pytest.raises(httpx.HTTPStatusError):
        client.get("http://test.example/api")
    assert stub.call_count == 1


def test_sync_client_retry_exhausted(monkeypatch, caplog) -> None:
    """HttpClient exhausts retries and raises the last error."""
    stub = StubSyncClient(responses=[_build_response(503)] * 3)
    monkeypatch.setattr(httpx, "Client", lambda **kwargs: stub)
    _no_sleep(monkeypatch)

    client = HttpClient(retry_config=RetryConfig(max_attempts=3, retry_status_codes={503}))

    with caplog.at_level(logging.WARNING):
        with pytest.raises(httpx.HTTPStatusError) as excinfo:
            client.get("http://test.example/api")

    assert excinfo.value.response.status_code == 503
    assert "HTTP GET http://test.example/api failed" in caplog.text
    assert stub.call_count == 3
    assert "retrying" in caplog.text


def test_sync_client_retry_on_connect_error(monkeypatch) -> None:
    """Connection errors are retried like transient server errors."""
    request = httpx.Request("GET", "http://test.example/api")
    stub = StubSyncClient(
        responses=[
            httpx.ConnectError("refused", request=request),
            _build_response(200, json_data={"result": "ok"}),
        ]
    )
    monkeypatch.setattr(httpx, "Client", lambda **kwargs: stub)
    _no_sleep(monkeypatch)

    client = HttpClient(retry_config=RetryConfig(max_attempts=2))
    result = client.get("http://test.example/api")

    assert result is not None
    assert stub.call_count == 2


def test_sync_client_backoff_is_capped(monkeypatch) -> None:
    """Backoff delays grow exponentially up to max_backoff."""
    stub = StubSyncClient(responses=[_build_response(502)] * 4)
    monkeypatch.setattr(httpx, "Client", lambda **kwargs: stub)
    delays = _no_sleep(monkeypatch)

    client = HttpClient(retry_config=RetryConfig(max_attempts=4, backoff_factor=2.0, max_backoff=5.0))
    with pytest.raises(httpx.HTTPStatusError):
        client.get("http://test.example/api")

    assert delays == [2.0, 4.0, 5.0]
