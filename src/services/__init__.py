"""Infrastructure services shared across the control plane."""

from services.database import check_connection, get_sync_session, run_migrations_sync
from services.http_client import HttpClient, RetryConfig

__all__ = [
    "check_connection",
    "get_sync_session",
    "run_migrations_sync",
    "HttpClient",
    "RetryConfig",
]
