"""Shared fixtures: a throwaway SQLite store, a controllable clock, a live HTTP server."""

from datetime import datetime, timedelta, timezone

import pytest

from beacon.config import ENV_VARS
from beacon.registry import (
    Registry,
    ServiceRegistryClient,
    open_store,
    start_registry_server,
)


class FakeClock:
    """Callable clock that only moves when told to."""

    def __init__(self, start: datetime):
        self.current = start

    def __call__(self) -> datetime:
        return self.current

    def advance(self, **kwargs) -> datetime:
        self.current = self.current + timedelta(**kwargs)
        return self.current


@pytest.fixture(autouse=True)
def _clean_env(monkeypatch):
    for var in ENV_VARS:
        monkeypatch.delenv(var, raising=False)


@pytest.fixture
def database_url(tmp_path):
    return f"sqlite:///{tmp_path / 'registry.db'}"


@pytest.fixture
def store(database_url):
    store = open_store(database_url)
    yield store
    store.dispose()


@pytest.fixture
def clock():
    return FakeClock(datetime(2026, 1, 1, 12, 0, tzinfo=timezone.utc))


@pytest.fixture
def registry(store, clock):
    return Registry(store, clock=clock)


@pytest.fixture
def server(store):
    # Real clock here: HTTP tests care about routing, not time
    server = start_registry_server(
        Registry(store), host="127.0.0.1", port=0, log_requests=False,
    )
    yield server
    server.shutdown()
    server.server_close()


@pytest.fixture
def base_url(server):
    host, port = server.server_address[:2]
    return f"http://{host}:{port}"


@pytest.fixture
def client(server):
    return ServiceRegistryClient(host="127.0.0.1", port=server.server_address[1])
