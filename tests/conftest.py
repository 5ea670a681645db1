"""
Shared fixtures: in-memory database, dict-backed key-value store, and mocked HTTP transport.
"""

import fnmatch

import httpx
import pytest
from sqlalchemy import create_engine
from sqlalchemy.pool import StaticPool

from issue_sync.core.database import DatabaseClient
from issue_sync.integrations.adapters.request_executor import RequestExecutor
from issue_sync.models import unified_models as models


class FakePipeline:
    def __init__(self, store):
        self.store = store
        self.ops = []

    def setex(self, key, ttl, value):
        self.ops.append(('setex', key, ttl, value))
        return self

    def delete(self, *keys):
        self.ops.append(('delete', keys))
        return self

    def execute(self):
        results = []
        for op in self.ops:
            if op[0] == 'setex':
                results.append(self.store.setex(op[1], op[2], op[3]))
            else:
                results.append(self.store.delete(*op[1]))
        self.ops = []
        return results


class FakeRedis:
    """Minimal redis.Redis stand-in with decode_responses=True semantics."""

    def __init__(self):
        self.data = {}
        self.ttls = {}
        self.closed = False

    def ping(self):
        return True

    def get(self, key):
        return self.data.get(key)

    def set(self, key, value):
        self.data[key] = value
        self.ttls.pop(key, None)
        return True

    def setex(self, key, ttl, value):
        self.data[key] = value
        self.ttls[key] = ttl
        return True

    def delete(self, *keys):
        removed = 0
        for key in keys:
            if key in self.data:
                del self.data[key]
                self.ttls.pop(key, None)
                removed += 1
        return removed

    def ttl(self, key):
        if key not in self.data:
            return -2
        return self.ttls.get(key, -1)

    def scan_iter(self, match="*"):
        return iter([key for key in list(self.data) if fnmatch.fnmatchcase(key, match)])

    def pipeline(self):
        return FakePipeline(self)

    def close(self):
        self.closed = True


@pytest.fixture
def fake_redis():
    return FakeRedis()


@pytest.fixture
def db_client():
    engine = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    models.Base.metadata.create_all(engine)
    client = DatabaseClient("sqlite://", engine=engine)
    yield client
    client.disconnect()


@pytest.fixture
def session(db_client):
    session = db_client.get_session()
    yield session
    session.close()


def _make_executor(handler) -> RequestExecutor:
    client = httpx.AsyncClient(transport=httpx.MockTransport(handler))
    return RequestExecutor(rate_limit_delay_ms=0, retry_delay_ms=0, client=client)


@pytest.fixture
def make_executor():
    """Builds executors over an httpx.MockTransport with rate limiting and retry delays disabled."""
    return _make_executor


class RecordingHandler:
    """MockTransport handler that records requests and answers from a route table.

    Routes map (method, path) to a JSON body, an (status, body) tuple, or a callable
    taking the request.
    """

    def __init__(self, routes=None):
        self.routes = routes or {}
        self.requests = []

    def __call__(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        route = self.routes.get((request.method, request.url.path))
        if route is None:
            return httpx.Response(404, json={'message': 'Not Found'})
        if callable(route):
            route = route(request)
        if isinstance(route, tuple):
            status, body = route
            return httpx.Response(status, json=body)
        return httpx.Response(200, json=route)

    def last(self, method=None) -> httpx.Request:
        candidates = [r for r in self.requests if method is None or r.method == method]
        return candidates[-1]


@pytest.fixture
def recording_handler():
    return RecordingHandler()
