"""
Shared pytest fixtures for the file-drop test suite.

Every test gets its own SQLite database and blob directory under
``tmp_path`` and a fake millisecond clock it can advance by hand.
"""

import os
import tempfile

# the default app binds its engine at import time; keep it out of the cwd
os.environ.setdefault("DATA_PATH", tempfile.mkdtemp(prefix="filedrop-test-"))

import pytest
from fastapi.testclient import TestClient

from filedrop.db import make_engine, make_session_factory, init_db
from filedrop.ingest import IngestionGateway
from filedrop.main import build_app
from filedrop.reaper import Reaper
from filedrop.registry import AccessRegistry
from filedrop.storage import LocalBlobStore

CODE_TTL = 600_000
LINK_TTL = 86_400_000
MAX_SIZE = 1024


class FakeClock:
    def __init__(self, start: int = 1_700_000_000_000):
        self.now = start

    def __call__(self) -> int:
        return self.now

    def advance(self, ms: int):
        self.now += ms


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def engine(tmp_path):
    eng = make_engine(str(tmp_path / "test.db"))
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return make_session_factory(engine)


@pytest.fixture
def blob_store(tmp_path):
    return LocalBlobStore(str(tmp_path / "files"))


@pytest.fixture
def registry(session_factory, blob_store, clock):
    return AccessRegistry(
        session_factory,
        blob_store,
        code_ttl_ms=CODE_TTL,
        link_ttl_ms=LINK_TTL,
        clock=clock,
    )


@pytest.fixture
def gateway(session_factory, blob_store, registry):
    return IngestionGateway(session_factory, blob_store, registry, max_size=MAX_SIZE)


@pytest.fixture
def reaper(session_factory, blob_store, clock):
    return Reaper(
        session_factory,
        blob_store,
        interval_ms=3_600_000,
        clock=clock,
    )


@pytest.fixture
def upload(gateway):
    """Ingest a file and return ``(file, access_code)``."""
    def _upload(data: bytes = b"0123456789", name: str = "hello.txt"):
        return gateway.ingest(name, [data])
    return _upload


@pytest.fixture
def client(registry, gateway, reaper):
    app = build_app(registry, gateway, reaper)
    with TestClient(app) as c:
        yield c
