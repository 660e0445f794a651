import os
import sys
from contextlib import asynccontextmanager
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parent.parent
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

os.environ.setdefault("SESSION_SECRET", "test-session-secret")
os.environ.setdefault("DB_HOST", "localhost")
os.environ.setdefault("DB_USER", "user")
os.environ.setdefault("DB_PASSWORD", "password")
os.environ.setdefault("DB_NAME", "testdb")


class RecordingCursor:
    def __init__(self, connection):
        self._connection = connection
        self.rowcount = 0

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc, tb):
        return False

    async def execute(self, sql, params=None):
        if self._connection.fail_on and self._connection.fail_on in sql:
            raise RuntimeError("statement failed")
        self._connection.statements.append((" ".join(sql.split()), params))

    async def executemany(self, sql, rows):
        self._connection.statements.append((" ".join(sql.split()), list(rows)))


class RecordingConnection:
    """Stands in for an aiomysql connection inside ``db.acquire()``."""

    def __init__(self, fail_on: str | None = None):
        self.fail_on = fail_on
        self.statements: list[tuple[str, object]] = []
        self.events: list[str] = []
        self.acquired = 0

    def cursor(self, *args):
        return RecordingCursor(self)

    async def begin(self):
        self.events.append("begin")

    async def commit(self):
        self.events.append("commit")

    async def rollback(self):
        self.events.append("rollback")


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
def recording_connection(monkeypatch):
    from app.core.database import db

    connection = RecordingConnection()

    @asynccontextmanager
    async def fake_acquire():
        connection.acquired += 1
        yield connection

    monkeypatch.setattr(db, "acquire", fake_acquire)
    return connection
