import os
import tempfile

import pytest

# Set test environment variables before anything from doorpass is imported;
# config is read at module import.
_db_fd, _db_path = tempfile.mkstemp(suffix=".db")
os.environ["DATABASE_URL"] = f"sqlite:///{_db_path}"
os.environ["PAYMENT_PROVIDER"] = "mock"
os.environ["MOCK_SECRET"] = "test-mock-secret"
os.environ["EVENTLOG_BACKEND"] = "sql"
os.environ["TICKET_CODE_SCHEME"] = "random"
os.environ["TICKET_CODE_LENGTH"] = "8"
os.environ["APP_ENV"] = "testing"
os.environ.pop("ADMIN_API_KEY", None)
os.environ.pop("RESEND_API_KEY", None)
os.environ.pop("POSTER_PATH", None)

from doorpass.infra.sql import GatedAsyncSession, make_async_engine  # noqa: E402
from doorpass.model.db import create_schema  # noqa: E402


def pytest_sessionfinish(session, exitstatus):
    os.close(_db_fd)
    if os.path.exists(_db_path):
        os.unlink(_db_path)


@pytest.fixture
def anyio_backend():
    return "asyncio"


@pytest.fixture
async def database(anyio_backend, tmp_path):
    """A fresh SQLite file database with the schema applied.

    Yields (SessionAsync, gated); dispose happens on teardown.
    """
    engine, SessionAsync, _, gated = make_async_engine(
        f"sqlite:///{tmp_path / 'doorpass-test.db'}"
    )
    async with engine.begin() as conn:
        await create_schema(conn)
    yield SessionAsync, gated
    await engine.dispose()


@pytest.fixture
async def db(database):
    """One gated session on the test database."""
    SessionAsync, gated = database
    async with SessionAsync() as session:
        yield GatedAsyncSession(session=session, gated=gated)


@pytest.fixture
def new_db(database):
    """Factory for extra sessions, e.g. one per simulated door scanner."""
    SessionAsync, gated = database

    def _new():
        return GatedAsyncSession(session=SessionAsync(), gated=gated)
    return _new
