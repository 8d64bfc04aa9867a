import sys
import os
import pathlib
import tempfile
import warnings
import logging as _logging
from datetime import datetime, timezone

import pytest
import pytest_asyncio

# Point the app at a throwaway database and a deterministic secret before any
# taskboard module is imported; both are read at import time.
_TMP_DIR = tempfile.mkdtemp(prefix='taskboard-tests-')
os.environ['DATABASE_URL'] = 'sqlite+aiosqlite:///' + os.path.join(_TMP_DIR, 'taskboard_test.db')
os.environ.setdefault('SECRET_KEY', 'test-secret-key-for-unit-tests')

try:
    from sqlalchemy.exc import SAWarning
    warnings.filterwarnings('ignore', category=SAWarning)
except Exception:
    pass

# Reduce SQLAlchemy logger verbosity during tests
for _name in ('sqlalchemy', 'sqlalchemy.engine', 'sqlalchemy.pool', 'sqlmodel'):
    _logging.getLogger(_name).setLevel(_logging.ERROR)

# ensure project root is on PYTHONPATH for test runs
ROOT = pathlib.Path(__file__).resolve().parents[1]
sys.path.insert(0, str(ROOT))

from httpx import AsyncClient, ASGITransport  # noqa: E402

from taskboard.main import app, get_clock  # noqa: E402
from taskboard.db import async_session, reset_db  # noqa: E402
from taskboard.models import Task  # noqa: E402
from taskboard.auth import create_user, create_access_token  # noqa: E402

# Fixed "now" for tests that go through the HTTP layer.
FROZEN_NOW = datetime(2025, 6, 10, 9, 0, tzinfo=timezone.utc)


@pytest_asyncio.fixture
async def ensure_db():
    await reset_db()
    yield


@pytest.fixture
def frozen_now():
    """Freeze the request clock at FROZEN_NOW; yields the frozen datetime."""
    app.dependency_overrides[get_clock] = lambda: (lambda: FROZEN_NOW)
    yield FROZEN_NOW
    app.dependency_overrides.pop(get_clock, None)


@pytest_asyncio.fixture
async def make_user(ensure_db):
    async def _make(username: str, password: str = 'pw', is_admin: bool = False):
        return await create_user(username, password, is_admin=is_admin)
    return _make


@pytest_asyncio.fixture
async def add_task(ensure_db):
    """Insert a Task row directly, bypassing the API.

    created_at defaults to well before FROZEN_NOW so a template does not
    look like a recent duplicate of its own instance.
    """
    async def _add(user_id: int, title: str = 'Task', **fields):
        fields.setdefault('created_at', datetime(2025, 1, 1, tzinfo=timezone.utc))
        fields.setdefault('updated_at', fields['created_at'])
        async with async_session() as sess:
            t = Task(title=title, user_id=user_id, **fields)
            sess.add(t)
            await sess.commit()
            await sess.refresh(t)
            return t
    return _add


def _client_for(user) -> AsyncClient:
    transport = ASGITransport(app=app)
    token = create_access_token(data={'sub': user.username})
    return AsyncClient(transport=transport, base_url='http://test', headers={'Authorization': f'Bearer {token}'})


@pytest_asyncio.fixture
async def user(make_user):
    return await make_user('testuser', 'testpass')


@pytest_asyncio.fixture
async def admin(make_user):
    return await make_user('admin', 'adminpass', is_admin=True)


@pytest_asyncio.fixture
async def client(user):
    async with _client_for(user) as ac:
        yield ac


@pytest_asyncio.fixture
async def admin_client(admin):
    async with _client_for(admin) as ac:
        yield ac


@pytest_asyncio.fixture
async def anon_client(ensure_db):
    transport = ASGITransport(app=app)
    async with AsyncClient(transport=transport, base_url='http://test') as ac:
        yield ac


@pytest.fixture
def client_for():
    """Build an authenticated client for an arbitrary user (caller closes it)."""
    return _client_for
