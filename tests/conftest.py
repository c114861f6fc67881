"""
tests/conftest.py - shared fixtures

In-memory SQLite database, seed helpers, and fake directory clients
returning fixed snapshots.

Usage:
    async def test_something(db, seed, make_service):
        org = await seed.organization()
        service = make_service({org: snapshot})
"""

import os
import sys
import tempfile
from datetime import datetime, timedelta
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Union

# Add the project root to sys.path
project_root = Path(__file__).resolve().parent.parent
if str(project_root) not in sys.path:
    sys.path.insert(0, str(project_root))

_scratch = Path(tempfile.gettempdir()) / "shadow_it_sync_tests"
os.environ.setdefault("LOG_DIR", str(_scratch / "logs"))
os.environ.setdefault("DB_DIR", str(_scratch / "db"))

import pytest
import pytest_asyncio

from src.shadow_it_sync.db.models import (
    Application,
    Organization,
    SyncCredential,
    User,
    UserApplication,
)
from src.shadow_it_sync.db.operations import DatabaseOperations
from src.shadow_it_sync.providers.base import DirectoryClient
from src.shadow_it_sync.providers.snapshot import (
    AppAssignment,
    DirectoryGroup,
    DirectorySnapshot,
    DirectoryUser,
    TokenGrant,
)
from src.shadow_it_sync.sync.engine import ReconciliationService

TEST_DATABASE_URL = "sqlite+aiosqlite:///:memory:"
BASE_TIME = datetime(2024, 1, 1, 12, 0, 0)


# =============================================================================
# Snapshot builders
# =============================================================================


def directory_user(user_id: str, email: Optional[str] = None, **flags) -> DirectoryUser:
    return DirectoryUser(user_id=user_id, email=email or f"{user_id}@example.com", name=user_id.title(), **flags)


def grant(user_id: str, app_name: str, *scopes: str, app_id: Optional[str] = None) -> TokenGrant:
    return TokenGrant(user_id=user_id, app_id=app_id or f"client-{app_name.lower()}", app_name=app_name,
                      scopes=frozenset(scopes))


def snapshot(users: Iterable[DirectoryUser], grants: Iterable[TokenGrant] = (),
             assignments: Iterable[AppAssignment] = (), groups: Iterable[DirectoryGroup] = (),
             provider: str = "google") -> DirectorySnapshot:
    return DirectorySnapshot(
        provider=provider,
        users={u.user_id: u for u in users},
        groups={g.group_id: g for g in groups},
        assignments=list(assignments),
        grants=list(grants),
    )


# =============================================================================
# Fake provider client
# =============================================================================


class FakeTokenManager:
    def __init__(self, rotated_refresh_token: Optional[str] = None):
        self.rotated_refresh_token = rotated_refresh_token
        self.id_token = None

    async def get_access_token(self) -> str:
        return "test-access-token"


class FakeDirectoryClient(DirectoryClient):
    """Returns queued outcomes in order: a snapshot, or an exception to raise."""

    provider = "google"

    def __init__(self, outcomes: List[Union[DirectorySnapshot, Exception]], rotated_refresh_token=None):
        super().__init__(FakeTokenManager(rotated_refresh_token))
        self.outcomes = outcomes

    async def __aenter__(self):
        return self

    async def __aexit__(self, exc_type, exc_val, exc_tb):
        return None

    def _next_page(self, payload, url, params):
        return None

    async def fetch_snapshot(self) -> DirectorySnapshot:
        outcome = self.outcomes.pop(0) if len(self.outcomes) > 1 else self.outcomes[0]
        if isinstance(outcome, Exception):
            raise outcome
        return outcome


class FakeClientFactory:
    def __init__(self, outcomes: Dict[int, Union[DirectorySnapshot, Exception, list]], rotated_refresh_token=None):
        self.outcomes = {
            org_id: value if isinstance(value, list) else [value] for org_id, value in outcomes.items()
        }
        self.rotated_refresh_token = rotated_refresh_token
        self.calls: List[int] = []

    def __call__(self, credentials):
        self.calls.append(credentials.organization_id)
        return FakeDirectoryClient(self.outcomes[credentials.organization_id], self.rotated_refresh_token)


async def _no_sleep(seconds: float) -> None:
    return None


# =============================================================================
# Database fixtures
# =============================================================================


@pytest_asyncio.fixture
async def db():
    database = DatabaseOperations(TEST_DATABASE_URL)
    await database.init_db()
    try:
        yield database
    finally:
        await database.close()


class Seeder:
    """Insert rows directly, with controllable creation times."""

    def __init__(self, db: DatabaseOperations):
        self.db = db
        self._tick = 0

    def _next_time(self) -> datetime:
        self._tick += 1
        return BASE_TIME + timedelta(minutes=self._tick)

    async def organization(self, name: str = "Acme", provider: str = "google",
                           refresh_token: Optional[str] = "refresh-token") -> int:
        async with self.db.get_session() as session:
            org = Organization(name=name, domain=f"{name.lower()}.example.com", auth_provider=provider)
            session.add(org)
            await session.flush()
            if refresh_token:
                session.add(SyncCredential(organization_id=org.id, provider=provider,
                                           refresh_token=refresh_token, scope="openid email"))
            return org.id

    async def user(self, org_id: int, email: str, name: Optional[str] = None, **flags) -> int:
        async with self.db.get_session() as session:
            row = User(organization_id=org_id, email=email, name=name, **flags)
            session.add(row)
            await session.flush()
            return row.id

    async def application(self, org_id: int, name: str, scopes: Iterable[str] = (),
                          created_at: Optional[datetime] = None, **annotations) -> int:
        async with self.db.get_session() as session:
            row = Application(organization_id=org_id, name=name, all_scopes=sorted(scopes),
                              created_at=created_at or self._next_time(), **annotations)
            session.add(row)
            await session.flush()
            return row.id

    async def relationship(self, user_id: int, application_id: int, scopes: Iterable[str] = (),
                           first_seen: Optional[datetime] = None, last_used: Optional[datetime] = None) -> int:
        async with self.db.get_session() as session:
            row = UserApplication(user_id=user_id, application_id=application_id, scopes=sorted(scopes),
                                  first_seen=first_seen or BASE_TIME, last_used=last_used or BASE_TIME)
            session.add(row)
            await session.flush()
            return row.id


@pytest_asyncio.fixture
async def seed(db):
    return Seeder(db)


@pytest.fixture
def make_service(db):
    """Build a ReconciliationService wired to the test database and fake clients."""

    def factory(outcomes, rotated_refresh_token=None, **kwargs):
        client_factory = FakeClientFactory(outcomes, rotated_refresh_token)
        options = dict(org_delay=0, retry_delay=0, batch_delay=0, sleep=_no_sleep)
        options.update(kwargs)
        service = ReconciliationService(db, client_factory=client_factory, **options)
        service.client_factory_calls = client_factory.calls
        return service

    return factory
