"""
Pytest configuration and fixtures.
"""

import datetime
import os
import sys
from pathlib import Path

import pytest
import pytest_asyncio
from sqlalchemy import event
from sqlalchemy.ext.asyncio import create_async_engine, AsyncSession, async_sessionmaker

os.environ.setdefault("QT_QPA_PLATFORM", "offscreen")

# Add project root
sys.path.insert(0, str(Path(__file__).parent.parent))

from PySide6.QtCore import QCoreApplication

from daytrack.domain.models import Task
from daytrack.domain.timezones import get_zone
from daytrack.infra.db import Base, enable_sqlite_foreign_keys
from daytrack.infra.repository import TaskRepository, TimeEntryRepository

USER = "alice@example.com"
OTHER_USER = "bob@example.com"


class FixedClock:
    """Settable clock; tests move it forward explicitly."""

    def __init__(self, now: datetime.datetime):
        self.now = now

    def __call__(self) -> datetime.datetime:
        return self.now

    def advance(self, **kwargs) -> datetime.datetime:
        self.now = self.now + datetime.timedelta(**kwargs)
        return self.now


def utc(*args) -> datetime.datetime:
    return datetime.datetime(*args, tzinfo=datetime.timezone.utc)


@pytest.fixture(scope="session")
def qapp():
    """QObject signals and QTimer need a core application"""
    app = QCoreApplication.instance() or QCoreApplication([])
    yield app


@pytest_asyncio.fixture
async def db_engine():
    """Create an in-memory SQLite database for testing"""
    engine = create_async_engine("sqlite+aiosqlite:///:memory:")
    event.listen(engine.sync_engine, "connect", enable_sqlite_foreign_keys)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)

    yield engine

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.drop_all)
    await engine.dispose()


@pytest_asyncio.fixture
async def db_session(db_engine):
    """Create a new session for a test"""
    async_session = async_sessionmaker(db_engine, class_=AsyncSession, expire_on_commit=False)
    async with async_session() as session:
        yield session


@pytest.fixture
def task_repo(db_session):
    return TaskRepository(session=db_session)


@pytest.fixture
def entry_repo(db_session):
    return TimeEntryRepository(session=db_session)


@pytest.fixture
def tokyo():
    return get_zone("Asia/Tokyo")


@pytest_asyncio.fixture
async def task(task_repo):
    """A task assigned to USER"""
    return await task_repo.upsert(Task(
        name="[ENG-1] Fix login",
        external_issue_id="issue-1",
        external_identifier="ENG-1",
        external_status="started",
        assignee_id=USER,
        team_name="Engineering",
        project_name="Auth",
        description="Login fails on Safari",
    ))
