"""
SQLAlchemy database models and configuration.

Architecture Decision: Why SQLAlchemy?
- Provides ORM for cleaner code and prevents SQL injection
- Supports async operations for non-blocking database access
- Same models run on SQLite locally and on PostgreSQL in a hosted setup

The "one open entry per user" rule lives in the database as a partial unique
index so that two racing inserts cannot both succeed.
"""

import datetime
from pathlib import Path
from typing import Optional
import os

from sqlalchemy.ext.asyncio import AsyncSession, create_async_engine, async_sessionmaker
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column
from sqlalchemy import String, Integer, Date, DateTime, Boolean, Text, ForeignKey, Index, event, text


# Base class for all models
class Base(DeclarativeBase):
    pass


class TaskModel(Base):
    """SQLAlchemy model for Task entity"""
    __tablename__ = "tasks"

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    name: Mapped[str] = mapped_column(String(300), nullable=False)
    color: Mapped[str] = mapped_column(String(16), nullable=False, default="#3b82f6")
    external_issue_id: Mapped[Optional[str]] = mapped_column(String(64), unique=True, nullable=True)
    external_identifier: Mapped[Optional[str]] = mapped_column(String(32), nullable=True, index=True)
    external_status: Mapped[Optional[str]] = mapped_column(String(32), nullable=True)
    external_updated_at: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    assignee_id: Mapped[Optional[str]] = mapped_column(String(320), nullable=True, index=True)
    assignee_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    is_global: Mapped[bool] = mapped_column(Boolean, default=False, nullable=False)
    team_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    project_name: Mapped[Optional[str]] = mapped_column(String(200), nullable=True)
    description: Mapped[Optional[str]] = mapped_column(Text, nullable=True)
    url: Mapped[Optional[str]] = mapped_column(String(500), nullable=True)
    priority: Mapped[Optional[int]] = mapped_column(Integer, nullable=True)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)


class TimeEntryModel(Base):
    """SQLAlchemy model for TimeEntry entity"""
    __tablename__ = "time_entries"
    __table_args__ = (
        Index(
            "uq_time_entries_open_per_user",
            "user_id",
            unique=True,
            sqlite_where=text("end_time IS NULL"),
            postgresql_where=text("end_time IS NULL"),
        ),
        Index("ix_time_entries_user_date", "user_id", "date"),
    )

    id: Mapped[str] = mapped_column(String(32), primary_key=True)
    user_id: Mapped[str] = mapped_column(String(320), nullable=False)
    task_id: Mapped[str] = mapped_column(String(32), ForeignKey("tasks.id"), nullable=False)
    start_time: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)
    end_time: Mapped[Optional[datetime.datetime]] = mapped_column(DateTime(timezone=True), nullable=True)
    comment: Mapped[str] = mapped_column(Text, default="", nullable=False)
    date: Mapped[datetime.date] = mapped_column(Date, nullable=False)
    created_at: Mapped[datetime.datetime] = mapped_column(DateTime(timezone=True), nullable=False)


def enable_sqlite_foreign_keys(dbapi_connection, _record):
    # Tasks with time entries must not be deletable
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


class DatabaseEngine:
    """
    Manages database connection and session lifecycle.

    Singleton pattern ensures only one engine exists per application.
    """
    _instance: Optional['DatabaseEngine'] = None

    def __init__(self, db_url: str):
        self.engine = create_async_engine(db_url, echo=False)
        if self.engine.dialect.name == "sqlite":
            event.listen(self.engine.sync_engine, "connect", enable_sqlite_foreign_keys)
        self.session_factory = async_sessionmaker(
            self.engine,
            class_=AsyncSession,
            expire_on_commit=False
        )

    @classmethod
    def get_instance(cls, db_url: Optional[str] = None) -> 'DatabaseEngine':
        """Get or create the database engine instance"""
        if cls._instance is None:
            if db_url is None:
                db_url = default_db_url()
            cls._instance = cls(db_url)
        return cls._instance

    @classmethod
    def reset_instance(cls) -> None:
        """Forget the current engine (used when settings change and in tests)"""
        cls._instance = None

    async def create_tables(self):
        """Create all tables in the database"""
        async with self.engine.begin() as conn:
            await conn.run_sync(Base.metadata.create_all)

    def get_session(self) -> AsyncSession:
        """Get a new database session"""
        return self.session_factory()


def default_db_url() -> str:
    # Default: Store in user's AppData on Windows, ~/.local/share on Linux
    if os.name == 'nt':  # Windows
        data_dir = Path(os.getenv('APPDATA')) / 'daytrack'
    else:  # Linux/Mac
        data_dir = Path.home() / '.local' / 'share' / 'daytrack'

    data_dir.mkdir(parents=True, exist_ok=True)
    return f"sqlite+aiosqlite:///{data_dir / 'daytrack.db'}"


# Convenience functions
def get_engine(db_url: Optional[str] = None) -> DatabaseEngine:
    """Get the database engine instance"""
    return DatabaseEngine.get_instance(db_url)


async def init_db(db_url: Optional[str] = None):
    """Initialize the database (create tables)"""
    engine = get_engine(db_url)
    await engine.create_tables()
