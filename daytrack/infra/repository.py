"""
Repository Pattern Implementation.

Architecture Decision: Why Repository Pattern?
Separates data access logic from business logic. Makes it easy to:
- Switch database implementations
- Mock data for testing
- Keep ownership scoping in one place

Every TimeEntry query is scoped to the owning user. A row that exists but
belongs to someone else is reported exactly like a missing row.
"""

import datetime
import json
import logging
from pathlib import Path
from typing import List, Optional, Tuple

from sqlalchemy import and_, delete, select, update
from sqlalchemy.exc import IntegrityError
from sqlalchemy.ext.asyncio import AsyncSession

from daytrack.domain.errors import ConflictError, NotFoundError
from daytrack.domain.models import Task, TimeEntry, UserPreferences, ensure_utc
from daytrack.infra.db import TaskModel, TimeEntryModel, DatabaseEngine, get_engine

logger = logging.getLogger(__name__)


class UserRepository:
    """
    Handles User Preferences persistence (JSON file based).
    """

    def __init__(self, prefs_path: Optional[Path] = None,
                 defaults: Optional[UserPreferences] = None):
        self.defaults = defaults or UserPreferences()
        if prefs_path is not None:
            self.prefs_path = prefs_path
            return
        # Keep the prefs file next to the SQLite database
        url = str(DatabaseEngine.get_instance().engine.url)
        if "sqlite" in url and ":memory:" not in url:
            db_path = url.split("///")[-1]
            self.prefs_path = Path(db_path).parent / "user_prefs.json"
        else:
            self.prefs_path = Path("user_prefs.json")

    async def get_preferences(self) -> UserPreferences:
        """Get current user preferences"""
        if not self.prefs_path.exists():
            return self.defaults.model_copy()

        try:
            with open(self.prefs_path, 'r', encoding='utf-8') as f:
                data = json.load(f)
            return UserPreferences(**data)
        except (OSError, ValueError) as e:
            logger.warning(f"Error loading prefs from {self.prefs_path}: {e}")
            return self.defaults.model_copy()

    async def update_preferences(self, prefs: UserPreferences) -> None:
        """Update user preferences"""
        self.prefs_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.prefs_path, 'w', encoding='utf-8') as f:
            json.dump(prefs.model_dump(), f, indent=2)


class TaskRepository:
    """
    Handles all Task-related database operations.

    Converts between domain models (Pydantic) and ORM models (SQLAlchemy).
    """

    def __init__(self, session: Optional[AsyncSession] = None):
        self.session = session

    async def _get_session(self) -> AsyncSession:
        """Get session - either injected or create new one"""
        if self.session:
            return self.session
        engine = get_engine()
        return engine.get_session()

    async def get_all(self) -> List[Task]:
        """Get all tasks ordered by name"""
        session = await self._get_session()
        async with session:
            result = await session.execute(select(TaskModel).order_by(TaskModel.name))
            return [Task.model_validate(tm) for tm in result.scalars().all()]

    async def get_by_id(self, task_id: str) -> Optional[Task]:
        """Get a specific task by ID"""
        session = await self._get_session()
        async with session:
            result = await session.execute(
                select(TaskModel).where(TaskModel.id == task_id)
            )
            task_model = result.scalar_one_or_none()
            return Task.model_validate(task_model) if task_model else None

    async def get_by_external_issue_id(self, issue_id: str) -> Optional[Task]:
        """Get the task mirrored from a Linear issue"""
        session = await self._get_session()
        async with session:
            result = await session.execute(
                select(TaskModel).where(TaskModel.external_issue_id == issue_id)
            )
            task_model = result.scalar_one_or_none()
            return Task.model_validate(task_model) if task_model else None

    async def upsert(self, task: Task) -> Task:
        """
        Insert or update a task.

        Tasks linked to an issue are matched on ``external_issue_id`` so a
        re-sync never duplicates them; the existing id is kept.
        """
        session = await self._get_session()
        async with session:
            model = None
            if task.external_issue_id:
                result = await session.execute(
                    select(TaskModel).where(TaskModel.external_issue_id == task.external_issue_id)
                )
                model = result.scalar_one_or_none()
            if model is None:
                model = await session.get(TaskModel, task.id)

            values = task.model_dump(exclude={"id", "created_at"})
            if model is None:
                model = TaskModel(id=task.id, created_at=task.created_at, **values)
                session.add(model)
            else:
                for key, value in values.items():
                    setattr(model, key, value)

            await session.commit()
            await session.refresh(model)
            return Task.model_validate(model)

    async def delete_by_external_issue_id(self, issue_id: str) -> bool:
        """
        Delete the task mirrored from an issue. Returns False if none existed.

        A task that already has time entries cannot be deleted; it is marked
        canceled instead so it drops out of the timer's task list.
        """
        session = await self._get_session()
        async with session:
            try:
                result = await session.execute(
                    delete(TaskModel).where(TaskModel.external_issue_id == issue_id)
                )
                await session.commit()
                return result.rowcount > 0
            except IntegrityError:
                await session.rollback()
                logger.warning(f"Task for issue {issue_id} has time entries, marking it canceled")
                await session.execute(
                    update(TaskModel)
                    .where(TaskModel.external_issue_id == issue_id)
                    .values(external_status="canceled")
                )
                await session.commit()
                return True


class TimeEntryRepository:
    """
    Handles all TimeEntry-related database operations.
    """

    def __init__(self, session: Optional[AsyncSession] = None):
        self.session = session

    async def _get_session(self) -> AsyncSession:
        """Get session - either injected or create new one"""
        if self.session:
            return self.session
        engine = get_engine()
        return engine.get_session()

    @staticmethod
    def _to_model(entry: TimeEntry) -> TimeEntryModel:
        return TimeEntryModel(
            id=entry.id,
            user_id=entry.user_id,
            task_id=entry.task_id,
            start_time=entry.start_time,
            end_time=entry.end_time,
            comment=entry.comment,
            date=entry.date,
            created_at=entry.created_at,
        )

    async def insert(self, entry: TimeEntry) -> TimeEntry:
        """
        Create a new time entry.

        Raises:
            ConflictError: the user already has an open entry (or the id is taken)
        """
        session = await self._get_session()
        async with session:
            model = self._to_model(entry)
            session.add(model)
            try:
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                if entry.is_open:
                    raise ConflictError(f"User {entry.user_id} already has an open time entry") from e
                raise ConflictError(f"Time entry {entry.id} could not be created") from e
            await session.refresh(model)
            return TimeEntry.model_validate(model)

    async def update(self, entry_id: str, user_id: str, **changes) -> TimeEntry:
        """
        Update fields of an entry owned by ``user_id``.

        Raises:
            NotFoundError: no entry with that id is owned by the user
            ConflictError: the change would reopen a second entry
        """
        changes = {
            key: ensure_utc(value) if isinstance(value, datetime.datetime) else value
            for key, value in changes.items()
        }
        session = await self._get_session()
        async with session:
            try:
                result = await session.execute(
                    update(TimeEntryModel)
                    .where(and_(TimeEntryModel.id == entry_id, TimeEntryModel.user_id == user_id))
                    .values(**changes)
                )
                if result.rowcount == 0:
                    await session.rollback()
                    raise NotFoundError(f"Time entry {entry_id} not found")
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ConflictError(f"Time entry {entry_id} conflicts with another entry") from e

            result = await session.execute(
                select(TimeEntryModel).where(TimeEntryModel.id == entry_id)
            )
            return TimeEntry.model_validate(result.scalar_one())

    async def delete(self, entry_id: str, user_id: str) -> TimeEntry:
        """
        Delete an entry owned by ``user_id`` and return what was removed.

        Raises:
            NotFoundError: no entry with that id is owned by the user
        """
        session = await self._get_session()
        async with session:
            result = await session.execute(
                select(TimeEntryModel).where(
                    and_(TimeEntryModel.id == entry_id, TimeEntryModel.user_id == user_id)
                )
            )
            model = result.scalar_one_or_none()
            if model is None:
                raise NotFoundError(f"Time entry {entry_id} not found")

            removed = TimeEntry.model_validate(model)
            await session.execute(
                delete(TimeEntryModel).where(TimeEntryModel.id == entry_id)
            )
            await session.commit()
            return removed

    async def split(self, closed: TimeEntry, new: TimeEntry) -> Tuple[TimeEntry, TimeEntry]:
        """
        Close an open entry and open its continuation in one transaction.

        Either both rows are written or neither is, so a failure never leaves
        the user without an open entry.

        Raises:
            NotFoundError: the original entry is no longer open for that user
        """
        session = await self._get_session()
        async with session:
            try:
                result = await session.execute(
                    update(TimeEntryModel)
                    .where(
                        and_(
                            TimeEntryModel.id == closed.id,
                            TimeEntryModel.user_id == closed.user_id,
                            TimeEntryModel.end_time.is_(None),
                        )
                    )
                    .values(end_time=closed.end_time, comment=closed.comment)
                )
                if result.rowcount == 0:
                    await session.rollback()
                    raise NotFoundError(f"Open time entry {closed.id} not found")

                session.add(self._to_model(new))
                await session.commit()
            except IntegrityError as e:
                await session.rollback()
                raise ConflictError(f"Could not split time entry {closed.id}") from e

            result = await session.execute(
                select(TimeEntryModel).where(TimeEntryModel.id.in_([closed.id, new.id]))
            )
            by_id = {m.id: TimeEntry.model_validate(m) for m in result.scalars().all()}
            return by_id[closed.id], by_id[new.id]

    async def get_by_id(self, entry_id: str, user_id: Optional[str] = None) -> Optional[TimeEntry]:
        """Get an entry, optionally scoped to its owner"""
        session = await self._get_session()
        async with session:
            query = select(TimeEntryModel).where(TimeEntryModel.id == entry_id)
            if user_id is not None:
                query = query.where(TimeEntryModel.user_id == user_id)
            result = await session.execute(query)
            model = result.scalar_one_or_none()
            return TimeEntry.model_validate(model) if model else None

    async def find_open_entry(self, user_id: str) -> Optional[TimeEntry]:
        """Get the user's open (not ended) time entry, if any"""
        session = await self._get_session()
        async with session:
            result = await session.execute(
                select(TimeEntryModel).where(
                    and_(TimeEntryModel.user_id == user_id, TimeEntryModel.end_time.is_(None))
                )
            )
            model = result.scalar_one_or_none()
            return TimeEntry.model_validate(model) if model else None

    async def get_by_user_and_date(self, user_id: str, day: datetime.date) -> List[TimeEntry]:
        """All entries of a user attributed to ``day``, oldest first"""
        session = await self._get_session()
        async with session:
            result = await session.execute(
                select(TimeEntryModel)
                .where(and_(TimeEntryModel.user_id == user_id, TimeEntryModel.date == day))
                .order_by(TimeEntryModel.start_time)
            )
            return [TimeEntry.model_validate(m) for m in result.scalars().all()]

    async def get_users_with_entries(self, day: datetime.date) -> List[str]:
        """Distinct users that have at least one entry on ``day``"""
        session = await self._get_session()
        async with session:
            result = await session.execute(
                select(TimeEntryModel.user_id)
                .where(TimeEntryModel.date == day)
                .distinct()
                .order_by(TimeEntryModel.user_id)
            )
            return list(result.scalars().all())

    async def has_overlap(self, user_id: str, start_time: datetime.datetime,
                          end_time: datetime.datetime, ignore_id: Optional[str] = None) -> bool:
        """
        Check if the user already has an entry overlapping the given range.

        An open entry is treated as extending indefinitely past its start.
        """
        session = await self._get_session()
        async with session:
            # Overlap: existing.start < new.end AND existing.end > new.start
            query = select(TimeEntryModel.id).where(
                and_(
                    TimeEntryModel.user_id == user_id,
                    TimeEntryModel.start_time < end_time,
                    TimeEntryModel.end_time.is_(None) | (TimeEntryModel.end_time > start_time),
                )
            )
            if ignore_id:
                query = query.where(TimeEntryModel.id != ignore_id)

            result = await session.execute(query.limit(1))
            return result.first() is not None
