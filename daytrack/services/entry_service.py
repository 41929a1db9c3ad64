"""
Explicit edits to time entries: manual entries, corrections and deletion.

Validation happens here, before any persistence call. Every successful change
to a closed entry is mirrored to the spreadsheet; a deletion removes the
mirrored row, but only after the store has confirmed the delete.
"""

import datetime
import logging
from typing import Optional

from daytrack.domain.errors import ConflictError, NotFoundError, ValidationError
from daytrack.domain.models import TimeEntry, utcnow, ensure_utc
from daytrack.domain.timezones import ZoneOption, local_date
from daytrack.infra.repository import TaskRepository, TimeEntryRepository
from daytrack.services.export_service import ExportNotifier

logger = logging.getLogger(__name__)


class EntryService:
    """Manual create/edit/delete for one user's entries"""

    def __init__(self, user_id: str, zone: ZoneOption,
                 task_repo: Optional[TaskRepository] = None,
                 entry_repo: Optional[TimeEntryRepository] = None,
                 exporter: Optional[ExportNotifier] = None,
                 clock=utcnow):
        self.user_id = user_id
        self.zone = zone
        self.task_repo = task_repo or TaskRepository()
        self.entry_repo = entry_repo or TimeEntryRepository()
        self.exporter = exporter
        self._clock = clock

    def _validate_range(self, start: datetime.datetime, end: Optional[datetime.datetime]) -> None:
        now = self._clock()
        if start > now:
            raise ValidationError("Start time is in the future")
        if end is None:
            return
        if end < start:
            raise ValidationError("End time is before start time")
        if end > now:
            raise ValidationError("End time is in the future")

    async def add_manual(self, task_id: Optional[str], start: datetime.datetime,
                         end: datetime.datetime, comment: str = "") -> TimeEntry:
        """Record a closed entry after the fact"""
        if not task_id:
            raise ValidationError("Select a task")
        start, end = ensure_utc(start), ensure_utc(end)
        self._validate_range(start, end)

        if await self.task_repo.get_by_id(task_id) is None:
            raise ValidationError(f"Task {task_id} does not exist")
        if await self.entry_repo.has_overlap(self.user_id, start, end):
            raise ConflictError("The entry overlaps another time entry")

        entry = await self.entry_repo.insert(TimeEntry(
            user_id=self.user_id,
            task_id=task_id,
            start_time=start,
            end_time=end,
            comment=comment,
            date=local_date(start, self.zone),
        ))
        logger.info(f"Added manual time entry {entry.id}")

        if self.exporter is not None:
            await self.exporter.notify_closed(entry)
        return entry

    async def edit(self, entry_id: str, start: Optional[datetime.datetime] = None,
                   end: Optional[datetime.datetime] = None,
                   comment: Optional[str] = None,
                   task_id: Optional[str] = None) -> TimeEntry:
        """Correct an existing entry. Only the given fields change."""
        current = await self.entry_repo.get_by_id(entry_id, self.user_id)
        if current is None:
            raise NotFoundError(f"Time entry {entry_id} not found")

        new_start = ensure_utc(start) if start is not None else current.start_time
        new_end = ensure_utc(end) if end is not None else current.end_time
        self._validate_range(new_start, new_end)

        changes = {}
        if start is not None:
            changes["start_time"] = new_start
            changes["date"] = local_date(new_start, self.zone)
        if end is not None:
            changes["end_time"] = new_end
        if comment is not None:
            changes["comment"] = comment
        if task_id is not None:
            if await self.task_repo.get_by_id(task_id) is None:
                raise ValidationError(f"Task {task_id} does not exist")
            changes["task_id"] = task_id
        if not changes:
            return current

        if new_end is not None and (start is not None or end is not None):
            if await self.entry_repo.has_overlap(self.user_id, new_start, new_end, ignore_id=entry_id):
                raise ConflictError("The entry overlaps another time entry")

        updated = await self.entry_repo.update(entry_id, self.user_id, **changes)
        logger.info(f"Edited time entry {entry_id}: {sorted(changes)}")

        if self.exporter is not None and not updated.is_open:
            await self.exporter.notify_closed(updated)
        return updated

    async def delete(self, entry_id: str) -> TimeEntry:
        """
        Delete an entry and its mirrored spreadsheet row.

        Raises NotFoundError (and touches nothing) when the entry is missing
        or owned by someone else.
        """
        removed = await self.entry_repo.delete(entry_id, self.user_id)
        logger.info(f"Deleted time entry {entry_id}")

        if self.exporter is not None:
            await self.exporter.notify_deleted(removed)
        return removed
