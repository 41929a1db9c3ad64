"""
Export Notifier - mirrors closed entries into the spreadsheet.

A mirror failure is logged and swallowed here: it must never block or roll
back the time entry change that triggered it.
"""

import datetime
import logging
from typing import List, Optional

from daytrack.domain.models import Task, TimeEntry
from daytrack.domain.timezones import ZoneOption, get_zone, to_local, DEFAULT_TIMEZONE
from daytrack.infra.repository import TaskRepository
from daytrack.infra.spreadsheet import WorkbookMirror

logger = logging.getLogger(__name__)

TIME_FORMAT = "%Y-%m-%d %H:%M:%S"


def hours_between(start: datetime.datetime, end: datetime.datetime) -> float:
    return round((end - start).total_seconds() / 3600, 2)


class ExportNotifier:
    """
    Builds spreadsheet rows from closed entries and writes them to the mirror.
    """

    def __init__(self, mirror: WorkbookMirror, task_repo: Optional[TaskRepository] = None,
                 assignee_name: Optional[str] = None, zone: Optional[ZoneOption] = None):
        self.mirror = mirror
        self.task_repo = task_repo or TaskRepository()
        self.assignee_name = assignee_name
        self.zone = zone or get_zone(DEFAULT_TIMEZONE)

    def build_row(self, entry: TimeEntry, task: Optional[Task]) -> List:
        """Row layout matches ``spreadsheet.HEADER``"""
        start = to_local(entry.start_time, self.zone)
        end = to_local(entry.end_time, self.zone)

        issue_name = None
        if task is not None:
            issue_name = task.external_identifier or task.name

        return [
            entry.id,
            entry.date.isoformat(),
            (task.team_name if task else None) or "",
            (task.project_name if task else None) or "",
            issue_name or "",
            (task.description if task else None) or "",
            entry.comment,
            hours_between(entry.start_time, entry.end_time),
            self.assignee_name or entry.user_id,
            start.strftime(TIME_FORMAT),
            end.strftime(TIME_FORMAT),
        ]

    async def notify_closed(self, entry: TimeEntry) -> bool:
        """
        Append or update the row for a closed entry.

        Returns True when the mirror was written.
        """
        if entry.is_open:
            logger.warning(f"Not exporting open time entry {entry.id}")
            return False

        try:
            task = await self.task_repo.get_by_id(entry.task_id)
            row = self.build_row(entry, task)
            outcome = self.mirror.upsert_row(entry.date, row)
        except Exception as e:
            logger.error(f"Failed to export time entry {entry.id}: {e}")
            return False

        logger.info(f"Time entry {entry.id} {outcome} in spreadsheet")
        return True

    async def notify_deleted(self, entry: TimeEntry) -> bool:
        """Remove the mirrored row of a deleted entry. Returns True if a row was removed."""
        try:
            removed = self.mirror.delete_row(entry.id)
        except Exception as e:
            logger.error(f"Failed to remove time entry {entry.id} from spreadsheet: {e}")
            return False

        if not removed:
            logger.warning(f"Time entry {entry.id} was not in the spreadsheet, nothing removed")
        return removed

