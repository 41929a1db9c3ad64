"""
Daily Report Service using Jinja2 templates.

Architecture Decision: Template Pattern
The report text is a template so teams can change the wording without
touching code. The same data is also formatted as Slack blocks.
"""

import datetime
import logging
from dataclasses import dataclass, field
from pathlib import Path
from typing import Dict, List, Optional

from jinja2 import Environment, FileSystemLoader

from daytrack.domain.models import utcnow
from daytrack.infra.repository import TaskRepository, TimeEntryRepository
from daytrack.infra.slack import SlackClient
from daytrack.utils import get_resource_path

logger = logging.getLogger(__name__)


@dataclass
class TaskLine:
    name: str
    seconds: int
    color: Optional[str] = None
    comments: List[str] = field(default_factory=list)


@dataclass
class DailyReport:
    user_id: str
    user_name: str
    date: datetime.date
    tasks: List[TaskLine]
    text: str = ""

    @property
    def total_seconds(self) -> int:
        return sum(t.seconds for t in self.tasks)


def format_hours_minutes(seconds: int) -> str:
    hours, remainder = divmod(seconds, 3600)
    minutes = remainder // 60
    return f"{hours}h {minutes:02d}m" if hours else f"{minutes}m"


class DailyReportService:
    """
    Aggregates one user's entries for one day and renders the report.
    """

    def __init__(self, template_dir: Optional[Path] = None,
                 task_repo: Optional[TaskRepository] = None,
                 entry_repo: Optional[TimeEntryRepository] = None,
                 clock=utcnow):
        if template_dir is None:
            template_dir = get_resource_path("resources/templates")
        self.template_dir = template_dir
        self.task_repo = task_repo or TaskRepository()
        self.entry_repo = entry_repo or TimeEntryRepository()
        self._clock = clock

        # Setup Jinja2 environment
        self.env = Environment(
            loader=FileSystemLoader(str(template_dir)),
            trim_blocks=True,
            lstrip_blocks=True
        )

        # Add custom filters
        self.env.filters['format_duration'] = self._format_duration
        self.env.filters['format_date'] = self._format_date

    @staticmethod
    def _format_duration(seconds: int) -> str:
        """Format seconds as HH:MM:SS"""
        hours, remainder = divmod(int(seconds), 3600)
        minutes, seconds = divmod(remainder, 60)
        return f"{hours:02d}:{minutes:02d}:{seconds:02d}"

    @staticmethod
    def _format_date(value: datetime.date, fmt: str = "%Y-%m-%d") -> str:
        """Format date object"""
        return value.strftime(fmt)

    async def build(self, user_id: str, day: datetime.date,
                    user_name: Optional[str] = None,
                    template_name: str = "daily_report.md") -> DailyReport:
        """
        Build the report for ``user_id`` on ``day``.

        Open entries are counted up to now. Tasks are listed by time spent,
        longest first.
        """
        entries = await self.entry_repo.get_by_user_and_date(user_id, day)
        now = self._clock()

        lines: Dict[str, TaskLine] = {}
        for entry in entries:
            line = lines.get(entry.task_id)
            if line is None:
                task = await self.task_repo.get_by_id(entry.task_id)
                line = TaskLine(
                    name=task.name if task else entry.task_id,
                    seconds=0,
                    color=task.color if task else None,
                )
                lines[entry.task_id] = line
            line.seconds += int(entry.duration_seconds(now))
            if entry.comment and entry.comment not in line.comments:
                line.comments.append(entry.comment)

        report = DailyReport(
            user_id=user_id,
            user_name=user_name or user_id,
            date=day,
            tasks=sorted(lines.values(), key=lambda t: t.seconds, reverse=True),
        )

        template = self.env.get_template(template_name)
        report.text = template.render(
            user_name=report.user_name,
            date=day,
            tasks=report.tasks,
            total_seconds=report.total_seconds,
            generated_at=now,
        )
        return report

    @staticmethod
    def to_slack_blocks(report: DailyReport) -> List[dict]:
        task_list = "\n".join(
            f"{idx}. {line.name} - {format_hours_minutes(line.seconds)}"
            for idx, line in enumerate(report.tasks, start=1)
        ) or "No time tracked."

        return [
            {
                "type": "header",
                "text": {
                    "type": "plain_text",
                    "text": f"Daily report: {report.user_name} - {report.date.isoformat()}",
                    "emoji": True,
                },
            },
            {
                "type": "section",
                "fields": [
                    {"type": "mrkdwn", "text": f"*Total*\n{format_hours_minutes(report.total_seconds)}"},
                    {"type": "mrkdwn", "text": f"*Tasks*\n{len(report.tasks)}"},
                ],
            },
            {"type": "divider"},
            {"type": "section", "text": {"type": "mrkdwn", "text": f"*Tasks*\n{task_list}"}},
        ]

    async def post_to_slack(self, report: DailyReport, client: SlackClient) -> bool:
        """Send the report; returns False (and logs) when Slack refuses it"""
        try:
            client.post_message(
                text=f"Daily report: {report.user_name} - {report.date.isoformat()}",
                blocks=self.to_slack_blocks(report),
            )
        except Exception as e:
            logger.error(f"Failed to post daily report for {report.user_id}: {e}")
            return False
        logger.info(f"Posted daily report for {report.user_id} ({report.date})")
        return True

    async def users_for_day(self, day: datetime.date) -> List[str]:
        """Users with at least one entry on ``day``"""
        return await self.entry_repo.get_users_with_entries(day)
