"""
Issue Sync - keeps the task catalog in line with Linear.

Issues become tasks named ``[ENG-123] Title`` and are visible to their
assignee only. A full sync pulls every issue through the GraphQL API; webhook
events keep individual tasks current between syncs.
"""

import datetime
import logging
import random
from dataclasses import dataclass
from typing import Any, Dict, Optional

from daytrack.domain.models import Task
from daytrack.infra.linear_client import LinearClient
from daytrack.infra.repository import TaskRepository

logger = logging.getLogger(__name__)

PALETTE = [
    '#ef4444', '#f97316', '#f59e0b', '#eab308', '#84cc16',
    '#22c55e', '#10b981', '#14b8a6', '#06b6d4', '#0ea5e9',
    '#3b82f6', '#6366f1', '#8b5cf6', '#a855f7', '#d946ef',
    '#ec4899', '#f43f5e',
]


@dataclass
class SyncResult:
    created: int = 0
    updated: int = 0

    @property
    def total(self) -> int:
        return self.created + self.updated


def _parse_timestamp(value: Optional[str]) -> Optional[datetime.datetime]:
    if not value:
        return None
    return datetime.datetime.fromisoformat(value.replace("Z", "+00:00"))


def issue_to_task(issue: Dict[str, Any], existing: Optional[Task] = None) -> Task:
    """
    Map a Linear issue node (API or webhook shape) onto a Task.

    The color and id of an existing task are kept so re-syncing never
    reshuffles the catalog.
    """
    state = issue.get("state") or {}
    team = issue.get("team") or {}
    project = issue.get("project") or {}
    assignee = issue.get("assignee") or {}

    priority = issue.get("priority")
    if priority is None and existing is not None:
        priority = existing.priority

    fields = dict(
        name=f"[{issue['identifier']}] {issue['title']}",
        external_issue_id=issue["id"],
        external_identifier=issue["identifier"],
        external_status=state.get("type"),
        external_updated_at=_parse_timestamp(issue.get("updatedAt")),
        assignee_id=assignee.get("email"),
        assignee_name=assignee.get("name"),
        is_global=False,
        team_name=team.get("name"),
        project_name=project.get("name"),
        description=issue.get("description"),
        url=issue.get("url"),
        priority=priority,
    )
    if existing is not None:
        return existing.model_copy(update=fields)
    return Task(color=random.choice(PALETTE), **fields)


class IssueSyncService:
    """
    Pulls issues from Linear and applies webhook events to the task table.
    """

    def __init__(self, client: Optional[LinearClient] = None,
                 task_repo: Optional[TaskRepository] = None):
        self.client = client
        self.task_repo = task_repo or TaskRepository()

    async def upsert_issue(self, issue: Dict[str, Any]) -> Task:
        existing = await self.task_repo.get_by_external_issue_id(issue["id"])
        return await self.task_repo.upsert(issue_to_task(issue, existing))

    async def sync(self) -> SyncResult:
        """Full sync of every issue visible to the API key"""
        if self.client is None:
            raise RuntimeError("No Linear client configured")

        issues = self.client.fetch_issues()
        result = SyncResult()
        for issue in issues:
            existing = await self.task_repo.get_by_external_issue_id(issue["id"])
            await self.task_repo.upsert(issue_to_task(issue, existing))
            if existing is None:
                result.created += 1
            else:
                result.updated += 1

        logger.info(f"Linear sync finished: {result.created} created, {result.updated} updated")
        return result

    async def apply_webhook(self, payload: Dict[str, Any]) -> str:
        """
        Apply one Linear webhook event.

        Returns what happened: "upserted", "removed", "missing" or "ignored".
        """
        action = payload.get("action")
        event_type = payload.get("type")
        data = payload.get("data") or {}

        if event_type != "Issue" or not data.get("id"):
            logger.debug(f"Ignoring webhook event {event_type}/{action}")
            return "ignored"

        if action in ("create", "update", "restore"):
            if payload.get("url") and not data.get("url"):
                data = {**data, "url": payload["url"]}
            task = await self.upsert_issue(data)
            logger.info(f"Issue {data.get('identifier')} {action}: task {task.id}")
            return "upserted"

        if action == "remove":
            removed = await self.task_repo.delete_by_external_issue_id(data["id"])
            if not removed:
                logger.info(f"Task not found for removed issue {data.get('identifier')}")
                return "missing"
            logger.info(f"Issue {data.get('identifier')} removed")
            return "removed"

        logger.debug(f"Ignoring issue action {action}")
        return "ignored"
