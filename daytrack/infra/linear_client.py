"""Minimal Linear GraphQL client (issues only)."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any, Optional

import requests

from daytrack.domain.errors import ExternalServiceError

logger = logging.getLogger(__name__)

PAGE_SIZE = 100

ISSUES_QUERY = """
query($after: String, $first: Int!) {
  issues(orderBy: updatedAt, first: $first, after: $after) {
    pageInfo {
      hasNextPage
      endCursor
    }
    nodes {
      id
      identifier
      title
      description
      priority
      state { name type }
      project { id name }
      team { id name key }
      assignee { name email }
      url
      createdAt
      updatedAt
    }
  }
}
"""


@dataclass(frozen=True)
class LinearConfig:
    api_key: str
    api_url: str = "https://api.linear.app/graphql"


class LinearClient:
    def __init__(self, cfg: LinearConfig, session: Optional[requests.Session] = None):
        self.cfg = cfg
        self.session = session or requests.Session()

    def _post(self, query: str, variables: dict[str, Any]) -> dict:
        headers = {
            # Linear personal API keys are sent without a "Bearer" prefix.
            "Authorization": self.cfg.api_key,
            "Content-Type": "application/json",
        }
        try:
            resp = self.session.post(
                self.cfg.api_url,
                json={"query": query, "variables": variables},
                headers=headers,
                timeout=30,
            )
        except requests.RequestException as e:
            raise ExternalServiceError(f"linear request failed: {e}") from e

        if resp.status_code >= 400:
            raise ExternalServiceError(f"linear api error {resp.status_code}: {resp.text}")

        body = resp.json()
        if body.get("errors"):
            raise ExternalServiceError(f"linear graphql error: {body['errors'][0].get('message')}")
        data = body.get("data")
        if not isinstance(data, dict):
            raise ExternalServiceError("unexpected response")
        return data

    def fetch_issues(self) -> list[dict]:
        """Fetch every issue (all states), following the cursor."""
        issues: list[dict] = []
        cursor: Optional[str] = None
        while True:
            data = self._post(ISSUES_QUERY, {"after": cursor, "first": PAGE_SIZE})
            page = data.get("issues") or {}
            nodes = page.get("nodes") or []
            issues.extend(nodes)

            info = page.get("pageInfo") or {}
            logger.debug(f"fetched {len(nodes)} issues (total {len(issues)})")
            if not info.get("hasNextPage"):
                break
            cursor = info.get("endCursor")
        return issues
