"""Slack Web API client used for the daily report."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

import requests

from daytrack.domain.errors import ExternalServiceError

POST_MESSAGE_URL = "https://slack.com/api/chat.postMessage"


@dataclass(frozen=True)
class SlackConfig:
    bot_token: str
    channel: str


class SlackClient:
    def __init__(self, cfg: SlackConfig, session: Optional[requests.Session] = None):
        self.cfg = cfg
        self.session = session or requests.Session()

    def post_message(self, text: str, blocks: Optional[list[dict]] = None,
                     thread_ts: Optional[str] = None) -> dict:
        payload: dict = {"channel": self.cfg.channel, "text": text}
        if blocks:
            payload["blocks"] = blocks
        if thread_ts:
            payload["thread_ts"] = thread_ts

        headers = {
            "Authorization": f"Bearer {self.cfg.bot_token}",
            "Content-Type": "application/json; charset=utf-8",
        }
        try:
            resp = self.session.post(POST_MESSAGE_URL, json=payload, headers=headers, timeout=30)
        except requests.RequestException as e:
            raise ExternalServiceError(f"slack request failed: {e}") from e

        if resp.status_code >= 400:
            raise ExternalServiceError(f"slack api error {resp.status_code}: {resp.text}")

        data = resp.json()
        # Slack reports most failures with HTTP 200 and ok=false
        if not data.get("ok"):
            raise ExternalServiceError(f"slack error: {data.get('error', 'unknown')}")
        return data
