"""
Settings for the CLI, the timer runner and the outbound clients.

Architecture Decision: pydantic-settings with a YAML overlay
Secrets (Linear key, Slack token) come from ``DAYTRACK_*`` variables or a
``.env`` file; everything else can also live in ``settings.yaml``. Values
given in the environment always win over the YAML file.
"""

import logging
import os
from pathlib import Path
from typing import Any, Dict, Optional

import yaml
from pydantic import model_validator
from pydantic_settings import BaseSettings, SettingsConfigDict

from daytrack.domain.models import UserPreferences

ENV_PREFIX = "DAYTRACK_"
PATH_KEYS = ("config_dir", "data_dir", "spreadsheet_path")


def _platform_dir(kind: str) -> Path:
    """Per-user base directory for ``kind`` ("config" or "data")"""
    if os.name == 'nt':
        return Path(os.getenv('APPDATA'))
    if kind == "config":
        return Path.home() / '.config'
    return Path.home() / '.local' / 'share'


class Settings(BaseSettings):
    """
    Resolved in this order, later wins:
    defaults, ``settings.yaml``, ``.env`` / environment.
    """
    model_config = SettingsConfigDict(
        env_prefix=ENV_PREFIX,
        env_file='.env',
        env_file_encoding='utf-8',
        extra='ignore'
    )

    app_name: str = "daytrack"
    config_dir: Optional[Path] = None
    data_dir: Optional[Path] = None

    database_url: Optional[str] = None

    linear_api_key: Optional[str] = None
    linear_api_url: str = "https://api.linear.app/graphql"

    # Workbook that mirrors closed entries
    spreadsheet_path: Optional[Path] = None

    slack_bot_token: Optional[str] = None
    slack_channel: Optional[str] = None

    log_level: str = "INFO"

    # Defaults until the user saves their own preferences file
    preferences: UserPreferences = UserPreferences()

    @model_validator(mode="after")
    def _resolve(self):
        self.config_dir = self.config_dir or _platform_dir("config") / self.app_name
        self.data_dir = self.data_dir or _platform_dir("data") / self.app_name
        self._apply_yaml(self._read_yaml())

        self.config_dir.mkdir(parents=True, exist_ok=True)
        self.data_dir.mkdir(parents=True, exist_ok=True)
        return self

    def _read_yaml(self) -> Dict[str, Any]:
        # A project-local file takes precedence over the per-user one
        for candidate in (Path("config/settings.yaml"), self.config_dir / "settings.yaml"):
            if candidate.exists():
                with open(candidate, 'r', encoding='utf-8') as f:
                    return yaml.safe_load(f) or {}
        return {}

    def _apply_yaml(self, data: Dict[str, Any]) -> None:
        prefs = data.pop('preferences', None)
        if prefs:
            self.preferences = UserPreferences(**prefs)

        for key, value in data.items():
            if key not in type(self).model_fields or f"{ENV_PREFIX}{key.upper()}" in os.environ:
                continue
            if key in PATH_KEYS and value is not None:
                value = Path(value)
            setattr(self, key, value)

    def get_db_url(self) -> str:
        if self.database_url:
            return self.database_url
        return f"sqlite+aiosqlite:///{self.data_dir / 'daytrack.db'}"

    def get_spreadsheet_path(self) -> Path:
        return self.spreadsheet_path or self.data_dir / 'time_entries.xlsx'


_settings: Optional[Settings] = None


def get_settings() -> Settings:
    """Process-wide settings, loaded on first use"""
    global _settings
    if _settings is None:
        _settings = Settings()
    return _settings


def setup_logging(level: Optional[str] = None) -> None:
    """Configure root logging once for the CLI and the timer runner"""
    level_name = (level or get_settings().log_level).upper()
    logging.basicConfig(
        level=getattr(logging, level_name, logging.INFO),
        format="%(asctime)s %(levelname)s [%(name)s] %(message)s",
    )
