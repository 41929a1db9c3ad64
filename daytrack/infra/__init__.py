"""Infrastructure layer - persistence, settings and outbound clients"""

from .db import DatabaseEngine, TaskModel, TimeEntryModel, get_engine, init_db

__all__ = ["DatabaseEngine", "TaskModel", "TimeEntryModel", "get_engine", "init_db"]
