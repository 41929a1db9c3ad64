"""Domain layer - Pure business entities and logic"""

from .models import Task, TimeEntry, TimerState, UserPreferences

__all__ = ["Task", "TimeEntry", "TimerState", "UserPreferences"]
