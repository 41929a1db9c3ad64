"""Services layer - Business logic"""

from .entry_service import EntryService
from .export_service import ExportNotifier
from .issue_sync_service import IssueSyncService
from .report_service import DailyReportService
from .timer_service import TimerController

__all__ = ["EntryService", "ExportNotifier", "IssueSyncService", "DailyReportService", "TimerController"]
