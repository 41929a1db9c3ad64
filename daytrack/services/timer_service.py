"""
Timer Service - Core time tracking logic.

Architecture Decision: Observer Pattern (Qt Signals)
The controller emits signals when state changes, keeping it decoupled from
whatever front end (tray, CLI runner) drives it.

States are ``idle`` and ``running``. Starting persists the open entry right
away so it has a durable id before the first tick. Every tick recomputes the
elapsed time from the start instant; when the local date of "now" differs
from the start date the entry is split at midnight instead. Stopping goes
through a comment-capture step and is ignored while a previous stop is still
being saved.
"""

import asyncio
import datetime
import logging
from collections import OrderedDict
from typing import Callable, Dict, List, Optional, Tuple

from PySide6.QtCore import QObject, QTimer, Signal

from daytrack.domain.errors import ConflictError, NotFoundError, TimeTrackerError, ValidationError
from daytrack.domain.models import Task, TimeEntry, TimerState, utcnow
from daytrack.domain.splitter import crosses_midnight, split_at_midnight
from daytrack.domain.timezones import ZoneOption, get_zone, local_date
from daytrack.infra.repository import TaskRepository, TimeEntryRepository, UserRepository
from daytrack.services.export_service import ExportNotifier

logger = logging.getLogger(__name__)

OTHER_GROUP = "Other"


def filter_available_tasks(tasks: List[Task], user_id: Optional[str]) -> List[Task]:
    """Tasks the user may clock time against: visible to them and not completed/canceled"""
    available = []
    for task in tasks:
        if task.is_terminal:
            logger.debug(f"Excluding completed/canceled task: {task.name}")
            continue
        if not task.is_visible_to(user_id):
            continue
        available.append(task)
    return available


def group_tasks(tasks: List[Task]) -> List[Tuple[str, List[Task]]]:
    """
    Group tasks for display.

    Team tasks are grouped under "Team: <KEY>" and listed first; global tasks
    are grouped by their identifier (or "Other") and listed after them.
    """
    groups: Dict[str, List[Task]] = OrderedDict()
    for task in tasks:
        if task.is_global and not task.team_name:
            label = task.external_identifier or OTHER_GROUP
        elif task.external_identifier:
            label = f"Team: {task.external_identifier.split('-')[0]}"
        elif task.team_name:
            label = f"Team: {task.team_name}"
        else:
            label = OTHER_GROUP
        groups.setdefault(label, []).append(task)

    return sorted(
        groups.items(),
        key=lambda item: (not item[0].startswith("Team:"), item[0].lower()),
    )


def format_elapsed(seconds: int) -> str:
    hours, remainder = divmod(max(0, seconds), 3600)
    minutes, seconds = divmod(remainder, 60)
    return f"{hours:02d}:{minutes:02d}:{seconds:02d}"


class TimerController(QObject):
    """
    The time tracking engine for one user session. Manages state but knows
    nothing about the UI.
    """

    # Signals
    tick = Signal(str, int)  # (formatted_time, elapsed_seconds)
    started = Signal(str)  # entry_id
    stopped = Signal(str)  # entry_id
    comment_requested = Signal(str)  # pre-filled comment
    entry_split = Signal(str, str)  # closed_entry_id, new_entry_id
    error_occurred = Signal(str)

    def __init__(self, user_id: str, zone: Optional[ZoneOption] = None,
                 task_repo: Optional[TaskRepository] = None,
                 entry_repo: Optional[TimeEntryRepository] = None,
                 user_repo: Optional[UserRepository] = None,
                 exporter: Optional[ExportNotifier] = None,
                 clock: Optional[Callable[[], datetime.datetime]] = None,
                 loop: Optional[asyncio.AbstractEventLoop] = None):
        super().__init__()
        self.user_id = user_id
        self.zone = zone or get_zone("Asia/Tokyo")

        self.state = TimerState.IDLE
        self.current_entry: Optional[TimeEntry] = None
        self.selected_task_id: Optional[str] = None
        self.elapsed_seconds: int = 0
        self.pending_comment: str = ""

        # Guards against a second stop while the first one is being saved
        self.is_saving = False
        self._splitting = False

        self._clock = clock or utcnow
        self._loop = loop
        self._owns_loop = False

        # Repositories and collaborators
        self.task_repo = task_repo or TaskRepository()
        self.entry_repo = entry_repo or TimeEntryRepository()
        self.user_repo = user_repo
        self.exporter = exporter

        # Internal timer that fires every second
        self.timer = QTimer(self)
        self.timer.setInterval(1000)
        self.timer.timeout.connect(self._on_tick)

    def _now(self) -> datetime.datetime:
        return self._clock()

    def is_running(self) -> bool:
        return self.state is TimerState.RUNNING

    # ------------------------------------------------------------------
    # Task selection

    async def available_tasks(self) -> List[Task]:
        """Task catalog filtered for this user"""
        return filter_available_tasks(await self.task_repo.get_all(), self.user_id)

    async def select_task(self, task_id: str) -> None:
        """
        Select the task for the next start.

        When no comment is pending, the latest comment the user left on this
        task today is offered again.
        """
        if self.is_running():
            raise ValidationError("Stop the timer before selecting another task")
        self.selected_task_id = task_id

        if self.pending_comment:
            return
        today = local_date(self._now(), self.zone)
        entries = await self.entry_repo.get_by_user_and_date(self.user_id, today)
        commented = [e for e in entries if e.task_id == task_id and e.comment]
        if commented:
            self.pending_comment = commented[-1].comment

    async def set_timezone(self, key: str) -> ZoneOption:
        """Switch the zone used for day attribution and remember the choice"""
        zone = get_zone(key)
        self.zone = zone
        if self.user_repo is not None:
            prefs = await self.user_repo.get_preferences()
            prefs.timezone = key
            await self.user_repo.update_preferences(prefs)
        if self.exporter is not None:
            self.exporter.zone = zone
        logger.info(f"Timezone set to {key}")
        return zone

    # ------------------------------------------------------------------
    # State transitions

    def _enter_running(self, entry: TimeEntry, now: datetime.datetime) -> None:
        self.current_entry = entry
        self.state = TimerState.RUNNING
        self.elapsed_seconds = max(0, int((now - entry.start_time).total_seconds()))
        self.timer.start()

    def _enter_idle(self) -> None:
        self.timer.stop()
        self.state = TimerState.IDLE
        self.current_entry = None
        self.elapsed_seconds = 0

    async def start(self, task_id: Optional[str] = None) -> TimeEntry:
        """
        Start tracking time for a task.

        The open entry is persisted before the timer runs. If the store
        refuses it (e.g. another open entry exists) the controller stays idle.
        """
        task_id = task_id or self.selected_task_id
        if not task_id:
            raise ValidationError("Select a task before starting the timer")
        if self.is_running():
            raise ValidationError("Timer is already running")

        task = await self.task_repo.get_by_id(task_id)
        if task is None or task.is_terminal or not task.is_visible_to(self.user_id):
            raise ValidationError(f"Task {task_id} is not available")

        now = self._now()
        entry = TimeEntry(
            user_id=self.user_id,
            task_id=task_id,
            start_time=now,
            end_time=None,
            comment=self.pending_comment,
            date=local_date(now, self.zone),
        )

        try:
            saved = await self.entry_repo.insert(entry)
        except TimeTrackerError as e:
            logger.error(f"Failed to start timer: {e}")
            self.error_occurred.emit(str(e))
            raise

        self.selected_task_id = task_id
        self._enter_running(saved, now)
        logger.info(f"Started time entry {saved.id} for task {task.name}")
        self.started.emit(saved.id)
        return saved

    def request_stop(self) -> bool:
        """
        Ask the front end for the stop comment.

        Emits ``comment_requested`` pre-filled with the pending comment; the
        answer comes back through ``confirm_stop``. Returns False (and does
        nothing) when the timer is not running.
        """
        if not self.is_running() or self.current_entry is None:
            return False
        self.comment_requested.emit(self.pending_comment or self.current_entry.comment)
        return True

    async def confirm_stop(self, comment: Optional[str] = None) -> Optional[TimeEntry]:
        """
        Close the running entry with ``comment``.

        Ignored (returns None) while a previous stop is still being saved.
        An entry that crossed midnight since the last tick is split first;
        if that split or the final save fails the controller stays running
        so the user can retry, and the error is emitted and re-raised.
        """
        if self.is_saving:
            logger.info("Stop already being saved, ignoring duplicate request")
            return None
        if not self.is_running() or self.current_entry is None:
            return None

        self.is_saving = True
        try:
            now = self._now()
            if crosses_midnight(self.current_entry, now, self.zone) and not self._splitting:
                await self._split_until(now)
            if crosses_midnight(self.current_entry, now, self.zone):
                raise ConflictError(
                    f"Time entry {self.current_entry.id} could not be split at midnight"
                )

            entry = self.current_entry
            comment = self.pending_comment if comment is None else comment
            if now < entry.start_time:
                raise ValidationError("End time is before start time")

            closed = await self.entry_repo.update(
                entry.id, self.user_id, end_time=now, comment=comment
            )
        except TimeTrackerError as e:
            logger.error(f"Failed to stop time entry: {e}")
            self.error_occurred.emit(str(e))
            raise
        finally:
            self.is_saving = False

        self._enter_idle()
        self.pending_comment = comment
        logger.info(f"Stopped time entry {closed.id}")
        self.stopped.emit(closed.id)

        if self.exporter is not None:
            await self.exporter.notify_closed(closed)
        return closed

    # ------------------------------------------------------------------
    # Ticking and midnight crossover

    async def process_tick(self, now: Optional[datetime.datetime] = None) -> None:
        """One timer tick: update elapsed time or split at midnight"""
        if not self.is_running() or self.current_entry is None or self.is_saving:
            return

        now = now or self._now()
        if crosses_midnight(self.current_entry, now, self.zone):
            await self.handle_midnight_crossover(now)
            return

        # Calculate duration based on start time (drift-proof)
        self.elapsed_seconds = max(0, int((now - self.current_entry.start_time).total_seconds()))
        self.tick.emit(format_elapsed(self.elapsed_seconds), self.elapsed_seconds)

    async def handle_midnight_crossover(self, now: datetime.datetime) -> bool:
        """
        Split the running entry at each local midnight between its start and
        ``now``.

        Each split is one atomic store call. If it fails the running entry is
        left untouched, the error is emitted and False is returned; the next
        tick tries again. When the entry was closed elsewhere the controller
        follows the store instead of retrying.
        """
        if self._splitting or self.current_entry is None:
            return False

        self._splitting = True
        try:
            try:
                await self._split_until(now)
            except NotFoundError:
                await self._follow_store()
                if self.current_entry is not None:
                    await self._split_until(now)
        except TimeTrackerError as e:
            logger.error(f"Midnight split of time entry {self.current_entry.id} failed, will retry: {e}")
            self.error_occurred.emit(str(e))
            return False
        finally:
            self._splitting = False

        if self.current_entry is not None:
            self.elapsed_seconds = max(0, int((now - self.current_entry.start_time).total_seconds()))
            self.tick.emit(format_elapsed(self.elapsed_seconds), self.elapsed_seconds)
        return True

    async def _split_until(self, now: datetime.datetime) -> None:
        while crosses_midnight(self.current_entry, now, self.zone):
            entry = self.current_entry
            if not entry.comment and self.pending_comment:
                entry = entry.model_copy(update={"comment": self.pending_comment})

            closed, new = await self.entry_repo.split(*split_at_midnight(entry, self.zone))
            self.current_entry = new
            logger.info(
                f"Midnight crossover ({self.zone.key}): closed {closed.id} at "
                f"{closed.end_time.isoformat()}, continued as {new.id}"
            )
            self.entry_split.emit(closed.id, new.id)

            if self.exporter is not None:
                await self.exporter.notify_closed(closed)

    async def _follow_store(self) -> None:
        """The running entry is no longer open in the store: resume whatever is"""
        gone = self.current_entry.id
        stored = await self.entry_repo.find_open_entry(self.user_id)
        if stored is None:
            self._enter_idle()
            logger.info(f"Time entry {gone} was closed elsewhere, timer stopped")
            self.stopped.emit(gone)
            return

        logger.info(f"Time entry {gone} was closed elsewhere, following open entry {stored.id}")
        self.current_entry = stored
        self.selected_task_id = stored.task_id

    # ------------------------------------------------------------------
    # Startup and teardown

    async def recover(self) -> Optional[TimeEntry]:
        """
        Resume a persisted open entry after a restart.

        An entry that started on an earlier local date is split first, then
        tracking resumes on today's continuation.
        """
        entry = await self.entry_repo.find_open_entry(self.user_id)
        if entry is None:
            self._enter_idle()
            return None

        now = self._now()
        self.selected_task_id = entry.task_id
        self.pending_comment = entry.comment or self.pending_comment
        self._enter_running(entry, now)

        if crosses_midnight(entry, now, self.zone):
            logger.info(f"Open time entry {entry.id} is from a previous day, splitting before resuming")
            await self.handle_midnight_crossover(now)
        else:
            logger.info(f"Resumed open time entry {entry.id}")
            self.tick.emit(format_elapsed(self.elapsed_seconds), self.elapsed_seconds)
        return self.current_entry

    def shutdown(self) -> None:
        """Tear down the tick loop; the open entry stays persisted"""
        self.timer.stop()
        if self._owns_loop and not self._loop.is_closed():
            self._loop.close()
            self._loop = None
            self._owns_loop = False

    def _on_tick(self):
        """Called every second by the QTimer"""
        if self._loop is None:
            self._loop = asyncio.new_event_loop()
            self._owns_loop = True
        self._loop.run_until_complete(self.process_tick())
