"""
Tests for the TimerController: start/stop, duplicate stops, midnight
crossover while ticking and recovery after a restart.
"""

import asyncio
import datetime

import pytest

from conftest import FixedClock, OTHER_USER, USER, utc
from daytrack.domain.errors import ConflictError, ExternalServiceError, ValidationError
from daytrack.domain.models import Task, TimeEntry, TimerState
from daytrack.infra.repository import TimeEntryRepository, UserRepository
from daytrack.infra.spreadsheet import WorkbookMirror
from daytrack.services.export_service import ExportNotifier
from daytrack.services.timer_service import (
    TimerController, filter_available_tasks, format_elapsed, group_tasks,
)


class SlowEntryRepository(TimeEntryRepository):
    """Counts updates and holds each one until released"""

    def __init__(self, session):
        super().__init__(session=session)
        self.update_calls = 0
        self.release = asyncio.Event()

    async def update(self, entry_id, user_id, **changes):
        self.update_calls += 1
        await self.release.wait()
        return await super().update(entry_id, user_id, **changes)


class FlakyEntryRepository(TimeEntryRepository):
    """Fails the first ``failures`` update/split calls"""

    def __init__(self, session, failures=1):
        super().__init__(session=session)
        self.failures = failures

    async def update(self, entry_id, user_id, **changes):
        if self.failures:
            self.failures -= 1
            raise ExternalServiceError("database unavailable")
        return await super().update(entry_id, user_id, **changes)

    async def split(self, closed, new):
        if self.failures:
            self.failures -= 1
            raise ConflictError("split failed")
        return await super().split(closed, new)


@pytest.fixture
def clock():
    # 10:00 JST
    return FixedClock(utc(2026, 3, 1, 1, 0))


@pytest.fixture
def exporter(tmp_path, task_repo, tokyo):
    return ExportNotifier(WorkbookMirror(tmp_path / "entries.xlsx"), task_repo=task_repo,
                          assignee_name="Alice", zone=tokyo)


@pytest.fixture
def controller(qapp, task_repo, entry_repo, exporter, clock, tokyo):
    ctl = TimerController(USER, zone=tokyo, task_repo=task_repo, entry_repo=entry_repo,
                          exporter=exporter, clock=clock)
    yield ctl
    ctl.shutdown()


@pytest.mark.asyncio
async def test_start_and_stop(controller, entry_repo, exporter, task, clock):
    started = []
    stopped = []
    controller.started.connect(started.append)
    controller.stopped.connect(stopped.append)
    prompts = []
    controller.comment_requested.connect(prompts.append)

    await controller.select_task(task.id)
    entry = await controller.start()
    assert controller.state is TimerState.RUNNING
    assert started == [entry.id]
    assert (await entry_repo.find_open_entry(USER)).id == entry.id

    clock.advance(minutes=90)
    assert controller.request_stop()
    assert prompts == [""]
    closed = await controller.confirm_stop("reviewed PR")

    assert controller.state is TimerState.IDLE
    assert stopped == [entry.id]
    assert closed.end_time == clock.now
    assert closed.comment == "reviewed PR"
    assert closed.duration_seconds() == 90 * 60
    assert await entry_repo.find_open_entry(USER) is None
    assert exporter.mirror.find_row(entry.id)[1][7] == 1.5


@pytest.mark.asyncio
async def test_start_requires_a_task(controller):
    with pytest.raises(ValidationError):
        await controller.start()
    assert controller.state is TimerState.IDLE


@pytest.mark.asyncio
async def test_start_rejects_completed_and_foreign_tasks(controller, task_repo):
    done = await task_repo.upsert(Task(name="done", assignee_id=USER, external_status="completed"))
    foreign = await task_repo.upsert(Task(name="theirs", assignee_id=OTHER_USER))

    for task in (done, foreign):
        with pytest.raises(ValidationError):
            await controller.start(task.id)
    assert controller.state is TimerState.IDLE


@pytest.mark.asyncio
async def test_start_while_another_entry_is_open_stays_idle(controller, entry_repo, task):
    await entry_repo.insert(TimeEntry(user_id=USER, task_id=task.id,
                                      start_time=utc(2026, 3, 1, 0), date=datetime.date(2026, 3, 1)))
    errors = []
    controller.error_occurred.connect(errors.append)

    with pytest.raises(ConflictError):
        await controller.start(task.id)
    assert controller.state is TimerState.IDLE
    assert errors


@pytest.mark.asyncio
async def test_double_stop_saves_once(qapp, db_session, task_repo, exporter, clock, tokyo, task):
    repo = SlowEntryRepository(db_session)
    ctl = TimerController(USER, zone=tokyo, task_repo=task_repo, entry_repo=repo,
                          exporter=exporter, clock=clock)
    entry = await ctl.start(task.id)
    clock.advance(minutes=5)

    first = asyncio.ensure_future(ctl.confirm_stop("a"))
    await asyncio.sleep(0)
    assert ctl.is_saving
    second = await ctl.confirm_stop("b")
    repo.release.set()
    closed = await first
    ctl.shutdown()

    assert second is None
    assert repo.update_calls == 1
    assert closed.id == entry.id
    assert closed.comment == "a"
    assert exporter.mirror.row_count(entry.date) == 1


@pytest.mark.asyncio
async def test_failed_stop_keeps_running(qapp, db_session, task_repo, clock, tokyo, task):
    repo = FlakyEntryRepository(db_session)
    ctl = TimerController(USER, zone=tokyo, task_repo=task_repo, entry_repo=repo, clock=clock)
    errors = []
    ctl.error_occurred.connect(errors.append)
    entry = await ctl.start(task.id)
    clock.advance(minutes=1)

    with pytest.raises(ExternalServiceError):
        await ctl.confirm_stop("retry me")
    assert ctl.state is TimerState.RUNNING
    assert not ctl.is_saving
    assert errors == ["database unavailable"]

    closed = await ctl.confirm_stop("retry me")
    ctl.shutdown()
    assert closed.id == entry.id
    assert ctl.state is TimerState.IDLE


@pytest.mark.asyncio
async def test_stop_when_idle_is_ignored(controller):
    assert not controller.request_stop()
    assert await controller.confirm_stop("nothing") is None


@pytest.mark.asyncio
async def test_tick_updates_elapsed(controller, task, clock):
    ticks = []
    controller.tick.connect(lambda text, secs: ticks.append((text, secs)))
    await controller.start(task.id)

    await controller.process_tick(clock.advance(seconds=65))
    assert ticks[-1] == ("00:01:05", 65)
    assert controller.elapsed_seconds == 65


@pytest.mark.asyncio
async def test_tick_across_midnight_splits(controller, entry_repo, exporter, task, clock, tokyo):
    clock.now = utc(2026, 3, 1, 14, 30)  # 23:30 JST
    splits = []
    controller.entry_split.connect(lambda closed_id, new_id: splits.append((closed_id, new_id)))
    first = await controller.start(task.id)

    await controller.process_tick(clock.advance(minutes=29))
    assert splits == []

    await controller.process_tick(clock.advance(minutes=2))  # 00:01 JST
    assert len(splits) == 1
    closed_id, new_id = splits[0]
    assert closed_id == first.id

    closed = await entry_repo.get_by_id(closed_id)
    assert closed.end_time == utc(2026, 3, 1, 14, 59, 59, 999000)
    assert controller.current_entry.id == new_id
    assert controller.current_entry.date == datetime.date(2026, 3, 2)
    assert controller.elapsed_seconds == 60
    assert controller.state is TimerState.RUNNING
    assert exporter.mirror.find_row(closed_id)[0] == "2026-03"

    # further ticks on the new day do not split again
    await controller.process_tick(clock.advance(minutes=1))
    assert len(splits) == 1


@pytest.mark.asyncio
async def test_tick_just_after_midnight(controller, entry_repo, task, clock):
    clock.now = utc(2026, 3, 1, 14, 58)  # 23:58:00 JST
    first = await controller.start(task.id)

    await controller.process_tick(utc(2026, 3, 1, 15, 0, 5))  # 00:00:05 JST

    closed = await entry_repo.get_by_id(first.id)
    assert closed.end_time == utc(2026, 3, 1, 14, 59, 59, 999000)
    assert controller.current_entry.start_time == utc(2026, 3, 1, 15, 0, 0)
    assert controller.elapsed_seconds == 5
    open_entries = [e for e in await entry_repo.get_by_user_and_date(USER, datetime.date(2026, 3, 2))
                    if e.is_open]
    assert len(open_entries) == 1


@pytest.mark.asyncio
async def test_failed_split_is_retried_next_tick(qapp, db_session, task_repo, clock, tokyo, task):
    repo = FlakyEntryRepository(db_session)
    ctl = TimerController(USER, zone=tokyo, task_repo=task_repo, entry_repo=repo, clock=clock)
    clock.now = utc(2026, 3, 1, 14, 50)
    first = await ctl.start(task.id)

    await ctl.process_tick(clock.advance(minutes=15))
    assert ctl.current_entry.id == first.id
    assert (await repo.find_open_entry(USER)).id == first.id

    await ctl.process_tick(clock.advance(seconds=1))
    ctl.shutdown()
    assert ctl.current_entry.id != first.id
    assert (await repo.get_by_id(first.id)).end_time is not None


@pytest.mark.asyncio
async def test_failed_split_on_stop_keeps_running(qapp, db_session, task_repo, clock, tokyo, task):
    repo = FlakyEntryRepository(db_session)
    ctl = TimerController(USER, zone=tokyo, task_repo=task_repo, entry_repo=repo, clock=clock)
    errors = []
    ctl.error_occurred.connect(errors.append)
    clock.now = utc(2026, 3, 1, 14, 0)  # 23:00 JST
    first = await ctl.start(task.id)
    clock.advance(hours=2)  # 01:00 JST next day, no tick in between

    with pytest.raises(ConflictError):
        await ctl.confirm_stop("late")
    assert ctl.state is TimerState.RUNNING
    assert ctl.current_entry.id == first.id
    assert errors == ["split failed"]
    assert (await repo.find_open_entry(USER)).id == first.id

    closed = await ctl.confirm_stop("late")
    ctl.shutdown()
    assert ctl.state is TimerState.IDLE
    assert closed.id != first.id
    assert closed.date == datetime.date(2026, 3, 2)
    assert (await repo.get_by_id(first.id)).end_time == utc(2026, 3, 1, 14, 59, 59, 999000)


@pytest.mark.asyncio
async def test_entry_closed_elsewhere_stops_the_timer(controller, entry_repo, task, clock):
    errors = []
    stopped = []
    controller.error_occurred.connect(errors.append)
    controller.stopped.connect(stopped.append)
    first = await controller.start(task.id)
    await entry_repo.update(first.id, USER, end_time=clock.advance(minutes=30))

    for _ in range(3):
        await controller.process_tick(clock.advance(hours=8))

    assert controller.state is TimerState.IDLE
    assert controller.current_entry is None
    assert stopped == [first.id]
    assert errors == []
    assert await entry_repo.find_open_entry(USER) is None


@pytest.mark.asyncio
async def test_entry_replaced_elsewhere_is_followed(controller, entry_repo, task, clock):
    first = await controller.start(task.id)
    await entry_repo.update(first.id, USER, end_time=clock.advance(minutes=30))
    other = await entry_repo.insert(TimeEntry(user_id=USER, task_id=task.id, start_time=clock.now,
                                              date=datetime.date(2026, 3, 1)))

    await controller.process_tick(clock.advance(hours=15))  # 01:30 JST next day

    assert controller.state is TimerState.RUNNING
    assert controller.current_entry.date == datetime.date(2026, 3, 2)
    assert (await entry_repo.get_by_id(other.id)).end_time == utc(2026, 3, 1, 14, 59, 59, 999000)
    assert (await entry_repo.find_open_entry(USER)).id == controller.current_entry.id


def test_own_tick_loop_is_closed_on_shutdown(qapp):
    ctl = TimerController(USER)
    ctl._on_tick()  # idle, so the tick does nothing
    loop = ctl._loop

    ctl.shutdown()

    assert loop.is_closed()
    assert ctl._loop is None


def test_injected_loop_is_left_open(qapp):
    loop = asyncio.new_event_loop()
    ctl = TimerController(USER, loop=loop)
    ctl._on_tick()

    ctl.shutdown()

    assert not loop.is_closed()
    loop.close()


@pytest.mark.asyncio
async def test_stop_after_midnight_splits_first(controller, entry_repo, task, clock):
    clock.now = utc(2026, 3, 1, 14, 0)  # 23:00 JST
    first = await controller.start(task.id)
    clock.advance(hours=2)  # 01:00 JST next day, no tick in between

    closed = await controller.confirm_stop("late")

    assert closed.id != first.id
    assert closed.date == datetime.date(2026, 3, 2)
    assert closed.start_time == utc(2026, 3, 1, 15)
    assert (await entry_repo.get_by_id(first.id)).date == datetime.date(2026, 3, 1)


@pytest.mark.asyncio
async def test_recover_same_day(controller, entry_repo, task, clock):
    saved = await entry_repo.insert(TimeEntry(user_id=USER, task_id=task.id,
                                              start_time=utc(2026, 3, 1, 0, 30),
                                              date=datetime.date(2026, 3, 1), comment="kept"))
    resumed = await controller.recover()

    assert resumed.id == saved.id
    assert controller.state is TimerState.RUNNING
    assert controller.elapsed_seconds == 30 * 60
    assert controller.pending_comment == "kept"


@pytest.mark.asyncio
async def test_recover_without_open_entry_is_idle(controller):
    assert await controller.recover() is None
    assert controller.state is TimerState.IDLE


@pytest.mark.asyncio
async def test_recover_after_several_days_splits_each_day(controller, entry_repo, task, clock):
    # Started 22:00 JST on Feb 27, app restarted at 10:00 JST on Mar 1
    saved = await entry_repo.insert(TimeEntry(user_id=USER, task_id=task.id,
                                              start_time=utc(2026, 2, 27, 13),
                                              date=datetime.date(2026, 2, 27)))
    resumed = await controller.recover()

    assert resumed.date == datetime.date(2026, 3, 1)
    assert resumed.start_time == utc(2026, 2, 28, 15)
    for day in (27, 28):
        entries = await entry_repo.get_by_user_and_date(USER, datetime.date(2026, 2, day))
        assert len(entries) == 1
        assert not entries[0].is_open
    assert (await entry_repo.get_by_id(saved.id)).end_time == utc(2026, 2, 27, 14, 59, 59, 999000)
    assert controller.elapsed_seconds == 10 * 3600


@pytest.mark.asyncio
async def test_select_task_prefills_todays_comment(controller, entry_repo, task):
    await entry_repo.insert(TimeEntry(user_id=USER, task_id=task.id,
                                      start_time=utc(2026, 3, 1, 0), end_time=utc(2026, 3, 1, 0, 30),
                                      date=datetime.date(2026, 3, 1), comment="pairing"))
    await controller.select_task(task.id)
    assert controller.pending_comment == "pairing"


@pytest.mark.asyncio
async def test_set_timezone_persists(controller, tmp_path):
    controller.user_repo = UserRepository(prefs_path=tmp_path / "prefs.json")
    zone = await controller.set_timezone("Europe/London")

    assert controller.zone is zone
    assert controller.exporter.zone is zone
    assert (await controller.user_repo.get_preferences()).timezone == "Europe/London"
    with pytest.raises(ValidationError):
        await controller.set_timezone("Nowhere/Land")


def test_task_filtering_and_grouping():
    tasks = [
        Task(name="[ENG-1] a", external_identifier="ENG-1", assignee_id=USER),
        Task(name="[OPS-2] b", external_identifier="OPS-2", assignee_id=USER),
        Task(name="[ENG-3] c", external_identifier="ENG-3", assignee_id=USER, external_status="canceled"),
        Task(name="[ENG-4] d", external_identifier="ENG-4", assignee_id=OTHER_USER),
        Task(name="Meetings", is_global=True),
    ]
    available = filter_available_tasks(tasks, USER)
    assert [t.name for t in available] == ["[ENG-1] a", "[OPS-2] b", "Meetings"]

    groups = group_tasks(available)
    assert [label for label, _ in groups] == ["Team: ENG", "Team: OPS", "Other"]


def test_format_elapsed():
    assert format_elapsed(0) == "00:00:00"
    assert format_elapsed(3725) == "01:02:05"
    assert format_elapsed(-5) == "00:00:00"
