from __future__ import annotations

import asyncio
import datetime
import json
import signal
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import Any, Awaitable, Callable, Dict, Optional, TypeVar

import typer
from PySide6.QtCore import QCoreApplication, QTimer

from daytrack.domain.errors import TimeTrackerError, ValidationError
from daytrack.domain.models import Task, UserPreferences, utcnow
from daytrack.domain.timezones import TIMEZONES, ZoneOption, get_zone, local_date, to_local
from daytrack.infra.config import Settings, get_settings, setup_logging
from daytrack.infra.db import DatabaseEngine, get_engine, init_db
from daytrack.infra.linear_client import LinearClient, LinearConfig
from daytrack.infra.repository import TaskRepository, TimeEntryRepository, UserRepository
from daytrack.infra.slack import SlackClient, SlackConfig
from daytrack.infra.spreadsheet import WorkbookMirror
from daytrack.services.entry_service import EntryService
from daytrack.services.export_service import ExportNotifier
from daytrack.services.issue_sync_service import IssueSyncService
from daytrack.services.report_service import DailyReportService
from daytrack.services.timer_service import TimerController, format_elapsed, group_tasks

T = TypeVar("T")

app = typer.Typer(add_completion=False, no_args_is_help=True)


@app.callback()
def _root() -> None:
    """Linear-synced time tracker."""


@dataclass
class Context:
    settings: Settings
    prefs: UserPreferences
    zone: ZoneOption
    task_repo: TaskRepository
    entry_repo: TimeEntryRepository
    user_repo: UserRepository
    exporter: ExportNotifier

    def controller(self, loop: Optional[asyncio.AbstractEventLoop] = None) -> TimerController:
        controller = TimerController(
            user_id=self.prefs.user_id,
            zone=self.zone,
            task_repo=self.task_repo,
            entry_repo=self.entry_repo,
            user_repo=self.user_repo,
            exporter=self.exporter,
            loop=loop,
        )
        controller.pending_comment = self.prefs.last_comment
        return controller

    def entries(self) -> EntryService:
        return EntryService(
            user_id=self.prefs.user_id,
            zone=self.zone,
            task_repo=self.task_repo,
            entry_repo=self.entry_repo,
            exporter=self.exporter,
        )


def _qt_app() -> QCoreApplication:
    return QCoreApplication.instance() or QCoreApplication(sys.argv[:1])


async def _build_context(settings: Settings) -> Context:
    user_repo = UserRepository(
        prefs_path=settings.data_dir / "user_prefs.json",
        defaults=settings.preferences,
    )
    prefs = await user_repo.get_preferences()
    zone = get_zone(prefs.timezone)
    task_repo = TaskRepository()
    exporter = ExportNotifier(
        WorkbookMirror(settings.get_spreadsheet_path()),
        task_repo=task_repo,
        assignee_name=prefs.user_name,
        zone=zone,
    )
    return Context(
        settings=settings,
        prefs=prefs,
        zone=zone,
        task_repo=task_repo,
        entry_repo=TimeEntryRepository(),
        user_repo=user_repo,
        exporter=exporter,
    )


def _run(fn: Callable[[Context], Awaitable[T]]) -> T:
    """Run one command against the configured database, mapping domain errors to exit 1."""
    settings = get_settings()
    setup_logging(settings.log_level)

    async def main() -> T:
        await init_db(settings.get_db_url())
        try:
            return await fn(await _build_context(settings))
        finally:
            await get_engine().engine.dispose()
            DatabaseEngine.reset_instance()

    try:
        return asyncio.run(main())
    except TimeTrackerError as e:
        typer.echo(f"error: {e}", err=True)
        raise typer.Exit(code=1) from e


def _parse_instant(value: str, zone: ZoneOption) -> datetime.datetime:
    """ISO timestamp; naive values are read in the user's zone"""
    try:
        parsed = datetime.datetime.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Not an ISO timestamp: {value}") from None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=zone.tzinfo)
    return parsed.astimezone(datetime.timezone.utc)


def _parse_day(value: Optional[str], zone: ZoneOption) -> datetime.date:
    if not value:
        return local_date(utcnow(), zone)
    try:
        return datetime.date.fromisoformat(value)
    except ValueError:
        raise ValidationError(f"Not a YYYY-MM-DD date: {value}") from None


def _read_payload(payload_file: Path) -> Dict[str, Any]:
    """Webhook body from a file or stdin, as a JSON object"""
    try:
        raw = sys.stdin.read() if str(payload_file) == "-" else payload_file.read_text(encoding="utf-8")
        payload = json.loads(raw)
    except (OSError, json.JSONDecodeError) as e:
        raise ValidationError(f"Cannot read webhook payload: {e}") from None
    if not isinstance(payload, dict):
        raise ValidationError("Webhook payload must be a JSON object")
    return payload


def _task_line(task: Task) -> str:
    status = f" ({task.external_status})" if task.external_status else ""
    return f"  {task.id}  {task.name}{status}"


@app.command("init-db")
def init_db_cmd() -> None:
    """Create the database tables."""

    async def go(ctx: Context) -> None:
        typer.echo(f"database ready: {ctx.settings.get_db_url()}")

    _run(go)


@app.command()
def tasks() -> None:
    """List the tasks you can clock time against."""

    async def go(ctx: Context) -> None:
        controller = ctx.controller()
        available = await controller.available_tasks()
        if not available:
            typer.echo("no tasks available")
            return
        for label, group in group_tasks(available):
            typer.echo(f"{label} ({len(group)})")
            for task in group:
                typer.echo(_task_line(task))

    _qt_app()
    _run(go)


@app.command("add-task")
def add_task(
    name: str = typer.Argument(..., help="Task name"),
    global_: bool = typer.Option(False, "--global", help="Visible to every user"),
    assignee: Optional[str] = typer.Option(None, "--assignee", help="Assignee e-mail (default: you)"),
    label: Optional[str] = typer.Option(None, "--label", help="Group label for global tasks"),
    color: str = typer.Option("#3b82f6", "--color"),
) -> None:
    """Create a task that is not backed by a Linear issue."""

    async def go(ctx: Context) -> None:
        task = Task(
            name=name,
            color=color,
            is_global=global_,
            assignee_id=None if global_ else (assignee or ctx.prefs.user_id),
            external_identifier=label,
        )
        saved = await ctx.task_repo.upsert(task)
        typer.echo(f"created task {saved.id}")

    _run(go)


@app.command()
def start(
    task_id: str = typer.Argument(..., help="Task id (see `daytrack tasks`)"),
    comment: Optional[str] = typer.Option(None, "--comment", "-c"),
) -> None:
    """Start the timer on a task."""

    async def go(ctx: Context) -> None:
        controller = ctx.controller()
        await controller.recover()
        await controller.select_task(task_id)
        if comment is not None:
            controller.pending_comment = comment
        entry = await controller.start()
        controller.shutdown()
        local = to_local(entry.start_time, ctx.zone)
        typer.echo(f"started {entry.id} at {local:%H:%M:%S} ({ctx.zone.key})")

    _qt_app()
    _run(go)


@app.command()
def stop(comment: Optional[str] = typer.Option(None, "--comment", "-c")) -> None:
    """Stop the running timer."""

    async def go(ctx: Context) -> None:
        controller = ctx.controller()
        if await controller.recover() is None:
            typer.echo("timer is not running")
            return
        closed = await controller.confirm_stop(comment)
        controller.shutdown()
        if closed is None:
            typer.echo("timer is not running")
            return

        prefs = await ctx.user_repo.get_preferences()
        prefs.last_comment = closed.comment
        await ctx.user_repo.update_preferences(prefs)
        typer.echo(f"stopped {closed.id} after {format_elapsed(int(closed.duration_seconds()))}")

    _qt_app()
    _run(go)


@app.command()
def status() -> None:
    """Show the running timer, if any."""

    async def go(ctx: Context) -> None:
        entry = await ctx.entry_repo.find_open_entry(ctx.prefs.user_id)
        if entry is None:
            typer.echo("idle")
            return
        task = await ctx.task_repo.get_by_id(entry.task_id)
        elapsed = format_elapsed(int(entry.duration_seconds(utcnow())))
        name = task.name if task else entry.task_id
        typer.echo(f"running {elapsed} {name} (entry {entry.id}, since {entry.date})")

    _run(go)


@app.command()
def run() -> None:
    """Keep the timer ticking in the foreground (Ctrl+C to leave it running)."""
    settings = get_settings()
    setup_logging(settings.log_level)
    qt_app = _qt_app()
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    try:
        loop.run_until_complete(init_db(settings.get_db_url()))
        ctx = loop.run_until_complete(_build_context(settings))
        controller = ctx.controller(loop=loop)
        controller.tick.connect(lambda text, _secs: typer.echo(f"\r{text}", nl=False))
        controller.entry_split.connect(
            lambda closed_id, new_id: typer.echo(f"\nmidnight: closed {closed_id}, continuing as {new_id}")
        )
        controller.error_occurred.connect(lambda msg: typer.echo(f"\nerror: {msg}", err=True))

        if loop.run_until_complete(controller.recover()) is None:
            typer.echo("timer is not running; use `daytrack start <task>` first")
            return

        signal.signal(signal.SIGINT, lambda *_: qt_app.quit())
        # Wake the Qt loop regularly so Python can deliver SIGINT
        wakeup = QTimer()
        wakeup.start(250)
        wakeup.timeout.connect(lambda: None)

        qt_app.exec()
        controller.shutdown()
        typer.echo("")
    finally:
        loop.run_until_complete(get_engine().engine.dispose())
        DatabaseEngine.reset_instance()
        loop.close()


@app.command("add-entry")
def add_entry(
    task_id: str = typer.Argument(...),
    start_at: str = typer.Option(..., "--start", help="ISO timestamp, local zone if naive"),
    end_at: str = typer.Option(..., "--end", help="ISO timestamp, local zone if naive"),
    comment: str = typer.Option("", "--comment", "-c"),
) -> None:
    """Record a finished piece of work after the fact."""

    async def go(ctx: Context) -> None:
        entry = await ctx.entries().add_manual(
            task_id, _parse_instant(start_at, ctx.zone), _parse_instant(end_at, ctx.zone), comment
        )
        typer.echo(f"added {entry.id} on {entry.date}")

    _run(go)


@app.command("edit-entry")
def edit_entry(
    entry_id: str = typer.Argument(...),
    start_at: Optional[str] = typer.Option(None, "--start"),
    end_at: Optional[str] = typer.Option(None, "--end"),
    comment: Optional[str] = typer.Option(None, "--comment", "-c"),
) -> None:
    """Correct a time entry."""

    async def go(ctx: Context) -> None:
        entry = await ctx.entries().edit(
            entry_id,
            start=_parse_instant(start_at, ctx.zone) if start_at else None,
            end=_parse_instant(end_at, ctx.zone) if end_at else None,
            comment=comment,
        )
        typer.echo(f"updated {entry.id}")

    _run(go)


@app.command()
def delete(entry_id: str = typer.Argument(...)) -> None:
    """Delete a time entry and its spreadsheet row."""

    async def go(ctx: Context) -> None:
        removed = await ctx.entries().delete(entry_id)
        typer.echo(f"deleted {removed.id}")

    _run(go)


@app.command()
def entries(day: Optional[str] = typer.Option(None, "--date", help="YYYY-MM-DD (default: today)")) -> None:
    """List your entries for a day."""

    async def go(ctx: Context) -> None:
        target = _parse_day(day, ctx.zone)
        rows = await ctx.entry_repo.get_by_user_and_date(ctx.prefs.user_id, target)
        if not rows:
            typer.echo(f"no entries on {target}")
            return
        for entry in rows:
            start_local = to_local(entry.start_time, ctx.zone)
            end_local = f"{to_local(entry.end_time, ctx.zone):%H:%M:%S}" if entry.end_time else "running"
            typer.echo(f"{entry.id}  {start_local:%H:%M:%S}-{end_local}  {entry.task_id}  {entry.comment}")

    _run(go)


@app.command()
def sync() -> None:
    """Pull every Linear issue into the task catalog."""

    async def go(ctx: Context) -> None:
        if not ctx.settings.linear_api_key:
            raise ValidationError("DAYTRACK_LINEAR_API_KEY is not set")
        client = LinearClient(LinearConfig(ctx.settings.linear_api_key, ctx.settings.linear_api_url))
        result = await IssueSyncService(client, ctx.task_repo).sync()
        typer.echo(f"synced {result.total} issues ({result.created} new, {result.updated} updated)")

    _run(go)


@app.command()
def webhook(
    payload_file: Path = typer.Argument(..., help="JSON payload of a Linear webhook ('-' for stdin)"),
) -> None:
    """Apply a Linear webhook payload to the task catalog."""
    async def go(ctx: Context) -> None:
        payload = _read_payload(payload_file)
        outcome = await IssueSyncService(task_repo=ctx.task_repo).apply_webhook(payload)
        typer.echo(outcome)

    _run(go)


@app.command()
def report(
    day: Optional[str] = typer.Option(None, "--date", help="YYYY-MM-DD (default: today)"),
    post: bool = typer.Option(False, "--post", help="Send to the configured Slack channel"),
    all_users: bool = typer.Option(False, "--all-users", help="One report per user with entries"),
) -> None:
    """Build the daily report."""

    async def go(ctx: Context) -> None:
        target = _parse_day(day, ctx.zone)
        service = DailyReportService(task_repo=ctx.task_repo, entry_repo=ctx.entry_repo)

        if all_users:
            users = await service.users_for_day(target)
        else:
            users = [ctx.prefs.user_id]

        slack = None
        if post:
            if not (ctx.settings.slack_bot_token and ctx.settings.slack_channel):
                raise ValidationError("Slack is not configured (DAYTRACK_SLACK_BOT_TOKEN / DAYTRACK_SLACK_CHANNEL)")
            slack = SlackClient(SlackConfig(ctx.settings.slack_bot_token, ctx.settings.slack_channel))

        for user_id in users:
            name = ctx.prefs.user_name if user_id == ctx.prefs.user_id else None
            built = await service.build(user_id, target, user_name=name)
            typer.echo(built.text)
            if slack is not None:
                ok = await service.post_to_slack(built, slack)
                typer.echo("posted" if ok else "slack post failed")

    _run(go)


@app.command()
def timezone(key: Optional[str] = typer.Argument(None, help="Zone key, omit to list")) -> None:
    """Show or change the zone used for day attribution."""
    if key is None:
        for zone in TIMEZONES.values():
            typer.echo(f"{zone.key:<22} {zone.offset_hours:+g}h  {zone.label}")
        return

    async def go(ctx: Context) -> None:
        zone = await ctx.controller().set_timezone(key)
        typer.echo(f"timezone set to {zone.key}")

    _qt_app()
    _run(go)


def main() -> None:
    app()


if __name__ == "__main__":
    main()
