"""
Midnight crossover splitting.

An open entry that runs past the end of its local day is divided into a
closed entry ending at 23:59:59.999 of the start date and a new open entry
starting at 00:00:00.000 of the following date. Both halves use the same
zone. Persisting the two halves is the caller's job and must happen in one
transaction (see ``TimeEntryRepository.split``).
"""

import datetime
from typing import Optional, Tuple

from .errors import ValidationError
from .models import TimeEntry, new_id
from .timezones import ZoneOption, day_end, day_start, local_date


def crosses_midnight(entry: TimeEntry, now: datetime.datetime, zone: ZoneOption) -> bool:
    """True when ``now`` falls on a later local date than the entry's start."""
    return local_date(now, zone) > local_date(entry.start_time, zone)


def split_at_midnight(entry: TimeEntry, zone: ZoneOption,
                      new_entry_id: Optional[str] = None) -> Tuple[TimeEntry, TimeEntry]:
    """
    Split an open entry at the end of its start day.

    Args:
        entry: The open entry that crossed the day boundary
        zone: Zone that defines the day boundary for both halves
        new_entry_id: Identifier for the second half (generated if omitted)

    Returns:
        (closed, new): the closed first half and the open second half
    """
    if not entry.is_open:
        raise ValidationError(f"Time entry {entry.id} is already closed")

    start_day = local_date(entry.start_time, zone)
    next_day = start_day + datetime.timedelta(days=1)

    closed = entry.model_copy(update={"end_time": day_end(start_day, zone)})
    new = TimeEntry(
        id=new_entry_id or new_id(),
        user_id=entry.user_id,
        task_id=entry.task_id,
        start_time=day_start(next_day, zone),
        end_time=None,
        comment=entry.comment,
        date=next_day,
    )
    return closed, new
