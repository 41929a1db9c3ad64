"""
Fixed-offset zones used for day attribution.

Only the enumerated zones below are supported and each one is a plain UTC
offset without daylight saving rules. Entries are attributed to days using
these offsets, so changing them changes which date existing entries land on.
"""

import datetime
from dataclasses import dataclass
from typing import Dict

from .errors import ValidationError


@dataclass(frozen=True)
class ZoneOption:
    key: str
    label: str
    offset_hours: float

    @property
    def tzinfo(self) -> datetime.timezone:
        return datetime.timezone(datetime.timedelta(hours=self.offset_hours), self.key)


TIMEZONES: Dict[str, ZoneOption] = {
    zone.key: zone
    for zone in (
        ZoneOption("Asia/Tokyo", "Japan Standard Time (JST)", 9),
        ZoneOption("America/New_York", "US Eastern Time (EST)", -5),
        ZoneOption("America/Los_Angeles", "US Pacific Time (PST)", -8),
        ZoneOption("Europe/London", "Greenwich Mean Time (GMT)", 0),
        ZoneOption("Asia/Shanghai", "China Standard Time (CST)", 8),
        ZoneOption("Asia/Kolkata", "India Standard Time (IST)", 5.5),
        ZoneOption("Europe/Paris", "Central European Time (CET)", 1),
        ZoneOption("Australia/Sydney", "Australian Eastern Time (AEST)", 10),
        ZoneOption("Pacific/Auckland", "New Zealand Time (NZST)", 12),
    )
}

DEFAULT_TIMEZONE = "Asia/Tokyo"


def get_zone(key: str) -> ZoneOption:
    try:
        return TIMEZONES[key]
    except KeyError:
        raise ValidationError(f"Unsupported timezone: {key}") from None


def to_local(instant: datetime.datetime, zone: ZoneOption) -> datetime.datetime:
    if instant.tzinfo is None:
        instant = instant.replace(tzinfo=datetime.timezone.utc)
    return instant.astimezone(zone.tzinfo)


def local_date(instant: datetime.datetime, zone: ZoneOption) -> datetime.date:
    """Calendar date of ``instant`` as seen in ``zone``."""
    return to_local(instant, zone).date()


def day_start(day: datetime.date, zone: ZoneOption) -> datetime.datetime:
    """00:00:00.000 of ``day`` in ``zone``, as an aware UTC instant."""
    local = datetime.datetime.combine(day, datetime.time.min, tzinfo=zone.tzinfo)
    return local.astimezone(datetime.timezone.utc)


def day_end(day: datetime.date, zone: ZoneOption) -> datetime.datetime:
    """23:59:59.999 of ``day`` in ``zone``, as an aware UTC instant."""
    local = datetime.datetime.combine(
        day, datetime.time(23, 59, 59, 999000), tzinfo=zone.tzinfo
    )
    return local.astimezone(datetime.timezone.utc)
