import datetime as dt
import math
from zoneinfo import ZoneInfo

from loguru import logger

from admission.config import BusinessRules

_WEEKDAY_NAMES = ("Monday", "Tuesday", "Wednesday", "Thursday", "Friday", "Saturday", "Sunday")


def resolve_timezone(name: str) -> dt.tzinfo:
    """Resolve a timezone name, falling back to UTC if invalid."""
    try:
        return ZoneInfo(name)
    except Exception:
        logger.warning("Invalid clinic timezone '{}'; defaulting to UTC", name)
        return dt.timezone.utc


def date_to_us_long(date: dt.date) -> str:
    """Convert ``date(2024, 3, 4)`` → ``March 4, 2024``."""
    return f"{date.strftime('%B')} {date.day}, {date.year}"


def time_to_12h(time: dt.time) -> str:
    """Convert ``time(14, 30)`` → ``2:30 PM``, no leading zero on the hour."""
    hour = time.hour % 12 or 12
    period = "AM" if time.hour < 12 else "PM"
    return f"{hour}:{time.strftime('%M')} {period}"


def minutes_until(start: dt.datetime, end: dt.datetime) -> int:
    """Whole minutes from ``start`` to ``end``, rounded up."""
    return math.ceil((end - start).total_seconds() / 60)


def minutes_since(start: dt.datetime, end: dt.datetime) -> int:
    """Whole minutes elapsed from ``start`` to ``end``, rounded down."""
    return math.floor((end - start).total_seconds() / 60)


def format_minutes(minutes: int) -> str:
    return "1 minute" if minutes == 1 else f"{minutes} minutes"


class ClinicCalendar:
    """Answers operating-hours questions in the clinic's local time.

    Naive datetimes are taken to already be clinic-local; aware ones are
    converted before the hour or weekday is read, so a UTC timestamp never
    leaks its own calendar day into the check.

    Datetimes sharing one ``ZoneInfo`` add, subtract and compare by wall
    clock. Window edges and elapsed minutes are computed on ``to_utc``
    values so they stay correct across DST transitions.
    """

    def __init__(self, rules: BusinessRules, timezone: dt.tzinfo | str) -> None:
        self._rules = rules
        self.timezone = resolve_timezone(timezone) if isinstance(timezone, str) else timezone

    def localize(self, moment: dt.datetime) -> dt.datetime:
        if moment.tzinfo is None:
            return moment.replace(tzinfo=self.timezone)
        return moment.astimezone(self.timezone)

    def to_utc(self, moment: dt.datetime) -> dt.datetime:
        return self.localize(moment).astimezone(dt.timezone.utc)

    def now(self) -> dt.datetime:
        return dt.datetime.now(self.timezone)

    def is_work_day(self, moment: dt.datetime) -> bool:
        return self.localize(moment).isoweekday() in self._rules.work_days

    def is_within_work_hours(self, moment: dt.datetime) -> bool:
        local = self.localize(moment)
        return (
            self._rules.work_start_hour <= local.hour < self._rules.work_end_hour
            and local.isoweekday() in self._rules.work_days
        )

    def is_lunch_time(self, moment: dt.datetime) -> bool:
        hour = self.localize(moment).hour
        return self._rules.lunch_start_hour <= hour < self._rules.lunch_end_hour

    def is_slot_aligned(self, moment: dt.datetime) -> bool:
        local = self.localize(moment)
        return (
            local.second == 0
            and local.microsecond == 0
            and local.minute % self._rules.slot_duration_minutes == 0
        )

    def hours_label(self) -> str:
        start = time_to_12h(dt.time(self._rules.work_start_hour))
        end = time_to_12h(dt.time(self._rules.work_end_hour % 24))
        return f"{start} - {end}"

    def lunch_label(self) -> str:
        start = time_to_12h(dt.time(self._rules.lunch_start_hour))
        end = time_to_12h(dt.time(self._rules.lunch_end_hour % 24))
        return f"{start} - {end}"

    def work_days_label(self) -> str:
        days = sorted(self._rules.work_days)
        if days == list(range(days[0], days[-1] + 1)) and len(days) > 2:
            return f"{_WEEKDAY_NAMES[days[0] - 1]} to {_WEEKDAY_NAMES[days[-1] - 1]}"
        return ", ".join(_WEEKDAY_NAMES[d - 1] for d in days)
