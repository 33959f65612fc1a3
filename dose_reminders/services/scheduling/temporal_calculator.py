"""
Timezone-local calendar arithmetic for reminder scheduling.

All calculations work on local calendar dates in an IANA zone. Dates are
anchored at 09:00 local time so daylight-saving transitions around
midnight cannot move a date onto its neighbour.
"""

from collections.abc import Callable
from datetime import UTC, date, datetime, time, timedelta
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dose_reminders.infrastructure.observability.logging import get_logger

logger = get_logger(__name__)

Clock = Callable[[], datetime]

REFERENCE_LOCAL_TIME = time(9, 0)

SATURDAY = 5
SUNDAY = 6
WEEKEND_DAYS = frozenset({SATURDAY, SUNDAY})

# Days to move back so a weekend date lands on the preceding Friday
_WEEKEND_SHIFT = {SATURDAY: 1, SUNDAY: 2}


def utc_now() -> datetime:
    return datetime.now(UTC)


class TemporalCalculator:
    """
    Pure date/timezone helpers with an injectable clock.

    Args:
        default_timezone: Zone used when a recipient has none (or an unknown one)
        clock: Callable returning the current aware instant
    """

    def __init__(self, default_timezone: str = "Asia/Kolkata", clock: Clock = utc_now):
        self.default_timezone = default_timezone
        self._default_zone = ZoneInfo(default_timezone)
        self._clock = clock

    def resolve_zone(self, name: str | None) -> ZoneInfo:
        """Return the zone for name, falling back to the default zone."""
        if not name:
            return self._default_zone
        try:
            return ZoneInfo(name)
        except (ZoneInfoNotFoundError, ValueError):
            logger.warning(
                "Unknown timezone, using default",
                timezone=name,
                default_timezone=self.default_timezone,
            )
            return self._default_zone

    def now(self, timezone: str | None = None) -> datetime:
        return self._clock().astimezone(self.resolve_zone(timezone))

    def today(self, timezone: str | None = None) -> date:
        """Local calendar date of the current instant in timezone."""
        return self.now(timezone).date()

    def date_after_days(self, timezone: str | None, days: int) -> date:
        """Local calendar date exactly `days` days after today in timezone."""
        return self.today(timezone) + timedelta(days=days)

    def _anchor(self, day: date, timezone: str | None) -> datetime:
        return datetime.combine(day, REFERENCE_LOCAL_TIME, tzinfo=self.resolve_zone(timezone))

    def is_weekend(self, day: date, timezone: str | None = None) -> bool:
        return self._anchor(day, timezone).weekday() in WEEKEND_DAYS

    def shift_to_preceding_business_day(self, day: date, timezone: str | None = None) -> date:
        """
        Move a weekend date back to the Friday before it.

        Saturday moves back one day, Sunday two; weekdays are returned as-is.
        """
        anchored = self._anchor(day, timezone)
        shift = _WEEKEND_SHIFT.get(anchored.weekday(), 0)
        return (anchored - timedelta(days=shift)).date()

    def send_date_for(self, due_date: date, timezone: str | None = None) -> date:
        """
        Local date on which a reminder for due_date goes out: the day
        before, moved to the preceding Friday when that day is a weekend.
        """
        send_date = (self._anchor(due_date, timezone) - timedelta(days=1)).date()
        if self.is_weekend(send_date, timezone):
            send_date = self.shift_to_preceding_business_day(send_date, timezone)
        return send_date
