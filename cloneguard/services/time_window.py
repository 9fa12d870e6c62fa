from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime, timezone
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from cloneguard.core.errors import InvalidArgumentError


WEEKDAYS: tuple[str, ...] = ("MON", "TUE", "WED", "THU", "FRI", "SAT", "SUN")


@dataclass(frozen=True)
class TimeWindow:
    """Allowed local hours and weekdays in one IANA time zone.

    Hours are half-open: ``start <= hour < end``. ``end`` may be 24 to include the last
    hour of the day.
    """

    start_hour: int
    end_hour: int
    days: frozenset[str]
    timezone: str = "UTC"

    def __post_init__(self) -> None:
        if not 0 <= self.start_hour <= 23 or not 1 <= self.end_hour <= 24:
            raise InvalidArgumentError(
                "Allowed hours must be within 0-24",
                details={"start": self.start_hour, "end": self.end_hour},
            )
        if self.start_hour >= self.end_hour:
            raise InvalidArgumentError("Allowed hours start must be before end")
        unknown = sorted(day for day in self.days if day not in WEEKDAYS)
        if unknown:
            raise InvalidArgumentError("Unknown weekday", details={"days": unknown})
        self.zone()

    def zone(self) -> ZoneInfo:
        try:
            return ZoneInfo(self.timezone)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise InvalidArgumentError(
                "Unknown time zone", details={"timezone": self.timezone}
            ) from exc

    def localize(self, now: datetime) -> datetime:
        # Naive instants are treated as UTC.
        if now.tzinfo is None:
            now = now.replace(tzinfo=timezone.utc)
        return now.astimezone(self.zone())

    def contains(self, now: datetime) -> bool:
        local = self.localize(now)
        if WEEKDAYS[local.weekday()] not in self.days:
            return False
        return self.start_hour <= local.hour < self.end_hour

    def describe(self, now: datetime) -> dict[str, object]:
        local = self.localize(now)
        return {
            "local_time": local.isoformat(),
            "local_day": WEEKDAYS[local.weekday()],
            "allowed_hours": f"{self.start_hour:02d}:00-{self.end_hour:02d}:00",
            "allowed_days": [day for day in WEEKDAYS if day in self.days],
            "timezone": self.timezone,
        }
