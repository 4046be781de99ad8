"""
Working-hours arithmetic for response-time KPIs.

Only minutes that fall inside a working period count; nights and
non-working days are skipped. Instants are naive UTC and are converted
to the tenant's local time before bucketing.
"""
from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from zoneinfo import ZoneInfo

from config.settings import WorkingHoursConfig


def _parse_time(value: str) -> time:
    hour, _, minute = value.partition(":")
    return time(int(hour), int(minute or 0))


@dataclass(frozen=True)
class WorkingHours:
    start: time = time(9, 0)
    end: time = time(18, 0)
    workdays: frozenset[int] = frozenset({0, 1, 2, 3, 4})

    @classmethod
    def from_config(cls, cfg: WorkingHoursConfig) -> WorkingHours:
        return cls(
            start=_parse_time(cfg.start),
            end=_parse_time(cfg.end),
            workdays=frozenset(cfg.workdays),
        )

    def _period(self, day: date) -> tuple[datetime, datetime]:
        return datetime.combine(day, self.start), datetime.combine(day, self.end)

    def minutes_between(self, start: datetime, end: datetime, tz: str = "UTC") -> int:
        """Working minutes between two naive-UTC instants, in ``tz`` local time."""
        if end <= start:
            return 0
        zone = ZoneInfo(tz)
        local_start = start.replace(tzinfo=timezone.utc).astimezone(zone).replace(tzinfo=None)
        local_end = end.replace(tzinfo=timezone.utc).astimezone(zone).replace(tzinfo=None)

        total = timedelta()
        day = local_start.date()
        while day <= local_end.date():
            if day.weekday() in self.workdays:
                period_start, period_end = self._period(day)
                overlap_start = max(local_start, period_start)
                overlap_end = min(local_end, period_end)
                if overlap_end > overlap_start:
                    total += overlap_end - overlap_start
            day += timedelta(days=1)
        return int(total.total_seconds() // 60)
