"""Occurrence arithmetic for auto-gift rules (no database access)."""

from __future__ import annotations

import math
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import List, Optional, Sequence, Tuple
from zoneinfo import ZoneInfo

from cycle_keys import DEFAULT_TIMEZONE, ensure_utc

SCHEDULE_INTERVAL = "interval"
SCHEDULE_ONCE = "once"
SCHEDULE_WEEKLY = "weekly"
SCHEDULE_KINDS = (SCHEDULE_INTERVAL, SCHEDULE_ONCE, SCHEDULE_WEEKLY)

DAY_CODES = {"m": 0, "t": 1, "w": 2, "r": 3, "f": 4, "sa": 5, "su": 6}
WEEKDAY_TO_CODE = {weekday: code for code, weekday in DAY_CODES.items()}

OCCURRENCE_FORMAT = "%Y-%m-%dT%H:%M:%SZ"


@dataclass(frozen=True)
class ScheduleSpec:
    kind: str
    anchor_at: datetime
    interval_days: Optional[int] = None
    day_codes: Tuple[str, ...] = ()
    time_local: Optional[str] = None
    timezone_name: str = DEFAULT_TIMEZONE
    active_from: Optional[date] = None
    active_until: Optional[date] = None

    def __post_init__(self) -> None:
        if self.kind not in SCHEDULE_KINDS:
            raise ValueError(f"Unknown schedule kind {self.kind!r}.")
        if self.anchor_at is None:
            raise ValueError("Schedules need an anchor instant.")
        object.__setattr__(self, "anchor_at", ensure_utc(self.anchor_at))
        if self.kind == SCHEDULE_INTERVAL and (not self.interval_days or int(self.interval_days) < 1):
            raise ValueError("Interval schedules need interval_days >= 1.")
        if self.kind == SCHEDULE_WEEKLY:
            codes = normalize_day_codes(self.day_codes)
            if not codes:
                raise ValueError("Weekly schedules need at least one day code.")
            object.__setattr__(self, "day_codes", codes)
            parse_time_local(self.time_local or "")
        if self.active_from and self.active_until and self.active_until < self.active_from:
            raise ValueError("active_until is before active_from.")

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone_name)


def normalize_day_codes(codes: Optional[Sequence[str]]) -> Tuple[str, ...]:
    normalized = []
    for raw in codes or ():
        code = str(raw or "").strip().lower()
        if not code:
            continue
        if code not in DAY_CODES:
            raise ValueError(f"Unknown day code {raw!r}; use m t w r f sa su.")
        if code not in normalized:
            normalized.append(code)
    return tuple(sorted(normalized, key=DAY_CODES.__getitem__))


def parse_time_local(value: str) -> time:
    try:
        hour_text, minute_text = value.strip().split(":", 1)
        return time(int(hour_text), int(minute_text))
    except (AttributeError, ValueError) as exc:
        raise ValueError(f"Invalid time_local {value!r}; expected HH:MM.") from exc


def occurrence_id(instant: datetime) -> str:
    return ensure_utc(instant).strftime(OCCURRENCE_FORMAT)


def parse_occurrence_id(value: str) -> datetime:
    try:
        return datetime.strptime(value, OCCURRENCE_FORMAT).replace(tzinfo=timezone.utc)
    except (TypeError, ValueError) as exc:
        raise ValueError(f"Invalid occurrence id {value!r}.") from exc


def day_code_for(instant: datetime, timezone_name: str) -> str:
    return WEEKDAY_TO_CODE[ensure_utc(instant).astimezone(ZoneInfo(timezone_name)).weekday()]


def occurrences_between(
    spec: ScheduleSpec,
    after: Optional[datetime],
    until: datetime,
) -> List[datetime]:
    """Occurrence instants in ``(after, until]``, oldest first."""
    until = ensure_utc(until)
    after = ensure_utc(after)

    if spec.kind == SCHEDULE_ONCE:
        candidates = [spec.anchor_at]
    elif spec.kind == SCHEDULE_INTERVAL:
        candidates = _interval_candidates(spec, after, until)
    else:
        candidates = _weekly_candidates(spec, after, until)

    return [
        instant
        for instant in candidates
        if (after is None or instant > after) and instant <= until and _within_active_window(spec, instant)
    ]


def is_occurrence(spec: ScheduleSpec, instant: datetime) -> bool:
    instant = ensure_utc(instant)
    return instant in occurrences_between(spec, instant - timedelta(seconds=1), instant)


def _interval_candidates(spec: ScheduleSpec, after: Optional[datetime], until: datetime) -> List[datetime]:
    step = timedelta(days=int(spec.interval_days))
    if until < spec.anchor_at:
        return []
    first = 0
    if after is not None and after >= spec.anchor_at:
        first = math.floor((after - spec.anchor_at) / step)
    last = math.floor((until - spec.anchor_at) / step)
    return [spec.anchor_at + step * k for k in range(first, last + 1)]


def _weekly_candidates(spec: ScheduleSpec, after: Optional[datetime], until: datetime) -> List[datetime]:
    tz = spec.tz
    at = parse_time_local(spec.time_local or "")
    weekdays = {DAY_CODES[code] for code in spec.day_codes}

    day = spec.anchor_at.astimezone(tz).date()
    if after is not None:
        day = max(day, after.astimezone(tz).date())
    last_day = until.astimezone(tz).date()

    results: List[datetime] = []
    while day <= last_day:
        if day.weekday() in weekdays:
            instant = datetime.combine(day, at, tzinfo=tz).astimezone(timezone.utc)
            if instant >= spec.anchor_at:
                results.append(instant)
        day += timedelta(days=1)
    return results


def _within_active_window(spec: ScheduleSpec, instant: datetime) -> bool:
    local_day = instant.astimezone(spec.tz).date()
    if spec.active_from and local_day < spec.active_from:
        return False
    if spec.active_until and local_day > spec.active_until:
        return False
    return True
