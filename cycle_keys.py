"""Map wall-clock instants to canonical cycle keys (``YYYY-MM-DD``) under a shared day policy."""

from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Mapping, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from dateutil import parser as date_parser

POLICY_CALENDAR_DAY = "calendar_day"
POLICY_ROLLOVER = "rollover"
POLICIES = (POLICY_CALENDAR_DAY, POLICY_ROLLOVER)

LABEL_START = "start"
LABEL_END = "end"

DEFAULT_TIMEZONE = "America/New_York"
DEFAULT_ROLLOVER_HOUR = 6

_CYCLE_KEY_RE = re.compile(r"^\d{4}-\d{2}-\d{2}$")
_ONE_DAY = timedelta(days=1)


@dataclass(frozen=True)
class CyclePolicy:
    """How a logical day is cut out of the wall clock.

    ``calendar_day`` uses the local midnight of ``timezone_name``. ``rollover`` starts
    each day at ``rollover_hour:rollover_minute`` local time; ``label`` picks which
    calendar date names the window (the date it starts on, or the date it ends on).
    """

    kind: str = POLICY_ROLLOVER
    timezone_name: str = DEFAULT_TIMEZONE
    rollover_hour: int = DEFAULT_ROLLOVER_HOUR
    rollover_minute: int = 0
    label: str = LABEL_START

    def __post_init__(self) -> None:
        if self.kind not in POLICIES:
            raise ValueError(f"Unknown cycle policy {self.kind!r}; expected one of {', '.join(POLICIES)}.")
        if not 0 <= int(self.rollover_hour) <= 23:
            raise ValueError("Rollover hour must be between 0 and 23.")
        if not 0 <= int(self.rollover_minute) <= 59:
            raise ValueError("Rollover minute must be between 0 and 59.")
        if self.label not in (LABEL_START, LABEL_END):
            raise ValueError(f"Unknown cycle label {self.label!r}.")
        try:
            ZoneInfo(self.timezone_name)
        except (ZoneInfoNotFoundError, ValueError) as exc:
            raise ValueError(f"Unknown timezone {self.timezone_name!r}.") from exc

    @property
    def tz(self) -> ZoneInfo:
        return ZoneInfo(self.timezone_name)

    @property
    def rollover(self) -> time:
        if self.kind == POLICY_CALENDAR_DAY:
            return time(0, 0)
        return time(int(self.rollover_hour), int(self.rollover_minute))


def policy_from_config(config: Mapping[str, Any]) -> CyclePolicy:
    """Build the single policy shared by snapshots, redeems and the HTTP layer."""
    return CyclePolicy(
        kind=str(config.get("CYCLE_POLICY") or POLICY_ROLLOVER),
        timezone_name=str(config.get("CYCLE_TIMEZONE") or DEFAULT_TIMEZONE),
        rollover_hour=int(config.get("CYCLE_ROLLOVER_HOUR", DEFAULT_ROLLOVER_HOUR)),
        rollover_minute=int(config.get("CYCLE_ROLLOVER_MINUTE", 0)),
        label=str(config.get("CYCLE_LABEL") or LABEL_START),
    )


def resolve(instant: datetime, policy: CyclePolicy) -> str:
    """Return the cycle key that ``instant`` falls into under ``policy``."""
    if instant.tzinfo is None:
        raise ValueError("Cycle keys can only be resolved for timezone-aware instants.")

    local = instant.astimezone(policy.tz)
    day = local.date()
    if policy.kind == POLICY_ROLLOVER:
        before_rollover = (local.hour, local.minute) < (policy.rollover.hour, policy.rollover.minute)
        if policy.label == LABEL_START and before_rollover:
            day -= _ONE_DAY
        elif policy.label == LABEL_END and not before_rollover:
            day += _ONE_DAY
    return day.isoformat()


def bounds(cycle_key: str, policy: CyclePolicy) -> Tuple[datetime, datetime]:
    """Half-open ``[start, end)`` UTC window covered by ``cycle_key``."""
    day = parse_cycle_key(cycle_key)
    start_day = day
    if policy.kind == POLICY_ROLLOVER and policy.label == LABEL_END:
        start_day = day - _ONE_DAY

    tz = policy.tz
    start_local = datetime.combine(start_day, policy.rollover, tzinfo=tz)
    end_local = datetime.combine(start_day + _ONE_DAY, policy.rollover, tzinfo=tz)
    return start_local.astimezone(timezone.utc), end_local.astimezone(timezone.utc)


def current_cycle_key(policy: CyclePolicy, now: Optional[datetime] = None) -> str:
    return resolve(now or utc_now(), policy)


def is_cycle_key(value: Any) -> bool:
    if not isinstance(value, str) or not _CYCLE_KEY_RE.match(value):
        return False
    try:
        date.fromisoformat(value)
    except ValueError:
        return False
    return True


def parse_cycle_key(value: str) -> date:
    if not is_cycle_key(value):
        raise ValueError(f"Invalid cycle key {value!r}; expected YYYY-MM-DD.")
    return date.fromisoformat(value)


def shift(cycle_key: str, days: int) -> str:
    return (parse_cycle_key(cycle_key) + timedelta(days=days)).isoformat()


def week_start_key(cycle_key: str) -> str:
    """Monday of the week containing ``cycle_key``."""
    day = parse_cycle_key(cycle_key)
    return (day - timedelta(days=day.weekday())).isoformat()


def utc_now() -> datetime:
    return datetime.now(timezone.utc)


def ensure_utc(value: Optional[datetime]) -> Optional[datetime]:
    """Normalise to an aware UTC datetime; naive values read back from the store are UTC."""
    if value is None:
        return None
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def parse_instant(value: Any) -> Optional[datetime]:
    """Parse an ISO-8601 instant from a payload or CLI flag; naive values are read as UTC."""
    if not value:
        return None
    if isinstance(value, datetime):
        return ensure_utc(value)
    try:
        parsed = date_parser.isoparse(str(value).strip())
    except (ValueError, OverflowError):
        return None
    return ensure_utc(parsed)
