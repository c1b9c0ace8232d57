"""Local wall-clock scheduling helpers.

All instants leaving this module are aware UTC datetimes. Conversion from a
user's wall-clock time never relies on a fixed offset: the target is
refined iteratively against the zone database so DST transitions resolve.
"""
from __future__ import annotations

import re
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from typing import List, Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from habitpilot.core.config import settings
from habitpilot.core.timeutils import ensure_utc, utcnow

MAX_ITERATIONS = 4

_HHMM = re.compile(r"^(\d{1,2}):(\d{2})$")

FRENCH_WEEKDAYS = ["lundi", "mardi", "mercredi", "jeudi", "vendredi", "samedi", "dimanche"]
FRENCH_MONTHS = [
    "janvier",
    "février",
    "mars",
    "avril",
    "mai",
    "juin",
    "juillet",
    "août",
    "septembre",
    "octobre",
    "novembre",
    "décembre",
]


def resolve_zone(name: Optional[str]) -> ZoneInfo:
    tz_name = (name or "").strip() or settings.default_timezone
    try:
        return ZoneInfo(tz_name)
    except (ZoneInfoNotFoundError, ValueError) as exc:
        raise ValueError(f"Unknown timezone: {tz_name}") from exc


def parse_hhmm(value: str) -> Tuple[int, int]:
    """Parse ``HH:MM``; out-of-range fields are clamped, malformed input raises."""
    match = _HHMM.match((value or "").strip())
    if not match:
        raise ValueError("Invalid local time (expected HH:MM)")
    hour = max(0, min(23, int(match.group(1))))
    minute = max(0, min(59, int(match.group(2))))
    return hour, minute


def _wall_clock(instant: datetime, zone: ZoneInfo) -> datetime:
    """Local wall-clock reading of ``instant``, re-labelled as UTC for arithmetic."""
    local = instant.astimezone(zone)
    return datetime(local.year, local.month, local.day, local.hour, local.minute, tzinfo=timezone.utc)


def compute_scheduled_for_from_local(
    timezone_name: Optional[str],
    day_offset: int,
    local_time_hhmm: str,
    *,
    now: Optional[datetime] = None,
) -> datetime:
    """Return the UTC instant at which it is ``local_time_hhmm`` in the zone,
    ``day_offset`` calendar days after the zone's current local date.

    The target wall-clock time is first read as if it were UTC; each pass
    formats the guess back into the zone and shifts by the observed delta.
    Inside a spring-forward gap the passes alternate between both sides of
    the gap; the earliest probe whose local time is not before the target is
    returned, which is the first valid instant after the gap.
    """
    zone = resolve_zone(timezone_name)
    hour, minute = parse_hhmm(local_time_hhmm)
    offset = max(0, int(day_offset or 0))
    reference = ensure_utc(now) or utcnow()

    local_today: date = reference.astimezone(zone).date()
    target_day = local_today + timedelta(days=offset)
    desired = datetime(target_day.year, target_day.month, target_day.day, hour, minute, tzinfo=timezone.utc)

    guess = desired
    probes: List[Tuple[datetime, timedelta]] = []
    for _ in range(MAX_ITERATIONS):
        delta = _wall_clock(guess, zone) - desired
        probes.append((guess, delta))
        if delta == timedelta(0):
            return guess
        guess = guess - delta

    at_or_after = [probe for probe, delta in probes if delta > timedelta(0)]
    if at_or_after:
        return min(at_or_after)
    return guess


def next_occurrence(timezone_name: Optional[str], local_time_hhmm: str, *, now: Optional[datetime] = None) -> datetime:
    """Today's occurrence of the local time, or tomorrow's when already past."""
    reference = ensure_utc(now) or utcnow()
    today = compute_scheduled_for_from_local(timezone_name, 0, local_time_hhmm, now=reference)
    if today > reference:
        return today
    return compute_scheduled_for_from_local(timezone_name, 1, local_time_hhmm, now=reference)


@dataclass(frozen=True)
class QuietWindowDecision:
    send_now: bool
    defer_until: Optional[datetime]
    last_activity_at: Optional[datetime]


def quiet_window_decision(
    last_inbound_at: Optional[datetime],
    last_outbound_at: Optional[datetime],
    now: datetime,
    quiet_minutes: int,
) -> QuietWindowDecision:
    """Defer a proactive send until the conversation has been idle long enough."""
    activity = [ts for ts in (ensure_utc(last_inbound_at), ensure_utc(last_outbound_at)) if ts is not None]
    if not activity:
        return QuietWindowDecision(send_now=True, defer_until=None, last_activity_at=None)
    last_activity = max(activity)
    window_end = last_activity + timedelta(minutes=quiet_minutes)
    if ensure_utc(now) >= window_end:
        return QuietWindowDecision(send_now=True, defer_until=None, last_activity_at=last_activity)
    return QuietWindowDecision(send_now=False, defer_until=window_end, last_activity_at=last_activity)


@dataclass(frozen=True)
class UserTimeContext:
    now_utc: datetime
    timezone: str
    locale: str
    local_datetime: datetime
    day_part: str

    @property
    def human(self) -> str:
        local = self.local_datetime
        if self.locale.lower().startswith("fr"):
            return (
                f"{FRENCH_WEEKDAYS[local.weekday()]} {local.day} {FRENCH_MONTHS[local.month - 1]} "
                f"{local.year}, {local:%H:%M}"
            )
        return local.strftime("%A %d %B %Y, %H:%M")

    @property
    def prompt_block(self) -> str:
        return "\n".join(
            [
                f"now_utc={self.now_utc.isoformat()}",
                f"user_timezone={self.timezone}",
                f"user_locale={self.locale}",
                f"user_local_datetime={self.local_datetime:%Y-%m-%dT%H:%M:%S}",
                f"user_local_human={self.human}",
                f"day_part={self.day_part}",
            ]
        )


def build_user_time_context(
    timezone_name: Optional[str],
    locale: Optional[str] = None,
    now: Optional[datetime] = None,
) -> UserTimeContext:
    try:
        zone = resolve_zone(timezone_name)
    except ValueError:
        zone = resolve_zone(settings.default_timezone)
    reference = ensure_utc(now) or utcnow()
    local = reference.astimezone(zone)
    hour = local.hour
    if hour < 6:
        day_part = "night"
    elif hour < 12:
        day_part = "morning"
    elif hour < 18:
        day_part = "afternoon"
    else:
        day_part = "evening"
    return UserTimeContext(
        now_utc=reference,
        timezone=zone.key,
        locale=(locale or "").strip() or "fr-FR",
        local_datetime=local,
        day_part=day_part,
    )
