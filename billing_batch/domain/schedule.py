"""
Pure schedule evaluation for the billing scheduler.

Contract:
    ``parse_cron``, ``matches_cron``, ``next_cron_match``, ``should_fire``
    and ``period_key_for`` are PURE -- no I/O, no clock reads.  The
    scheduler passes in the times it read from its injected Clock.

Architecture: billing_batch/domain.  ZERO I/O.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime, timedelta

from billing_kernel.domain.periods import month_key, shift_period_key, week_key_for

from billing_batch.domain.types import ScheduledJob


# =============================================================================
# CronSpec (lightweight cron parser)
# =============================================================================


@dataclass(frozen=True)
class CronSpec:
    """Parsed cron expression (minute hour day_of_month month day_of_week).

    Each field is a frozenset of valid integer values.
    Supports: *, values, lists, ranges (1-5), steps (*/5, 1-10/2).
    """

    minutes: frozenset[int] = field(default_factory=lambda: frozenset(range(60)))
    hours: frozenset[int] = field(default_factory=lambda: frozenset(range(24)))
    days_of_month: frozenset[int] = field(default_factory=lambda: frozenset(range(1, 32)))
    months: frozenset[int] = field(default_factory=lambda: frozenset(range(1, 13)))
    days_of_week: frozenset[int] = field(default_factory=lambda: frozenset(range(7)))


def _parse_cron_field(field_str: str, min_val: int, max_val: int) -> frozenset[int]:
    """Parse a single cron field into a frozenset of valid values.

    Raises:
        ValueError: If the field is syntactically invalid or values out of range.
    """
    values: set[int] = set()

    for part in field_str.split(","):
        part = part.strip()

        if "/" in part:
            range_part, step_str = part.split("/", 1)
            step = int(step_str)
            if step <= 0:
                raise ValueError(f"Step must be positive: {step}")

            if range_part == "*":
                start, end = min_val, max_val
            elif "-" in range_part:
                s, e = range_part.split("-", 1)
                start, end = int(s), int(e)
            else:
                start, end = int(range_part), max_val
            if start < min_val or end > max_val or start > end:
                raise ValueError(f"Range {start}-{end} outside [{min_val}, {max_val}]")
            values.update(range(start, end + 1, step))

        elif part == "*":
            values.update(range(min_val, max_val + 1))

        elif "-" in part:
            s, e = part.split("-", 1)
            start, end = int(s), int(e)
            if start > end:
                raise ValueError(f"Range start > end: {start}-{end}")
            if start < min_val or end > max_val:
                raise ValueError(f"Range {start}-{end} outside [{min_val}, {max_val}]")
            values.update(range(start, end + 1))

        else:
            v = int(part)
            if v < min_val or v > max_val:
                raise ValueError(f"Value {v} outside range [{min_val}, {max_val}]")
            values.add(v)

    return frozenset(values)


def parse_cron(expression: str) -> CronSpec:
    """Parse a 5-field cron expression into a CronSpec.

    Format: ``minute hour day_of_month month day_of_week``

    Raises:
        ValueError: If expression is malformed.
    """
    parts = expression.strip().split()
    if len(parts) != 5:
        raise ValueError(
            f"Cron expression must have 5 fields, got {len(parts)}: '{expression}'"
        )

    return CronSpec(
        minutes=_parse_cron_field(parts[0], 0, 59),
        hours=_parse_cron_field(parts[1], 0, 23),
        days_of_month=_parse_cron_field(parts[2], 1, 31),
        months=_parse_cron_field(parts[3], 1, 12),
        days_of_week=_parse_cron_field(parts[4], 0, 6),
    )


def _cron_weekday(dt: datetime) -> int:
    # Cron: 0=Sunday.  Python weekday(): 0=Monday.
    return (dt.weekday() + 1) % 7


def _day_matches(spec: CronSpec, dt: datetime) -> bool:
    return (
        dt.day in spec.days_of_month
        and dt.month in spec.months
        and _cron_weekday(dt) in spec.days_of_week
    )


def matches_cron(spec: CronSpec, dt: datetime) -> bool:
    """Check if a datetime (to the minute) matches a cron spec."""
    return dt.minute in spec.minutes and dt.hour in spec.hours and _day_matches(spec, dt)


def next_cron_match(spec: CronSpec, after: datetime) -> datetime:
    """First minute strictly after ``after`` that matches ``spec``.

    Skips whole days and hours that cannot match.  Bounded to 366 days.

    Raises:
        ValueError: If no match is found within 366 days.
    """
    candidate = after.replace(second=0, microsecond=0) + timedelta(minutes=1)
    limit = after + timedelta(days=366)

    while candidate <= limit:
        if not _day_matches(spec, candidate):
            candidate = candidate.replace(hour=0, minute=0) + timedelta(days=1)
            continue
        if candidate.hour not in spec.hours:
            candidate = candidate.replace(minute=0) + timedelta(hours=1)
            continue
        if candidate.minute in spec.minutes:
            return candidate
        candidate += timedelta(minutes=1)

    raise ValueError(f"No cron match found within 366 days after {after}")


def should_fire(spec: CronSpec, since: datetime, as_of: datetime) -> bool:
    """True if ``spec`` matched at least once in ``(since, as_of]``.

    A scheduler that slept through the exact minute still fires once on
    its next tick.
    """
    return next_cron_match(spec, since) <= as_of


def period_key_for(job: ScheduledJob, fired_at: datetime, period_offset: int = 0) -> str | None:
    """Period key a scheduled job bills for when fired at ``fired_at``.

    Rent runs use month keys, utility runs ISO week keys; the overdue
    sweep has no period.
    """
    job = ScheduledJob(job)
    if job is ScheduledJob.RENT_RUN:
        key = month_key(fired_at.year, fired_at.month)
    elif job is ScheduledJob.UTILITY_RUN:
        key = week_key_for(fired_at.date())
    else:
        return None
    return shift_period_key(key, period_offset) if period_offset else key
