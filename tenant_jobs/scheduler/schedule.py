"""Cron schedule evaluation.

Turns a cron expression plus an IANA timezone into the next UTC fire
time. The expression is evaluated in local wall-clock time by croniter
and converted back to UTC, so DST shifts move the UTC instant rather
than the local firing time.
"""

import logging
from datetime import datetime, timedelta, timezone
from typing import Optional, Tuple
from zoneinfo import ZoneInfo, ZoneInfoNotFoundError

from croniter import croniter

from tenant_jobs.scheduler.exceptions import InvalidScheduleError

logger = logging.getLogger(__name__)

# Upper bound on extra croniter steps taken while skipping instants that
# are not after the reference time or fall in a repeated DST hour. A
# per-second schedule needs 3600 steps to leave a repeated hour.
_MAX_FOLD_STEPS = 4096


def utcnow() -> datetime:
    """Current time as an aware UTC datetime."""
    return datetime.now(timezone.utc)


def ensure_utc(value: datetime) -> datetime:
    """Return ``value`` as an aware UTC datetime (naive values are UTC)."""
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value.astimezone(timezone.utc)


def get_timezone(name: str) -> ZoneInfo:
    """Resolve an IANA timezone name.

    Raises:
        InvalidScheduleError: If the timezone is unknown
    """
    try:
        return ZoneInfo(name)
    except (ZoneInfoNotFoundError, ValueError) as e:
        raise InvalidScheduleError(
            f"Unknown timezone: {name!r}", timezone=name
        ) from e


def validate_cron_expression(cron_expression: str) -> None:
    """Check that a cron expression can be parsed.

    Both 5-part (minute hour day month weekday) and 6-part
    (with trailing seconds) expressions are accepted, as are the
    ``@hourly`` style aliases.

    Raises:
        InvalidScheduleError: If the expression is not valid
    """
    if not cron_expression or not cron_expression.strip():
        raise InvalidScheduleError("Cron expression is empty", cron_expression=cron_expression)

    if not croniter.is_valid(cron_expression.strip()):
        raise InvalidScheduleError(
            f"Invalid cron expression: {cron_expression!r}",
            cron_expression=cron_expression,
        )


def _hour_is_wildcard(cron_expression: str) -> bool:
    expression = cron_expression.strip()
    if expression.startswith("@"):
        return expression.lower() == "@hourly"
    fields = expression.split()
    return len(fields) > 1 and (fields[1] == "*" or fields[1].startswith("*/"))


def _is_repeated_wall_time(candidate: datetime, tz: ZoneInfo) -> bool:
    """True if ``candidate`` is the second pass through a local time repeated by a DST fall-back."""
    local = candidate.astimezone(tz)
    if local.fold != 1:
        return False
    return local.replace(fold=0).utcoffset() != local.utcoffset()


def compute_next_run(
    cron_expression: str,
    tz_name: str = "UTC",
    from_time: Optional[datetime] = None,
) -> datetime:
    """Compute the next fire time strictly after ``from_time``.

    Args:
        cron_expression: Cron expression to evaluate
        tz_name: IANA timezone the expression is written in
        from_time: Reference time (default: now). Naive values are UTC.

    Returns:
        Next run time as an aware UTC datetime, always > from_time

    Raises:
        InvalidScheduleError: If the expression or timezone is invalid
    """
    validate_cron_expression(cron_expression)
    tz = get_timezone(tz_name)

    reference = ensure_utc(from_time) if from_time is not None else utcnow()

    try:
        itr = croniter(cron_expression.strip(), reference.astimezone(tz))
        candidate = ensure_utc(itr.get_next(datetime))
        skip_repeats = not _hour_is_wildcard(cron_expression)

        steps = 0
        while candidate <= reference or (
            skip_repeats and _is_repeated_wall_time(candidate, tz)
        ):
            steps += 1
            if steps > _MAX_FOLD_STEPS:
                raise InvalidScheduleError(
                    f"Cron expression {cron_expression!r} does not advance in {tz_name}",
                    cron_expression=cron_expression,
                    timezone=tz_name,
                )
            candidate = ensure_utc(itr.get_next(datetime))
    except (ValueError, KeyError) as e:
        raise InvalidScheduleError(
            f"Failed to evaluate cron expression {cron_expression!r}: {e}",
            cron_expression=cron_expression,
            timezone=tz_name,
        ) from e

    return candidate


def next_run_or_fallback(
    cron_expression: str,
    tz_name: str,
    from_time: datetime,
    fallback_seconds: int = 3600,
) -> Tuple[datetime, Optional[str]]:
    """Compute the next run, falling back to a fixed delay on error.

    Used by the dispatcher so that a definition with a broken schedule
    keeps running (and gets flagged) instead of silently stopping.

    Returns:
        Tuple of (next run time, error message or None)
    """
    try:
        return compute_next_run(cron_expression, tz_name, from_time), None
    except InvalidScheduleError as e:
        logger.error(f"Failed to calculate next run for schedule '{cron_expression}': {e}")
        return ensure_utc(from_time) + timedelta(seconds=fallback_seconds), str(e)
