"""Tests for cron schedule evaluation."""

from datetime import datetime, timedelta, timezone

import pytest

from tenant_jobs.scheduler.exceptions import InvalidScheduleError
from tenant_jobs.scheduler.schedule import (
    compute_next_run,
    ensure_utc,
    get_timezone,
    next_run_or_fallback,
    validate_cron_expression,
)


def utc(*args: int) -> datetime:
    return datetime(*args, tzinfo=timezone.utc)


class TestValidateCronExpression:
    """Tests for cron expression validation."""

    @pytest.mark.parametrize(
        "expression",
        ["0 * * * *", "*/5 * * * *", "0 8 * * 1-5", "0 0 1 * *", "@hourly", "@daily"],
    )
    def test_valid_expressions(self, expression):
        """Common expressions are accepted."""
        validate_cron_expression(expression)

    @pytest.mark.parametrize("expression", ["", "   ", "not a cron", "61 * * * *", "* * *"])
    def test_invalid_expressions(self, expression):
        """Malformed expressions are rejected."""
        with pytest.raises(InvalidScheduleError):
            validate_cron_expression(expression)


class TestComputeNextRun:
    """Tests for next fire time computation."""

    def test_hourly_utc(self):
        """An hourly schedule fires at the top of the next hour."""
        result = compute_next_run("0 * * * *", "UTC", utc(2024, 1, 15, 10, 20))
        assert result == utc(2024, 1, 15, 11, 0)

    def test_strictly_after_reference(self):
        """A reference exactly on a fire time yields the following one."""
        result = compute_next_run("0 * * * *", "UTC", utc(2024, 1, 15, 10, 0))
        assert result == utc(2024, 1, 15, 11, 0)

    def test_naive_reference_is_utc(self):
        """Naive reference times are treated as UTC."""
        result = compute_next_run("30 * * * *", "UTC", datetime(2024, 1, 15, 10, 0))
        assert result == utc(2024, 1, 15, 10, 30)

    def test_result_is_aware_utc(self):
        """Results are always aware UTC datetimes."""
        result = compute_next_run("0 9 * * *", "Europe/Berlin", utc(2024, 1, 15, 0, 0))
        assert result.tzinfo is not None
        assert result.utcoffset() == timedelta(0)
        # 09:00 CET is 08:00 UTC in winter
        assert result == utc(2024, 1, 15, 8, 0)

    def test_local_time_kept_across_spring_forward(self):
        """A daily 08:00 New York schedule moves one hour earlier in UTC after DST starts."""
        before = compute_next_run("0 8 * * *", "America/New_York", utc(2024, 3, 9, 0, 0))
        after = compute_next_run("0 8 * * *", "America/New_York", utc(2024, 3, 11, 0, 0))
        assert before == utc(2024, 3, 9, 13, 0)
        assert after == utc(2024, 3, 11, 12, 0)

    @pytest.mark.parametrize(
        "start",
        [utc(2024, 3, 9, 12, 0), utc(2024, 11, 2, 12, 0)],
        ids=["spring-forward", "fall-back"],
    )
    def test_monotonic_through_dst_transitions(self, start):
        """Successive fire times strictly increase through a DST change."""
        reference = start
        for _ in range(60):
            following = compute_next_run("*/30 * * * *", "America/New_York", reference)
            assert following > reference
            assert following - reference <= timedelta(hours=1, minutes=30)
            reference = following

    def test_fall_back_fires_daily_schedule_once(self):
        """A daily 01:30 New York schedule skips the repeated 01:30 when DST ends."""
        first = compute_next_run("30 1 * * *", "America/New_York", utc(2024, 11, 3, 5, 0))
        second = compute_next_run("30 1 * * *", "America/New_York", first)

        # 01:30 EDT, then 01:30 EST the following day
        assert first == utc(2024, 11, 3, 5, 30)
        assert second == utc(2024, 11, 4, 6, 30)

    def test_fall_back_minutely_within_fixed_hour(self):
        """A schedule pinned to hour 1 runs through the first 01:xx only."""
        last_first_pass = utc(2024, 11, 3, 5, 45)
        following = compute_next_run("*/15 1 * * *", "America/New_York", last_first_pass)
        assert following == utc(2024, 11, 4, 6, 0)

    def test_fall_back_hourly_fires_in_both_hours(self):
        """Hourly schedules still fire in the repeated hour."""
        first = compute_next_run("30 * * * *", "America/New_York", utc(2024, 11, 3, 5, 0))
        second = compute_next_run("30 * * * *", "America/New_York", first)
        assert first == utc(2024, 11, 3, 5, 30)
        assert second == utc(2024, 11, 3, 6, 30)

    def test_invalid_timezone(self):
        """Unknown timezones are rejected."""
        with pytest.raises(InvalidScheduleError):
            compute_next_run("0 * * * *", "Mars/Olympus_Mons", utc(2024, 1, 1))

    def test_invalid_expression(self):
        """Invalid expressions are rejected."""
        with pytest.raises(InvalidScheduleError):
            compute_next_run("every day", "UTC", utc(2024, 1, 1))


class TestNextRunOrFallback:
    """Tests for the dispatcher's fallback computation."""

    def test_valid_expression_has_no_error(self):
        """A valid schedule returns the next run and no error."""
        next_run, error = next_run_or_fallback("0 * * * *", "UTC", utc(2024, 1, 15, 10, 5))
        assert next_run == utc(2024, 1, 15, 11, 0)
        assert error is None

    def test_invalid_expression_uses_fallback(self):
        """A broken schedule is pushed out by the fallback delay."""
        next_run, error = next_run_or_fallback("bogus", "UTC", utc(2024, 1, 15, 10, 0), fallback_seconds=600)
        assert next_run == utc(2024, 1, 15, 10, 10)
        assert error is not None


class TestHelpers:
    """Tests for timezone helpers."""

    def test_ensure_utc_converts_offsets(self):
        """Aware values in other zones are converted to UTC."""
        local = datetime(2024, 1, 15, 12, 0, tzinfo=get_timezone("Europe/Berlin"))
        assert ensure_utc(local) == utc(2024, 1, 15, 11, 0)

    def test_get_timezone_unknown(self):
        """Unknown timezone names raise InvalidScheduleError."""
        with pytest.raises(InvalidScheduleError) as exc_info:
            get_timezone("Nowhere/Special")
        assert exc_info.value.timezone == "Nowhere/Special"
