"""Tests for queue option models, cron helpers and the rate limiter."""

from datetime import datetime, timedelta, timezone

import pytest

from jobalerts.queue import Backoff, JobOptions, Limiter, RateLimiter, RepeatOptions, WorkerOptions
from jobalerts.queue.cron import (
    celery_schedule,
    expand_day_of_week,
    latest_fire_time,
    next_fire_time,
    occurrence_key,
    parse_pattern,
    plan_fire,
)

MONDAY_0800 = datetime(2025, 1, 6, 8, 0, tzinfo=timezone.utc)


class TestBackoff:
    def test_exponential_doubles_per_attempt(self):
        backoff = Backoff(delay_ms=1000)

        assert backoff.delay_for(1) == timedelta(seconds=1)
        assert backoff.delay_for(2) == timedelta(seconds=2)
        assert backoff.delay_for(4) == timedelta(seconds=8)

    def test_fixed(self):
        backoff = Backoff(type="fixed", delay_ms=500)

        assert backoff.delay_for(1) == backoff.delay_for(5) == timedelta(milliseconds=500)

    def test_invalid_values(self):
        with pytest.raises(ValueError):
            Backoff(type="linear")
        with pytest.raises(ValueError):
            Backoff(delay_ms=-1)


class TestOptions:
    def test_job_options_defaults(self):
        options = JobOptions()

        assert options.attempts == 5
        assert options.backoff == Backoff("exponential", 1000)
        assert options.repeat is None
        assert options.job_id is None

    def test_copy_with(self):
        options = JobOptions(attempts=3)

        copy = options.copy_with(job_id="k", repeat=RepeatOptions("0 8 * * *"))

        assert copy.attempts == 3
        assert copy.job_id == "k"
        assert options.job_id is None

    @pytest.mark.parametrize("kwargs", [{"attempts": 0}, {"delay_ms": -5}])
    def test_invalid_job_options(self, kwargs):
        with pytest.raises(ValueError):
            JobOptions(**kwargs)

    def test_invalid_worker_options(self):
        with pytest.raises(ValueError):
            WorkerOptions(concurrency=0)
        with pytest.raises(ValueError):
            Limiter(max=0, duration_seconds=60)
        with pytest.raises(ValueError):
            Limiter(max=10, duration_seconds=0)


class TestCron:
    def test_parse_pattern_requires_five_fields(self):
        with pytest.raises(ValueError, match="five fields"):
            parse_pattern("0 8 * *")
        with pytest.raises(ValueError, match="five fields"):
            parse_pattern("0 0 8 * * *")
        with pytest.raises(ValueError):
            parse_pattern("")

    def test_parse_pattern_rejects_bad_field(self):
        with pytest.raises(ValueError):
            parse_pattern("61 8 * * *")

    def test_next_fire_time_is_strictly_after(self):
        assert next_fire_time("0 8 * * *", MONDAY_0800) == MONDAY_0800 + timedelta(days=1)
        assert next_fire_time("0 8 * * *", MONDAY_0800 - timedelta(seconds=1)) == MONDAY_0800

    def test_next_fire_time_sub_second(self):
        start = MONDAY_0800 - timedelta(microseconds=500)

        assert next_fire_time("0 8 * * *", start) == MONDAY_0800

    def test_weekly_and_monthly_patterns(self):
        # 2025-01-06 is a Monday
        assert next_fire_time("0 8 * * 1", MONDAY_0800) == MONDAY_0800 + timedelta(days=7)
        assert next_fire_time("0 8 1 * *", MONDAY_0800) == datetime(2025, 2, 1, 8, 0, tzinfo=timezone.utc)

    def test_day_of_week_uses_crontab_numbering(self):
        # 0 8 * * 1 is Monday morning, not Tuesday
        assert next_fire_time("0 8 * * 1", MONDAY_0800 - timedelta(hours=1)) == MONDAY_0800
        assert next_fire_time("0 8 * * 1", MONDAY_0800) == datetime(2025, 1, 13, 8, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize("pattern", ["0 8 * * 0", "0 8 * * 7", "0 8 * * sun", "0 8 * * SUN"])
    def test_sunday_spellings(self, pattern):
        assert next_fire_time(pattern, MONDAY_0800) == datetime(2025, 1, 12, 8, 0, tzinfo=timezone.utc)

    def test_weekday_range(self):
        friday = datetime(2025, 1, 10, 8, 0, tzinfo=timezone.utc)

        assert next_fire_time("0 8 * * 1-5", MONDAY_0800) == MONDAY_0800 + timedelta(days=1)
        assert next_fire_time("0 8 * * 1-5", friday) == datetime(2025, 1, 13, 8, 0, tzinfo=timezone.utc)

    @pytest.mark.parametrize(
        "field,expected",
        [
            ("*", None),
            ("1", [1]),
            ("7", [0]),
            ("1-5", [1, 2, 3, 4, 5]),
            ("5-7", [0, 5, 6]),
            ("*/2", [0, 2, 4, 6]),
            ("mon,wed,fri", [1, 3, 5]),
            ("0,7", [0]),
        ],
    )
    def test_expand_day_of_week(self, field, expected):
        assert expand_day_of_week(field) == expected

    @pytest.mark.parametrize("field", ["8", "funday", "5-1", "*/0"])
    def test_expand_day_of_week_rejects(self, field):
        with pytest.raises(ValueError):
            expand_day_of_week(field)

    def test_celery_schedule_matches_crontab_days(self):
        schedule = celery_schedule("30 6 * * 1-5")

        assert schedule.day_of_week == {1, 2, 3, 4, 5}
        assert schedule.hour == {6}
        assert schedule.minute == {30}

    def test_celery_schedule_sunday_seven(self):
        assert celery_schedule("0 8 * * 7").day_of_week == {0}

    def test_celery_schedule_rejects_bad_pattern(self):
        with pytest.raises(ValueError):
            celery_schedule("0 25 * * *")

    def test_latest_fire_time(self):
        now = MONDAY_0800 + timedelta(minutes=7)

        assert latest_fire_time("0 8 * * *", now, 3600) == MONDAY_0800
        assert latest_fire_time("0 8 * * *", MONDAY_0800, 3600) == MONDAY_0800
        assert latest_fire_time("*/5 * * * *", now, 3600) == MONDAY_0800 + timedelta(minutes=5)

    def test_latest_fire_time_outside_window(self):
        assert latest_fire_time("0 8 * * *", MONDAY_0800 + timedelta(hours=2), 3600) is None

    def test_naive_datetime_is_utc(self):
        assert next_fire_time("0 8 * * *", datetime(2025, 1, 6, 7, 0)) == MONDAY_0800

    def test_occurrence_key(self):
        assert occurrence_key("alert-matching-daily", MONDAY_0800) == "alert-matching-daily:1736150400"

    def test_plan_fire_within_grace(self):
        spawn, next_run_at = plan_fire("0 8 * * *", MONDAY_0800, MONDAY_0800 + timedelta(minutes=5), 3600)

        assert spawn
        assert next_run_at == MONDAY_0800 + timedelta(days=1)

    def test_plan_fire_coalesces_missed_occurrences(self):
        now = MONDAY_0800 + timedelta(hours=3, minutes=10)

        spawn, next_run_at = plan_fire("0 * * * *", MONDAY_0800, now, 4 * 3600)

        assert spawn
        assert next_run_at == MONDAY_0800 + timedelta(hours=4)

    def test_plan_fire_skips_beyond_grace(self):
        spawn, next_run_at = plan_fire("0 8 * * *", MONDAY_0800, MONDAY_0800 + timedelta(hours=2), 3600)

        assert not spawn
        assert next_run_at == MONDAY_0800 + timedelta(days=1)


class FakeMonotonic:
    def __init__(self):
        self.value = 100.0

    def __call__(self):
        return self.value


class TestRateLimiter:
    def test_rolling_window(self):
        clock = FakeMonotonic()
        limiter = RateLimiter(Limiter(max=2, duration_seconds=10), clock=clock)

        assert limiter.try_acquire()
        clock.value += 4
        assert limiter.try_acquire()
        assert not limiter.try_acquire()

        clock.value += 6
        assert limiter.try_acquire()
        assert not limiter.try_acquire()
