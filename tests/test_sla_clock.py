"""
SLA clock unit tests (pure functions, no database).

Tests cover:
  - Bucket boundaries are inclusive lower bounds
  - Buckets never move backwards as time passes
  - Per-stage budgets, default budget, custom tables and thresholds
  - Naive (SQLite) timestamps treated as UTC
  - days_pending rounding and deadline calculation
"""
from datetime import datetime, timedelta, timezone

import pytest

from isnad.services import sla_clock

T0 = datetime(2026, 3, 1, 8, 0, tzinfo=timezone.utc)


def _status(stage, days, **kw):
    return sla_clock.compute_sla_status(stage, T0, T0 + timedelta(days=days), **kw)


class TestBuckets:
    # finance_review has a 5-day budget → thresholds at 2.5, 4.0, 5.0 days
    @pytest.mark.parametrize("days,expected", [
        (0, "on_time"),
        (2.49, "on_time"),
        (2.5, "warning"),
        (3.99, "warning"),
        (4.0, "urgent"),
        (4.99, "urgent"),
        (5.0, "overdue"),
        (30, "overdue"),
    ])
    def test_boundaries_inclusive(self, days, expected):
        assert _status("finance_review", days) == expected

    def test_buckets_are_monotonic(self):
        order = {s: i for i, s in enumerate(sla_clock.SLA_STATUSES)}
        previous = -1
        for hours in range(0, 24 * 8, 3):
            rank = order[_status("school_planning_review", hours / 24)]
            assert rank >= previous
            previous = rank

    def test_shorter_budget_goes_overdue_sooner(self):
        # ip_secondary_review: 3 days, finance_review: 5 days
        assert _status("ip_secondary_review", 3) == "overdue"
        assert _status("finance_review", 3) == "warning"

    def test_unknown_stage_uses_default_budget(self):
        assert _status("not_a_stage", 4.9, default_days=5) == "urgent"
        assert _status("not_a_stage", 1.0, default_days=2) == "warning"

    def test_custom_table_and_thresholds(self):
        # 10-day budget → thresholds at 2.5, 5.0, 7.5 days
        table = {"finance_review": 10}
        fractions = (0.25, 0.5, 0.75)
        assert _status("finance_review", 3, sla_days=table, fractions=fractions) == "warning"
        assert _status("finance_review", 6, sla_days=table, fractions=fractions) == "urgent"
        assert _status("finance_review", 8, sla_days=table, fractions=fractions) == "overdue"

    def test_invalid_thresholds_rejected(self):
        with pytest.raises(ValueError):
            _status("finance_review", 1, fractions=(0.8, 0.5, 1.0))
        with pytest.raises(ValueError):
            _status("finance_review", 1, fractions=(0, 0.5, 1.0))

    def test_clock_not_started(self):
        assert sla_clock.compute_sla_status("finance_review", None) is None


class TestElapsed:
    def test_naive_timestamps_are_utc(self):
        naive = datetime(2026, 3, 1, 8, 0)
        assert sla_clock.elapsed_days(naive, T0 + timedelta(days=2)) == pytest.approx(2.0)

    def test_clock_skew_never_negative(self):
        assert sla_clock.elapsed_days(T0 + timedelta(hours=1), T0) == 0.0

    def test_days_pending_rounds_up(self):
        assert sla_clock.days_pending(T0, T0) == 0
        assert sla_clock.days_pending(T0, T0 + timedelta(hours=1)) == 1
        assert sla_clock.days_pending(T0, T0 + timedelta(days=2, minutes=1)) == 3

    def test_deadline_adds_stage_budget(self):
        assert sla_clock.deadline_for("ip_initiation", T0) == T0 + timedelta(days=2)
        assert sla_clock.deadline_for("ip_initiation", T0, sla_days={}, default_days=7) == T0 + timedelta(days=7)
