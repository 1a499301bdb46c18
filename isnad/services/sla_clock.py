"""
SLA Clock: time-bucketed health of a form in its current stage.

Pure functions only: no Flask, no database.  Callers pass the stage budget
table and thresholds they want applied (normally read from app config).

Buckets, for a stage budget of N days and threshold fractions (f1, f2, f3):

    elapsed <  f1·N          → on_time
    f1·N ≤ elapsed < f2·N    → warning
    f2·N ≤ elapsed < f3·N    → urgent
    elapsed ≥ f3·N           → overdue

SLA breach is advisory.  Nothing here changes form state.
"""

from __future__ import annotations

import math
from datetime import datetime, timedelta, timezone

ON_TIME = "on_time"
WARNING = "warning"
URGENT = "urgent"
OVERDUE = "overdue"

SLA_STATUSES: tuple[str, ...] = (ON_TIME, WARNING, URGENT, OVERDUE)

# Higher value sorts first in review queues.
SLA_SEVERITY: dict[str, int] = {ON_TIME: 0, WARNING: 1, URGENT: 2, OVERDUE: 3}

# Working-day budgets per stage.
DEFAULT_SLA_DAYS: dict[str, int] = {
    "ip_initiation": 2,
    "school_planning_review": 5,
    "ip_secondary_review": 3,
    "finance_review": 5,
    "security_facilities_review": 5,
    "head_of_education_review": 5,
    "investment_agency_review": 5,
    "tbc_final_approval": 3,
}
DEFAULT_STAGE_BUDGET_DAYS = 5

# Fractions of the stage budget at which warning / urgent / overdue begin.
DEFAULT_THRESHOLDS: tuple[float, float, float] = (0.5, 0.8, 1.0)


def _as_utc(dt: datetime) -> datetime:
    """SQLite hands back naive datetimes; treat them as UTC."""
    if dt.tzinfo is None:
        return dt.replace(tzinfo=timezone.utc)
    return dt.astimezone(timezone.utc)


def stage_budget_days(
    stage: str,
    sla_days: dict[str, int] | None = None,
    default_days: int = DEFAULT_STAGE_BUDGET_DAYS,
) -> int:
    table = DEFAULT_SLA_DAYS if sla_days is None else sla_days
    return table.get(stage, default_days)


def stage_thresholds(
    stage: str,
    sla_days: dict[str, int] | None = None,
    fractions: tuple[float, float, float] | None = None,
    default_days: int = DEFAULT_STAGE_BUDGET_DAYS,
) -> tuple[float, float, float]:
    """Absolute (t1, t2, t3) thresholds in days for *stage*.

    Raises:
        ValueError: if the fractions are not strictly increasing and positive.
    """
    f1, f2, f3 = fractions or DEFAULT_THRESHOLDS
    if not 0 < f1 < f2 < f3:
        raise ValueError(f"SLA thresholds must be increasing and positive, got {(f1, f2, f3)}")
    budget = stage_budget_days(stage, sla_days, default_days)
    return (f1 * budget, f2 * budget, f3 * budget)


def bucket_for_elapsed(elapsed_days: float, thresholds: tuple[float, float, float]) -> str:
    t1, t2, t3 = thresholds
    if elapsed_days >= t3:
        return OVERDUE
    if elapsed_days >= t2:
        return URGENT
    if elapsed_days >= t1:
        return WARNING
    return ON_TIME


def elapsed_days(entered_at: datetime, now: datetime | None = None) -> float:
    """Fractional days between *entered_at* and *now* (never negative)."""
    now = _as_utc(now or datetime.now(timezone.utc))
    delta = now - _as_utc(entered_at)
    return max(delta / timedelta(days=1), 0.0)


def days_pending(entered_at: datetime, now: datetime | None = None) -> int:
    """Whole days pending, rounded up the way reviewers count them."""
    return math.ceil(elapsed_days(entered_at, now))


def compute_sla_status(
    stage: str,
    entered_at: datetime | None,
    now: datetime | None = None,
    *,
    sla_days: dict[str, int] | None = None,
    fractions: tuple[float, float, float] | None = None,
    default_days: int = DEFAULT_STAGE_BUDGET_DAYS,
) -> str | None:
    """SLA bucket for a form that entered *stage* at *entered_at*.

    Returns None when the stage clock has not started.
    """
    if entered_at is None:
        return None
    thresholds = stage_thresholds(stage, sla_days, fractions, default_days)
    return bucket_for_elapsed(elapsed_days(entered_at, now), thresholds)


def deadline_for(
    stage: str,
    entered_at: datetime,
    *,
    sla_days: dict[str, int] | None = None,
    default_days: int = DEFAULT_STAGE_BUDGET_DAYS,
) -> datetime:
    return _as_utc(entered_at) + timedelta(days=stage_budget_days(stage, sla_days, default_days))
