"""
Review Queue Projector: read-side views over ISNAD form state.

Nothing here writes.  SLA status and days pending are derived per call from
``stage_entered_at``, so the projections are never stale and need no
background refresh.

Views:
  - queue_for(stage):            what a department has waiting, most urgent first
  - forms_for_packaging(...):    eligible forms for the investment agency
  - dashboard_stats():           counts by status / stage / SLA bucket
"""

from __future__ import annotations

from datetime import datetime, timezone

from sqlalchemy import func, select

from isnad.core.exceptions import ValidationError
from isnad.models import db
from isnad.models.asset import Asset
from isnad.models.isnad import FORM_STATUSES, TERMINAL_FORM_STATUSES, IsnadForm
from isnad.services import sla_clock, stage_graph
from isnad.services.isnad_form_service import form_sla_status, sla_settings
from isnad.services.package_service import bound_form_ids


def _queue_item(form: IsnadForm, now: datetime) -> dict:
    elapsed = sla_clock.elapsed_days(form.stage_entered_at, now)
    return {
        "form_id": form.id,
        "form_code": form.form_code,
        "status": form.status,
        "stage": form.current_stage,
        "department": stage_graph.stage_department(form.current_stage),
        "asset": form.asset.to_summary() if form.asset else None,
        "days_pending": sla_clock.days_pending(form.stage_entered_at, now),
        "elapsed_days": round(elapsed, 3),
        "sla_status": form_sla_status(form, now),
        "submitted_date": form.submitted_at.isoformat() if form.submitted_at else None,
        "stage_entered_at": form.stage_entered_at.isoformat() if form.stage_entered_at else None,
        "return_count": form.return_count,
        "approval_progress": form.approval_progress(),
    }


def _urgency_key(item: dict):
    return (-sla_clock.SLA_SEVERITY.get(item["sla_status"], -1), -item["elapsed_days"], item["form_code"])


def _page(items: list, page: int, limit: int) -> tuple[list, int]:
    start = (page - 1) * limit
    return items[start:start + limit], len(items)


def queue_for(
    stage: str,
    *,
    page: int = 1,
    limit: int = 25,
    now: datetime | None = None,
) -> tuple[list[dict], int]:
    """Non-terminal forms sitting at *stage*, most urgent first.

    Ordered by SLA severity (overdue first), then by time in stage.

    Raises:
        ValidationError: *stage* is not part of the stage graph.
    """
    if not stage_graph.is_valid_stage(stage):
        raise ValidationError(f"Unknown stage '{stage}'",
                              details={"stage": f"one of {', '.join(stage_graph.STAGES)}"})
    now = now or datetime.now(timezone.utc)
    forms = db.session.execute(
        select(IsnadForm).where(
            IsnadForm.current_stage == stage,
            IsnadForm.status.not_in(TERMINAL_FORM_STATUSES),
        )
    ).unique().scalars().all()
    items = sorted((_queue_item(f, now) for f in forms), key=_urgency_key)
    return _page(items, page, limit)


def forms_for_packaging(
    *,
    region: str | None = None,
    sla: str | None = None,
    page: int = 1,
    limit: int = 25,
    now: datetime | None = None,
) -> tuple[list[dict], int]:
    """Verified forms not yet held by a live package, optionally filtered.

    Args:
        region: exact asset region.
        sla: one of on_time | warning | urgent | overdue.
    """
    if sla and sla not in sla_clock.SLA_STATUSES:
        raise ValidationError(f"Unknown SLA filter '{sla}'",
                              details={"sla": f"one of {', '.join(sla_clock.SLA_STATUSES)}"})
    now = now or datetime.now(timezone.utc)
    stmt = (
        select(IsnadForm)
        .join(Asset, Asset.id == IsnadForm.asset_id)
        .where(
            IsnadForm.status == "verified_filled",
            IsnadForm.id.not_in(bound_form_ids()),
        )
    )
    if region:
        stmt = stmt.where(Asset.region == region)
    forms = db.session.execute(stmt).unique().scalars().all()
    items = []
    for form in forms:
        item = _queue_item(form, now)
        if sla and item["sla_status"] != sla:
            continue
        item["current_valuation"] = form.current_valuation
        item["financial_analysis"] = form.financial_analysis
        items.append(item)
    items.sort(key=_urgency_key)
    return _page(items, page, limit)


def dashboard_stats(now: datetime | None = None) -> dict:
    """Headline numbers for the ISNAD dashboard."""
    now = now or datetime.now(timezone.utc)
    by_status = {s: 0 for s in sorted(FORM_STATUSES)}
    for status, count in db.session.execute(
        select(IsnadForm.status, func.count(IsnadForm.id)).group_by(IsnadForm.status)
    ).all():
        by_status[status] = count

    open_forms = db.session.execute(
        select(IsnadForm).where(IsnadForm.status.not_in(TERMINAL_FORM_STATUSES))
    ).unique().scalars().all()
    by_stage = {s: 0 for s in stage_graph.STAGES}
    by_sla = {s: 0 for s in sla_clock.SLA_STATUSES}
    settings = sla_settings()
    for form in open_forms:
        by_stage[form.current_stage] = by_stage.get(form.current_stage, 0) + 1
        bucket = sla_clock.compute_sla_status(form.current_stage, form.stage_entered_at, now, **settings)
        if bucket:
            by_sla[bucket] += 1

    in_review = sum(
        by_status[s] for s in ("pending_verification", "verification_due", "investment_agency_review")
    )
    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "by_stage": by_stage,
        "sla": by_sla,
        "drafts": by_status["draft"],
        "in_review": in_review,
        "changes_requested": by_status["changes_requested"],
        "ready_for_packaging": by_status["verified_filled"],
        "in_packages": by_status["in_package"] + by_status["pending_ceo"] + by_status["pending_minister"],
        "approved": by_status["approved"],
        "rejected": by_status["rejected"],
        "cancelled": by_status["cancelled"],
    }
