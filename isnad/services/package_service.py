"""
ISNAD Package Aggregator.

Bundles verified forms into investment packages and drives the package's
two-tier executive approval chain:

    draft ──submit_to_ceo──► pending_ceo ──ceo approve──► ceo_approved ──► pending_minister
                                  │                                              │
                                  └─ceo reject─► rejected_ceo      minister approve / reject
                                                                                 ▼
                                                          minister_approved | rejected_minister

Eligibility is re-validated inside the creating transaction: member forms
are claimed with one conditional UPDATE predicated on
``status = 'verified_filled'``.  If any requested form is not claimed, the
whole transaction is rolled back and FormNotEligible names the offenders,
so two concurrent creations can never share a form.

Member forms follow the package: pending_ceo / pending_minister while the
package is under executive review, approved once the minister approves,
rejected (terminal, asset released) when either executive rejects it.
"""

from __future__ import annotations

import logging
from datetime import datetime, timezone
from decimal import Decimal

from sqlalchemy import func, select, update
from sqlalchemy.orm.attributes import flag_modified

from isnad.core.exceptions import (
    ConcurrentUpdateError,
    FormNotEligible,
    InvalidTransition,
    NotFoundError,
    ValidationError,
)
from isnad.models import db
from isnad.models.asset import Asset
from isnad.models.audit import AuditLog, write_audit
from isnad.models.isnad import IsnadApproval, IsnadForm
from isnad.models.package import (
    PACKAGE_PRIORITIES,
    PACKAGE_STATUSES,
    PACKAGE_TRANSITIONS,
    REJECTED_PACKAGE_STATUSES,
    IsnadPackage,
    PackageForm,
)
from isnad.services import stage_graph
from isnad.services.code_generator import generate_package_code
from isnad.services.isnad_form_service import snapshot as form_snapshot
from isnad.utils.helpers import commit_or_conflict, paginate_select

logger = logging.getLogger(__name__)


def _now() -> datetime:
    return datetime.now(timezone.utc)


def _decimal(value) -> Decimal:
    try:
        return Decimal(str(value or 0))
    except ArithmeticError:
        return Decimal(0)


# ── Loading & guards ─────────────────────────────────────────────────────────


def _get_package(package_id: str) -> IsnadPackage:
    pkg = db.session.get(IsnadPackage, package_id)
    if pkg is None:
        raise NotFoundError(resource="IsnadPackage", resource_id=package_id)
    return pkg


def _lock_package(package_id: str, expected_version: int | None = None) -> IsnadPackage:
    pkg = db.session.execute(
        select(IsnadPackage).where(IsnadPackage.id == package_id).with_for_update()
    ).scalar_one_or_none()
    if pkg is None:
        raise NotFoundError(resource="IsnadPackage", resource_id=package_id)
    if expected_version is not None and int(expected_version) != pkg.version:
        raise ConcurrentUpdateError("IsnadPackage", pkg.id, int(expected_version), pkg.version)
    return pkg


def _require_transition(pkg: IsnadPackage, transition: str) -> str:
    rule = PACKAGE_TRANSITIONS[transition]
    if pkg.status not in rule["from"]:
        raise InvalidTransition(
            "IsnadPackage", pkg.package_code, transition, pkg.status,
            f"allowed from {', '.join(rule['from'])}",
        )
    return rule["to"]


def bound_form_ids():
    """Subquery of form ids held by a package that is not rejected."""
    return (
        select(PackageForm.form_id)
        .join(IsnadPackage, IsnadPackage.id == PackageForm.package_id)
        .where(IsnadPackage.status.not_in(REJECTED_PACKAGE_STATUSES))
    )


def _member_forms(pkg: IsnadPackage) -> list[IsnadForm]:
    ids = pkg.form_ids
    if not ids:
        return []
    rows = db.session.execute(
        select(IsnadForm).where(IsnadForm.id.in_(ids)).with_for_update(of=IsnadForm)
    ).unique().scalars().all()
    by_id = {f.id: f for f in rows}
    return [by_id[i] for i in ids if i in by_id]


def _set_member_status(forms: list[IsnadForm], status: str) -> None:
    for form in forms:
        form.status = status


def _move_members_to_final_stage(forms: list[IsnadForm], actor: str, now: datetime) -> None:
    """Close the packaging step and open tbc_final_approval on every member."""
    final_idx = stage_graph.stage_index(stage_graph.TBC_FINAL_APPROVAL)
    packaging_idx = stage_graph.stage_index(stage_graph.PACKAGING_STAGE)
    for form in forms:
        steps = [dict(s) for s in (form.workflow_steps or [])]
        steps[packaging_idx].update(status="approved", reviewer_name=actor, action_taken_at=now.isoformat())
        steps[final_idx]["status"] = "current"
        form.workflow_steps = steps
        flag_modified(form, "workflow_steps")
        form.current_step_index = final_idx
        form.current_stage = stage_graph.TBC_FINAL_APPROVAL
        form.stage_entered_at = now


def _audit(pkg: IsnadPackage, action: str, actor: str, old_status: str, **extra) -> None:
    write_audit(
        entity_type="isnad_package",
        entity_id=pkg.id,
        action=f"isnad_package.{action}",
        actor=actor,
        diff={"status": {"old": old_status, "new": pkg.status}, **extra},
    )


# ── Read models ──────────────────────────────────────────────────────────────


def list_eligible_forms() -> list[dict]:
    """Forms in verified_filled that no live package holds yet."""
    forms = db.session.execute(
        select(IsnadForm)
        .where(
            IsnadForm.status == "verified_filled",
            IsnadForm.id.not_in(bound_form_ids()),
        )
        .order_by(IsnadForm.stage_entered_at)
    ).unique().scalars().all()
    now = _now()
    return [form_snapshot(f, now) for f in forms]


def get_package(package_id: str) -> dict:
    return _get_package(package_id).to_dict()


def list_packages(
    *,
    status: str | None = None,
    priority: str | None = None,
    page: int = 1,
    limit: int = 25,
) -> tuple[list[dict], int]:
    stmt = select(IsnadPackage)
    if status:
        stmt = stmt.where(IsnadPackage.status == status)
    if priority:
        stmt = stmt.where(IsnadPackage.priority == priority)
    stmt = stmt.order_by(IsnadPackage.created_at.desc(), IsnadPackage.package_code.desc())
    items, total = paginate_select(stmt, page, limit)
    return [p.to_dict(include_members=False) for p in items], total


def get_package_history(package_id: str) -> list[dict]:
    _get_package(package_id)
    rows = db.session.execute(
        select(AuditLog)
        .where(AuditLog.entity_type == "isnad_package", AuditLog.entity_id == package_id)
        .order_by(AuditLog.id)
    ).scalars().all()
    return [r.to_dict() for r in rows]


def get_package_stats() -> dict:
    """Counts by status and the value of minister-approved packages."""
    by_status = {s: 0 for s in sorted(PACKAGE_STATUSES)}
    for status, count in db.session.execute(
        select(IsnadPackage.status, func.count(IsnadPackage.id)).group_by(IsnadPackage.status)
    ).all():
        by_status[status] = count
    approved_value = db.session.execute(
        select(func.coalesce(func.sum(IsnadPackage.total_valuation), 0))
        .where(IsnadPackage.status == "minister_approved")
    ).scalar()
    return {
        "total": sum(by_status.values()),
        "by_status": by_status,
        "awaiting_ceo": by_status["pending_ceo"],
        "awaiting_minister": by_status["pending_minister"] + by_status["ceo_approved"],
        "approved": by_status["minister_approved"],
        "rejected": by_status["rejected_ceo"] + by_status["rejected_minister"],
        "total_value_approved": float(approved_value or 0),
    }


# ── Create ───────────────────────────────────────────────────────────────────


def _validate_package_input(name, priority, duration_years, duration_months, form_ids, **texts) -> list[str]:
    errors = {}
    if not isinstance(name, str) or not name.strip():
        errors["package_name"] = "required"
    for key, value in texts.items():
        if value is not None and not isinstance(value, str):
            errors[key] = "must be a string"
    if priority not in PACKAGE_PRIORITIES:
        errors["priority"] = f"one of {', '.join(PACKAGE_PRIORITIES)}"
    for key, value in (("duration_years", duration_years), ("duration_months", duration_months)):
        if isinstance(value, bool) or not isinstance(value, int) or value < 0:
            errors[key] = "must be a non-negative integer"
    if isinstance(duration_months, int) and not isinstance(duration_months, bool) and duration_months > 11:
        errors["duration_months"] = "must be between 0 and 11"
    if (
        "duration_years" not in errors and "duration_months" not in errors
        and duration_years == 0 and duration_months == 0
    ):
        errors["duration"] = "package duration must be positive"
    if not isinstance(form_ids, list) or not form_ids:
        errors["form_ids"] = "at least one form is required"
    elif not all(isinstance(i, str) for i in form_ids):
        errors["form_ids"] = "form ids must be strings"
    elif len(set(form_ids)) != len(form_ids):
        errors["form_ids"] = "duplicate form ids"
    if errors:
        raise ValidationError("Invalid package", details=errors)
    return list(form_ids)


def create_package(
    package_name: str,
    form_ids: list[str],
    *,
    description: str | None = None,
    investment_strategy: str | None = None,
    priority: str = "medium",
    duration_years: int = 0,
    duration_months: int = 0,
    actor: str = "system",
) -> dict:
    """Create a draft package from verified forms, atomically claiming them.

    Raises:
        ValidationError: malformed package input.
        FormNotEligible: any form is unknown, not verified_filled, or already
            held by a live package.  Nothing is written.
    """
    form_ids = _validate_package_input(
        package_name, priority, duration_years, duration_months, form_ids,
        description=description, investment_strategy=investment_strategy,
    )
    now = _now()

    # Claim first: the conditional UPDATE takes the write lock, so the
    # package code below is generated by the winner only.
    claimed = db.session.execute(
        update(IsnadForm)
        .where(
            IsnadForm.id.in_(form_ids),
            IsnadForm.status == "verified_filled",
            IsnadForm.id.not_in(bound_form_ids()),
        )
        .values(status="in_package", version=IsnadForm.version + 1, updated_at=now)
        .execution_options(synchronize_session=False)
    ).rowcount
    if claimed != len(form_ids):
        db.session.rollback()
        not_eligible = _ineligible_ids(form_ids)
        logger.warning(
            "Package creation refused: %d of %d forms not eligible",
            len(not_eligible), len(form_ids),
            extra={"actor": actor, "action": "create_package"},
        )
        raise FormNotEligible(not_eligible or form_ids)
    # The claim bypassed the identity map; reload anything already in the session.
    db.session.expire_all()

    pkg = IsnadPackage(
        package_code=generate_package_code(now.year),
        package_name=package_name.strip(),
        description=description,
        investment_strategy=investment_strategy,
        priority=priority,
        duration_years=duration_years,
        duration_months=duration_months,
        status="draft",
        created_by=actor,
        created_at=now,
    )
    db.session.add(pkg)
    db.session.flush()

    forms = db.session.execute(
        select(IsnadForm).where(IsnadForm.id.in_(form_ids))
    ).unique().scalars().all()
    by_id = {f.id: f for f in forms}

    total_valuation = Decimal(0)
    expected_revenue = Decimal(0)
    for position, form_id in enumerate(form_ids):
        form = by_id[form_id]
        valuation = _decimal((form.financial_analysis or {}).get("currentValuation"))
        total_valuation += valuation
        expected_revenue += _decimal((form.financial_analysis or {}).get("expectedReturns"))
        db.session.add(PackageForm(
            package_id=pkg.id,
            form_id=form_id,
            asset_id=form.asset_id,
            position=position,
            valuation_snapshot=valuation,
            added_at=now,
        ))
        db.session.add(IsnadApproval(
            form_id=form_id,
            stage=form.current_stage,
            action="packaged",
            actor=actor,
            actor_role="investment_agency",
            comments=f"Bundled into {pkg.package_code}",
            created_at=now,
        ))

    pkg.total_assets = len(form_ids)
    pkg.total_valuation = total_valuation
    pkg.expected_revenue = expected_revenue
    db.session.flush()
    _audit(pkg, "create", actor, "draft", form_ids=form_ids,
           total_valuation=str(total_valuation))
    commit_or_conflict("IsnadPackage", pkg.id)
    logger.info(
        "Package %s created with %d forms (valuation %s)",
        pkg.package_code, pkg.total_assets, total_valuation,
        extra={"package_id": pkg.id, "actor": actor, "action": "create_package"},
    )
    return pkg.to_dict()


def _ineligible_ids(form_ids: list[str]) -> list[str]:
    eligible = set(db.session.execute(
        select(IsnadForm.id).where(
            IsnadForm.id.in_(form_ids),
            IsnadForm.status == "verified_filled",
            IsnadForm.id.not_in(bound_form_ids()),
        )
    ).scalars().all())
    return [i for i in form_ids if i not in eligible]


# ── Approval chain ───────────────────────────────────────────────────────────


def submit_to_ceo(package_id: str, actor: str = "system", *, expected_version: int | None = None) -> dict:
    """draft → pending_ceo; member forms move to pending_ceo at tbc_final_approval."""
    pkg = _lock_package(package_id, expected_version)
    old = pkg.status
    pkg.status = _require_transition(pkg, "submit_to_ceo")
    now = _now()
    pkg.submitted_at = now
    forms = _member_forms(pkg)
    _move_members_to_final_stage(forms, actor, now)
    _set_member_status(forms, "pending_ceo")
    _audit(pkg, "submit_to_ceo", actor, old)
    commit_or_conflict("IsnadPackage", pkg.id)
    logger.info(
        "Package %s submitted to CEO", pkg.package_code,
        extra={"package_id": pkg.id, "actor": actor, "action": "submit_to_ceo"},
    )
    return pkg.to_dict()


def _decision_text(action: str, comments: str | None) -> str | None:
    if comments is not None and not isinstance(comments, str):
        raise ValidationError("comments must be a string", details={"comments": "must be a string"})
    text = (comments or "").strip()
    if action == "reject" and not text:
        raise ValidationError("Rejecting a package requires comments",
                              details={"comments": "required"})
    return text or None


def review_ceo(
    package_id: str,
    action: str,
    actor: str = "system",
    *,
    comments: str | None = None,
    expected_version: int | None = None,
) -> dict:
    """CEO decision.  Approval hands the package straight to the minister."""
    if action not in ("approve", "reject"):
        raise ValidationError(f"Unknown CEO action '{action}'", details={"action": "approve | reject"})
    text = _decision_text(action, comments)
    pkg = _lock_package(package_id, expected_version)
    now = _now()
    old = pkg.status

    if action == "reject":
        pkg.status = _require_transition(pkg, "ceo_reject")
        pkg.rejection_reason = text
        pkg.completed_at = now
        _close_members(pkg, "rejected", actor, "ceo", text, now)
    else:
        pkg.status = _require_transition(pkg, "ceo_approve")
    pkg.ceo_decided_by = actor
    pkg.ceo_decided_at = now
    pkg.ceo_comments = text
    _audit(pkg, f"ceo_{action}", actor, old, comments=text)

    if action == "approve":
        approved = pkg.status
        pkg.status = "pending_minister"
        _set_member_status(_member_forms(pkg), "pending_minister")
        _audit(pkg, "advance_to_minister", actor, approved)

    commit_or_conflict("IsnadPackage", pkg.id)
    logger.info(
        "Package %s CEO %s (%s → %s)", pkg.package_code, action, old, pkg.status,
        extra={"package_id": pkg.id, "actor": actor, "action": f"ceo_{action}"},
    )
    return pkg.to_dict()


def review_minister(
    package_id: str,
    action: str,
    actor: str = "system",
    *,
    comments: str | None = None,
    expected_version: int | None = None,
) -> dict:
    """Minister decision.  Approval makes member assets investable; either way the member forms close."""
    if action not in ("approve", "reject"):
        raise ValidationError(f"Unknown minister action '{action}'", details={"action": "approve | reject"})
    text = _decision_text(action, comments)
    pkg = _lock_package(package_id, expected_version)
    now = _now()
    old = pkg.status

    pkg.status = _require_transition(pkg, f"minister_{action}")
    pkg.minister_decided_by = actor
    pkg.minister_decided_at = now
    pkg.minister_comments = text
    pkg.completed_at = now
    if action == "reject":
        pkg.rejection_reason = text
    _close_members(pkg, "approved" if action == "approve" else "rejected", actor, "minister", text, now)
    _audit(pkg, f"minister_{action}", actor, old, comments=text)

    commit_or_conflict("IsnadPackage", pkg.id)
    logger.info(
        "Package %s minister %s (%s → %s)", pkg.package_code, action, old, pkg.status,
        extra={"package_id": pkg.id, "actor": actor, "action": f"minister_{action}"},
    )
    return pkg.to_dict()


def _close_members(
    pkg: IsnadPackage,
    outcome: str,
    actor: str,
    actor_role: str,
    comments: str | None,
    now: datetime,
) -> None:
    """Finish every member form with the executive decision.

    ``outcome`` is "approved" or "rejected"; both are terminal and release the
    asset for a new form.  Only approval makes the asset investable.
    """
    final_idx = stage_graph.stage_index(stage_graph.TBC_FINAL_APPROVAL)
    default_comment = (
        f"Approved with package {pkg.package_code}" if outcome == "approved"
        else f"Package {pkg.package_code} rejected"
    )
    for form in _member_forms(pkg):
        steps = [dict(s) for s in (form.workflow_steps or [])]
        steps[final_idx].update(status=outcome, reviewer_name=actor, action_taken_at=now.isoformat())
        form.workflow_steps = steps
        flag_modified(form, "workflow_steps")
        form.status = outcome
        form.completed_at = now
        db.session.add(IsnadApproval(
            form_id=form.id,
            stage=stage_graph.TBC_FINAL_APPROVAL,
            action=outcome,
            actor=actor,
            actor_role=actor_role,
            comments=comments or default_comment,
            created_at=now,
        ))
        asset = db.session.get(Asset, form.asset_id)
        if asset is None:
            continue
        asset.has_active_isnad = False
        if outcome == "approved":
            asset.visible_to_investors = True
            asset.investable_at = now
