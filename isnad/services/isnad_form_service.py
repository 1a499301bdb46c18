"""
ISNAD Form State Machine.

Owns the lifecycle of a single ISNAD form:
  - create / submit / cancel
  - save_section (stage-scoped write permission via the stage graph)
  - review: one entry point for approve | reject | return | request_info
  - provide_info: initiator answer to a request_info
  - read models: snapshot, approval history, available actions, list

Every mutating call:
  1. loads the form with SELECT ... FOR UPDATE,
  2. checks the caller's expected version (optional),
  3. applies the transition and appends exactly one IsnadApproval row,
  4. commits once; a lost optimistic-lock race becomes ConcurrentUpdateError.

db.session.commit() happens only in this file and package_service.

Usage:
    from isnad.services import isnad_form_service as forms

    form = forms.create_form(asset_id, actor="ip.officer")
    form = forms.submit_form(form["id"], actor="ip.officer")
    form = forms.review_form(form["id"], "approve", actor="planning.lead")
"""

from __future__ import annotations

import copy
import logging
from dataclasses import dataclass, field
from datetime import datetime, timezone

from flask import current_app
from sqlalchemy import or_, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm.attributes import flag_modified

from isnad.core.exceptions import (
    ConcurrentUpdateError,
    DuplicateActiveForm,
    InvalidTransition,
    NotFoundError,
    SectionNotEditable,
    ValidationError,
)
from isnad.models import db
from isnad.models.asset import Asset
from isnad.models.audit import write_audit
from isnad.models.isnad import (
    FORM_TRANSITIONS,
    REVIEW_ACTIONS,
    REVIEWABLE_STATUSES,
    TERMINAL_FORM_STATUSES,
    IsnadApproval,
    IsnadForm,
)
from isnad.services import sla_clock, stage_graph
from isnad.services.code_generator import generate_form_code
from isnad.utils.helpers import commit_or_conflict, paginate_select

logger = logging.getLogger(__name__)

RETURN_POLICY_RESET_ALL = "reset_all"
RETURN_POLICY_REOPEN_CURRENT = "reopen_current"
RETURN_POLICIES = (RETURN_POLICY_RESET_ALL, RETURN_POLICY_REOPEN_CURRENT)

_FINANCIAL_NUMBER_FIELDS = ("currentValuation", "outstandingDues", "maintenanceCosts", "expectedReturns")


# ── Settings ─────────────────────────────────────────────────────────────────


def _now() -> datetime:
    return datetime.now(timezone.utc)


def sla_settings() -> dict:
    """SLA clock keyword arguments taken from the app config."""
    cfg = current_app.config
    return {
        "sla_days": cfg.get("ISNAD_SLA_DAYS", sla_clock.DEFAULT_SLA_DAYS),
        "fractions": tuple(cfg.get("ISNAD_SLA_THRESHOLDS", sla_clock.DEFAULT_THRESHOLDS)),
        "default_days": cfg.get("ISNAD_SLA_DEFAULT_DAYS", sla_clock.DEFAULT_STAGE_BUDGET_DAYS),
    }


def return_policy() -> str:
    policy = current_app.config.get("ISNAD_RETURN_POLICY", RETURN_POLICY_RESET_ALL)
    if policy not in RETURN_POLICIES:
        raise ValueError(f"Unknown ISNAD_RETURN_POLICY {policy!r}; expected one of {RETURN_POLICIES}")
    return policy


def _justification_min() -> int:
    return int(current_app.config.get("ISNAD_REJECTION_JUSTIFICATION_MIN", 50))


# ── Loading & guards ─────────────────────────────────────────────────────────


def _get_form(form_id: str) -> IsnadForm:
    form = db.session.get(IsnadForm, form_id)
    if form is None:
        raise NotFoundError(resource="IsnadForm", resource_id=form_id)
    return form


def _lock_form(form_id: str, expected_version: int | None = None) -> IsnadForm:
    """Load *form_id* for update and check the caller's version, if given."""
    form = db.session.execute(
        select(IsnadForm).where(IsnadForm.id == form_id).with_for_update(of=IsnadForm)
    ).unique().scalar_one_or_none()
    if form is None:
        raise NotFoundError(resource="IsnadForm", resource_id=form_id)
    if expected_version is not None and int(expected_version) != form.version:
        raise ConcurrentUpdateError("IsnadForm", form.id, int(expected_version), form.version)
    return form


def _require_status(form: IsnadForm, action: str) -> None:
    allowed = FORM_TRANSITIONS[action]["from"]
    if form.status not in allowed:
        raise InvalidTransition(
            "IsnadForm", form.form_code, action, form.status,
            f"allowed from {', '.join(allowed)}",
        )


def _as_text(value, field_name: str) -> str:
    """Stripped string body value; ``None`` reads as empty."""
    if value is None:
        return ""
    if not isinstance(value, str):
        raise ValidationError(f"{field_name} must be a string", details={field_name: "must be a string"})
    return value.strip()


def _require_text(value: str | None, field_name: str, message: str) -> str:
    text = _as_text(value, field_name)
    if not text:
        raise ValidationError(message, details={field_name: "required"})
    return text


def _validate_block(data, field_name: str) -> dict | None:
    if data is not None and not isinstance(data, dict):
        raise ValidationError(f"{field_name} must be an object", details={field_name: "must be an object"})
    return data


def _validate_financial_analysis(data) -> dict | None:
    if data is None:
        return None
    _validate_block(data, "financial_analysis")
    errors = {}
    for key in _FINANCIAL_NUMBER_FIELDS:
        if key not in data or data[key] is None:
            continue
        value = data[key]
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            errors[key] = "must be a number"
        elif value < 0:
            errors[key] = "must not be negative"
    if errors:
        raise ValidationError("Invalid financial analysis", details=errors)
    return data


def _status_for_stage(stage: str) -> str:
    return "verified_filled" if stage == stage_graph.PACKAGING_STAGE else "pending_verification"


def _steps(form: IsnadForm) -> list[dict]:
    return copy.deepcopy(form.workflow_steps or [])


def _store_steps(form: IsnadForm, steps: list[dict]) -> None:
    form.workflow_steps = steps
    flag_modified(form, "workflow_steps")


def _enter_stage(form: IsnadForm, index: int, now: datetime) -> None:
    form.current_step_index = index
    form.current_stage = stage_graph.stage_at(index)
    form.stage_entered_at = now


def _append_approval(
    form: IsnadForm,
    action: str,
    actor: str,
    now: datetime,
    *,
    stage: str | None = None,
    **fields,
) -> IsnadApproval:
    """Add one approval row for the stage the form is in *before* the transition."""
    stage = stage or form.current_stage
    settings = sla_settings()
    duration_hours = None
    sla_compliant = None
    if form.stage_entered_at is not None:
        elapsed = sla_clock.elapsed_days(form.stage_entered_at, now)
        duration_hours = round(elapsed * 24, 2)
        budget = sla_clock.stage_budget_days(stage, settings["sla_days"], settings["default_days"])
        sla_compliant = elapsed <= budget
    approval = IsnadApproval(
        form_id=form.id,
        stage=stage,
        action=action,
        actor=actor,
        duration_hours=duration_hours,
        sla_compliant=sla_compliant,
        created_at=now,
        **fields,
    )
    db.session.add(approval)
    return approval


def _release_asset(form: IsnadForm) -> None:
    asset = db.session.get(Asset, form.asset_id)
    if asset is not None:
        asset.has_active_isnad = False


# ── Read models ──────────────────────────────────────────────────────────────


def form_sla_status(form: IsnadForm, now: datetime | None = None) -> str | None:
    if form.status in TERMINAL_FORM_STATUSES:
        return None
    return sla_clock.compute_sla_status(form.current_stage, form.stage_entered_at, now, **sla_settings())


def available_actions(form: IsnadForm) -> list[str]:
    """Actions the engine would accept on *form* right now."""
    actions = []
    if form.status in TERMINAL_FORM_STATUSES:
        return actions
    for action in ("submit", "cancel"):
        if form.status in FORM_TRANSITIONS[action]["from"]:
            actions.append(action)
    if form.status in ("draft", "changes_requested"):
        actions.append("update_details")
    for action in REVIEW_ACTIONS:
        if form.status not in FORM_TRANSITIONS[action]["from"]:
            continue
        if action == "approve" and form.current_stage == stage_graph.IP_INITIATION:
            continue
        actions.append(action)
    if form.status in REVIEWABLE_STATUSES and _open_info_request(form) is not None:
        actions.append("provide_info")
    section = stage_graph.section_for_stage(form.current_stage)
    if section:
        actions.append(f"save_section:{section}")
    return actions


def snapshot(form: IsnadForm, now: datetime | None = None) -> dict:
    """Form dict enriched with the read-time SLA fields."""
    now = now or _now()
    data = form.to_dict()
    data["sla_status"] = form_sla_status(form, now)
    if form.status in TERMINAL_FORM_STATUSES or form.stage_entered_at is None:
        data["days_pending"] = None
        data["sla_deadline"] = None
    else:
        settings = sla_settings()
        data["days_pending"] = sla_clock.days_pending(form.stage_entered_at, now)
        data["sla_deadline"] = sla_clock.deadline_for(
            form.current_stage, form.stage_entered_at,
            sla_days=settings["sla_days"], default_days=settings["default_days"],
        ).isoformat()
    data["editable_section"] = (
        None if form.status in TERMINAL_FORM_STATUSES
        else stage_graph.section_for_stage(form.current_stage)
    )
    data["available_actions"] = available_actions(form)
    return data


def get_form(form_id: str) -> dict:
    return snapshot(_get_form(form_id))


def get_approval_history(form_id: str) -> list[dict]:
    """Every approval row for the form, oldest first."""
    _get_form(form_id)
    rows = db.session.execute(
        select(IsnadApproval)
        .where(IsnadApproval.form_id == form_id)
        .order_by(IsnadApproval.id)
    ).scalars().all()
    return [r.to_dict() for r in rows]


def get_available_actions(form_id: str) -> dict:
    form = _get_form(form_id)
    return {
        "form_id": form.id,
        "status": form.status,
        "current_stage": form.current_stage,
        "actions": available_actions(form),
    }


def list_forms(
    *,
    status: str | None = None,
    stage: str | None = None,
    asset_id: str | None = None,
    search: str | None = None,
    page: int = 1,
    limit: int = 25,
) -> tuple[list[dict], int]:
    """Filtered, newest-first page of form snapshots."""
    stmt = select(IsnadForm).join(Asset, Asset.id == IsnadForm.asset_id)
    if status:
        stmt = stmt.where(IsnadForm.status == status)
    if stage:
        stmt = stmt.where(IsnadForm.current_stage == stage)
    if asset_id:
        stmt = stmt.where(IsnadForm.asset_id == asset_id)
    if search:
        pattern = f"%{search.strip()}%"
        stmt = stmt.where(or_(
            IsnadForm.form_code.ilike(pattern),
            Asset.name.ilike(pattern),
            Asset.asset_code.ilike(pattern),
        ))
    stmt = stmt.order_by(IsnadForm.created_at.desc(), IsnadForm.form_code.desc())
    items, total = paginate_select(stmt, page, limit)
    now = _now()
    return [snapshot(f, now) for f in items], total


# ── Create / update ──────────────────────────────────────────────────────────


def create_form(
    asset_id: str,
    actor: str = "system",
    *,
    financial_analysis: dict | None = None,
    investment_criteria: dict | None = None,
    technical_assessment: dict | None = None,
) -> dict:
    """Open a new draft form for *asset_id*.

    Raises:
        NotFoundError: unknown asset.
        ValidationError: asset registration not completed, or bad analysis payload.
        DuplicateActiveForm: the asset already has a non-terminal form.
    """
    asset = db.session.get(Asset, asset_id)
    if asset is None:
        raise NotFoundError(resource="Asset", resource_id=asset_id)
    if asset.status != "completed":
        raise ValidationError(
            f"Asset {asset.asset_code} must complete registration before an ISNAD form is created",
            details={"asset_status": asset.status},
        )
    existing = db.session.execute(
        select(IsnadForm).where(
            IsnadForm.asset_id == asset_id,
            IsnadForm.status.not_in(TERMINAL_FORM_STATUSES),
        )
    ).unique().scalar_one_or_none()
    if existing is not None:
        raise DuplicateActiveForm(asset_id, existing.form_code)

    now = _now()
    form = IsnadForm(
        form_code=generate_form_code(now.year),
        asset_id=asset_id,
        status="draft",
        current_stage=stage_graph.IP_INITIATION,
        current_step_index=0,
        workflow_steps=stage_graph.seed_workflow_steps(),
        stage_entered_at=now,
        financial_analysis=_validate_financial_analysis(financial_analysis),
        investment_criteria=_validate_block(investment_criteria, "investment_criteria"),
        technical_assessment=_validate_block(technical_assessment, "technical_assessment"),
        created_by=actor,
        created_at=now,
    )
    asset.has_active_isnad = True
    db.session.add(form)
    try:
        db.session.flush()
    except IntegrityError as exc:
        db.session.rollback()
        active = db.session.execute(
            select(IsnadForm.form_code).where(
                IsnadForm.asset_id == asset_id,
                IsnadForm.status.not_in(TERMINAL_FORM_STATUSES),
            )
        ).scalar_one_or_none()
        if active is None:
            raise
        logger.warning("Active-form race lost for asset %s: %s", asset_id, exc.orig)
        raise DuplicateActiveForm(asset_id, active) from exc
    write_audit(
        entity_type="isnad_form",
        entity_id=form.id,
        action="isnad_form.create",
        actor=actor,
        diff={"form_code": form.form_code, "asset_id": asset_id},
    )
    commit_or_conflict("IsnadForm", form.id)
    logger.info(
        "ISNAD form created: %s for asset %s", form.form_code, asset.asset_code,
        extra={"form_id": form.id, "actor": actor, "action": "create"},
    )
    return snapshot(form, now)


def update_form_details(
    form_id: str,
    actor: str = "system",
    *,
    financial_analysis: dict | None = None,
    investment_criteria: dict | None = None,
    technical_assessment: dict | None = None,
    expected_version: int | None = None,
) -> dict:
    """Initiator edits to the analysis blocks, merged key-by-key.

    Only while the form is with the initiator (draft / changes_requested).
    """
    _validate_financial_analysis(financial_analysis)
    _validate_block(investment_criteria, "investment_criteria")
    _validate_block(technical_assessment, "technical_assessment")
    form = _lock_form(form_id, expected_version)
    if form.status not in ("draft", "changes_requested"):
        raise InvalidTransition(
            "IsnadForm", form.form_code, "update_details", form.status,
            "details are editable only in draft or changes_requested",
        )
    changed = []
    if financial_analysis is not None:
        merged = {**(form.financial_analysis or {}), **financial_analysis}
        form.financial_analysis = _validate_financial_analysis(merged)
        changed.append("financial_analysis")
    if investment_criteria is not None:
        form.investment_criteria = {**(form.investment_criteria or {}), **investment_criteria}
        changed.append("investment_criteria")
    if technical_assessment is not None:
        form.technical_assessment = {**(form.technical_assessment or {}), **technical_assessment}
        changed.append("technical_assessment")
    if not changed:
        raise ValidationError("Nothing to update",
                              details={"fields": "financial_analysis | investment_criteria | technical_assessment"})
    write_audit(
        entity_type="isnad_form",
        entity_id=form.id,
        action="isnad_form.update_details",
        actor=actor,
        diff={"fields": changed},
    )
    commit_or_conflict("IsnadForm", form.id)
    return snapshot(form)


# ── Submit ───────────────────────────────────────────────────────────────────


def submit_form(form_id: str, actor: str = "system", *, expected_version: int | None = None) -> dict:
    """Hand the form from the initiator to the review pipeline.

    Closes the ip_initiation step and enters the first step after it that is
    not already approved (school_planning_review on a first submission or
    after a full reset).
    """
    form = _lock_form(form_id, expected_version)
    _require_status(form, "submit")
    now = _now()

    steps = _steps(form)
    steps[0].update(status="approved", reviewer_name=actor, action_taken_at=now.isoformat())
    target = next(
        (i for i in range(1, len(steps)) if steps[i]["status"] != "approved"),
        len(steps) - 1,
    )
    for i in range(target + 1, len(steps)):
        steps[i]["status"] = "pending"
    steps[target]["status"] = "current"

    _append_approval(form, "submitted", actor, now, stage=stage_graph.IP_INITIATION)

    previous = form.status
    _store_steps(form, steps)
    _enter_stage(form, target, now)
    form.status = _status_for_stage(form.current_stage)
    if form.submitted_at is None:
        form.submitted_at = now

    commit_or_conflict("IsnadForm", form.id)
    logger.info(
        "ISNAD form %s submitted (%s → %s) into %s",
        form.form_code, previous, form.status, form.current_stage,
        extra={"form_id": form.id, "actor": actor, "action": "submit", "stage": form.current_stage},
    )
    return snapshot(form, now)


# ── Sections ─────────────────────────────────────────────────────────────────


def save_section(
    form_id: str,
    section_name: str,
    data: dict,
    is_complete: bool = False,
    actor: str = "system",
    *,
    expected_version: int | None = None,
) -> dict:
    """Merge *data* into a department section.

    Only the department owning the current stage may write, and never on a
    terminal form.  A completing save stamps completed_at / completed_by and
    requires the section's mandatory fields.

    Raises:
        ValidationError: unknown section, non-object data, or missing required fields.
        SectionNotEditable: the current stage does not own *section_name*.
    """
    if section_name not in stage_graph.SECTIONS:
        raise ValidationError(
            f"Unknown section '{section_name}'",
            details={"section": f"one of {', '.join(stage_graph.SECTIONS)}"},
        )
    if not isinstance(data, dict):
        raise ValidationError("Section data must be an object", details={"data": "invalid"})

    form = _lock_form(form_id, expected_version)
    if form.is_terminal or stage_graph.section_for_stage(form.current_stage) != section_name:
        raise SectionNotEditable(form.form_code, section_name, form.current_stage, form.status)

    current = copy.deepcopy(form.section(section_name) or {})
    merged = {**(current.get("data") or {}), **data}
    section = {
        "data": merged,
        "completed_at": current.get("completed_at"),
        "completed_by": current.get("completed_by"),
    }
    if is_complete:
        missing = [
            f for f in stage_graph.SECTION_REQUIRED_FIELDS.get(section_name, ())
            if merged.get(f) is None or merged.get(f) == ""
        ]
        if missing:
            raise ValidationError(
                f"Section '{section_name}' is missing required fields",
                details={f: "required" for f in missing},
            )
        section["completed_at"] = _now().isoformat()
        section["completed_by"] = actor

    form.set_section(section_name, section)
    flag_modified(form, f"{section_name}_section")
    commit_or_conflict("IsnadForm", form.id)
    logger.info(
        "Section %s of %s saved (complete=%s)", section_name, form.form_code, bool(is_complete),
        extra={"form_id": form.id, "actor": actor, "action": "save_section", "stage": form.current_stage},
    )
    return snapshot(form)


# ── Review ───────────────────────────────────────────────────────────────────


@dataclass
class ReviewOutcome:
    """Result of one review arm: what the form becomes and what gets logged."""

    new_status: str
    new_step_index: int
    steps: list[dict]
    log_action: str
    log_fields: dict = field(default_factory=dict)
    form_fields: dict = field(default_factory=dict)
    enters_stage: bool = False
    releases_asset: bool = False


def _review_approve(form: IsnadForm, actor: str, now: datetime, **payload) -> ReviewOutcome:
    _require_status(form, "approve")
    if form.current_stage == stage_graph.IP_INITIATION:
        raise InvalidTransition(
            "IsnadForm", form.form_code, "approve", form.status,
            "the initiating stage cannot approve its own form",
        )
    steps = _steps(form)
    idx = form.current_step_index
    steps[idx].update(
        status="approved",
        reviewer_name=actor,
        action_taken_at=now.isoformat(),
        comments=payload.get("comments"),
    )
    nxt = idx + 1
    if nxt < len(steps):
        steps[nxt]["status"] = "current"
        new_stage = stage_graph.stage_at(nxt)
        return ReviewOutcome(
            new_status=_status_for_stage(new_stage),
            new_step_index=nxt,
            steps=steps,
            log_action="approved",
            log_fields={"comments": payload.get("comments")},
            enters_stage=True,
        )
    return ReviewOutcome(
        new_status="approved",
        new_step_index=idx,
        steps=steps,
        log_action="approved",
        log_fields={"comments": payload.get("comments")},
        form_fields={"completed_at": now},
        releases_asset=True,
    )


def _review_reject(form: IsnadForm, actor: str, now: datetime, **payload) -> ReviewOutcome:
    _require_status(form, "reject")
    reason = _require_text(payload.get("rejection_reason"), "rejection_reason",
                           "A rejection reason is required")
    justification = _as_text(payload.get("rejection_justification"), "rejection_justification")
    minimum = _justification_min()
    if len(justification) < minimum:
        raise ValidationError(
            f"Rejection justification must be at least {minimum} characters",
            details={"rejection_justification": f"min {minimum} chars, got {len(justification)}"},
        )
    steps = _steps(form)
    steps[form.current_step_index].update(
        status="rejected",
        reviewer_name=actor,
        action_taken_at=now.isoformat(),
        comments=payload.get("comments") or reason,
    )
    return ReviewOutcome(
        new_status="rejected",
        new_step_index=form.current_step_index,
        steps=steps,
        log_action="rejected",
        log_fields={
            "comments": payload.get("comments"),
            "rejection_reason": reason,
            "rejection_justification": justification,
        },
        releases_asset=True,
    )


def _review_return(form: IsnadForm, actor: str, now: datetime, **payload) -> ReviewOutcome:
    _require_status(form, "return")
    comments = payload.get("comments")
    returning_idx = form.current_step_index
    returning_stage = form.current_stage
    steps = _steps(form)
    policy = return_policy()

    if policy == RETURN_POLICY_RESET_ALL:
        for step in steps:
            step.update(status="pending", reviewer_name=None, action_taken_at=None, comments=None)
        for name in stage_graph.SECTIONS:
            _clear_section_completion(form, name)
    else:
        for i in range(returning_idx, len(steps)):
            steps[i].update(status="pending", reviewer_name=None, action_taken_at=None)
        section = stage_graph.section_for_stage(returning_stage)
        if section:
            _clear_section_completion(form, section)
    steps[returning_idx]["comments"] = comments
    steps[0]["status"] = "current"

    return ReviewOutcome(
        new_status="changes_requested",
        new_step_index=0,
        steps=steps,
        log_action="modification_requested",
        log_fields={"comments": comments},
        form_fields={
            "return_count": (form.return_count or 0) + 1,
            "returned_by_stage": returning_stage,
            "return_reason": comments,
        },
        enters_stage=True,
    )


def _review_request_info(form: IsnadForm, actor: str, now: datetime, **payload) -> ReviewOutcome:
    _require_status(form, "request_info")
    comments = _require_text(payload.get("comments"), "comments",
                             "An information request needs a question in comments")
    return ReviewOutcome(
        new_status=form.status,
        new_step_index=form.current_step_index,
        steps=form.workflow_steps,
        log_action="request_info",
        log_fields={"comments": comments},
    )


_REVIEW_HANDLERS = {
    "approve": _review_approve,
    "reject": _review_reject,
    "return": _review_return,
    "request_info": _review_request_info,
}


def _clear_section_completion(form: IsnadForm, name: str) -> None:
    section = form.section(name)
    if not section or not section.get("completed_at"):
        return
    section = copy.deepcopy(section)
    section["completed_at"] = None
    section["completed_by"] = None
    form.set_section(name, section)
    flag_modified(form, f"{name}_section")


def review_form(
    form_id: str,
    action: str,
    actor: str = "system",
    *,
    comments: str | None = None,
    rejection_reason: str | None = None,
    rejection_justification: str | None = None,
    actor_role: str | None = None,
    expected_version: int | None = None,
) -> dict:
    """Apply a reviewer decision to the form's current stage.

    The state change and its approval row are committed together or not at all.

    Raises:
        ValidationError: unknown action, or missing/short rejection fields.
        InvalidTransition: action not legal from the current status/stage.
    """
    handler = _REVIEW_HANDLERS.get(action) if isinstance(action, str) else None
    if handler is None:
        raise ValidationError(
            f"Unknown review action '{action}'",
            details={"action": f"one of {', '.join(REVIEW_ACTIONS)}"},
        )
    comments = _as_text(comments, "comments") or None
    _as_text(rejection_reason, "rejection_reason")
    _as_text(actor_role, "actor_role")
    form = _lock_form(form_id, expected_version)
    now = _now()
    outcome = handler(
        form, actor, now,
        comments=comments,
        rejection_reason=rejection_reason,
        rejection_justification=rejection_justification,
    )

    review_stage = form.current_stage
    previous = form.status
    _append_approval(
        form, outcome.log_action, actor, now,
        actor_role=actor_role or stage_graph.stage_department(review_stage),
        **outcome.log_fields,
    )

    if outcome.steps is not form.workflow_steps:
        _store_steps(form, outcome.steps)
    if outcome.enters_stage:
        _enter_stage(form, outcome.new_step_index, now)
    form.status = outcome.new_status
    for key, value in outcome.form_fields.items():
        setattr(form, key, value)
    if outcome.releases_asset:
        _release_asset(form)

    commit_or_conflict("IsnadForm", form.id)
    logger.info(
        "ISNAD form %s %s at %s (%s → %s)",
        form.form_code, outcome.log_action, review_stage, previous, form.status,
        extra={"form_id": form.id, "actor": actor, "action": action, "stage": review_stage},
    )
    return snapshot(form, now)


# ── Info requests ────────────────────────────────────────────────────────────


def _open_info_request(form: IsnadForm) -> IsnadApproval | None:
    """Unanswered request_info at the current stage, if any.

    Every way out of a review stage logs a row at that stage, so the request
    is open exactly when it is the latest row there.
    """
    last = db.session.execute(
        select(IsnadApproval)
        .where(
            IsnadApproval.form_id == form.id,
            IsnadApproval.stage == form.current_stage,
        )
        .order_by(IsnadApproval.id.desc())
        .limit(1)
    ).scalar_one_or_none()
    if last is not None and last.action == "request_info":
        return last
    return None


def provide_info(
    form_id: str,
    comments: str,
    actor: str = "system",
    *,
    expected_version: int | None = None,
) -> dict:
    """Answer an open information request; restarts the stage SLA clock."""
    text = _require_text(comments, "comments", "The information provided must not be empty")
    form = _lock_form(form_id, expected_version)
    if form.status not in REVIEWABLE_STATUSES or _open_info_request(form) is None:
        raise InvalidTransition(
            "IsnadForm", form.form_code, "provide_info", form.status,
            "no open information request at the current stage",
        )
    now = _now()
    _append_approval(form, "info_provided", actor, now, comments=text)
    form.stage_entered_at = now
    commit_or_conflict("IsnadForm", form.id)
    logger.info(
        "Information provided on %s at %s", form.form_code, form.current_stage,
        extra={"form_id": form.id, "actor": actor, "action": "provide_info", "stage": form.current_stage},
    )
    return snapshot(form, now)


# ── Cancel ───────────────────────────────────────────────────────────────────


def cancel_form(
    form_id: str,
    reason: str,
    actor: str = "system",
    *,
    expected_version: int | None = None,
) -> dict:
    """Withdraw the form.  Terminal; frees the asset for a new form."""
    text = _require_text(reason, "reason", "A cancellation reason is required")
    form = _lock_form(form_id, expected_version)
    _require_status(form, "cancel")
    now = _now()
    _append_approval(form, "cancelled", actor, now, comments=text)
    form.status = "cancelled"
    form.cancellation_reason = text
    form.cancelled_at = now
    form.cancelled_by = actor
    _release_asset(form)
    commit_or_conflict("IsnadForm", form.id)
    logger.info(
        "ISNAD form %s cancelled", form.form_code,
        extra={"form_id": form.id, "actor": actor, "action": "cancel", "stage": form.current_stage},
    )
    return snapshot(form, now)
