"""
ISNAD domain models.

Models:
    - IsnadForm: investment-suitability assessment of one asset, carried
      through the departmental review pipeline.
    - IsnadApproval: immutable, append-only log of every action taken on a form.

Status / action vocabularies and the form transition table live here so the
service layer and the tests share one definition.
"""

import uuid
from datetime import datetime, timezone

from sqlalchemy import event as _sa_event

from isnad.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Constants ────────────────────────────────────────────────────────────────

FORM_STATUSES = frozenset({
    "draft",
    "pending_verification",
    "verification_due",
    "changes_requested",
    "verified_filled",
    "investment_agency_review",
    "in_package",
    "pending_ceo",
    "pending_minister",
    "approved",
    "rejected",
    "cancelled",
})

TERMINAL_FORM_STATUSES = frozenset({"approved", "rejected", "cancelled"})

# Statuses in which a reviewer is expected to act on the current stage.
REVIEWABLE_STATUSES = frozenset({
    "pending_verification",
    "verification_due",
    "investment_agency_review",
    "verified_filled",
})

# Statuses owned by the package chain; review actions do not apply.
PACKAGED_STATUSES = frozenset({"in_package", "pending_ceo", "pending_minister"})

APPROVAL_ACTIONS = frozenset({
    "submitted",
    "approved",
    "rejected",
    "modification_requested",
    "request_info",
    "info_provided",
    "cancelled",
    "packaged",
})

STEP_STATUSES = frozenset({"pending", "current", "approved", "rejected"})

# action → allowed source statuses.  Targets depend on the stage graph and are
# resolved by the form service.
FORM_TRANSITIONS = {
    "submit": {"from": ["draft", "changes_requested"]},
    "approve": {"from": ["pending_verification", "verification_due"]},
    "reject": {"from": [
        "pending_verification", "verification_due",
        "investment_agency_review", "verified_filled",
    ]},
    "return": {"from": [
        "pending_verification", "verification_due",
        "investment_agency_review", "verified_filled",
    ]},
    "request_info": {"from": [
        "pending_verification", "verification_due",
        "investment_agency_review", "verified_filled",
    ]},
    "cancel": {"from": ["draft", "pending_verification", "changes_requested"]},
}

REVIEW_ACTIONS = ("approve", "reject", "return", "request_info")


class IsnadForm(db.Model):
    """
    One ISNAD assessment for one asset.

    ``workflow_steps`` mirrors the stage graph: one entry per stage, fixed at
    creation.  Only the per-step status fields change afterwards.

    Section payloads are ``{"data": {...}, "completed_at": iso|None,
    "completed_by": str|None}``.

    ``version`` guards concurrent writers: a stale flush raises
    ``StaleDataError``.
    """

    __tablename__ = "isnad_forms"
    __table_args__ = (
        db.Index("ix_isnad_forms_status_stage", "status", "current_stage"),
        # At most one non-terminal form per asset.
        db.Index(
            "uq_isnad_forms_active_asset",
            "asset_id",
            unique=True,
            sqlite_where=db.text("status NOT IN ('approved', 'rejected', 'cancelled')"),
            postgresql_where=db.text("status NOT IN ('approved', 'rejected', 'cancelled')"),
        ),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    form_code = db.Column(
        db.String(20), nullable=False, unique=True,
        comment="ISNAD-{year}-{seq:04d}, immutable once assigned",
    )
    asset_id = db.Column(
        db.String(36), db.ForeignKey("assets.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )

    status = db.Column(db.String(30), nullable=False, default="draft", index=True)
    current_stage = db.Column(db.String(40), nullable=False, default="ip_initiation")
    current_step_index = db.Column(db.Integer, nullable=False, default=0)
    workflow_steps = db.Column(db.JSON, nullable=False, default=list)
    stage_entered_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow,
        comment="When the current stage was entered; drives the SLA clock",
    )

    # Department sections
    school_planning_section = db.Column(db.JSON, nullable=True)
    investment_partnerships_section = db.Column(db.JSON, nullable=True)
    finance_section = db.Column(db.JSON, nullable=True)
    security_facilities_section = db.Column(db.JSON, nullable=True)

    # Initiator-supplied analysis
    financial_analysis = db.Column(
        db.JSON, nullable=True,
        comment="currentValuation, outstandingDues, maintenanceCosts, expectedReturns, breakEvenAnalysis",
    )
    investment_criteria = db.Column(db.JSON, nullable=True)
    technical_assessment = db.Column(db.JSON, nullable=True)

    # Rework
    return_count = db.Column(db.Integer, nullable=False, default=0)
    returned_by_stage = db.Column(db.String(40), nullable=True)
    return_reason = db.Column(db.Text, nullable=True)

    # Cancellation
    cancellation_reason = db.Column(db.Text, nullable=True)
    cancelled_at = db.Column(db.DateTime(timezone=True), nullable=True)
    cancelled_by = db.Column(db.String(150), nullable=True)

    created_by = db.Column(db.String(150), nullable=False, default="system")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    asset = db.relationship("Asset", lazy="joined")
    approvals = db.relationship(
        "IsnadApproval",
        back_populates="form",
        order_by="IsnadApproval.id",
        lazy="dynamic",
    )

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_FORM_STATUSES

    def section(self, name: str) -> dict | None:
        return getattr(self, f"{name}_section")

    def set_section(self, name: str, value: dict | None) -> None:
        setattr(self, f"{name}_section", value)

    @property
    def current_valuation(self) -> float:
        fa = self.financial_analysis or {}
        try:
            return float(fa.get("currentValuation") or 0)
        except (TypeError, ValueError):
            return 0.0

    @property
    def expected_returns(self) -> float:
        fa = self.financial_analysis or {}
        try:
            return float(fa.get("expectedReturns") or 0)
        except (TypeError, ValueError):
            return 0.0

    def approval_progress(self) -> int:
        """Share of workflow steps already approved, as a whole percentage."""
        steps = self.workflow_steps or []
        if not steps:
            return 0
        done = sum(1 for s in steps if s.get("status") == "approved")
        return round(done * 100 / len(steps))

    def to_dict(self):
        return {
            "id": self.id,
            "form_code": self.form_code,
            "asset_id": self.asset_id,
            "asset": self.asset.to_summary() if self.asset else None,
            "status": self.status,
            "current_stage": self.current_stage,
            "current_step_index": self.current_step_index,
            "workflow_steps": self.workflow_steps or [],
            "stage_entered_at": _iso(self.stage_entered_at),
            "sections": {
                "school_planning": self.school_planning_section,
                "investment_partnerships": self.investment_partnerships_section,
                "finance": self.finance_section,
                "security_facilities": self.security_facilities_section,
            },
            "financial_analysis": self.financial_analysis,
            "investment_criteria": self.investment_criteria,
            "technical_assessment": self.technical_assessment,
            "return_count": self.return_count,
            "returned_by_stage": self.returned_by_stage,
            "return_reason": self.return_reason,
            "cancellation_reason": self.cancellation_reason,
            "cancelled_at": _iso(self.cancelled_at),
            "cancelled_by": self.cancelled_by,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "submitted_at": _iso(self.submitted_at),
            "completed_at": _iso(self.completed_at),
            "approval_progress": self.approval_progress(),
            "version": self.version,
        }

    def __repr__(self):
        return f"<IsnadForm {self.form_code} [{self.status}@{self.current_stage}]>"


class IsnadApproval(db.Model):
    """
    Append-only record of one action on one form.

    Rows are never updated or deleted; the mapper events below refuse both.
    ``duration_hours`` is the time the form had spent in ``stage`` when the
    action was taken.
    """

    __tablename__ = "isnad_approvals"
    __table_args__ = (
        db.Index("ix_isnad_approvals_form", "form_id", "created_at"),
    )

    id = db.Column(db.Integer, primary_key=True)
    form_id = db.Column(
        db.String(36), db.ForeignKey("isnad_forms.id", ondelete="CASCADE"),
        nullable=False,
    )
    stage = db.Column(db.String(40), nullable=False)
    action = db.Column(
        db.String(30), nullable=False,
        comment="submitted | approved | rejected | modification_requested | request_info | "
                "info_provided | cancelled | packaged",
    )
    actor = db.Column(db.String(150), nullable=False, default="system")
    actor_role = db.Column(db.String(50), nullable=True)
    comments = db.Column(db.Text, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)
    rejection_justification = db.Column(db.Text, nullable=True)
    duration_hours = db.Column(db.Float, nullable=True)
    sla_compliant = db.Column(db.Boolean, nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    form = db.relationship("IsnadForm", back_populates="approvals")

    def to_dict(self):
        return {
            "id": self.id,
            "form_id": self.form_id,
            "stage": self.stage,
            "action": self.action,
            "actor": self.actor,
            "actor_role": self.actor_role,
            "comments": self.comments,
            "rejection_reason": self.rejection_reason,
            "rejection_justification": self.rejection_justification,
            "duration_hours": self.duration_hours,
            "sla_compliant": self.sla_compliant,
            "created_at": _iso(self.created_at),
        }

    def __repr__(self):
        return f"<IsnadApproval {self.form_id} {self.stage}:{self.action}>"


class ImmutableApprovalError(RuntimeError):
    """Raised on any attempt to modify or delete an approval row."""


@_sa_event.listens_for(IsnadApproval, "before_update")
def _refuse_approval_update(mapper, connection, target):
    raise ImmutableApprovalError(f"IsnadApproval {target.id} is append-only")


@_sa_event.listens_for(IsnadApproval, "before_delete")
def _refuse_approval_delete(mapper, connection, target):
    raise ImmutableApprovalError(f"IsnadApproval {target.id} is append-only")
