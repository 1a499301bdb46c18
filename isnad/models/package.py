"""
ISNAD package models.

Models:
    - IsnadPackage: a fixed bundle of verified forms going through the
      CEO → Minister approval chain.
    - PackageForm: one membership row per bundled form, written once at
      package creation together with the valuation snapshot.
"""

import uuid
from datetime import datetime, timezone

from isnad.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


def _iso(value):
    return value.isoformat() if value else None


# ── Constants ────────────────────────────────────────────────────────────────

PACKAGE_STATUSES = frozenset({
    "draft",
    "pending_ceo",
    "ceo_approved",
    "pending_minister",
    "minister_approved",
    "rejected_ceo",
    "rejected_minister",
})

TERMINAL_PACKAGE_STATUSES = frozenset({"minister_approved", "rejected_ceo", "rejected_minister"})
REJECTED_PACKAGE_STATUSES = frozenset({"rejected_ceo", "rejected_minister"})

PACKAGE_PRIORITIES = ("low", "medium", "high")

PACKAGE_TRANSITIONS = {
    "submit_to_ceo": {"from": ["draft"], "to": "pending_ceo"},
    "ceo_approve": {"from": ["pending_ceo"], "to": "ceo_approved"},
    "ceo_reject": {"from": ["pending_ceo"], "to": "rejected_ceo"},
    "minister_approve": {"from": ["ceo_approved", "pending_minister"], "to": "minister_approved"},
    "minister_reject": {"from": ["ceo_approved", "pending_minister"], "to": "rejected_minister"},
}


class IsnadPackage(db.Model):
    """
    Investment package.

    ``total_assets``, ``total_valuation`` and ``expected_revenue`` are
    snapshots taken at creation and never recomputed.  Membership
    (``members``) is frozen once the package exists.
    """

    __tablename__ = "isnad_packages"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    package_code = db.Column(
        db.String(20), nullable=False, unique=True,
        comment="PKG-{year}-{seq:03d}",
    )
    package_name = db.Column(db.String(255), nullable=False)
    description = db.Column(db.Text, nullable=True)
    investment_strategy = db.Column(db.Text, nullable=True)
    priority = db.Column(db.String(10), nullable=False, default="medium")
    duration_years = db.Column(db.Integer, nullable=False, default=0)
    duration_months = db.Column(db.Integer, nullable=False, default=0)
    status = db.Column(db.String(30), nullable=False, default="draft", index=True)

    total_assets = db.Column(db.Integer, nullable=False, default=0)
    total_valuation = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    expected_revenue = db.Column(db.Numeric(18, 2), nullable=False, default=0)

    ceo_decided_by = db.Column(db.String(150), nullable=True)
    ceo_decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    ceo_comments = db.Column(db.Text, nullable=True)
    minister_decided_by = db.Column(db.String(150), nullable=True)
    minister_decided_at = db.Column(db.DateTime(timezone=True), nullable=True)
    minister_comments = db.Column(db.Text, nullable=True)
    rejection_reason = db.Column(db.Text, nullable=True)

    created_by = db.Column(db.String(150), nullable=False, default="system")
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )
    submitted_at = db.Column(db.DateTime(timezone=True), nullable=True)
    completed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    version = db.Column(db.Integer, nullable=False)

    __mapper_args__ = {"version_id_col": version}

    members = db.relationship(
        "PackageForm",
        back_populates="package",
        order_by="PackageForm.position",
        cascade="all, delete-orphan",
    )

    @property
    def form_ids(self) -> list[str]:
        return [m.form_id for m in self.members]

    @property
    def is_terminal(self) -> bool:
        return self.status in TERMINAL_PACKAGE_STATUSES

    def to_dict(self, include_members: bool = True):
        result = {
            "id": self.id,
            "package_code": self.package_code,
            "package_name": self.package_name,
            "description": self.description,
            "investment_strategy": self.investment_strategy,
            "priority": self.priority,
            "duration_years": self.duration_years,
            "duration_months": self.duration_months,
            "status": self.status,
            "total_assets": self.total_assets,
            "total_valuation": float(self.total_valuation or 0),
            "expected_revenue": float(self.expected_revenue or 0),
            "ceo_decided_by": self.ceo_decided_by,
            "ceo_decided_at": _iso(self.ceo_decided_at),
            "ceo_comments": self.ceo_comments,
            "minister_decided_by": self.minister_decided_by,
            "minister_decided_at": _iso(self.minister_decided_at),
            "minister_comments": self.minister_comments,
            "rejection_reason": self.rejection_reason,
            "created_by": self.created_by,
            "created_at": _iso(self.created_at),
            "updated_at": _iso(self.updated_at),
            "submitted_at": _iso(self.submitted_at),
            "completed_at": _iso(self.completed_at),
            "form_ids": self.form_ids,
            "version": self.version,
        }
        if include_members:
            result["members"] = [m.to_dict() for m in self.members]
        return result

    def __repr__(self):
        return f"<IsnadPackage {self.package_code} [{self.status}]>"


class PackageForm(db.Model):
    """Membership of one form in one package, with its valuation at bundling time."""

    __tablename__ = "isnad_package_forms"
    __table_args__ = (
        db.UniqueConstraint("package_id", "form_id", name="uq_package_form"),
    )

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    package_id = db.Column(
        db.String(36), db.ForeignKey("isnad_packages.id", ondelete="CASCADE"),
        nullable=False, index=True,
    )
    form_id = db.Column(
        db.String(36), db.ForeignKey("isnad_forms.id", ondelete="RESTRICT"),
        nullable=False, index=True,
    )
    asset_id = db.Column(
        db.String(36), db.ForeignKey("assets.id", ondelete="RESTRICT"),
        nullable=False,
    )
    position = db.Column(db.Integer, nullable=False, default=0)
    valuation_snapshot = db.Column(db.Numeric(18, 2), nullable=False, default=0)
    added_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)

    package = db.relationship("IsnadPackage", back_populates="members")

    def to_dict(self):
        return {
            "form_id": self.form_id,
            "asset_id": self.asset_id,
            "position": self.position,
            "valuation_snapshot": float(self.valuation_snapshot or 0),
            "added_at": _iso(self.added_at),
        }

    def __repr__(self):
        return f"<PackageForm {self.package_id}:{self.form_id}>"
