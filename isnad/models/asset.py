"""
Asset reference model.

Only the columns the ISNAD engine reads or flips live here.  Registration
fields (ownership documents, photos, ...) belong to the asset registry and
are out of scope for the engine.
"""

import uuid
from datetime import datetime, timezone

from isnad.models import db


def _uuid():
    return str(uuid.uuid4())


def _utcnow():
    return datetime.now(timezone.utc)


ASSET_STATUSES = frozenset({"draft", "in_review", "completed", "rejected"})


class Asset(db.Model):
    """Real-estate asset that may be assessed through an ISNAD form."""

    __tablename__ = "assets"

    id = db.Column(db.String(36), primary_key=True, default=_uuid)
    asset_code = db.Column(db.String(30), nullable=False, unique=True)
    name = db.Column(db.String(255), nullable=False)
    region = db.Column(db.String(100), nullable=True, index=True)
    city = db.Column(db.String(100), nullable=True)
    status = db.Column(
        db.String(20), nullable=False, default="completed",
        comment="draft | in_review | completed | rejected (registration status)",
    )
    has_active_isnad = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="True while a non-terminal ISNAD form exists for this asset",
    )
    visible_to_investors = db.Column(
        db.Boolean, nullable=False, default=False,
        comment="Set when a minister-approved package includes the asset",
    )
    investable_at = db.Column(db.DateTime(timezone=True), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=_utcnow)
    updated_at = db.Column(
        db.DateTime(timezone=True), nullable=False, default=_utcnow, onupdate=_utcnow,
    )

    def to_summary(self):
        return {
            "id": self.id,
            "asset_code": self.asset_code,
            "name": self.name,
            "region": self.region,
            "city": self.city,
        }

    def __repr__(self):
        return f"<Asset {self.asset_code}: {self.name}>"
