from __future__ import annotations

from ..extensions import db
from ..time_utils import utcnow


class DocumentSequence(db.Model):
    """
    Atomic per-scope, per-day document counters.

    Backs job, payment and stock transaction numbers (day = YYYYMMDD) and
    generated SKUs (day = "" for counters that never reset).
    """
    __tablename__ = "document_sequences"
    __table_args__ = (
        db.UniqueConstraint("scope", "day", name="uq_document_sequences_scope_day"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    scope = db.Column(db.String(32), nullable=False)
    day = db.Column(db.String(8), nullable=False, default="")
    next_number = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow, onupdate=utcnow)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "scope": self.scope,
            "day": self.day,
            "next_number": self.next_number,
        }
