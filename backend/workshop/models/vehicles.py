from __future__ import annotations

from ..extensions import db
from ..time_utils import to_utc_z, utcnow


class Vehicle(db.Model):
    """Customer vehicle. Job cards copy its facts at intake and never read it again."""
    __tablename__ = "vehicles"
    __table_args__ = (
        db.Index("ix_vehicles_owner_active", "owner_user_id", "is_active"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    owner_user_id = db.Column(db.Integer, db.ForeignKey("users.id"), nullable=False, index=True)
    vehicle_number = db.Column(db.String(20), nullable=False, unique=True)
    brand = db.Column(db.String(64), nullable=True)
    model = db.Column(db.String(64), nullable=True)
    year = db.Column(db.Integer, nullable=True)
    color = db.Column(db.String(32), nullable=True)
    is_active = db.Column(db.Boolean, nullable=False, default=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, default=utcnow)

    owner = db.relationship("User", backref=db.backref("vehicles", lazy=True))

    def snapshot(self) -> dict:
        return {
            "vehicle_number": self.vehicle_number,
            "brand": self.brand,
            "model": self.model,
            "year": self.year,
            "color": self.color,
        }

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "owner_user_id": self.owner_user_id,
            **self.snapshot(),
            "is_active": self.is_active,
            "created_at": to_utc_z(self.created_at),
        }
