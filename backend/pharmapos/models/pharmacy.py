from __future__ import annotations

from ..extensions import db
from pharmapos.time_utils import to_utc_z


class Pharmacy(db.Model):
    """
    A pharmacy running one or more POS terminals.

    WHY: Cash sessions, stock and orders are all scoped to a pharmacy.
    Only one till may be open per pharmacy at any time.
    """
    __tablename__ = "pharmacies"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    name = db.Column(db.String(160), nullable=False)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def __repr__(self) -> str:
        return f"<Pharmacy id={self.id} name={self.name!r}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "name": self.name,
            "created_at": to_utc_z(self.created_at),
        }


class Worker(db.Model):
    """Pharmacy staff member accountable for a till while it is open."""
    __tablename__ = "workers"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    pharmacy_id = db.Column(db.Integer, db.ForeignKey("pharmacies.id"), nullable=False, index=True)
    name = db.Column(db.String(160), nullable=False)
    is_active = db.Column(db.Boolean, nullable=False, default=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    pharmacy = db.relationship("Pharmacy", backref=db.backref("workers", lazy=True))

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pharmacy_id": self.pharmacy_id,
            "name": self.name,
            "is_active": self.is_active,
        }
