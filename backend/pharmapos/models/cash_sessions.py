from __future__ import annotations

from ..extensions import db
from pharmapos.time_utils import to_utc_z


class CashSession(db.Model):
    """
    Till (cash drawer) accountability period.

    WHY: One worker is accountable for the drawer's cash between opening
    and closing. Closing records expected vs counted cash and the variance.

    LIFECYCLE:
    - OPEN: Sales and appointment payments may be attributed to it
    - CLOSED: Counted, variance recorded

    IMMUTABLE: Once closed, a session cannot be reopened or modified.

    UNIQUENESS: At most one OPEN session per pharmacy, enforced by the
    partial unique index below so that devices racing to open a till
    for the same pharmacy cannot both succeed.
    """
    __tablename__ = "cash_sessions"
    __table_args__ = (
        db.Index(
            "uq_cash_sessions_open_per_pharmacy",
            "pharmacy_id",
            unique=True,
            sqlite_where=db.text("status = 'OPEN'"),
            postgresql_where=db.text("status = 'OPEN'"),
        ),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    pharmacy_id = db.Column(db.Integer, db.ForeignKey("pharmacies.id"), nullable=False, index=True)
    worker_id = db.Column(db.Integer, db.ForeignKey("workers.id"), nullable=False, index=True)

    # Session status
    status = db.Column(db.String(16), nullable=False, default="OPEN", index=True)  # OPEN, CLOSED

    # Cash tracking (all amounts in cents)
    opening_float_cents = db.Column(db.Integer, nullable=False, default=0)
    calculated_closing_cents = db.Column(db.Integer, nullable=True)  # opening + cash sales + cash appointments
    counted_closing_cents = db.Column(db.Integer, nullable=True)  # what the worker counted
    variance_cents = db.Column(db.Integer, nullable=True)  # counted - calculated

    # Timestamps
    opened_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now(), index=True)
    closed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    closing_notes = db.Column(db.Text, nullable=True)
    version_id = db.Column(db.Integer, nullable=False, default=1)

    pharmacy = db.relationship("Pharmacy", backref=db.backref("cash_sessions", lazy=True))
    worker = db.relationship("Worker", backref=db.backref("cash_sessions", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<CashSession id={self.id} pharmacy_id={self.pharmacy_id} status={self.status}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pharmacy_id": self.pharmacy_id,
            "worker_id": self.worker_id,
            "worker_name": self.worker.name if self.worker else None,
            "status": self.status,
            "opening_float_cents": self.opening_float_cents,
            "calculated_closing_cents": self.calculated_closing_cents,
            "counted_closing_cents": self.counted_closing_cents,
            "variance_cents": self.variance_cents,
            "opened_at": to_utc_z(self.opened_at),
            "closed_at": to_utc_z(self.closed_at) if self.closed_at else None,
            "closing_notes": self.closing_notes,
            "version_id": self.version_id,
        }
