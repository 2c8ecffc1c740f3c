from __future__ import annotations

from ..extensions import db
from pharmapos.time_utils import to_utc_z


class AppointmentPayment(db.Model):
    """
    Payment owed for a medical appointment, settled at the pharmacy till.

    WHY: Appointment fees collected in cash end up in the drawer, so they
    are attributed to the open cash session and counted at close.

    LIFECYCLE: PENDING -> PAID (only PENDING rows transition)
    """
    __tablename__ = "appointment_payments"
    __table_args__ = (
        db.UniqueConstraint("receipt_number", name="uq_appointment_payments_receipt"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    receipt_number = db.Column(db.String(64), nullable=False)
    appointment_id = db.Column(db.String(64), nullable=True)
    patient_name = db.Column(db.String(160), nullable=True)
    appointment_at = db.Column(db.DateTime(timezone=True), nullable=True)

    status = db.Column(db.String(16), nullable=False, default="PENDING", index=True)  # PENDING, PAID
    price_cents = db.Column(db.Integer, nullable=True)
    payment_method = db.Column(db.String(16), nullable=True)
    card_reference = db.Column(db.String(128), nullable=True)

    pharmacy_id = db.Column(db.Integer, db.ForeignKey("pharmacies.id"), nullable=True, index=True)
    cash_session_id = db.Column(db.Integer, db.ForeignKey("cash_sessions.id"), nullable=True, index=True)
    worker_id = db.Column(db.Integer, db.ForeignKey("workers.id"), nullable=True)
    paid_at = db.Column(db.DateTime(timezone=True), nullable=True)

    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "receipt_number": self.receipt_number,
            "appointment_id": self.appointment_id,
            "patient_name": self.patient_name,
            "appointment_at": to_utc_z(self.appointment_at) if self.appointment_at else None,
            "status": self.status,
            "price_cents": self.price_cents,
            "payment_method": self.payment_method,
            "card_reference": self.card_reference,
            "pharmacy_id": self.pharmacy_id,
            "cash_session_id": self.cash_session_id,
            "worker_id": self.worker_id,
            "paid_at": to_utc_z(self.paid_at) if self.paid_at else None,
            "created_at": to_utc_z(self.created_at),
        }
