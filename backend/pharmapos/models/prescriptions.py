from __future__ import annotations

from ..extensions import db
from pharmapos.time_utils import to_utc_z
from pharmapos.dispensation import DISPENSED, INCOMPLETE, NOT_DISPENSED, DISPENSATION_STATUSES  # noqa: F401


class Prescription(db.Model):
    """
    Medication order written for a patient.

    Prescribed items are stored as a JSON list, each entry:
    {name, active_ingredient, dose, route, frequency, duration,
     quantity_to_dispense, unit}

    dispensation_status is NULL until a sale touches the prescription.
    """
    __tablename__ = "prescriptions"
    __table_args__ = (
        db.Index("ix_prescriptions_patient_date", "patient_id", "consultation_date"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    patient_id = db.Column(db.String(64), nullable=False)
    consultation_date = db.Column(db.Date, nullable=False)
    issued_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    diagnosis = db.Column(db.Text, nullable=True)
    items = db.Column(db.JSON, nullable=False, default=list)

    dispensation_status = db.Column(db.String(16), nullable=True, index=True)
    dispensed_at = db.Column(db.DateTime(timezone=True), nullable=True)

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "patient_id": self.patient_id,
            "consultation_date": self.consultation_date.isoformat() if self.consultation_date else None,
            "issued_at": to_utc_z(self.issued_at),
            "diagnosis": self.diagnosis,
            "items": list(self.items or []),
            "dispensation_status": self.dispensation_status,
            "dispensed_at": to_utc_z(self.dispensed_at) if self.dispensed_at else None,
        }
