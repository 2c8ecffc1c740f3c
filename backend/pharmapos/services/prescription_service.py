"""
Prescription Store

WHY: The till offers a patient's pending prescriptions so prescribed items
can be loaded into the cart, and a committed sale records how far each
prescription was dispensed.

RULES:
- Only prescriptions from the lookback window are offered
- Fully dispensed prescriptions are never offered again
- A sale's dispensation update is reversible (QR payments can be rejected)
"""

from __future__ import annotations

from datetime import date

from ..extensions import db
from ..models import Prescription
from ..dispensation import DISPENSED, INCOMPLETE, compute_status, required_quantity
from pharmapos.time_utils import lookback_start, utcnow
from .concurrency import lock_for_update


class PrescriptionError(Exception):
    """Raised for prescription lookup and dispensation errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


def fetch_prescriptions(
    patient_id: str,
    *,
    lookback_days: int = 60,
    reference: date | None = None,
) -> list[Prescription]:
    """
    Pending prescriptions for a patient, newest consultation first.

    Excludes fully dispensed prescriptions and prescriptions with no items
    (unless a previous sale already left them incomplete).
    """
    since = lookback_start(lookback_days, reference=reference)
    rows = (
        db.session.query(Prescription)
        .filter(Prescription.patient_id == patient_id)
        .filter(Prescription.consultation_date >= since)
        .order_by(Prescription.consultation_date.desc(), Prescription.id.desc())
        .all()
    )

    return [
        p for p in rows
        if p.dispensation_status != DISPENSED
        and (p.items or p.dispensation_status == INCOMPLETE)
    ]


def get_prescription(prescription_id: int) -> Prescription:
    prescription = db.session.get(Prescription, prescription_id)
    if not prescription:
        raise PrescriptionError("Prescription not found", details={"prescription_id": prescription_id})
    return prescription


def apply_dispensation(prescription_id: int, patient_id: str | None, dispensed: dict[str, int]) -> dict:
    """
    Record the units a sale linked to a prescription and update its status.

    Caller owns the transaction (no commit here).

    Args:
        prescription_id: Prescription the sale's lines were linked to
        patient_id: Patient on the sale; must own the prescription
        dispensed: units per prescribed item name

    Returns:
        Detail entry stored on the order, including the previous status so
        the update can be reverted.
    """
    prescription = lock_for_update(
        db.session.query(Prescription).filter_by(id=prescription_id)
    ).first()
    if not prescription:
        raise PrescriptionError("Prescription not found", details={"prescription_id": prescription_id})

    if patient_id is None or prescription.patient_id != patient_id:
        raise PrescriptionError(
            "Prescription does not belong to this patient",
            details={"prescription_id": prescription_id},
        )

    items = list(prescription.items or [])
    prescribed_names = {item.get("name") for item in items}
    unknown = sorted(name for name in dispensed if name not in prescribed_names)
    if unknown:
        raise PrescriptionError(
            "Lines reference items that are not on the prescription",
            details={"prescription_id": prescription_id, "items": unknown},
        )

    status = compute_status(items, dispensed)
    previous_status = prescription.dispensation_status

    prescription.dispensation_status = status
    if status == DISPENSED:
        prescription.dispensed_at = utcnow()

    return {
        "prescription_id": prescription.id,
        "status": status,
        "previous_status": previous_status,
        "items": [
            {
                "name": item.get("name"),
                "quantity_prescribed": required_quantity(item.get("quantity_to_dispense")),
                "quantity_dispensed": dispensed.get(item.get("name"), 0),
            }
            for item in items
        ],
    }


def revert_dispensation(entries: list[dict] | None) -> None:
    """Restore each prescription to the status it had before the sale."""
    for entry in entries or []:
        prescription = lock_for_update(
            db.session.query(Prescription).filter_by(id=entry["prescription_id"])
        ).first()
        if not prescription:
            continue
        prescription.dispensation_status = entry.get("previous_status")
        if prescription.dispensation_status != DISPENSED:
            prescription.dispensed_at = None
