"""
Appointment payments collected at the till.

WHY: Patients pay for medical appointments at the pharmacy counter. Cash
collected this way sits in the drawer, so each payment is attributed to
the open cash session and counted when the till closes.

Only PENDING payments transition to PAID, and the transition is a
conditional update so two tills cannot both collect the same receipt.
"""

from __future__ import annotations

import logging

from ..extensions import db
from ..models import AppointmentPayment, CashSession
from pharmapos.time_utils import utcnow

logger = logging.getLogger(__name__)

APPOINTMENT_METHODS = ("cash", "card")


class AppointmentPaymentError(Exception):
    """Raised for appointment payment errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class AppointmentPaymentNotFound(AppointmentPaymentError):
    pass


def find_by_receipt(receipt_number: str) -> AppointmentPayment:
    receipt = (receipt_number or "").strip()
    if not receipt:
        raise AppointmentPaymentError("Receipt number required")
    payment = db.session.query(AppointmentPayment).filter_by(receipt_number=receipt).first()
    if not payment:
        raise AppointmentPaymentNotFound("Receipt not found", details={"receipt_number": receipt})
    return payment


def confirm_payment(
    receipt_number: str,
    *,
    price_cents: int,
    payment_method: str,
    cash_session_id: int,
    worker_id: int,
    card_reference: str | None = None,
) -> AppointmentPayment:
    """
    Mark a pending appointment payment as paid at this till.

    Raises:
        AppointmentPaymentError: already paid, bad price/method, missing card
            reference, or no open session
    """
    if price_cents <= 0:
        raise AppointmentPaymentError("Price must be greater than zero")
    if payment_method not in APPOINTMENT_METHODS:
        raise AppointmentPaymentError(f"payment_method must be one of {', '.join(APPOINTMENT_METHODS)}")
    if payment_method == "card" and not (card_reference or "").strip():
        raise AppointmentPaymentError("card_reference required for card payments")

    payment = find_by_receipt(receipt_number)
    if payment.status != "PENDING":
        raise AppointmentPaymentError(
            "Appointment payment is not pending",
            details={"receipt_number": payment.receipt_number, "status": payment.status},
        )

    session = db.session.get(CashSession, cash_session_id)
    if not session or session.status != "OPEN":
        raise AppointmentPaymentError(
            "An open cash session is required",
            details={"cash_session_id": cash_session_id},
        )

    updated = (
        db.session.query(AppointmentPayment)
        .filter(AppointmentPayment.id == payment.id, AppointmentPayment.status == "PENDING")
        .update(
            {
                AppointmentPayment.status: "PAID",
                AppointmentPayment.price_cents: price_cents,
                AppointmentPayment.payment_method: payment_method,
                AppointmentPayment.card_reference: card_reference.strip() if payment_method == "card" else None,
                AppointmentPayment.paid_at: utcnow(),
                AppointmentPayment.pharmacy_id: session.pharmacy_id,
                AppointmentPayment.cash_session_id: session.id,
                AppointmentPayment.worker_id: worker_id,
            },
            synchronize_session=False,
        )
    )
    if updated != 1:
        db.session.rollback()
        raise AppointmentPaymentError(
            "Appointment payment is not pending",
            details={"receipt_number": payment.receipt_number},
        )

    db.session.commit()
    db.session.refresh(payment)

    logger.info(
        "Appointment payment %s collected: %s %s cents, session %s",
        payment.receipt_number, payment_method, price_cents, session.id,
    )
    return payment
