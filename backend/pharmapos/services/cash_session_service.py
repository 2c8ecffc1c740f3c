"""
Cash Session Service

WHY: Track till accountability per pharmacy. One worker opens the till
with a float, sales and appointment payments accrue to it, and closing
compares counted cash with what the drawer should hold.

DESIGN PRINCIPLES:
- One OPEN session per pharmacy, enforced by a partial unique index
- Sessions are immutable once closed
- The summary is recomputed from committed rows on every request
- Close is a conditional update: it only succeeds while still OPEN
"""

from __future__ import annotations

import logging

from sqlalchemy.exc import IntegrityError

from ..extensions import db
from ..models import AppointmentPayment, CashSession, Order, Pharmacy, Worker
from pharmapos.time_utils import utcnow
from .concurrency import lock_for_update, run_with_retry

logger = logging.getLogger(__name__)

STATUS_OPEN = "OPEN"
STATUS_CLOSED = "CLOSED"


class CashSessionError(Exception):
    """Raised for cash session errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class SessionAlreadyOpenError(CashSessionError):
    """Another session is already open for the pharmacy (details name the holder)."""


class SessionNotFoundError(CashSessionError):
    pass


def _holder_details(session: CashSession) -> dict:
    return {
        "session_id": session.id,
        "worker_id": session.worker_id,
        "worker_name": session.worker.name if session.worker else None,
        "opened_at": session.to_dict()["opened_at"],
    }


def get_open_session(pharmacy_id: int) -> CashSession | None:
    """Get the currently open session for a pharmacy, if any."""
    return db.session.query(CashSession).filter_by(
        pharmacy_id=pharmacy_id,
        status=STATUS_OPEN,
    ).first()


def get_session(session_id: int) -> CashSession:
    session = db.session.get(CashSession, session_id)
    if not session:
        raise SessionNotFoundError("Cash session not found", details={"session_id": session_id})
    return session


def open_session(pharmacy_id: int, worker_id: int, opening_float_cents: int) -> CashSession:
    """
    Open a till for a pharmacy.

    Args:
        pharmacy_id: Pharmacy the till belongs to
        worker_id: Worker accountable for the drawer
        opening_float_cents: Starting cash in drawer (in cents)

    Raises:
        CashSessionError: negative float, unknown pharmacy/worker
        SessionAlreadyOpenError: another session is open (details name the holder)
    """
    if opening_float_cents < 0:
        raise CashSessionError("Opening float cannot be negative")

    if not db.session.get(Pharmacy, pharmacy_id):
        raise CashSessionError("Pharmacy not found", details={"pharmacy_id": pharmacy_id})

    worker = db.session.get(Worker, worker_id)
    if not worker or worker.pharmacy_id != pharmacy_id:
        raise CashSessionError("Worker not found in this pharmacy", details={"worker_id": worker_id})
    if not worker.is_active:
        raise CashSessionError("Worker is inactive", details={"worker_id": worker_id})

    existing = get_open_session(pharmacy_id)
    if existing:
        raise SessionAlreadyOpenError(
            "A cash session is already open for this pharmacy",
            details=_holder_details(existing),
        )

    session = CashSession(
        pharmacy_id=pharmacy_id,
        worker_id=worker_id,
        status=STATUS_OPEN,
        opening_float_cents=opening_float_cents,
        opened_at=utcnow(),
    )
    db.session.add(session)

    try:
        db.session.commit()
    except IntegrityError:
        # Another device won the race between the check and the insert
        db.session.rollback()
        holder = get_open_session(pharmacy_id)
        details = _holder_details(holder) if holder else {}
        raise SessionAlreadyOpenError(
            "A cash session is already open for this pharmacy",
            details=details,
        )

    logger.info(
        "Cash session %s opened for pharmacy %s by worker %s (float %s)",
        session.id, pharmacy_id, worker_id, opening_float_cents,
    )
    return session


def compute_summary(session_id: int) -> dict:
    """
    Aggregate committed orders and appointment payments for a session.

    QR orders count only once the provider confirmed the funds. Pending QR
    orders are reported separately and never enter any total.
    """
    session = get_session(session_id)

    def _order_sum(*criteria) -> int:
        value = (
            db.session.query(db.func.coalesce(db.func.sum(Order.total_cents), 0))
            .filter(Order.cash_session_id == session_id, *criteria)
            .scalar()
        )
        return int(value or 0)

    def _appointment_sum(*criteria) -> int:
        value = (
            db.session.query(db.func.coalesce(db.func.sum(AppointmentPayment.price_cents), 0))
            .filter(
                AppointmentPayment.cash_session_id == session_id,
                AppointmentPayment.status == "PAID",
                *criteria,
            )
            .scalar()
        )
        return int(value or 0)

    cash_sales = _order_sum(Order.payment_method == "cash")
    card_sales = _order_sum(Order.payment_method == "card")
    qr_sales = _order_sum(Order.payment_method == "qr", Order.settlement_status == "CONFIRMED")
    qr_pending = _order_sum(Order.payment_method == "qr", Order.settlement_status == "PENDING")
    cash_appointments = _appointment_sum(AppointmentPayment.payment_method == "cash")
    other_appointments = _appointment_sum(AppointmentPayment.payment_method != "cash")

    order_count = (
        db.session.query(db.func.count(Order.id))
        .filter(Order.cash_session_id == session_id, Order.settlement_status != "REJECTED")
        .scalar()
    )

    return {
        "session_id": session.id,
        "status": session.status,
        "opening_float_cents": session.opening_float_cents,
        "cash_sales_cents": cash_sales,
        "card_sales_cents": card_sales,
        "qr_sales_cents": qr_sales,
        "qr_pending_cents": qr_pending,
        "cash_appointment_payments_cents": cash_appointments,
        "other_appointment_payments_cents": other_appointments,
        "expected_cash_cents": session.opening_float_cents + cash_sales + cash_appointments,
        "order_count": int(order_count or 0),
    }


def close_session(session_id: int, counted_cash_cents: int, notes: str | None = None) -> CashSession:
    """
    Close a till and record the cash variance.

    WHY: Closing compares expected vs counted cash to detect discrepancies.

    IMMUTABLE: Once closed, a session cannot be reopened or modified.

    The expected total is recomputed here (never taken from the caller),
    and the status transition is guarded so a concurrent close cannot be
    persisted twice. On any failure the session stays OPEN.
    """
    if counted_cash_cents < 0:
        raise CashSessionError("Counted cash cannot be negative")

    def _op():
        session = lock_for_update(db.session.query(CashSession).filter_by(id=session_id)).first()
        if not session:
            db.session.rollback()
            raise SessionNotFoundError("Cash session not found", details={"session_id": session_id})
        if session.status != STATUS_OPEN:
            db.session.rollback()
            raise CashSessionError("Cash session already closed", details={"session_id": session_id})

        summary = compute_summary(session_id)
        expected = summary["expected_cash_cents"]
        variance = counted_cash_cents - expected

        updated = (
            db.session.query(CashSession)
            .filter(CashSession.id == session_id, CashSession.status == STATUS_OPEN)
            .update(
                {
                    CashSession.status: STATUS_CLOSED,
                    CashSession.closed_at: utcnow(),
                    CashSession.calculated_closing_cents: expected,
                    CashSession.counted_closing_cents: counted_cash_cents,
                    CashSession.variance_cents: variance,
                    CashSession.closing_notes: notes,
                    CashSession.version_id: CashSession.version_id + 1,
                },
                synchronize_session=False,
            )
        )
        if updated != 1:
            db.session.rollback()
            raise CashSessionError("Cash session already closed", details={"session_id": session_id})

        db.session.commit()
        db.session.refresh(session)
        return session

    session = run_with_retry(_op, label="cash session close")
    logger.info(
        "Cash session %s closed: expected %s counted %s variance %s",
        session.id, session.calculated_closing_cents, session.counted_closing_cents, session.variance_cents,
    )
    return session


def list_sessions(pharmacy_id: int | None = None, status: str | None = None, limit: int = 20) -> list[CashSession]:
    query = db.session.query(CashSession)
    if pharmacy_id is not None:
        query = query.filter(CashSession.pharmacy_id == pharmacy_id)
    if status:
        query = query.filter(CashSession.status == status.upper())
    return query.order_by(CashSession.opened_at.desc(), CashSession.id.desc()).limit(limit).all()
