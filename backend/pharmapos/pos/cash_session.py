"""
Cash Session Manager

WHY: Every sale is attributed to the till that is open on this terminal.
The manager opens, restores and closes that till and hands out the one
SessionHandle the cart, the payment flow and the order gateway share.

STATES: no session -> OPEN -> CLOSED (terminal; a new open must follow)

- Uniqueness is enforced by the store; a conflict names the holder
- The summary is pulled from the store every time, never cached
- A failed close leaves the session open
"""

from __future__ import annotations

import json
import logging
import os
import time
from dataclasses import dataclass

from .errors import CommitFailure, SessionError, ValidationError

logger = logging.getLogger(__name__)

STATUS_OPEN = "OPEN"
STATUS_CLOSED = "CLOSED"

RESUMED = "RESUMED"
CONFLICT = "CONFLICT"
NEEDS_OPEN = "NEEDS_OPEN"


@dataclass
class CashSessionRecord:
    id: int
    pharmacy_id: int
    worker_id: int
    status: str
    opening_float_cents: int
    worker_name: str | None = None
    opened_at: str | None = None
    closed_at: str | None = None
    calculated_closing_cents: int | None = None
    counted_closing_cents: int | None = None
    variance_cents: int | None = None
    closing_notes: str | None = None

    @property
    def is_open(self) -> bool:
        return self.status == STATUS_OPEN

    @classmethod
    def from_dict(cls, data: dict) -> "CashSessionRecord":
        return cls(
            id=data["id"],
            pharmacy_id=data["pharmacy_id"],
            worker_id=data["worker_id"],
            status=data["status"],
            opening_float_cents=data["opening_float_cents"],
            worker_name=data.get("worker_name"),
            opened_at=data.get("opened_at"),
            closed_at=data.get("closed_at"),
            calculated_closing_cents=data.get("calculated_closing_cents"),
            counted_closing_cents=data.get("counted_closing_cents"),
            variance_cents=data.get("variance_cents"),
            closing_notes=data.get("closing_notes"),
        )


@dataclass(frozen=True)
class CashSessionSummary:
    session_id: int
    opening_float_cents: int
    cash_sales_cents: int
    card_sales_cents: int
    qr_sales_cents: int
    cash_appointment_payments_cents: int
    other_appointment_payments_cents: int
    qr_pending_cents: int = 0

    @property
    def expected_cash_cents(self) -> int:
        return self.opening_float_cents + self.cash_sales_cents + self.cash_appointment_payments_cents

    def variance_for(self, counted_cash_cents: int) -> int:
        return counted_cash_cents - self.expected_cash_cents

    @classmethod
    def from_dict(cls, data: dict) -> "CashSessionSummary":
        return cls(
            session_id=data["session_id"],
            opening_float_cents=data["opening_float_cents"],
            cash_sales_cents=data["cash_sales_cents"],
            card_sales_cents=data["card_sales_cents"],
            qr_sales_cents=data["qr_sales_cents"],
            cash_appointment_payments_cents=data["cash_appointment_payments_cents"],
            other_appointment_payments_cents=data["other_appointment_payments_cents"],
            qr_pending_cents=data.get("qr_pending_cents", 0),
        )


class SessionHandle:
    """
    The terminal's current cash session.

    One instance is shared by the cart, the payment orchestrator and the
    order gateway so they all observe the same session per checkout.
    """

    def __init__(self, pharmacy_id: int, worker_id: int):
        self.pharmacy_id = pharmacy_id
        self.worker_id = worker_id
        self.session: CashSessionRecord | None = None
        self.invalid_reason: str | None = None

    @property
    def is_open(self) -> bool:
        return self.session is not None and self.session.is_open

    @property
    def session_id(self) -> int | None:
        return self.session.id if self.session else None

    def attach(self, session: CashSessionRecord) -> None:
        self.session = session
        self.invalid_reason = None

    def detach(self) -> None:
        self.session = None

    def invalidate(self, reason: str) -> None:
        """Drop a session the store no longer accepts."""
        logger.warning("Cash session %s invalidated: %s", self.session_id, reason)
        self.session = None
        self.invalid_reason = reason

    def require_open(self) -> CashSessionRecord:
        if not self.is_open:
            raise SessionError(self.invalid_reason or "No open cash session")
        return self.session


class SessionMemory:
    """Remembers the session this terminal opened, across restarts (JSON file)."""

    def __init__(self, path: str):
        self.path = path

    def load(self) -> dict | None:
        try:
            with open(self.path, "r", encoding="utf-8") as fh:
                data = json.load(fh)
        except FileNotFoundError:
            return None
        except (OSError, ValueError):
            logger.warning("Unreadable terminal state at %s, ignoring it", self.path)
            return None
        if not isinstance(data, dict) or not isinstance(data.get("session_id"), int):
            return None
        return data

    def remember(self, session_id: int, pharmacy_id: int) -> None:
        directory = os.path.dirname(self.path)
        if directory:
            os.makedirs(directory, exist_ok=True)
        with open(self.path, "w", encoding="utf-8") as fh:
            json.dump({"session_id": session_id, "pharmacy_id": pharmacy_id}, fh)

    def forget(self) -> None:
        try:
            os.remove(self.path)
        except FileNotFoundError:
            pass


@dataclass
class RestoreResult:
    status: str  # RESUMED, CONFLICT, NEEDS_OPEN
    session: CashSessionRecord | None = None
    holder: CashSessionRecord | None = None
    message: str | None = None


@dataclass
class CloseResult:
    session: CashSessionRecord
    summary: CashSessionSummary | None
    expected_cash_cents: int
    variance_cents: int


class CashSessionManager:
    """
    store: open_session / get_session / get_open_session / session_summary /
           close_session (see backends.py)
    handle: the terminal's SessionHandle
    memory: optional SessionMemory for restore_session()
    """

    def __init__(
        self,
        store,
        handle: SessionHandle,
        memory: SessionMemory | None = None,
        *,
        lookup_attempts: int = 3,
        lookup_backoff: float = 0.2,
        sleep=time.sleep,
    ):
        self.store = store
        self.handle = handle
        self.memory = memory
        self.lookup_attempts = max(1, lookup_attempts)
        self.lookup_backoff = lookup_backoff
        self._sleep = sleep

    def open_session(self, opening_float_cents: int) -> CashSessionRecord:
        """
        Raises:
            ValidationError: negative or non-integer float
            SessionError: this terminal already holds an open session
            SessionConflict: another session is open for the pharmacy
        """
        if isinstance(opening_float_cents, bool) or not isinstance(opening_float_cents, int):
            raise ValidationError("Opening float must be an amount in cents")
        if opening_float_cents < 0:
            raise ValidationError("Opening float cannot be negative")
        if self.handle.is_open:
            raise SessionError(
                "This terminal already has an open cash session",
                details={"session_id": self.handle.session_id},
            )

        session = self.store.open_session(self.handle.pharmacy_id, self.handle.worker_id, opening_float_cents)
        self.handle.attach(session)
        if self.memory is not None:
            self.memory.remember(session.id, session.pharmacy_id)
        logger.info("Cash session %s opened with float %s", session.id, opening_float_cents)
        return session

    def _lookup_with_retry(self, session_id: int) -> CashSessionRecord | None:
        """
        A session opened moments ago (possibly on another device) may not be
        visible yet; retry a bounded number of times before giving up.
        """
        for attempt in range(self.lookup_attempts):
            session = self.store.get_session(session_id)
            if session is not None:
                return session
            if attempt < self.lookup_attempts - 1:
                self._sleep(self.lookup_backoff * (2 ** attempt))
        logger.warning(
            "Remembered cash session %s not found after %s attempts",
            session_id, self.lookup_attempts,
        )
        return None

    def restore_session(self) -> RestoreResult:
        """
        Resume the remembered session if it is still open; otherwise report
        another device's open session, or ask for a new one.
        """
        remembered = self.memory.load() if self.memory is not None else None

        if remembered and remembered.get("pharmacy_id") in (None, self.handle.pharmacy_id):
            session = self._lookup_with_retry(remembered["session_id"])
            if session is not None and session.is_open:
                self.handle.attach(session)
                logger.info("Resumed cash session %s", session.id)
                return RestoreResult(RESUMED, session=session)
            self.memory.forget()
            message = (
                f"Remembered session {remembered['session_id']} is closed"
                if session is not None
                else f"Remembered session {remembered['session_id']} was not found"
            )
        else:
            message = None

        holder = self.store.get_open_session(self.handle.pharmacy_id)
        if holder is not None:
            who = holder.worker_name or f"worker {holder.worker_id}"
            return RestoreResult(
                CONFLICT,
                holder=holder,
                message=f"Cash session {holder.id} is already open for this pharmacy ({who})",
            )
        return RestoreResult(NEEDS_OPEN, message=message)

    def revalidate(self) -> CashSessionRecord:
        """Confirm with the store that the handle's session is still open."""
        current = self.handle.require_open()
        session = self.store.get_session(current.id)
        if session is None or not session.is_open:
            self.handle.invalidate("Cash session was closed")
            raise SessionError("Cash session was closed", details={"session_id": current.id})
        self.handle.attach(session)
        return session

    def compute_summary(self) -> CashSessionSummary:
        session = self.handle.require_open()
        return self.store.session_summary(session.id)

    def close_session(self, counted_cash_cents: int, notes: str | None = None) -> CloseResult:
        """
        Close the till: expected = float + cash sales + cash appointment
        payments, variance = counted - expected.

        If the store refuses, the handle keeps the session open. A session
        the store already closed elsewhere invalidates the handle. Once the
        store has closed it, the handle is detached even if the summary
        cannot be fetched afterwards (summary is None then).
        """
        if isinstance(counted_cash_cents, bool) or not isinstance(counted_cash_cents, int):
            raise ValidationError("Counted cash must be an amount in cents")
        if counted_cash_cents < 0:
            raise ValidationError("Counted cash cannot be negative")

        session = self.handle.require_open()
        try:
            closed = self.store.close_session(session.id, counted_cash_cents, notes)
        except SessionError as exc:
            self.handle.invalidate(str(exc))
            if self.memory is not None:
                self.memory.forget()
            raise

        self.handle.detach()
        if self.memory is not None:
            self.memory.forget()

        try:
            summary = self.store.session_summary(session.id)
        except CommitFailure as exc:
            logger.warning("Cash session %s closed but summary unavailable: %s", session.id, exc)
            summary = None

        logger.info(
            "Cash session %s closed: expected %s counted %s variance %s",
            closed.id, closed.calculated_closing_cents, counted_cash_cents, closed.variance_cents,
        )
        return CloseResult(
            session=closed,
            summary=summary,
            expected_cash_cents=closed.calculated_closing_cents,
            variance_cents=closed.variance_cents,
        )
