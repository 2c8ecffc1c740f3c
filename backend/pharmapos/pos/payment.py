"""
Payment Orchestrator

State machine for one checkout attempt:

    IDLE -> METHOD_SELECTED -> CONFIRMED -> COMMITTED
    any state before COMMITTED -> CANCELLED
    QR provider failure -> FAILED

CASH: confirming requires amount tendered >= amount due; change is shown,
      never persisted.
CARD: selecting starts a fixed settle countdown (minimum dwell at the
      card terminal). Confirm and commit need countdown == 0 and a
      transaction reference.
QR:   selecting commits the order, which creates the provider order. The
      attempt is then LOCALLY_FINALIZED; funds are confirmed out of band
      by the store, never assumed here.

A commit failure (stock conflict, closed session, store error) returns the
attempt to METHOD_SELECTED with the error kept on the orchestrator; the
tender (cash amount, card reference, elapsed countdown) is preserved.
Nothing is retried automatically.
"""

from __future__ import annotations

import logging
import math
import time
from dataclasses import dataclass
from typing import ClassVar

from .checkout import METHOD_CARD, METHOD_CASH, METHOD_QR, Receipt
from .errors import CommitFailure, CommitInFlight, SessionError, StockConflict, ValidationError

logger = logging.getLogger(__name__)

IDLE = "IDLE"
METHOD_SELECTED = "METHOD_SELECTED"
CONFIRMED = "CONFIRMED"
COMMITTED = "COMMITTED"
CANCELLED = "CANCELLED"
FAILED = "FAILED"

DEFAULT_CARD_SETTLE_SECONDS = 10


@dataclass
class CashTender:
    method: ClassVar[str] = METHOD_CASH
    amount_due_cents: int
    amount_tendered_cents: int | None = None

    @property
    def change_due_cents(self) -> int | None:
        if self.amount_tendered_cents is None or self.amount_tendered_cents < self.amount_due_cents:
            return None
        return self.amount_tendered_cents - self.amount_due_cents


@dataclass
class CardTender:
    method: ClassVar[str] = METHOD_CARD
    amount_due_cents: int
    settle_seconds: int
    started_at: float
    reference: str | None = None


@dataclass
class QRTender:
    method: ClassVar[str] = METHOD_QR
    amount_due_cents: int
    provider_order_id: str | None = None
    payload: str | None = None


class PaymentOrchestrator:
    """
    gateway: OrderSubmissionGateway (preconditions, amount due, submission)
    clock: monotonic seconds, injectable for tests
    on_committed: optional callback(receipt)
    """

    def __init__(
        self,
        gateway,
        *,
        card_settle_seconds: int = DEFAULT_CARD_SETTLE_SECONDS,
        clock=time.monotonic,
        on_committed=None,
    ):
        self.gateway = gateway
        self.card_settle_seconds = card_settle_seconds
        self._clock = clock
        self.on_committed = on_committed

        self.state = IDLE
        self.tender = None
        self.receipt: Receipt | None = None
        self.error: Exception | None = None
        self._in_flight = False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def method(self) -> str | None:
        return self.tender.method if self.tender is not None else None

    @property
    def settlement(self) -> str | None:
        return self.receipt.settlement if self.receipt is not None else None

    def countdown(self) -> int:
        """Whole seconds left before a card payment may be confirmed (0 otherwise)."""
        if not isinstance(self.tender, CardTender):
            return 0
        remaining = self.tender.settle_seconds - (self._clock() - self.tender.started_at)
        return max(0, math.ceil(remaining))

    def change_due(self) -> int | None:
        if isinstance(self.tender, CashTender):
            return self.tender.change_due_cents
        return None

    def can_confirm(self) -> bool:
        if self.state != METHOD_SELECTED:
            return False
        if isinstance(self.tender, CashTender):
            return self.change_due() is not None
        if isinstance(self.tender, CardTender):
            return self.countdown() == 0 and bool((self.tender.reference or "").strip())
        return False

    # ------------------------------------------------------------------
    # Transitions
    # ------------------------------------------------------------------

    def _ensure_idle_flight(self) -> None:
        if self._in_flight or self.gateway.in_flight:
            raise CommitInFlight("Payment is locked while an order is being submitted")

    def _require(self, *states: str) -> None:
        if self.state not in states:
            raise ValidationError(
                f"Not allowed while payment is {self.state}",
                details={"state": self.state},
            )

    def select_method(self, method: str):
        """
        Start (or switch) the attempt's payment method.

        For QR this commits the order immediately; see module docstring.
        """
        self._ensure_idle_flight()
        self._require(IDLE, METHOD_SELECTED, CONFIRMED, CANCELLED, FAILED)
        self.gateway.check_preconditions(method)

        amount_due = self.gateway.amount_due()
        if method == METHOD_CASH:
            tender = CashTender(amount_due_cents=amount_due)
        elif method == METHOD_CARD:
            tender = CardTender(
                amount_due_cents=amount_due,
                settle_seconds=self.card_settle_seconds,
                started_at=self._clock(),
            )
        elif method == METHOD_QR:
            tender = QRTender(amount_due_cents=amount_due)
        else:
            raise ValidationError(f"Unknown payment method {method!r}")

        self.tender = tender
        self.receipt = None
        self.error = None
        self.state = METHOD_SELECTED

        if method == METHOD_QR:
            self._commit()
        return tender

    def tender_cash(self, amount_tendered_cents: int) -> int | None:
        """Record cash handed over; returns change due (None while underpaid)."""
        self._ensure_idle_flight()
        self._require(METHOD_SELECTED, CONFIRMED)
        if not isinstance(self.tender, CashTender):
            raise ValidationError("Cash amount only applies to cash payments")
        if isinstance(amount_tendered_cents, bool) or not isinstance(amount_tendered_cents, int):
            raise ValidationError("Amount tendered must be an amount in cents")
        if amount_tendered_cents < 0:
            raise ValidationError("Amount tendered cannot be negative")

        self.tender.amount_tendered_cents = amount_tendered_cents
        self.state = METHOD_SELECTED
        return self.tender.change_due_cents

    def enter_card_reference(self, reference: str) -> None:
        self._ensure_idle_flight()
        self._require(METHOD_SELECTED, CONFIRMED)
        if not isinstance(self.tender, CardTender):
            raise ValidationError("Card reference only applies to card payments")
        self.tender.reference = (reference or "").strip() or None
        self.state = METHOD_SELECTED

    def _sync_amount_due(self) -> None:
        """Cash follows cart changes; a card or QR amount is fixed once presented."""
        current = self.gateway.amount_due()
        if current == self.tender.amount_due_cents:
            return
        if isinstance(self.tender, CashTender):
            self.tender.amount_due_cents = current
            return
        raise ValidationError(
            "Cart changed after the payment method was selected; select it again",
            details={"amount_due_cents": self.tender.amount_due_cents, "cart_total_cents": current},
        )

    def confirm(self) -> None:
        """
        Raises:
            ValidationError: underpaid cash, card countdown running or
                reference missing, or a QR attempt (finalized on creation)
        """
        self._ensure_idle_flight()
        self._require(METHOD_SELECTED)
        if isinstance(self.tender, QRTender):
            raise ValidationError("QR payments are finalized when the provider order is created")
        self._sync_amount_due()

        if isinstance(self.tender, CashTender):
            if self.tender.change_due_cents is None:
                raise ValidationError(
                    "Amount tendered does not cover the total",
                    details={
                        "amount_due_cents": self.tender.amount_due_cents,
                        "amount_tendered_cents": self.tender.amount_tendered_cents,
                    },
                )
        elif isinstance(self.tender, CardTender):
            remaining = self.countdown()
            if remaining > 0:
                raise ValidationError(
                    f"Wait {remaining}s for the card terminal to settle",
                    details={"countdown": remaining},
                )
            if not self.tender.reference:
                raise ValidationError("Card transaction reference required")

        self.state = CONFIRMED

    def commit(self) -> Receipt:
        """
        Submit the order.

        Cash and card commit from CONFIRMED. A QR attempt the store turned
        away (stock or session) is back in METHOD_SELECTED and may be
        committed again; a QR creation failure ends in FAILED and needs a
        new select_method("qr").
        """
        self._ensure_idle_flight()
        if isinstance(self.tender, QRTender):
            self._require(METHOD_SELECTED)
        else:
            self._require(CONFIRMED)
            if isinstance(self.tender, CardTender) and (self.countdown() > 0 or not self.tender.reference):
                raise ValidationError("Card payment is not ready to commit")
            self._sync_amount_due()
        return self._commit()

    def _commit(self) -> Receipt:
        self._in_flight = True
        try:
            if isinstance(self.tender, QRTender):
                receipt = self.gateway.create_qr_order(self.tender)
            else:
                receipt = self.gateway.submit(self.tender.method, self.tender)
        except CommitInFlight:
            raise
        except (StockConflict, SessionError, ValidationError) as exc:
            self.state = METHOD_SELECTED
            self.error = exc
            logger.warning("%s commit rejected: %s", self.method, exc)
            raise
        except CommitFailure as exc:
            self.state = FAILED if isinstance(self.tender, QRTender) else METHOD_SELECTED
            self.error = exc
            logger.warning("%s commit failed: %s", self.method, exc)
            raise
        finally:
            self._in_flight = False

        if isinstance(self.tender, QRTender):
            self.tender.provider_order_id = receipt.provider_order_id
            self.tender.payload = receipt.qr_payload

        self.receipt = receipt
        self.error = None
        self.state = COMMITTED
        if self.on_committed is not None:
            self.on_committed(receipt)
        return receipt

    def cancel(self) -> None:
        """
        Abandon the attempt. Allowed at any state before COMMITTED.

        Side effects already issued (a created provider order) are not
        retracted.
        """
        self._ensure_idle_flight()
        if self.state == COMMITTED:
            raise ValidationError("A committed payment cannot be cancelled")
        if isinstance(self.tender, QRTender) and self.tender.provider_order_id:
            logger.info("QR attempt cancelled; provider order %s stays open", self.tender.provider_order_id)
        self.state = CANCELLED

    def reset(self) -> None:
        """Start over for the next sale."""
        self._ensure_idle_flight()
        self.state = IDLE
        self.tender = None
        self.receipt = None
        self.error = None
