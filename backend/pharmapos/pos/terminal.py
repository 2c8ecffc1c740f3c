"""
POS terminal facade.

Owns the single SessionHandle of a till and wires it into the cart, the
order gateway, the payment orchestrator and the cash session manager.
Also carries the till-side flows that sit around a sale: identity,
prescription lookup, product search, appointment payments and checking
QR settlement.
"""

from __future__ import annotations

import logging
import time

from .backends import ServiceBackend
from .cart import Cart, Prescription, PrescriptionLoadReport
from .cash_session import CashSessionManager, SessionHandle, SessionMemory
from .checkout import Identity, OrderSubmissionGateway, Receipt, settlement_from_status
from .errors import ValidationError
from .payment import PaymentOrchestrator

logger = logging.getLogger(__name__)


class Terminal:
    def __init__(
        self,
        backend,
        pharmacy_id: int,
        worker_id: int,
        *,
        memory: SessionMemory | None = None,
        card_settle_seconds: int = 10,
        lookup_attempts: int = 3,
        lookup_backoff: float = 0.2,
        clock=time.monotonic,
        sleep=time.sleep,
    ):
        self.backend = backend
        self.handle = SessionHandle(pharmacy_id, worker_id)
        self.cart = Cart(backend, self.handle)
        self.gateway = OrderSubmissionGateway(backend, self.cart, self.handle)
        self.payment = PaymentOrchestrator(
            self.gateway,
            card_settle_seconds=card_settle_seconds,
            clock=clock,
            on_committed=self._on_committed,
        )
        self.sessions = CashSessionManager(
            backend,
            self.handle,
            memory,
            lookup_attempts=lookup_attempts,
            lookup_backoff=lookup_backoff,
            sleep=sleep,
        )
        self.last_receipt: Receipt | None = None

    @classmethod
    def for_app(cls, app, pharmacy_id: int, worker_id: int, **kwargs) -> "Terminal":
        """In-process terminal configured from the Flask app's config."""
        config = app.config
        kwargs.setdefault("memory", SessionMemory(config["POS_STATE_PATH"]))
        kwargs.setdefault("card_settle_seconds", config.get("CARD_SETTLE_SECONDS", 10))
        kwargs.setdefault("lookup_attempts", config.get("SESSION_LOOKUP_ATTEMPTS", 3))
        kwargs.setdefault("lookup_backoff", config.get("SESSION_LOOKUP_BACKOFF", 0.2))
        return cls(ServiceBackend(app), pharmacy_id, worker_id, **kwargs)

    @property
    def identity(self) -> Identity:
        return self.gateway.identity

    # ------------------------------------------------------------------
    # Identity
    # ------------------------------------------------------------------

    def set_patient(self, patient_id: str) -> None:
        patient_id = (patient_id or "").strip()
        if not patient_id:
            raise ValidationError("patient_id required")
        if self.identity.patient_id != patient_id and self.cart.prescription_lines():
            self.cart.drop_prescription()
        self.gateway.identity = Identity.patient(patient_id)

    def set_walk_in(self) -> None:
        """Walk-in sales carry no prescription, so linked lines are dropped."""
        if self.cart.prescription_lines():
            self.cart.drop_prescription()
        self.gateway.identity = Identity.walk_in_customer()

    def clear_identity(self) -> None:
        if self.cart.prescription_lines():
            self.cart.drop_prescription()
        self.gateway.identity = Identity()

    # ------------------------------------------------------------------
    # Products and prescriptions
    # ------------------------------------------------------------------

    def search(self, query: str):
        query = (query or "").strip()
        if not query:
            return []
        return self.backend.search_products(self.handle.pharmacy_id, query)

    def scan(self, sku: str, quantity: int = 1):
        return self.cart.add_by_sku(sku, quantity)

    def pending_prescriptions(self) -> list[Prescription]:
        if not self.identity.patient_id:
            raise ValidationError("Select a patient to see their prescriptions")
        return self.backend.fetch_prescriptions(self.identity.patient_id)

    def load_prescription(self, prescription: Prescription) -> PrescriptionLoadReport:
        if not self.identity.patient_id:
            raise ValidationError("Select a patient before loading a prescription")
        if prescription.patient_id != self.identity.patient_id:
            raise ValidationError(
                "Prescription belongs to another patient",
                details={"prescription_id": prescription.id},
            )
        return self.cart.load_prescription(prescription)

    # ------------------------------------------------------------------
    # Sale lifecycle
    # ------------------------------------------------------------------

    def _on_committed(self, receipt: Receipt) -> None:
        self.last_receipt = receipt
        self.gateway.identity = Identity()

    def new_sale(self) -> None:
        """Discard the current attempt and start an empty sale."""
        self.payment.reset()
        self.cart.clear()
        self.gateway.identity = Identity()

    def check_qr_settlement(self, order_id: int | None = None) -> str:
        """
        Ask the store how a QR order settled. Defaults to the last receipt.

        Returns LOCALLY_FINALIZED until the provider's webhook has reached
        the store.
        """
        if order_id is None:
            if self.last_receipt is None:
                raise ValidationError("No order to check")
            order_id = self.last_receipt.order_id
        order = self.backend.get_order(order_id)
        if order is None:
            raise ValidationError("Order not found", details={"order_id": order_id})
        settlement = settlement_from_status(order.get("settlement_status"))
        if self.last_receipt is not None and self.last_receipt.order_id == order_id:
            self.last_receipt.settlement = settlement
        return settlement

    # ------------------------------------------------------------------
    # Appointment payments
    # ------------------------------------------------------------------

    def find_appointment_payment(self, receipt_number: str) -> dict:
        payment = self.backend.find_appointment_payment(receipt_number)
        if payment is None:
            raise ValidationError("Receipt not found", details={"receipt_number": receipt_number})
        return payment

    def collect_appointment_payment(
        self,
        receipt_number: str,
        *,
        price_cents: int,
        payment_method: str,
        card_reference: str | None = None,
    ) -> dict:
        """Mark a pending appointment as paid into the open till."""
        session = self.handle.require_open()
        payment = self.backend.pay_appointment(
            receipt_number,
            price_cents=price_cents,
            payment_method=payment_method,
            cash_session_id=session.id,
            worker_id=self.handle.worker_id,
            card_reference=card_reference,
        )
        logger.info(
            "Appointment %s paid by %s (%s cents) in session %s",
            receipt_number, payment_method, price_cents, session.id,
        )
        return payment
