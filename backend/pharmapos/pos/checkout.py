"""
Order Submission Gateway

WHY: Submitting an order is the only step with financial side effects,
so everything that can be checked locally is checked before the network
is touched, and the cart is frozen while the request is in flight.

Preconditions (local, in order):
1. cart not empty, total > 0
2. an open cash session on the shared handle
3. a resolved patient or an explicit walk-in
4. method specifics (tendered cash covers the total, card reference set)

The store re-validates everything. A late stock conflict comes back as a
per-line list; a closed session invalidates the handle. The cart is
cleared only when the order is committed.
"""

from __future__ import annotations

import logging
from dataclasses import dataclass, field

from ..dispensation import compute_status
from .cart import Cart, CartLine, Prescription
from .errors import CommitInFlight, SessionError, ValidationError

logger = logging.getLogger(__name__)

METHOD_CASH = "cash"
METHOD_CARD = "card"
METHOD_QR = "qr"
PAYMENT_METHODS = (METHOD_CASH, METHOD_CARD, METHOD_QR)

# Local view of settlement. The terminal itself never asserts FUNDS_CONFIRMED;
# that only comes from the store (QR webhook).
SETTLED_AT_TILL = "SETTLED_AT_TILL"
LOCALLY_FINALIZED = "LOCALLY_FINALIZED"
FUNDS_CONFIRMED = "FUNDS_CONFIRMED"
FUNDS_REJECTED = "FUNDS_REJECTED"


@dataclass(frozen=True)
class Identity:
    patient_id: str | None = None
    walk_in: bool = False

    @classmethod
    def patient(cls, patient_id: str) -> "Identity":
        return cls(patient_id=patient_id)

    @classmethod
    def walk_in_customer(cls) -> "Identity":
        return cls(walk_in=True)

    @property
    def is_resolved(self) -> bool:
        return bool(self.patient_id) != bool(self.walk_in)


@dataclass(frozen=True)
class DispensationUpdate:
    prescription_id: int
    status: str
    items: tuple = ()

    def to_dict(self) -> dict:
        return {
            "prescription_id": self.prescription_id,
            "status": self.status,
            "items": [dict(item) for item in self.items],
        }


def dispensed_by_item(lines: list[CartLine], prescription_id: int) -> dict[str, int]:
    dispensed: dict[str, int] = {}
    for line in lines:
        if line.link is None or line.link.prescription_id != prescription_id:
            continue
        name = line.link.item.name
        dispensed[name] = dispensed.get(name, 0) + line.quantity
    return dispensed


def build_dispensation_updates(lines: list[CartLine], prescription: Prescription | None) -> list[DispensationUpdate]:
    """
    One update per prescription that has linked lines in the cart.

    Only the active prescription can have linked lines, so this yields at
    most one update.
    """
    if prescription is None:
        return []
    dispensed = dispensed_by_item(lines, prescription.id)
    if not dispensed:
        return []

    items = [item.to_dict() for item in prescription.items]
    status = compute_status(items, dispensed)
    detail = tuple(
        {
            "name": item.name,
            "quantity_prescribed": item.required_quantity,
            "quantity_dispensed": dispensed.get(item.name, 0),
        }
        for item in prescription.items
    )
    return [DispensationUpdate(prescription_id=prescription.id, status=status, items=detail)]


@dataclass
class Receipt:
    order_id: int
    receipt_number: str
    payment_method: str
    total_cents: int
    settlement: str
    provider_order_id: str | None = None
    qr_payload: str | None = None
    dispensation: list = field(default_factory=list)

    @classmethod
    def from_order(cls, order: dict) -> "Receipt":
        return cls(
            order_id=order["id"],
            receipt_number=order["receipt_number"],
            payment_method=order["payment_method"],
            total_cents=order["total_cents"],
            settlement=settlement_from_status(order.get("settlement_status")),
            provider_order_id=order.get("provider_order_id"),
            qr_payload=order.get("qr_payload"),
            dispensation=order.get("dispensation") or [],
        )


def settlement_from_status(settlement_status: str | None) -> str:
    """Map the store's settlement status onto the terminal's view of it."""
    if settlement_status == "CONFIRMED":
        return FUNDS_CONFIRMED
    if settlement_status == "REJECTED":
        return FUNDS_REJECTED
    if settlement_status == "PENDING":
        return LOCALLY_FINALIZED
    return SETTLED_AT_TILL


class OrderSubmissionGateway:
    """
    backend: submit_order(request) -> order dict, get_session(id) -> record | None
    cart: the terminal's Cart
    session_handle: the shared SessionHandle
    """

    def __init__(self, backend, cart: Cart, session_handle):
        self.backend = backend
        self.cart = cart
        self.session_handle = session_handle
        self.identity = Identity()
        self._in_flight = False

    @property
    def in_flight(self) -> bool:
        return self._in_flight

    def amount_due(self) -> int:
        return self.cart.total()

    def check_preconditions(self, method: str | None = None, tender=None) -> None:
        """
        Local checks only; raises before anything reaches the network.

        Raises:
            ValidationError, SessionError
        """
        if self.cart.is_empty():
            raise ValidationError("Cart is empty")
        if self.cart.total() <= 0:
            raise ValidationError("Order total must be greater than zero")
        self.session_handle.require_open()
        if not self.identity.is_resolved:
            raise ValidationError("Select a patient or mark the sale as walk-in")
        if self.identity.walk_in and self.cart.prescription_lines():
            raise ValidationError("Walk-in sales cannot dispense a prescription")

        if method is not None and method not in PAYMENT_METHODS:
            raise ValidationError(f"Unknown payment method {method!r}")
        if tender is None:
            return
        if method == METHOD_CASH:
            tendered = tender.amount_tendered_cents
            if tendered is None or tendered < self.cart.total():
                raise ValidationError("Amount tendered does not cover the total")
        elif method == METHOD_CARD:
            if not (tender.reference or "").strip():
                raise ValidationError("Card transaction reference required")

    def build_request(self, method: str, tender=None) -> dict:
        session = self.session_handle.require_open()
        request = {
            "pharmacy_id": self.session_handle.pharmacy_id,
            "worker_id": self.session_handle.worker_id,
            "cash_session_id": session.id,
            "items": [
                {
                    "sku": line.sku,
                    "quantity": line.quantity,
                    "unit_price_cents": line.unit_price_cents,
                    "prescription_id": line.link.prescription_id if line.link else None,
                    "prescribed_item_name": line.link.item.name if line.link else None,
                }
                for line in self.cart.lines
            ],
            "payment_method": method,
            "patient_id": self.identity.patient_id,
            "walk_in": self.identity.walk_in,
        }

        updates = build_dispensation_updates(self.cart.lines, self.cart.active_prescription)
        if updates:
            request["dispensation"] = [u.to_dict() for u in updates]
        if method == METHOD_CARD and tender is not None:
            request["card_reference"] = tender.reference.strip()
        if method == METHOD_CASH and tender is not None:
            request["amount_tendered_cents"] = tender.amount_tendered_cents
        return request

    def submit(self, method: str, tender=None) -> Receipt:
        """
        Commit the cart as one order.

        Raises:
            ValidationError: local precondition failed (nothing sent)
            SessionError: session closed or unknown (handle invalidated)
            StockConflict: store stock moved (per-line detail)
            CommitFailure: anything else; the cart is kept for retry
            CommitInFlight: a submission is already running
        """
        if self._in_flight:
            raise CommitInFlight("An order is already being submitted")
        self.check_preconditions(method, tender)

        self._in_flight = True
        try:
            with self.cart.frozen():
                request = self.build_request(method, tender)
                try:
                    order = self.backend.submit_order(request)
                except SessionError as exc:
                    self.session_handle.invalidate(str(exc))
                    raise
                receipt = Receipt.from_order(order)
        finally:
            self._in_flight = False

        self.cart.clear()
        logger.info(
            "Order %s committed (%s, %s cents)",
            receipt.receipt_number, receipt.payment_method, receipt.total_cents,
        )
        return receipt

    def create_qr_order(self, tender) -> Receipt:
        """The QR path: committing the order is what creates the provider order."""
        return self.submit(METHOD_QR, tender)
