"""
Order Submission Service

WHY: The order commit is the authoritative point of a sale. Terminals
validate against snapshots; this service re-validates everything under
lock and either persists the whole sale or nothing.

ONE UNIT OF WORK:
- stock decrement for every line
- order + lines
- prescription dispensation update
- attribution to the open cash session
- (qr) provider order creation

QR SETTLEMENT:
QR orders are stored PENDING. Only the provider webhook moves them to
CONFIRMED or REJECTED; a rejection restocks the lines and restores the
prescriptions' previous status.
"""

from __future__ import annotations

import logging
from collections import OrderedDict

from ..extensions import db
from ..models import CashSession, Order, OrderLine, Product, Worker
from ..validation import ValidationError
from pharmapos.time_utils import utcnow
from .concurrency import lock_for_update, lock_products, run_with_retry
from .prescription_service import apply_dispensation, revert_dispensation
from .qr_gateway import get_gateway

logger = logging.getLogger(__name__)

METHOD_CASH = "cash"
METHOD_CARD = "card"
METHOD_QR = "qr"
PAYMENT_METHODS = (METHOD_CASH, METHOD_CARD, METHOD_QR)

SETTLED = "SETTLED"
PENDING = "PENDING"
CONFIRMED = "CONFIRMED"
REJECTED = "REJECTED"

# Provider payment statuses
QR_APPROVED = {"approved"}
QR_REJECTED = {"rejected", "cancelled", "refunded", "charged_back"}


class OrderError(Exception):
    """Raised for order submission errors."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class OrderNotFoundError(OrderError):
    pass


class StockConflictError(OrderError):
    """Stock moved since the terminal's snapshot; details["lines"] lists each short line."""


class SessionInvalidError(OrderError):
    """The referenced cash session is unknown, closed, or belongs to another pharmacy."""


def _normalize_lines(items) -> list[dict]:
    if not isinstance(items, list) or not items:
        raise ValidationError("Order must contain at least one item")

    lines = []
    for index, raw in enumerate(items):
        if not isinstance(raw, dict):
            raise ValidationError(f"items[{index}] must be an object")
        sku = str(raw.get("sku") or "").strip()
        if not sku:
            raise ValidationError(f"items[{index}].sku required")
        quantity = raw.get("quantity")
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError(f"items[{index}].quantity must be a positive integer")

        prescription_id = raw.get("prescription_id")
        item_name = raw.get("prescribed_item_name")
        if prescription_id is not None:
            if isinstance(prescription_id, bool) or not isinstance(prescription_id, int):
                raise ValidationError(f"items[{index}].prescription_id must be an integer")
            if not item_name:
                raise ValidationError(f"items[{index}].prescribed_item_name required with prescription_id")

        lines.append({
            "sku": sku,
            "quantity": quantity,
            "prescription_id": prescription_id,
            "prescribed_item_name": item_name if prescription_id is not None else None,
        })
    return lines


def _validate_identity(patient_id: str | None, walk_in: bool) -> None:
    if patient_id and walk_in:
        raise ValidationError("An order is either for a patient or a walk-in, not both")
    if not patient_id and not walk_in:
        raise ValidationError("patient_id or walk_in required")


def _lock_open_session(cash_session_id: int, pharmacy_id: int) -> CashSession:
    session = lock_for_update(db.session.query(CashSession).filter_by(id=cash_session_id)).first()
    if not session:
        raise SessionInvalidError("Cash session not found", details={"cash_session_id": cash_session_id})
    if session.pharmacy_id != pharmacy_id:
        raise SessionInvalidError(
            "Cash session belongs to another pharmacy",
            details={"cash_session_id": cash_session_id},
        )
    if session.status != "OPEN":
        raise SessionInvalidError("Cash session is closed", details={"cash_session_id": cash_session_id})
    return session


def _reserve_stock(pharmacy_id: int, lines: list[dict]) -> dict[str, Product]:
    """
    Lock every product on the order and check aggregated quantities.

    The same sku can appear on a prescription line and a free line; stock
    must cover their sum.
    """
    requested: "OrderedDict[str, int]" = OrderedDict()
    for line in lines:
        requested[line["sku"]] = requested.get(line["sku"], 0) + line["quantity"]

    by_sku = lock_products(pharmacy_id, requested)

    conflicts = []
    for sku, quantity in requested.items():
        product = by_sku.get(sku)
        if product is None:
            conflicts.append({"sku": sku, "requested": quantity, "available": 0, "reason": "not_found"})
        elif product.units_available < quantity:
            conflicts.append({
                "sku": sku,
                "name": product.name,
                "requested": quantity,
                "available": product.units_available,
                "reason": "insufficient_stock",
            })

    if conflicts:
        raise StockConflictError("Insufficient stock to commit order", details={"lines": conflicts})
    return by_sku


def _dispensed_by_prescription(lines: list[dict]) -> "OrderedDict[int, dict[str, int]]":
    grouped: "OrderedDict[int, dict[str, int]]" = OrderedDict()
    for line in lines:
        if line["prescription_id"] is None:
            continue
        per_item = grouped.setdefault(line["prescription_id"], {})
        name = line["prescribed_item_name"]
        per_item[name] = per_item.get(name, 0) + line["quantity"]
    return grouped


def create_order(
    *,
    pharmacy_id: int,
    worker_id: int,
    cash_session_id: int,
    items,
    payment_method: str,
    patient_id: str | None = None,
    walk_in: bool = False,
    card_reference: str | None = None,
    amount_tendered_cents: int | None = None,
    dispensation: list[dict] | None = None,
    description: str | None = None,
) -> Order:
    """
    Commit a sale.

    Raises:
        ValidationError: malformed request, missing identity/card reference, underpayment
        SessionInvalidError: session unknown, closed, or foreign
        StockConflictError: one or more lines exceed current stock (details["lines"])
        PrescriptionError: prescription unknown or not the patient's
        QRGatewayError: provider order could not be created (nothing persisted)
    """
    lines = _normalize_lines(items)
    _validate_identity(patient_id, walk_in)

    if payment_method not in PAYMENT_METHODS:
        raise ValidationError(f"payment_method must be one of {', '.join(PAYMENT_METHODS)}")
    if payment_method == METHOD_CARD and not card_reference:
        raise ValidationError("card_reference required for card payments")

    grouped = _dispensed_by_prescription(lines)
    if len(grouped) > 1:
        raise ValidationError("Only one prescription can be dispensed per order")
    if grouped and walk_in:
        raise ValidationError("Walk-in orders cannot dispense a prescription")

    def _op():
        try:
            worker = db.session.get(Worker, worker_id)
            if not worker or worker.pharmacy_id != pharmacy_id:
                raise ValidationError("Worker not found in this pharmacy")

            session = _lock_open_session(cash_session_id, pharmacy_id)
            products = _reserve_stock(pharmacy_id, lines)

            total = sum(products[line["sku"]].price_cents * line["quantity"] for line in lines)
            if total <= 0:
                raise ValidationError("Order total must be greater than zero")
            if payment_method == METHOD_CASH and amount_tendered_cents is not None and amount_tendered_cents < total:
                raise ValidationError("Amount tendered is less than the order total")

            order = Order(
                pharmacy_id=pharmacy_id,
                cash_session_id=session.id,
                worker_id=worker_id,
                patient_id=patient_id if not walk_in else None,
                walk_in=bool(walk_in),
                payment_method=payment_method,
                total_cents=total,
                card_reference=card_reference if payment_method == METHOD_CARD else None,
                settlement_status=PENDING if payment_method == METHOD_QR else SETTLED,
                settled_at=None if payment_method == METHOD_QR else utcnow(),
                description=description,
                created_at=utcnow(),
            )
            db.session.add(order)
            db.session.flush()
            order.receipt_number = f"R-{pharmacy_id}-{order.id:06d}"

            for line in lines:
                product = products[line["sku"]]
                product.units_available -= line["quantity"]
                db.session.add(OrderLine(
                    order_id=order.id,
                    product_id=product.id,
                    sku=product.sku,
                    name=product.name,
                    quantity=line["quantity"],
                    unit_price_cents=product.price_cents,
                    line_total_cents=product.price_cents * line["quantity"],
                    prescription_id=line["prescription_id"],
                    prescribed_item_name=line["prescribed_item_name"],
                ))

            entries = [
                apply_dispensation(prescription_id, patient_id, dispensed)
                for prescription_id, dispensed in grouped.items()
            ]
            _check_declared_dispensation(dispensation, entries)
            order.dispensation = entries or None

            if payment_method == METHOD_QR:
                created = get_gateway().create(
                    total,
                    description or f"Pharmacy {pharmacy_id} sale {order.receipt_number}",
                    order.receipt_number,
                )
                order.provider_order_id = created["provider_order_id"]
                order.qr_payload = created["payload"]

            db.session.commit()
            return order
        except Exception:
            db.session.rollback()
            raise

    # A provider order is a financial side effect: never repeat it
    attempts = 1 if payment_method == METHOD_QR else 3
    order = run_with_retry(_op, attempts=attempts, label="order commit")

    logger.info(
        "Order %s committed: %s %s cents, session %s, settlement %s",
        order.receipt_number, payment_method, order.total_cents, cash_session_id, order.settlement_status,
    )
    return order


def _check_declared_dispensation(declared: list[dict] | None, entries: list[dict]) -> None:
    """Log when the terminal's dispensation update disagrees with the store's."""
    if not declared:
        return
    computed = {e["prescription_id"]: e["status"] for e in entries}
    for update in declared:
        if not isinstance(update, dict):
            raise ValidationError("dispensation entries must be objects")
        prescription_id = update.get("prescription_id")
        if prescription_id not in computed:
            raise ValidationError("dispensation references a prescription with no linked lines")
        if update.get("status") != computed[prescription_id]:
            logger.warning(
                "Prescription %s: terminal declared %r, store computed %r",
                prescription_id, update.get("status"), computed[prescription_id],
            )


def get_order(order_id: int) -> Order:
    order = db.session.get(Order, order_id)
    if not order:
        raise OrderNotFoundError("Order not found", details={"order_id": order_id})
    return order


def record_qr_settlement(provider_order_id: str, status: str) -> Order:
    """
    Apply a provider settlement notification.

    approved -> CONFIRMED
    rejected/cancelled/refunded/charged_back -> REJECTED (restock, revert prescriptions)
    anything else -> no change

    Final states are idempotent: repeated or late notifications are ignored.
    """
    status = (status or "").strip().lower()

    def _op():
        try:
            order = lock_for_update(
                db.session.query(Order).filter_by(provider_order_id=provider_order_id)
            ).first()
            if not order:
                raise OrderNotFoundError(
                    "Order not found for provider id",
                    details={"provider_order_id": provider_order_id},
                )

            if order.settlement_status != PENDING:
                if status in QR_APPROVED | QR_REJECTED:
                    logger.info(
                        "Order %s already %s, ignoring %r",
                        order.receipt_number, order.settlement_status, status,
                    )
                db.session.rollback()
                return order

            if status in QR_APPROVED:
                order.settlement_status = CONFIRMED
                order.settled_at = utcnow()
            elif status in QR_REJECTED:
                order.settlement_status = REJECTED
                order.settled_at = utcnow()
                _restock(order)
                revert_dispensation(order.dispensation)
            else:
                db.session.rollback()
                return order

            db.session.commit()
            return order
        except Exception:
            db.session.rollback()
            raise

    order = run_with_retry(_op, label="QR settlement")
    logger.info("QR settlement for %s: %r -> %s", provider_order_id, status, order.settlement_status)
    return order


def _restock(order: Order) -> None:
    product_ids = sorted({line.product_id for line in order.lines})
    products = {
        p.id: p
        for p in lock_for_update(db.session.query(Product).filter(Product.id.in_(product_ids))).all()
    }
    for line in order.lines:
        product = products.get(line.product_id)
        if product is not None:
            product.units_available += line.quantity
