"""
Cart Engine

WHY: The cart is where the operator builds a sale. It validates every
quantity against the last stock snapshot it saw, so most stock problems
are caught before anything is submitted.

INVARIANTS:
- A line's quantity never exceeds its stock snapshot; violations are
  rejected, never clamped, and leave the cart untouched
- total() is recomputed from the lines on every call
- Lines are keyed by (sku, prescription id, prescribed item name): the same
  sku sold freely and against a prescription stays on two lines
- At most one prescription is active per sale
"""

from __future__ import annotations

import logging
from collections import OrderedDict
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from ..dispensation import required_quantity
from .errors import CommitInFlight, PartialLoadWarning, StockExceeded, ValidationError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PrescribedItem:
    name: str
    quantity_to_dispense: Any = None
    active_ingredient: str | None = None
    dose: str | None = None
    route: str | None = None
    frequency: str | None = None
    duration: str | None = None
    unit: str | None = None

    @property
    def required_quantity(self) -> int | None:
        return required_quantity(self.quantity_to_dispense)

    @classmethod
    def from_dict(cls, data: dict) -> "PrescribedItem":
        return cls(
            name=data.get("name") or "",
            quantity_to_dispense=data.get("quantity_to_dispense"),
            active_ingredient=data.get("active_ingredient"),
            dose=data.get("dose"),
            route=data.get("route"),
            frequency=data.get("frequency"),
            duration=data.get("duration"),
            unit=data.get("unit"),
        )

    def to_dict(self) -> dict:
        return {
            "name": self.name,
            "quantity_to_dispense": self.quantity_to_dispense,
            "active_ingredient": self.active_ingredient,
            "dose": self.dose,
            "route": self.route,
            "frequency": self.frequency,
            "duration": self.duration,
            "unit": self.unit,
        }


@dataclass(frozen=True)
class Prescription:
    id: int
    patient_id: str
    items: tuple[PrescribedItem, ...] = ()
    consultation_date: str | None = None
    diagnosis: str | None = None
    dispensation_status: str | None = None

    @classmethod
    def from_dict(cls, data: dict) -> "Prescription":
        return cls(
            id=data["id"],
            patient_id=data["patient_id"],
            items=tuple(PrescribedItem.from_dict(item) for item in data.get("items") or []),
            consultation_date=data.get("consultation_date"),
            diagnosis=data.get("diagnosis"),
            dispensation_status=data.get("dispensation_status"),
        )


@dataclass(frozen=True)
class PrescriptionLink:
    prescription_id: int
    item: PrescribedItem


@dataclass(frozen=True)
class ProductSnapshot:
    """Stock and price as last reported by the store."""
    sku: str
    name: str
    unit_price_cents: int
    units_available: int

    @classmethod
    def from_dict(cls, data: dict) -> "ProductSnapshot":
        return cls(
            sku=data["sku"],
            name=data["name"],
            unit_price_cents=data["price_cents"],
            units_available=data["units_available"],
        )


def line_key(sku: str, link: PrescriptionLink | None) -> tuple:
    if link is None:
        return (sku, None, None)
    return (sku, link.prescription_id, link.item.name)


@dataclass
class CartLine:
    sku: str
    name: str
    unit_price_cents: int
    quantity: int
    stock_snapshot: int
    link: PrescriptionLink | None = None

    @property
    def key(self) -> tuple:
        return line_key(self.sku, self.link)

    @property
    def line_total_cents(self) -> int:
        return self.unit_price_cents * self.quantity


@dataclass
class PrescriptionLoadReport:
    prescription_id: int
    loaded: list[CartLine] = field(default_factory=list)
    already_in_cart: list[str] = field(default_factory=list)
    failures: list[PartialLoadWarning] = field(default_factory=list)

    @property
    def is_partial(self) -> bool:
        return bool(self.failures)


class Cart:
    """
    Sale lines for one checkout.

    stock_oracle: query(sku, pharmacy_id) -> ProductSnapshot and
                  find_by_name(name, pharmacy_id) -> ProductSnapshot | None
    session_handle: shared SessionHandle (pharmacy scope)
    """

    def __init__(self, stock_oracle, session_handle):
        self.stock_oracle = stock_oracle
        self.session_handle = session_handle
        self.active_prescription: Prescription | None = None
        self._lines: "OrderedDict[tuple, CartLine]" = OrderedDict()
        self._frozen = False

    # ------------------------------------------------------------------
    # Reads
    # ------------------------------------------------------------------

    @property
    def lines(self) -> list[CartLine]:
        return list(self._lines.values())

    def get(self, key: tuple) -> CartLine | None:
        return self._lines.get(key)

    def is_empty(self) -> bool:
        return not self._lines

    def total(self) -> int:
        return sum(line.unit_price_cents * line.quantity for line in self._lines.values())

    def prescription_lines(self) -> list[CartLine]:
        return [line for line in self._lines.values() if line.link is not None]

    @property
    def is_frozen(self) -> bool:
        return self._frozen

    # ------------------------------------------------------------------
    # Mutations
    # ------------------------------------------------------------------

    def _ensure_mutable(self) -> None:
        if self._frozen:
            raise CommitInFlight("Cart is locked while an order is being submitted")

    def add_item(self, product: ProductSnapshot, quantity: int, link: PrescriptionLink | None = None) -> CartLine:
        """
        Add units of a product, merging into the line with the same key.

        Raises:
            StockExceeded: merged quantity is above product.units_available
                (the cart is left exactly as it was)
        """
        self._ensure_mutable()
        if isinstance(quantity, bool) or not isinstance(quantity, int) or quantity < 1:
            raise ValidationError("Quantity must be a positive integer")
        if link is not None:
            self._check_prescription(link.prescription_id)

        key = line_key(product.sku, link)
        existing = self._lines.get(key)
        merged = quantity + (existing.quantity if existing else 0)
        if merged > product.units_available:
            raise StockExceeded(product.sku, merged, product.units_available)

        if existing:
            existing.quantity = merged
            existing.stock_snapshot = product.units_available
            existing.unit_price_cents = product.unit_price_cents
            return existing

        line = CartLine(
            sku=product.sku,
            name=product.name,
            unit_price_cents=product.unit_price_cents,
            quantity=quantity,
            stock_snapshot=product.units_available,
            link=link,
        )
        self._lines[key] = line
        return line

    def add_by_sku(self, sku: str, quantity: int = 1) -> CartLine:
        """Free-sale line for a scanned or searched sku (fresh stock lookup)."""
        self._ensure_mutable()
        product = self.stock_oracle.query(sku, self.session_handle.pharmacy_id)
        return self.add_item(product, quantity)

    def update_quantity(self, key: tuple, new_quantity: int) -> CartLine | None:
        """
        Replace a line's quantity.

        new_quantity < 1 removes the line (returns None).

        Raises:
            StockExceeded: new_quantity above the line's stock snapshot
        """
        self._ensure_mutable()
        line = self._lines.get(key)
        if line is None:
            raise ValidationError("Line not in cart", details={"key": list(key)})
        if isinstance(new_quantity, bool) or not isinstance(new_quantity, int):
            raise ValidationError("Quantity must be an integer")

        if new_quantity < 1:
            self.remove_item(key)
            return None
        if new_quantity > line.stock_snapshot:
            raise StockExceeded(line.sku, new_quantity, line.stock_snapshot)

        line.quantity = new_quantity
        return line

    def remove_item(self, key: tuple) -> None:
        self._ensure_mutable()
        self._lines.pop(key, None)
        if self.active_prescription is not None and not self.prescription_lines():
            self.active_prescription = None

    def clear(self) -> None:
        self._ensure_mutable()
        self._lines.clear()
        self.active_prescription = None

    # ------------------------------------------------------------------
    # Prescriptions
    # ------------------------------------------------------------------

    def _check_prescription(self, prescription_id: int) -> None:
        active = self.active_prescription
        if active is not None and active.id != prescription_id:
            raise ValidationError(
                "Another prescription is already being dispensed in this sale",
                details={"active_prescription_id": active.id},
            )

    def load_prescription(self, prescription: Prescription) -> PrescriptionLoadReport:
        """
        Load every prescribed item that can be sold, skip and report the rest.

        For each item only the units still needed are added (prescribed
        minus what is already linked to that item in the cart).
        """
        self._ensure_mutable()
        self._check_prescription(prescription.id)

        report = PrescriptionLoadReport(prescription_id=prescription.id)
        pharmacy_id = self.session_handle.pharmacy_id

        for item in prescription.items:
            prescribed = item.required_quantity
            if prescribed is None:
                report.failures.append(PartialLoadWarning(item.name, PartialLoadWarning.INVALID_QUANTITY))
                continue

            product = self.stock_oracle.find_by_name(item.name, pharmacy_id)
            if product is None:
                report.failures.append(
                    PartialLoadWarning(item.name, PartialLoadWarning.NOT_FOUND, needed=prescribed)
                )
                continue

            link = PrescriptionLink(prescription_id=prescription.id, item=item)
            existing = self._lines.get(line_key(product.sku, link))
            needed = prescribed - (existing.quantity if existing else 0)
            if needed <= 0:
                report.already_in_cart.append(item.name)
                self.active_prescription = prescription
                continue

            try:
                report.loaded.append(self.add_item(product, needed, link))
                # Linked lines exist from here on, even if a later lookup raises
                self.active_prescription = prescription
            except StockExceeded:
                report.failures.append(
                    PartialLoadWarning(
                        item.name,
                        PartialLoadWarning.INSUFFICIENT_STOCK,
                        needed=needed,
                        available=product.units_available,
                    )
                )

        for failure in report.failures:
            logger.warning(
                "Prescription %s: %s not loaded (%s)",
                prescription.id, failure.item_name, failure.reason,
            )
        return report

    def drop_prescription(self) -> None:
        """Remove every prescription-linked line (identity changed or cleared)."""
        self._ensure_mutable()
        for key in [k for k, line in self._lines.items() if line.link is not None]:
            del self._lines[key]
        self.active_prescription = None

    @contextmanager
    def frozen(self):
        """Reject every mutation while an order is in flight."""
        if self._frozen:
            raise CommitInFlight("An order is already being submitted")
        self._frozen = True
        try:
            yield self
        finally:
            self._frozen = False
