from __future__ import annotations

from ..extensions import db
from pharmapos.time_utils import to_utc_z


class Order(db.Model):
    """
    Committed POS sale.

    WHY: The order is the single atomic commit point of a checkout. It
    carries the identity (patient or walk-in), the payment method, the
    cash session it is attributed to and any prescription dispensation
    it caused.

    SETTLEMENT:
    - SETTLED: cash/card, money collected at the till
    - PENDING: qr, provider order created, funds not yet confirmed
    - CONFIRMED / REJECTED: qr, decided by the provider webhook
    """
    __tablename__ = "orders"
    __table_args__ = (
        db.UniqueConstraint("receipt_number", name="uq_orders_receipt_number"),
        db.Index("ix_orders_session_method", "cash_session_id", "payment_method"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    pharmacy_id = db.Column(db.Integer, db.ForeignKey("pharmacies.id"), nullable=False, index=True)
    cash_session_id = db.Column(db.Integer, db.ForeignKey("cash_sessions.id"), nullable=False, index=True)
    worker_id = db.Column(db.Integer, db.ForeignKey("workers.id"), nullable=False)

    # Set after flush (needs the id)
    receipt_number = db.Column(db.String(64), nullable=True)

    # Identity: patient or explicit walk-in, never both
    patient_id = db.Column(db.String(64), nullable=True, index=True)
    walk_in = db.Column(db.Boolean, nullable=False, default=False)

    payment_method = db.Column(db.String(16), nullable=False)  # cash, card, qr
    total_cents = db.Column(db.Integer, nullable=False)
    card_reference = db.Column(db.String(128), nullable=True)

    # QR provider tracking
    provider_order_id = db.Column(db.String(128), nullable=True, unique=True)
    qr_payload = db.Column(db.Text, nullable=True)
    settlement_status = db.Column(db.String(16), nullable=False, default="SETTLED", index=True)
    settled_at = db.Column(db.DateTime(timezone=True), nullable=True)

    # Per-prescription updates applied by this order (with previous status)
    dispensation = db.Column(db.JSON, nullable=True)

    description = db.Column(db.String(255), nullable=True)
    created_at = db.Column(db.DateTime(timezone=True), nullable=False, server_default=db.func.now())
    version_id = db.Column(db.Integer, nullable=False, default=1)

    cash_session = db.relationship("CashSession", backref=db.backref("orders", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pharmacy_id": self.pharmacy_id,
            "cash_session_id": self.cash_session_id,
            "worker_id": self.worker_id,
            "receipt_number": self.receipt_number,
            "patient_id": self.patient_id,
            "walk_in": self.walk_in,
            "payment_method": self.payment_method,
            "total_cents": self.total_cents,
            "card_reference": self.card_reference,
            "provider_order_id": self.provider_order_id,
            "qr_payload": self.qr_payload,
            "settlement_status": self.settlement_status,
            "settled_at": to_utc_z(self.settled_at) if self.settled_at else None,
            "dispensation": self.dispensation,
            "description": self.description,
            "created_at": to_utc_z(self.created_at),
            "lines": [line.to_dict() for line in self.lines],
        }


class OrderLine(db.Model):
    """Individual line on an order, optionally tied to a prescribed item."""
    __tablename__ = "order_lines"
    __table_args__ = {"sqlite_autoincrement": True}

    id = db.Column(db.Integer, primary_key=True)
    order_id = db.Column(db.Integer, db.ForeignKey("orders.id"), nullable=False, index=True)
    product_id = db.Column(db.Integer, db.ForeignKey("products.id"), nullable=False)

    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)
    quantity = db.Column(db.Integer, nullable=False)
    unit_price_cents = db.Column(db.Integer, nullable=False)
    line_total_cents = db.Column(db.Integer, nullable=False)

    prescription_id = db.Column(db.Integer, db.ForeignKey("prescriptions.id"), nullable=True, index=True)
    prescribed_item_name = db.Column(db.String(255), nullable=True)

    order = db.relationship("Order", backref=db.backref("lines", lazy=True, order_by="OrderLine.id"))
    product = db.relationship("Product")

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "order_id": self.order_id,
            "product_id": self.product_id,
            "sku": self.sku,
            "name": self.name,
            "quantity": self.quantity,
            "unit_price_cents": self.unit_price_cents,
            "line_total_cents": self.line_total_cents,
            "prescription_id": self.prescription_id,
            "prescribed_item_name": self.prescribed_item_name,
        }
