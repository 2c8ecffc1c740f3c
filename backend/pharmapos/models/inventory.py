from __future__ import annotations

from ..extensions import db
from pharmapos.time_utils import to_utc_z


class Product(db.Model):
    """
    Medication stocked by a pharmacy.

    SKU DESIGN DECISION:
    Product.sku holds the scannable code (UPC) and is unique within a pharmacy.
    units_available is the authoritative stock figure; terminals only ever
    hold a snapshot of it and the order commit re-checks it under lock.
    """
    __tablename__ = "products"
    __table_args__ = (
        db.UniqueConstraint("pharmacy_id", "sku", name="uq_products_pharmacy_sku"),
        db.Index("ix_products_pharmacy_name", "pharmacy_id", "name"),
        {"sqlite_autoincrement": True},
    )

    id = db.Column(db.Integer, primary_key=True)
    pharmacy_id = db.Column(db.Integer, db.ForeignKey("pharmacies.id"), nullable=False, index=True)

    sku = db.Column(db.String(64), nullable=False)
    name = db.Column(db.String(255), nullable=False)

    # Authoritative storage in cents (terminals may only format for display)
    price_cents = db.Column(db.Integer, nullable=False)
    units_available = db.Column(db.Integer, nullable=False, default=0)

    version_id = db.Column(db.Integer, nullable=False, default=1)
    updated_at = db.Column(
        db.DateTime(timezone=True),
        nullable=False,
        server_default=db.func.now(),
        onupdate=db.func.now(),
    )

    pharmacy = db.relationship("Pharmacy", backref=db.backref("products", lazy=True))
    __mapper_args__ = {"version_id_col": version_id}

    def __repr__(self) -> str:
        return f"<Product id={self.id} sku={self.sku!r} units={self.units_available}>"

    def to_dict(self) -> dict:
        return {
            "id": self.id,
            "pharmacy_id": self.pharmacy_id,
            "sku": self.sku,
            "name": self.name,
            "price_cents": self.price_cents,
            "units_available": self.units_available,
            "updated_at": to_utc_z(self.updated_at),
        }
