# Overview: Flask API routes for order submission and QR settlement.

# backend/pharmapos/routes/orders.py
"""
Order API Routes

WHY: One request commits a whole sale. Terminals send items, identity,
payment method, cash session and worker; the store re-validates and
answers with the receipt or a structured error.

ERROR CODES (JSON "code"):
- validation_error (400): malformed request, missing identity/card reference
- prescription_error (400): prescription unknown or not the patient's
- stock_conflict (409): details.lines lists every short line
- session_invalid (409): cash session closed, unknown, or foreign
- provider_error (502): QR order could not be created, nothing persisted
"""

import hashlib
import hmac
import logging

from flask import Blueprint, request, jsonify, current_app

from ..services import order_service
from ..services.order_service import OrderError, OrderNotFoundError, StockConflictError, SessionInvalidError
from ..services.prescription_service import PrescriptionError
from ..services.qr_gateway import QRGatewayError
from ..validation import ValidationError, coerce_cents, coerce_int, optional_str, require_fields

logger = logging.getLogger(__name__)

orders_bp = Blueprint("orders", __name__, url_prefix="/api/orders")


def _parse_walk_in(value) -> bool:
    if value is None:
        return False
    if not isinstance(value, bool):
        raise ValidationError("walk_in must be a boolean")
    return value


@orders_bp.post("/")
@orders_bp.post("")
def create_order_route():
    """
    Commit a sale.

    Request body:
    {
        "pharmacy_id": 1,
        "worker_id": 3,
        "cash_session_id": 12,
        "items": [{"sku": "750100", "quantity": 2,
                   "prescription_id": 7, "prescribed_item_name": "Paracetamol 500mg"}],
        "payment_method": "cash" | "card" | "qr",
        "patient_id": "P-100" | null,
        "walk_in": false,
        "card_reference": "AUTH123",            (card only)
        "amount_tendered_cents": 20000,          (cash, optional)
        "dispensation": [{"prescription_id": 7, "status": "incomplete"}]
    }
    """
    try:
        data = require_fields(
            request.get_json(silent=True),
            "pharmacy_id", "worker_id", "cash_session_id", "items", "payment_method",
        )

        tendered = data.get("amount_tendered_cents")
        order = order_service.create_order(
            pharmacy_id=coerce_int(data["pharmacy_id"], "pharmacy_id", minimum=1),
            worker_id=coerce_int(data["worker_id"], "worker_id", minimum=1),
            cash_session_id=coerce_int(data["cash_session_id"], "cash_session_id", minimum=1),
            items=data["items"],
            payment_method=str(data["payment_method"]).strip().lower(),
            patient_id=optional_str(data.get("patient_id"), max_length=64),
            walk_in=_parse_walk_in(data.get("walk_in")),
            card_reference=optional_str(data.get("card_reference"), max_length=128),
            amount_tendered_cents=coerce_cents(tendered, "amount_tendered_cents") if tendered is not None else None,
            dispensation=data.get("dispensation"),
            description=optional_str(data.get("description"), max_length=255),
        )
        return jsonify({"order": order.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e), "code": "validation_error"}), 400
    except StockConflictError as e:
        return jsonify({"error": str(e), "code": "stock_conflict", "details": e.details}), 409
    except SessionInvalidError as e:
        return jsonify({"error": str(e), "code": "session_invalid", "details": e.details}), 409
    except PrescriptionError as e:
        return jsonify({"error": str(e), "code": "prescription_error", "details": e.details}), 400
    except QRGatewayError as e:
        return jsonify({"error": str(e), "code": "provider_error", "details": e.details}), 502
    except OrderError as e:
        return jsonify({"error": str(e), "code": "order_error", "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to create order")
        return jsonify({"error": "Internal server error", "code": "internal_error"}), 500


@orders_bp.get("/<int:order_id>")
def get_order_route(order_id: int):
    try:
        order = order_service.get_order(order_id)
        return jsonify({"order": order.to_dict()}), 200
    except OrderNotFoundError as e:
        return jsonify({"error": str(e), "code": "not_found", "details": e.details}), 404


def verify_qr_signature(request_data: bytes, signature: str | None) -> bool:
    """
    Verify the provider's HMAC-SHA256 signature of the raw body.

    Verification is skipped when no secret is configured.
    """
    secret = current_app.config.get("QR_WEBHOOK_SECRET")
    if not secret:
        logger.info("Skipping QR webhook signature verification (no secret configured)")
        return True

    if not signature:
        logger.warning("Missing X-Signature header in QR webhook")
        return False

    expected_signature = hmac.new(secret.encode("utf-8"), request_data, hashlib.sha256).hexdigest()
    is_valid = hmac.compare_digest(signature, expected_signature)
    if not is_valid:
        logger.warning("Invalid QR webhook signature")
    return is_valid


@orders_bp.post("/webhooks/qr")
def qr_webhook_route():
    """
    Settlement notification from the QR provider.

    Body: {"provider_order_id": "...", "status": "approved" | "rejected" | ...}
    """
    if not verify_qr_signature(request.get_data(), request.headers.get("X-Signature")):
        return jsonify({"error": "Invalid signature", "code": "unauthorized"}), 401

    data = request.get_json(silent=True) or {}
    provider_order_id = optional_str(data.get("provider_order_id") or data.get("preference_id"))
    status = optional_str(data.get("status"))
    if not provider_order_id or not status:
        return jsonify({"error": "provider_order_id and status required", "code": "validation_error"}), 400

    try:
        order = order_service.record_qr_settlement(provider_order_id, status)
        return jsonify({"order": order.to_dict()}), 200
    except OrderNotFoundError as e:
        return jsonify({"error": str(e), "code": "not_found", "details": e.details}), 404
    except Exception:
        current_app.logger.exception("Failed to record QR settlement")
        return jsonify({"error": "Internal server error", "code": "internal_error"}), 500
