# Overview: Flask API routes for appointment payments collected at the till.

from flask import Blueprint, request, jsonify, current_app

from ..services import appointment_payment_service
from ..services.appointment_payment_service import AppointmentPaymentError, AppointmentPaymentNotFound
from ..validation import ValidationError, coerce_cents, coerce_int, optional_str, require_fields


appointments_bp = Blueprint("appointments", __name__, url_prefix="/api/appointment-payments")


@appointments_bp.get("/<receipt_number>")
def find_payment_route(receipt_number: str):
    try:
        payment = appointment_payment_service.find_by_receipt(receipt_number)
        return jsonify({"payment": payment.to_dict()}), 200
    except AppointmentPaymentNotFound as e:
        return jsonify({"error": str(e), "code": "not_found", "details": e.details}), 404
    except AppointmentPaymentError as e:
        return jsonify({"error": str(e), "code": "validation_error"}), 400


@appointments_bp.post("/<receipt_number>/pay")
def confirm_payment_route(receipt_number: str):
    """
    Collect a pending appointment payment.

    Request body:
    {
        "price_cents": 35000,
        "payment_method": "cash" | "card",
        "card_reference": "AUTH123",  (card only)
        "cash_session_id": 12,
        "worker_id": 3
    }
    """
    try:
        data = require_fields(
            request.get_json(silent=True),
            "price_cents", "payment_method", "cash_session_id", "worker_id",
        )
        payment = appointment_payment_service.confirm_payment(
            receipt_number,
            price_cents=coerce_cents(data["price_cents"], "price_cents", allow_zero=False),
            payment_method=str(data["payment_method"]).strip().lower(),
            cash_session_id=coerce_int(data["cash_session_id"], "cash_session_id", minimum=1),
            worker_id=coerce_int(data["worker_id"], "worker_id", minimum=1),
            card_reference=optional_str(data.get("card_reference"), max_length=128),
        )
        return jsonify({"payment": payment.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e), "code": "validation_error"}), 400
    except AppointmentPaymentNotFound as e:
        return jsonify({"error": str(e), "code": "not_found", "details": e.details}), 404
    except AppointmentPaymentError as e:
        return jsonify({"error": str(e), "code": "appointment_error", "details": e.details}), 409
    except Exception:
        current_app.logger.exception("Failed to confirm appointment payment")
        return jsonify({"error": "Internal server error", "code": "internal_error"}), 500
