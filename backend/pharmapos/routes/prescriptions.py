# Overview: Flask API routes for the prescription store.

from flask import Blueprint, request, jsonify, current_app

from ..services import prescription_service
from ..services.prescription_service import PrescriptionError
from ..time_utils import parse_iso_date


prescriptions_bp = Blueprint("prescriptions", __name__, url_prefix="/api/prescriptions")


@prescriptions_bp.get("/")
@prescriptions_bp.get("")
def list_prescriptions_route():
    """
    Pending prescriptions for a patient (newest first).

    Query: ?patient_id=...[&as_of=YYYY-MM-DD]
    """
    patient_id = (request.args.get("patient_id") or "").strip()
    if not patient_id:
        return jsonify({"error": "patient_id required", "code": "validation_error"}), 400

    try:
        reference = parse_iso_date(request.args.get("as_of"))
    except ValueError:
        return jsonify({"error": "as_of must be YYYY-MM-DD", "code": "validation_error"}), 400

    prescriptions = prescription_service.fetch_prescriptions(
        patient_id,
        lookback_days=current_app.config.get("PRESCRIPTION_LOOKBACK_DAYS", 60),
        reference=reference,
    )
    return jsonify({"prescriptions": [p.to_dict() for p in prescriptions]}), 200


@prescriptions_bp.get("/<int:prescription_id>")
def get_prescription_route(prescription_id: int):
    try:
        prescription = prescription_service.get_prescription(prescription_id)
        return jsonify({"prescription": prescription.to_dict()}), 200
    except PrescriptionError as e:
        return jsonify({"error": str(e), "code": "not_found", "details": e.details}), 404
