# Overview: Flask API routes for the cash session store; parses input and returns JSON responses.

# backend/pharmapos/routes/cash_sessions.py
"""
Cash Session API Routes

WHY: Terminals open, restore and close tills through these endpoints.

DESIGN:
- Open is rejected with 409 while another session is open for the pharmacy
  (the response names the worker holding it)
- Summary is computed from committed rows on every request
- Close recomputes the expected cash itself; callers send only the count
"""

from flask import Blueprint, request, jsonify, current_app

from ..services import cash_session_service
from ..services.cash_session_service import CashSessionError, SessionAlreadyOpenError, SessionNotFoundError
from ..validation import ValidationError, coerce_cents, coerce_int, optional_str, require_fields


cash_sessions_bp = Blueprint("cash_sessions", __name__, url_prefix="/api/cash-sessions")


@cash_sessions_bp.post("/")
@cash_sessions_bp.post("")
def open_session_route():
    """
    Open a till.

    Request body:
    {
        "pharmacy_id": 1,
        "worker_id": 3,
        "opening_float_cents": 50000
    }
    """
    try:
        data = require_fields(request.get_json(silent=True), "pharmacy_id", "worker_id", "opening_float_cents")
        opening_float = coerce_int(data["opening_float_cents"], "opening_float_cents")
        if opening_float < 0:
            raise ValidationError("opening_float_cents cannot be negative")

        session = cash_session_service.open_session(
            pharmacy_id=coerce_int(data["pharmacy_id"], "pharmacy_id", minimum=1),
            worker_id=coerce_int(data["worker_id"], "worker_id", minimum=1),
            opening_float_cents=coerce_cents(opening_float, "opening_float_cents"),
        )
        return jsonify({"session": session.to_dict()}), 201

    except ValidationError as e:
        return jsonify({"error": str(e), "code": "validation_error"}), 400
    except SessionAlreadyOpenError as e:
        return jsonify({"error": str(e), "code": "session_conflict", "details": e.details}), 409
    except CashSessionError as e:
        return jsonify({"error": str(e), "code": "session_error", "details": e.details}), 400
    except Exception:
        current_app.logger.exception("Failed to open cash session")
        return jsonify({"error": "Internal server error", "code": "internal_error"}), 500


@cash_sessions_bp.get("/")
@cash_sessions_bp.get("")
def list_sessions_route():
    pharmacy_id = request.args.get("pharmacy_id", type=int)
    status = request.args.get("status")
    limit = min(request.args.get("limit", default=20, type=int) or 20, 100)

    sessions = cash_session_service.list_sessions(pharmacy_id=pharmacy_id, status=status, limit=limit)
    return jsonify({"sessions": [s.to_dict() for s in sessions]}), 200


@cash_sessions_bp.get("/open")
def get_open_session_route():
    """Open session for a pharmacy; {"session": null} when the till is closed."""
    pharmacy_id = request.args.get("pharmacy_id", type=int)
    if not pharmacy_id:
        return jsonify({"error": "pharmacy_id required", "code": "validation_error"}), 400

    session = cash_session_service.get_open_session(pharmacy_id)
    return jsonify({"session": session.to_dict() if session else None}), 200


@cash_sessions_bp.get("/<int:session_id>")
def get_session_route(session_id: int):
    try:
        session = cash_session_service.get_session(session_id)
        return jsonify({"session": session.to_dict()}), 200
    except SessionNotFoundError as e:
        return jsonify({"error": str(e), "code": "not_found", "details": e.details}), 404


@cash_sessions_bp.get("/<int:session_id>/summary")
def session_summary_route(session_id: int):
    try:
        summary = cash_session_service.compute_summary(session_id)
        return jsonify({"summary": summary}), 200
    except SessionNotFoundError as e:
        return jsonify({"error": str(e), "code": "not_found", "details": e.details}), 404
    except Exception:
        current_app.logger.exception("Failed to compute cash session summary")
        return jsonify({"error": "Internal server error", "code": "internal_error"}), 500


@cash_sessions_bp.post("/<int:session_id>/close")
def close_session_route(session_id: int):
    """
    Close a till.

    Request body:
    {
        "counted_cash_cents": 62000,
        "notes": "..."  (optional)
    }
    """
    try:
        data = require_fields(request.get_json(silent=True), "counted_cash_cents")
        session = cash_session_service.close_session(
            session_id,
            counted_cash_cents=coerce_cents(data["counted_cash_cents"], "counted_cash_cents"),
            notes=optional_str(data.get("notes"), max_length=2000),
        )
        return jsonify({"session": session.to_dict()}), 200

    except ValidationError as e:
        return jsonify({"error": str(e), "code": "validation_error"}), 400
    except SessionNotFoundError as e:
        return jsonify({"error": str(e), "code": "not_found", "details": e.details}), 404
    except CashSessionError as e:
        return jsonify({"error": str(e), "code": "session_invalid", "details": e.details}), 409
    except Exception:
        current_app.logger.exception("Failed to close cash session")
        return jsonify({"error": "Internal server error", "code": "internal_error"}), 500
