"""
Store collaborators for the terminal engine.

ServiceBackend calls the service layer in-process (same Flask app).
HttpBackend talks to the JSON API over httpx.

Both expose the same methods and translate store failures into the
terminal's error taxonomy (errors.py).
"""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from sqlalchemy.exc import SQLAlchemyError

from .cart import Prescription, ProductSnapshot
from .cash_session import CashSessionRecord, CashSessionSummary
from .errors import CommitFailure, SessionConflict, SessionError, StockConflict, ValidationError

logger = logging.getLogger(__name__)


class ServiceBackend:
    """In-process backend: every call runs inside the app's context."""

    def __init__(self, app):
        self.app = app

    # -- stock oracle ---------------------------------------------------

    def query(self, sku: str, pharmacy_id: int) -> ProductSnapshot:
        from ..services import stock_service

        with self.app.app_context():
            try:
                return ProductSnapshot.from_dict(stock_service.query_stock(sku, pharmacy_id).to_dict())
            except stock_service.StockError as e:
                raise ValidationError(str(e), details=e.details)

    def find_by_name(self, name: str, pharmacy_id: int) -> ProductSnapshot | None:
        from ..services import stock_service

        with self.app.app_context():
            product = stock_service.find_by_name(name, pharmacy_id)
            return ProductSnapshot.from_dict(product.to_dict()) if product else None

    def search_products(self, pharmacy_id: int, query: str) -> list[ProductSnapshot]:
        from ..services import stock_service

        with self.app.app_context():
            return [ProductSnapshot.from_dict(p.to_dict()) for p in stock_service.search_products(pharmacy_id, query)]

    # -- prescriptions --------------------------------------------------

    def fetch_prescriptions(self, patient_id: str) -> list[Prescription]:
        from ..services import prescription_service

        with self.app.app_context():
            rows = prescription_service.fetch_prescriptions(
                patient_id,
                lookback_days=self.app.config.get("PRESCRIPTION_LOOKBACK_DAYS", 60),
            )
            return [Prescription.from_dict(p.to_dict()) for p in rows]

    # -- orders ---------------------------------------------------------

    def submit_order(self, request: Dict[str, Any]) -> dict:
        from ..services import order_service
        from ..services.prescription_service import PrescriptionError
        from ..services.qr_gateway import QRGatewayError
        from ..validation import ValidationError as StoreValidationError

        with self.app.app_context():
            try:
                order = order_service.create_order(
                    pharmacy_id=request["pharmacy_id"],
                    worker_id=request["worker_id"],
                    cash_session_id=request["cash_session_id"],
                    items=request["items"],
                    payment_method=request["payment_method"],
                    patient_id=request.get("patient_id"),
                    walk_in=request.get("walk_in", False),
                    card_reference=request.get("card_reference"),
                    amount_tendered_cents=request.get("amount_tendered_cents"),
                    dispensation=request.get("dispensation"),
                    description=request.get("description"),
                )
                return order.to_dict()
            except StoreValidationError as e:
                raise ValidationError(str(e))
            except order_service.StockConflictError as e:
                raise StockConflict(str(e), e.details.get("lines", []))
            except order_service.SessionInvalidError as e:
                raise SessionError(str(e), details=e.details)
            except PrescriptionError as e:
                raise ValidationError(str(e), details=e.details)
            except (QRGatewayError, order_service.OrderError) as e:
                raise CommitFailure(str(e), details=e.details)
            except SQLAlchemyError as e:
                logger.exception("Order submission failed")
                raise CommitFailure("Order could not be saved") from e

    def get_order(self, order_id: int) -> dict | None:
        from ..services import order_service

        with self.app.app_context():
            try:
                return order_service.get_order(order_id).to_dict()
            except order_service.OrderNotFoundError:
                return None

    # -- cash sessions --------------------------------------------------

    def open_session(self, pharmacy_id: int, worker_id: int, opening_float_cents: int) -> CashSessionRecord:
        from ..services import cash_session_service

        with self.app.app_context():
            try:
                session = cash_session_service.open_session(pharmacy_id, worker_id, opening_float_cents)
                return CashSessionRecord.from_dict(session.to_dict())
            except cash_session_service.SessionAlreadyOpenError as e:
                raise SessionConflict(str(e), holder=e.details)
            except cash_session_service.CashSessionError as e:
                raise SessionError(str(e), details=e.details)

    def get_session(self, session_id: int) -> CashSessionRecord | None:
        from ..services import cash_session_service

        with self.app.app_context():
            try:
                return CashSessionRecord.from_dict(cash_session_service.get_session(session_id).to_dict())
            except cash_session_service.SessionNotFoundError:
                return None

    def get_open_session(self, pharmacy_id: int) -> CashSessionRecord | None:
        from ..services import cash_session_service

        with self.app.app_context():
            session = cash_session_service.get_open_session(pharmacy_id)
            return CashSessionRecord.from_dict(session.to_dict()) if session else None

    def session_summary(self, session_id: int) -> CashSessionSummary:
        from ..services import cash_session_service

        with self.app.app_context():
            try:
                return CashSessionSummary.from_dict(cash_session_service.compute_summary(session_id))
            except cash_session_service.SessionNotFoundError as e:
                raise SessionError(str(e), details=e.details)

    def close_session(self, session_id: int, counted_cash_cents: int, notes: str | None = None) -> CashSessionRecord:
        from ..services import cash_session_service

        with self.app.app_context():
            try:
                session = cash_session_service.close_session(session_id, counted_cash_cents, notes)
                return CashSessionRecord.from_dict(session.to_dict())
            except cash_session_service.CashSessionError as e:
                raise SessionError(str(e), details=e.details)
            except SQLAlchemyError as e:
                logger.exception("Cash session close failed")
                raise CommitFailure("Cash session could not be closed") from e

    # -- appointment payments -------------------------------------------

    def find_appointment_payment(self, receipt_number: str) -> dict | None:
        from ..services import appointment_payment_service

        with self.app.app_context():
            try:
                return appointment_payment_service.find_by_receipt(receipt_number).to_dict()
            except appointment_payment_service.AppointmentPaymentNotFound:
                return None
            except appointment_payment_service.AppointmentPaymentError as e:
                raise ValidationError(str(e))

    def pay_appointment(self, receipt_number: str, **payment) -> dict:
        from ..services import appointment_payment_service

        with self.app.app_context():
            try:
                return appointment_payment_service.confirm_payment(receipt_number, **payment).to_dict()
            except appointment_payment_service.AppointmentPaymentError as e:
                raise ValidationError(str(e), details=e.details)


class HttpBackend:
    """
    Remote backend over the JSON API.

    Status/code mapping:
    - 400 validation/prescription/order errors -> ValidationError
    - 409 stock_conflict -> StockConflict (per-line list)
    - 409 session_conflict -> SessionConflict (holder details)
    - 409 session_invalid, 400 session_error -> SessionError
    - 404 not_found (on a required lookup) -> ValidationError
    - network failures, 5xx, anything else -> CommitFailure
    """

    def __init__(self, base_url: str, *, timeout: float = 10.0, transport: Optional[httpx.BaseTransport] = None):
        self.base_url = base_url.rstrip("/")
        self.client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def _headers(self) -> Dict[str, str]:
        return {"Content-Type": "application/json"}

    def _request(self, method: str, path: str, **kwargs) -> httpx.Response:
        try:
            return self.client.request(method, path, headers=self._headers(), **kwargs)
        except httpx.HTTPError as e:
            logger.warning("Store request %s %s failed: %s", method, path, e)
            raise CommitFailure("Store unreachable") from e

    @staticmethod
    def _raise_for_error(response: httpx.Response) -> None:
        if response.status_code < 400:
            return
        try:
            body = response.json()
        except ValueError:
            body = {}
        message = body.get("error") or f"Store error ({response.status_code})"
        code = body.get("code")
        details = body.get("details") or {}

        if code == "stock_conflict":
            raise StockConflict(message, details.get("lines", []))
        if code == "session_conflict":
            raise SessionConflict(message, holder=details)
        if code in ("session_invalid", "session_error"):
            raise SessionError(message, details=details)
        if response.status_code in (400, 404, 409) and code not in (None, "internal_error", "provider_error"):
            raise ValidationError(message, details=details)
        raise CommitFailure(message, details=details)

    def _get_optional(self, path: str, key: str, **kwargs) -> dict | None:
        response = self._request("GET", path, **kwargs)
        if response.status_code == 404:
            return None
        self._raise_for_error(response)
        return response.json().get(key)

    # -- stock oracle ---------------------------------------------------

    def query(self, sku: str, pharmacy_id: int) -> ProductSnapshot:
        response = self._request("GET", "/api/products/stock", params={"sku": sku, "pharmacy_id": pharmacy_id})
        self._raise_for_error(response)
        return ProductSnapshot.from_dict(response.json()["product"])

    def find_by_name(self, name: str, pharmacy_id: int) -> ProductSnapshot | None:
        product = self._get_optional(
            "/api/products/by-name", "product", params={"name": name, "pharmacy_id": pharmacy_id},
        )
        return ProductSnapshot.from_dict(product) if product else None

    def search_products(self, pharmacy_id: int, query: str) -> list[ProductSnapshot]:
        response = self._request("GET", "/api/products/search", params={"q": query, "pharmacy_id": pharmacy_id})
        self._raise_for_error(response)
        return [ProductSnapshot.from_dict(p) for p in response.json()["products"]]

    # -- prescriptions --------------------------------------------------

    def fetch_prescriptions(self, patient_id: str) -> list[Prescription]:
        response = self._request("GET", "/api/prescriptions", params={"patient_id": patient_id})
        self._raise_for_error(response)
        return [Prescription.from_dict(p) for p in response.json()["prescriptions"]]

    # -- orders ---------------------------------------------------------

    def submit_order(self, request: Dict[str, Any]) -> dict:
        response = self._request("POST", "/api/orders", json=request)
        self._raise_for_error(response)
        return response.json()["order"]

    def get_order(self, order_id: int) -> dict | None:
        return self._get_optional(f"/api/orders/{order_id}", "order")

    # -- cash sessions --------------------------------------------------

    def open_session(self, pharmacy_id: int, worker_id: int, opening_float_cents: int) -> CashSessionRecord:
        response = self._request("POST", "/api/cash-sessions", json={
            "pharmacy_id": pharmacy_id,
            "worker_id": worker_id,
            "opening_float_cents": opening_float_cents,
        })
        self._raise_for_error(response)
        return CashSessionRecord.from_dict(response.json()["session"])

    def get_session(self, session_id: int) -> CashSessionRecord | None:
        session = self._get_optional(f"/api/cash-sessions/{session_id}", "session")
        return CashSessionRecord.from_dict(session) if session else None

    def get_open_session(self, pharmacy_id: int) -> CashSessionRecord | None:
        session = self._get_optional("/api/cash-sessions/open", "session", params={"pharmacy_id": pharmacy_id})
        return CashSessionRecord.from_dict(session) if session else None

    def session_summary(self, session_id: int) -> CashSessionSummary:
        response = self._request("GET", f"/api/cash-sessions/{session_id}/summary")
        if response.status_code == 404:
            raise SessionError("Cash session not found", details={"session_id": session_id})
        self._raise_for_error(response)
        return CashSessionSummary.from_dict(response.json()["summary"])

    def close_session(self, session_id: int, counted_cash_cents: int, notes: str | None = None) -> CashSessionRecord:
        response = self._request("POST", f"/api/cash-sessions/{session_id}/close", json={
            "counted_cash_cents": counted_cash_cents,
            "notes": notes,
        })
        if response.status_code == 404:
            raise SessionError("Cash session not found", details={"session_id": session_id})
        self._raise_for_error(response)
        return CashSessionRecord.from_dict(response.json()["session"])

    # -- appointment payments -------------------------------------------

    def find_appointment_payment(self, receipt_number: str) -> dict | None:
        return self._get_optional(f"/api/appointment-payments/{receipt_number}", "payment")

    def pay_appointment(self, receipt_number: str, **payment) -> dict:
        response = self._request("POST", f"/api/appointment-payments/{receipt_number}/pay", json=payment)
        self._raise_for_error(response)
        return response.json()["payment"]

    def close(self) -> None:
        self.client.close()
