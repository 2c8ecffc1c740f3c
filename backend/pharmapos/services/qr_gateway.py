"""QR payment provider client (Mercado Pago checkout preferences)."""

from __future__ import annotations

import logging
from typing import Any, Dict, Optional

import httpx
from flask import current_app

logger = logging.getLogger(__name__)


class QRGatewayError(Exception):
    """Raised when the QR provider cannot create a payment order."""
    def __init__(self, message: str, details: dict | None = None):
        super().__init__(message)
        self.details = details or {}


class QRPaymentGateway:
    """
    Client for the provider's checkout preference API.

    A preference is the provider-side order; its init_point URL is what the
    terminal encodes into the QR code shown to the customer. Funds are
    confirmed later through the settlement webhook, never by this client.
    """

    DEFAULT_BASE_URL = "https://api.mercadopago.com"

    def __init__(
        self,
        access_token: Optional[str],
        *,
        base_url: Optional[str] = None,
        timeout: float = 10.0,
        currency_id: str = "ARS",
        notification_url: Optional[str] = None,
        transport: Optional[httpx.BaseTransport] = None,
    ):
        self.access_token = access_token
        self.base_url = (base_url or self.DEFAULT_BASE_URL).rstrip("/")
        self.currency_id = currency_id
        self.notification_url = notification_url
        self.client = httpx.Client(base_url=self.base_url, timeout=timeout, transport=transport)

    def _headers(self) -> Dict[str, str]:
        return {
            "Authorization": f"Bearer {self.access_token}",
            "Content-Type": "application/json",
        }

    def create(self, amount_cents: int, description: str, external_reference: str) -> Dict[str, Any]:
        """
        Create a provider order.

        Args:
            amount_cents: Amount to charge (in cents)
            description: Text shown to the payer
            external_reference: Our reference, echoed back by the webhook

        Returns:
            {"provider_order_id": ..., "payload": init_point URL}

        Raises:
            QRGatewayError: not configured, HTTP error, or malformed response
        """
        if not self.access_token:
            raise QRGatewayError("QR payments are not configured")
        if amount_cents <= 0:
            raise QRGatewayError("QR amount must be positive")

        body: Dict[str, Any] = {
            "items": [
                {
                    "title": description,
                    "quantity": 1,
                    "currency_id": self.currency_id,
                    "unit_price": round(amount_cents / 100, 2),
                }
            ],
            "external_reference": str(external_reference),
        }
        if self.notification_url:
            body["notification_url"] = self.notification_url

        logger.info("[QR] Creating preference for %s (%s cents)", external_reference, amount_cents)

        try:
            response = self.client.post("/checkout/preferences", json=body, headers=self._headers())
            response.raise_for_status()
            data = response.json()
        except httpx.HTTPStatusError as e:
            logger.error("[QR] Provider rejected preference: %s", e.response.text)
            raise QRGatewayError(
                "QR provider rejected the order",
                details={"status_code": e.response.status_code},
            ) from e
        except (httpx.HTTPError, ValueError) as e:
            logger.error("[QR] Provider unreachable or invalid response: %s", e)
            raise QRGatewayError("QR provider unavailable") from e

        provider_order_id = data.get("id")
        payload = data.get("init_point")
        if not provider_order_id or not payload:
            logger.error("[QR] Preference response missing id/init_point: %s", data)
            raise QRGatewayError("QR provider returned an incomplete order")

        logger.info("[QR] Preference created: %s", provider_order_id)
        return {"provider_order_id": str(provider_order_id), "payload": payload}

    def close(self) -> None:
        self.client.close()


def init_app(app) -> None:
    """Install the configured gateway on the app (tests may replace it)."""
    app.extensions["qr_gateway"] = QRPaymentGateway(
        app.config.get("QR_GATEWAY_ACCESS_TOKEN"),
        base_url=app.config.get("QR_GATEWAY_BASE_URL"),
        timeout=app.config.get("QR_GATEWAY_TIMEOUT", 10.0),
        notification_url=app.config.get("QR_NOTIFICATION_URL"),
    )


def get_gateway() -> QRPaymentGateway:
    return current_app.extensions["qr_gateway"]
