import json

import httpx
import pytest

from pharmapos.services.qr_gateway import QRGatewayError, QRPaymentGateway


def _gateway(handler, **kwargs):
    return QRPaymentGateway(
        "test-token",
        base_url="https://mp.test/",
        transport=httpx.MockTransport(handler),
        **kwargs,
    )


def test_creates_preference():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(201, json={"id": "pref-9", "init_point": "https://mp.test/checkout?pref_id=pref-9"})

    gateway = _gateway(handler, notification_url="https://pos.example/api/orders/webhooks/qr")
    result = gateway.create(1999, "Farmacia Central sale", "R-1-000042")

    assert result == {"provider_order_id": "pref-9", "payload": "https://mp.test/checkout?pref_id=pref-9"}
    [request] = seen
    assert request.url == "https://mp.test/checkout/preferences"
    body = json.loads(request.content)
    assert body["items"][0]["unit_price"] == 19.99
    assert body["items"][0]["currency_id"] == "ARS"
    assert body["notification_url"] == "https://pos.example/api/orders/webhooks/qr"


def test_incomplete_response_is_an_error():
    gateway = _gateway(lambda request: httpx.Response(201, json={"id": "pref-1"}))

    with pytest.raises(QRGatewayError, match="incomplete"):
        gateway.create(1000, "sale", "R-1-000001")


def test_rejection_carries_status_code():
    gateway = _gateway(lambda request: httpx.Response(400, json={"message": "invalid token"}))

    with pytest.raises(QRGatewayError) as exc:
        gateway.create(1000, "sale", "R-1-000001")
    assert exc.value.details == {"status_code": 400}


def test_network_error_is_provider_unavailable():
    def handler(request):
        raise httpx.ConnectTimeout("timed out", request=request)

    with pytest.raises(QRGatewayError, match="unavailable"):
        _gateway(handler).create(1000, "sale", "R-1-000001")


def test_requires_configuration_and_positive_amount():
    calls = []
    unconfigured = QRPaymentGateway(None, transport=httpx.MockTransport(calls.append))

    with pytest.raises(QRGatewayError, match="not configured"):
        unconfigured.create(1000, "sale", "R-1-000001")
    with pytest.raises(QRGatewayError, match="positive"):
        _gateway(calls.append).create(0, "sale", "R-1-000001")
    assert calls == []
