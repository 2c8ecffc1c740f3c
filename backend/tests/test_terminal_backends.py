"""
Terminal engine against the real store.

Every scenario runs twice: in-process through ServiceBackend, and over the
JSON API through HttpBackend on an httpx.WSGITransport bound to the app.
Both must surface the same errors to the terminal.
"""

import httpx
import pytest

from pharmapos.models import Prescription, Product
from pharmapos.pos import HttpBackend, ServiceBackend, SessionMemory, Terminal, payment
from pharmapos.pos.cash_session import CONFLICT, RESUMED
from pharmapos.pos.checkout import FUNDS_CONFIRMED, FUNDS_REJECTED, LOCALLY_FINALIZED
from pharmapos.pos.errors import CommitFailure, SessionConflict, SessionError, StockConflict, ValidationError


@pytest.fixture(params=["service", "http"])
def backend(request, app):
    if request.param == "service":
        yield ServiceBackend(app)
        return
    remote = HttpBackend("http://pos.test", transport=httpx.WSGITransport(app=app))
    yield remote
    remote.close()


@pytest.fixture
def make_terminal(backend, clock, tmp_path):
    def _make(pharmacy, worker, state="pos_state.json"):
        return Terminal(
            backend, pharmacy.id, worker.id,
            memory=SessionMemory(str(tmp_path / state)),
            card_settle_seconds=10,
            clock=clock,
            sleep=lambda seconds: None,
        )
    return _make


@pytest.fixture
def store(db_session, pharmacy, worker, second_worker, products, prescription, appointment_payment):
    """Seeded store; rows are committed so backend calls can see them."""
    return {
        "pharmacy": pharmacy,
        "worker": worker,
        "second_worker": second_worker,
        "products": products,
        "prescription": prescription,
    }


def _units(db_session, product):
    db_session.expire_all()
    return db_session.get(Product, product.id).units_available


def test_prescription_sale_by_card_then_close(store, make_terminal, clock, db_session):
    terminal = make_terminal(store["pharmacy"], store["worker"])
    terminal.sessions.open_session(50000)

    terminal.set_patient("P-100")
    [pending] = terminal.pending_prescriptions()
    report = terminal.load_prescription(pending)
    terminal.scan(store["products"]["syrup"].sku, 1)

    assert not report.is_partial
    assert terminal.cart.total() == 30 * 250 + 2 * 1200 + 12000

    orchestrator = terminal.payment
    orchestrator.select_method("card")
    orchestrator.enter_card_reference("AUTH-771")
    clock.advance(10)
    orchestrator.confirm()
    receipt = orchestrator.commit()

    assert receipt.total_cents == 21900
    assert receipt.dispensation[0]["status"] == "dispensed"
    assert terminal.cart.is_empty()
    assert _units(db_session, store["products"]["amoxicillin"]) == 0
    assert db_session.get(Prescription, store["prescription"].id).dispensation_status == "dispensed"

    terminal.new_sale()
    terminal.set_patient("P-100")
    assert terminal.pending_prescriptions() == []

    result = terminal.sessions.close_session(50000)
    assert result.summary.card_sales_cents == 21900
    assert result.expected_cash_cents == 50000
    assert result.variance_cents == 0


def test_cash_sale_with_appointment_payment(store, make_terminal, db_session):
    terminal = make_terminal(store["pharmacy"], store["worker"])
    terminal.sessions.open_session(10000)

    terminal.set_walk_in()
    terminal.scan(store["products"]["vitamin"].sku, 2)
    orchestrator = terminal.payment
    orchestrator.select_method("cash")
    assert orchestrator.tender_cash(20000) == 20000 - 15100
    orchestrator.confirm()
    orchestrator.commit()

    assert terminal.find_appointment_payment("APT-0001")["status"] == "PENDING"
    terminal.collect_appointment_payment("APT-0001", price_cents=3500, payment_method="cash")
    with pytest.raises(ValidationError):
        terminal.collect_appointment_payment("APT-0001", price_cents=3500, payment_method="cash")

    summary = terminal.sessions.compute_summary()
    assert summary.cash_sales_cents == 15100
    assert summary.cash_appointment_payments_cents == 3500
    assert summary.expected_cash_cents == 10000 + 15100 + 3500


def test_unknown_sku_and_receipt_are_validation_errors(store, make_terminal):
    terminal = make_terminal(store["pharmacy"], store["worker"])

    with pytest.raises(ValidationError):
        terminal.scan("NOPE-0000", 1)
    with pytest.raises(ValidationError):
        terminal.find_appointment_payment("APT-404")
    assert terminal.cart.is_empty()


def test_search_by_code_and_name(store, make_terminal):
    terminal = make_terminal(store["pharmacy"], store["worker"])

    [by_code] = terminal.search(store["products"]["ibuprofen"].sku)
    by_name = terminal.search("Syrup")

    assert by_code.name == "Ibuprofen 400mg"
    assert [p.sku for p in by_name] == [store["products"]["syrup"].sku]


def test_stock_conflict_surfaces_per_line(store, make_terminal, db_session):
    terminal = make_terminal(store["pharmacy"], store["worker"])
    terminal.sessions.open_session(0)
    terminal.set_walk_in()
    terminal.scan(store["products"]["ibuprofen"].sku, 5)

    orchestrator = terminal.payment
    orchestrator.select_method("cash")
    orchestrator.tender_cash(5000)
    orchestrator.confirm()

    db_session.expire_all()
    db_session.get(Product, store["products"]["ibuprofen"].id).units_available = 3
    db_session.commit()

    with pytest.raises(StockConflict) as exc:
        orchestrator.commit()

    assert exc.value.lines[0]["available"] == 3
    assert orchestrator.state == payment.METHOD_SELECTED
    assert terminal.cart.lines[0].quantity == 5


def test_second_device_sees_session_conflict(store, make_terminal):
    first = make_terminal(store["pharmacy"], store["worker"], state="a.json")
    first.sessions.open_session(50000)
    second = make_terminal(store["pharmacy"], store["second_worker"], state="b.json")

    for _ in range(2):
        with pytest.raises(SessionConflict) as exc:
            second.sessions.open_session(0)
        assert exc.value.holder["worker_name"] == "Ana Gomez"

    restored = second.sessions.restore_session()
    assert restored.status == CONFLICT
    assert "Ana Gomez" in restored.message


def test_restart_resumes_open_session(store, make_terminal):
    terminal = make_terminal(store["pharmacy"], store["worker"])
    session = terminal.sessions.open_session(50000)

    restarted = make_terminal(store["pharmacy"], store["worker"])
    result = restarted.sessions.restore_session()

    assert result.status == RESUMED
    assert restarted.handle.session_id == session.id


def test_session_closed_elsewhere_invalidates_handle(store, make_terminal):
    terminal = make_terminal(store["pharmacy"], store["worker"])
    terminal.sessions.open_session(50000)
    terminal.set_walk_in()
    terminal.scan(store["products"]["syrup"].sku, 1)

    # Same worker on a second screen sharing the remembered session
    other = make_terminal(store["pharmacy"], store["worker"])
    assert other.sessions.restore_session().status == RESUMED
    other.sessions.close_session(50000)

    orchestrator = terminal.payment
    orchestrator.select_method("cash")
    orchestrator.tender_cash(12000)
    orchestrator.confirm()
    with pytest.raises(SessionError):
        orchestrator.commit()

    assert not terminal.handle.is_open
    assert not terminal.cart.is_empty()


def test_qr_sale_settles_through_webhook(store, make_terminal, client, qr_provider):
    terminal = make_terminal(store["pharmacy"], store["worker"])
    terminal.sessions.open_session(0)
    terminal.set_walk_in()
    terminal.scan(store["products"]["syrup"].sku, 1)

    tender = terminal.payment.select_method("qr")

    assert terminal.payment.state == payment.COMMITTED
    assert tender.payload == "https://mp.test/checkout?pref_id=pref-1"
    assert terminal.check_qr_settlement() == LOCALLY_FINALIZED
    assert terminal.sessions.compute_summary().qr_pending_cents == 12000

    client.post("/api/orders/webhooks/qr", json={"provider_order_id": "pref-1", "status": "approved"})

    assert terminal.check_qr_settlement() == FUNDS_CONFIRMED
    summary = terminal.sessions.compute_summary()
    assert summary.qr_sales_cents == 12000
    assert summary.expected_cash_cents == 0


def test_rejected_qr_payment_restocks(store, make_terminal, client, qr_provider, db_session):
    terminal = make_terminal(store["pharmacy"], store["worker"])
    terminal.sessions.open_session(0)
    terminal.set_walk_in()
    terminal.scan(store["products"]["syrup"].sku, 2)
    terminal.payment.select_method("qr")

    client.post("/api/orders/webhooks/qr", json={"provider_order_id": "pref-1", "status": "rejected"})

    assert terminal.check_qr_settlement() == FUNDS_REJECTED
    assert _units(db_session, store["products"]["syrup"]) == 10


def test_qr_provider_outage_keeps_the_sale(store, make_terminal, qr_provider, db_session):
    qr_provider.fail_with = 500
    terminal = make_terminal(store["pharmacy"], store["worker"])
    terminal.sessions.open_session(0)
    terminal.set_walk_in()
    terminal.scan(store["products"]["syrup"].sku, 1)

    with pytest.raises(CommitFailure):
        terminal.payment.select_method("qr")

    assert terminal.payment.state == payment.FAILED
    assert not terminal.cart.is_empty()
    assert _units(db_session, store["products"]["syrup"]) == 10


def test_terminal_for_app_uses_config(app, store):
    terminal = Terminal.for_app(app, store["pharmacy"].id, store["worker"].id)

    assert isinstance(terminal.backend, ServiceBackend)
    assert terminal.sessions.memory.path == app.config["POS_STATE_PATH"]
    assert terminal.payment.card_settle_seconds == app.config["CARD_SETTLE_SECONDS"]


def test_unreachable_store_is_commit_failure():
    def refuse(request):
        raise httpx.ConnectError("connection refused", request=request)

    backend = HttpBackend("http://pos.test", transport=httpx.MockTransport(refuse))

    with pytest.raises(CommitFailure):
        backend.get_open_session(1)
    backend.close()
