import random

import pytest

from pharmapos.pos import SessionMemory, Terminal, payment
from pharmapos.pos.checkout import FUNDS_CONFIRMED, LOCALLY_FINALIZED, SETTLED_AT_TILL
from pharmapos.pos.errors import CommitFailure, SessionError, StockConflict, ValidationError


@pytest.fixture
def till(terminal):
    """Terminal with an open session and a 120.00 walk-in sale in the cart."""
    terminal.sessions.open_session(50000)
    terminal.set_walk_in()
    terminal.scan("SYRUP-120", 1)
    return terminal


def test_cash_underpayment_blocks_confirmation(till, fake_store):
    orchestrator = till.payment
    orchestrator.select_method("cash")

    assert orchestrator.tender_cash(10000) is None
    assert not orchestrator.can_confirm()
    with pytest.raises(ValidationError):
        orchestrator.confirm()

    assert orchestrator.state == payment.METHOD_SELECTED
    assert fake_store.submitted == []


def test_cash_payment_commits_with_change(till, fake_store):
    orchestrator = till.payment
    orchestrator.select_method("cash")

    assert orchestrator.tender_cash(15000) == 3000
    orchestrator.confirm()
    receipt = orchestrator.commit()

    assert orchestrator.state == payment.COMMITTED
    assert receipt.total_cents == 12000
    assert receipt.settlement == SETTLED_AT_TILL
    assert fake_store.submitted[0]["amount_tendered_cents"] == 15000
    assert "change" not in str(fake_store.submitted[0])
    assert till.cart.is_empty()
    assert till.last_receipt is receipt


def test_cash_amount_due_follows_cart_changes(till):
    orchestrator = till.payment
    orchestrator.select_method("cash")
    orchestrator.tender_cash(12000)

    till.scan("VITC-1G", 1)

    with pytest.raises(ValidationError):
        orchestrator.confirm()
    assert orchestrator.tender.amount_due_cents == 12000 + 7550


def test_card_countdown_blocks_confirmation(till, clock):
    orchestrator = till.payment
    orchestrator.select_method("card")
    orchestrator.enter_card_reference("AUTH-991")

    assert orchestrator.countdown() == 10
    with pytest.raises(ValidationError):
        orchestrator.confirm()
    with pytest.raises(ValidationError):
        orchestrator.commit()

    clock.advance(9.5)
    assert orchestrator.countdown() == 1
    with pytest.raises(ValidationError):
        orchestrator.confirm()

    clock.advance(0.5)
    assert orchestrator.countdown() == 0
    orchestrator.confirm()
    receipt = orchestrator.commit()

    assert receipt.payment_method == "card"
    assert orchestrator.state == payment.COMMITTED


def test_card_requires_reference(till, clock, fake_store):
    orchestrator = till.payment
    orchestrator.select_method("card")
    clock.advance(10)

    with pytest.raises(ValidationError):
        orchestrator.confirm()

    orchestrator.enter_card_reference("   ")
    with pytest.raises(ValidationError):
        orchestrator.confirm()
    assert fake_store.submitted == []


def test_card_amount_is_fixed_once_selected(till, clock):
    orchestrator = till.payment
    orchestrator.select_method("card")
    orchestrator.enter_card_reference("AUTH-991")
    clock.advance(10)

    till.scan("VITC-1G", 1)

    with pytest.raises(ValidationError):
        orchestrator.confirm()


def test_card_commit_unreachable_while_countdown_running(fake_store, clock, tmp_path):
    rng = random.Random(99)
    for _ in range(40):
        terminal = Terminal(
            fake_store, pharmacy_id=1, worker_id=7,
            memory=SessionMemory(str(tmp_path / "state.json")),
            clock=clock, sleep=lambda s: None,
        )
        if fake_store.get_open_session(1) is None:
            terminal.sessions.open_session(0)
        else:
            terminal.sessions.restore_session()
        terminal.set_walk_in()
        fake_store.set_units("VITC-1G", 10)
        terminal.scan("VITC-1G", 1)

        orchestrator = terminal.payment
        orchestrator.select_method("card")
        started = clock()

        for _ in range(12):
            action = rng.choice(("confirm", "commit", "reference", "tick"))
            try:
                if action == "confirm":
                    orchestrator.confirm()
                elif action == "commit":
                    orchestrator.commit()
                    assert clock() - started >= 10
                    break
                elif action == "reference":
                    orchestrator.enter_card_reference("AUTH-1")
                else:
                    clock.advance(rng.choice((0.5, 2, 4)))
            except ValidationError:
                pass
            if orchestrator.state == payment.CONFIRMED:
                assert orchestrator.countdown() == 0


def test_qr_commits_on_selection_and_stays_locally_finalized(till, fake_store):
    orchestrator = till.payment
    tender = orchestrator.select_method("qr")

    assert orchestrator.state == payment.COMMITTED
    assert orchestrator.settlement == LOCALLY_FINALIZED
    assert tender.provider_order_id == "pref-1"
    assert tender.payload.startswith("https://mp.test/")
    assert till.check_qr_settlement() == LOCALLY_FINALIZED

    fake_store.orders[1]["settlement_status"] = "CONFIRMED"
    assert till.check_qr_settlement() == FUNDS_CONFIRMED
    assert till.last_receipt.settlement == FUNDS_CONFIRMED


def test_failed_qr_attempt_cannot_be_confirmed(till, fake_store):
    fake_store.submit_error = CommitFailure("QR provider unavailable")
    orchestrator = till.payment

    with pytest.raises(CommitFailure):
        orchestrator.select_method("qr")

    assert orchestrator.state == payment.FAILED
    with pytest.raises(ValidationError):
        orchestrator.confirm()


def test_qr_provider_failure_keeps_cart_for_retry(till, fake_store):
    fake_store.submit_error = CommitFailure("QR provider unavailable")
    orchestrator = till.payment

    with pytest.raises(CommitFailure):
        orchestrator.select_method("qr")

    assert orchestrator.state == payment.FAILED
    assert isinstance(orchestrator.error, CommitFailure)
    assert not till.cart.is_empty()

    orchestrator.select_method("qr")
    assert orchestrator.state == payment.COMMITTED


def test_stock_conflict_returns_to_method_selected(till, fake_store):
    orchestrator = till.payment
    orchestrator.select_method("cash")
    orchestrator.tender_cash(20000)
    orchestrator.confirm()
    fake_store.set_units("SYRUP-120", 0)

    with pytest.raises(StockConflict) as exc:
        orchestrator.commit()

    assert exc.value.lines[0]["sku"] == "SYRUP-120"
    assert orchestrator.state == payment.METHOD_SELECTED
    assert orchestrator.error is exc.value
    assert orchestrator.tender.amount_tendered_cents == 20000
    assert not till.cart.is_empty()
    assert not till.cart.is_frozen


def test_closed_session_invalidates_handle(till, fake_store):
    orchestrator = till.payment
    orchestrator.select_method("cash")
    orchestrator.tender_cash(20000)
    orchestrator.confirm()
    fake_store.sessions[till.handle.session_id]["status"] = "CLOSED"

    with pytest.raises(SessionError):
        orchestrator.commit()

    assert orchestrator.state == payment.METHOD_SELECTED
    assert not till.handle.is_open
    orchestrator.confirm()
    with pytest.raises(SessionError):
        orchestrator.commit()
    assert len(fake_store.submitted) == 1


def test_cancel_before_commit(till, fake_store):
    orchestrator = till.payment
    orchestrator.select_method("cash")
    orchestrator.tender_cash(20000)
    orchestrator.confirm()

    orchestrator.cancel()

    assert orchestrator.state == payment.CANCELLED
    assert fake_store.submitted == []
    with pytest.raises(ValidationError):
        orchestrator.commit()


def test_cancel_after_commit_is_rejected(till):
    orchestrator = till.payment
    orchestrator.select_method("qr")

    with pytest.raises(ValidationError):
        orchestrator.cancel()


def test_selection_checks_preconditions_locally(terminal, fake_store):
    terminal.sessions.open_session(50000)
    orchestrator = terminal.payment

    with pytest.raises(ValidationError):
        orchestrator.select_method("cash")  # empty cart

    terminal.scan("SYRUP-120", 1)
    with pytest.raises(ValidationError):
        orchestrator.select_method("cash")  # no identity

    assert orchestrator.state == payment.IDLE
    assert fake_store.submitted == []


def test_new_sale_resets_attempt(till):
    orchestrator = till.payment
    orchestrator.select_method("qr")

    till.new_sale()

    assert orchestrator.state == payment.IDLE
    assert orchestrator.tender is None
    assert not till.identity.is_resolved


def test_qr_turned_away_for_stock_can_be_committed_again(till, fake_store):
    orchestrator = till.payment
    fake_store.set_units("SYRUP-120", 0)

    with pytest.raises(StockConflict):
        orchestrator.select_method("qr")
    assert orchestrator.state == payment.METHOD_SELECTED
    with pytest.raises(ValidationError):
        orchestrator.confirm()

    fake_store.set_units("SYRUP-120", 10)
    orchestrator.commit()

    assert orchestrator.state == payment.COMMITTED
    assert orchestrator.settlement == LOCALLY_FINALIZED
