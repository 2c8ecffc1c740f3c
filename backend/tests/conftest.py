"""
Pytest fixtures for PharmaPOS backend tests.

Provides the application on in-memory SQLite, a per-test table wipe,
seed data (pharmacy, workers, products, a prescription) and a QR provider
double built on httpx.MockTransport.
"""

import json

import httpx
import pytest

from pharmapos import create_app
from pharmapos.extensions import db
from pharmapos.models import AppointmentPayment, Pharmacy, Prescription, Product, Worker
from pharmapos.pos import SessionMemory, Terminal
from pharmapos.pos.cart import ProductSnapshot
from pharmapos.pos.cash_session import CashSessionRecord, CashSessionSummary
from pharmapos.pos.errors import SessionConflict, SessionError, StockConflict, ValidationError
from pharmapos.services import cash_session_service
from pharmapos.services.qr_gateway import QRPaymentGateway
from pharmapos.time_utils import today


@pytest.fixture(scope='session')
def app(tmp_path_factory):
    """Create application for testing."""
    app = create_app(overrides={
        'TESTING': True,
        'SQLALCHEMY_DATABASE_URI': 'sqlite:///:memory:',
        'SQLALCHEMY_TRACK_MODIFICATIONS': False,
        'QR_GATEWAY_ACCESS_TOKEN': None,
        'QR_WEBHOOK_SECRET': None,
        'POS_STATE_PATH': str(tmp_path_factory.mktemp("pos") / "pos_state.json"),
    })

    with app.app_context():
        db.create_all()
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture(scope='function')
def client(app):
    """Create test client."""
    return app.test_client()


@pytest.fixture(scope='function')
def db_session(app):
    """Create fresh database for each test."""
    # Clear all data but keep schema
    meta = db.metadata
    for table in reversed(meta.sorted_tables):
        db.session.execute(table.delete())
    db.session.commit()

    yield db.session

    # Cleanup after test
    db.session.rollback()


@pytest.fixture(scope='function')
def pharmacy(db_session):
    pharmacy = Pharmacy(name="Farmacia Central")
    db_session.add(pharmacy)
    db_session.commit()
    return pharmacy


@pytest.fixture(scope='function')
def other_pharmacy(db_session):
    pharmacy = Pharmacy(name="Farmacia Norte")
    db_session.add(pharmacy)
    db_session.commit()
    return pharmacy


@pytest.fixture(scope='function')
def worker(db_session, pharmacy):
    worker = Worker(pharmacy_id=pharmacy.id, name="Ana Gomez")
    db_session.add(worker)
    db_session.commit()
    return worker


@pytest.fixture(scope='function')
def second_worker(db_session, pharmacy):
    worker = Worker(pharmacy_id=pharmacy.id, name="Luis Perez")
    db_session.add(worker)
    db_session.commit()
    return worker


@pytest.fixture(scope='function')
def products(db_session, pharmacy):
    """Stocked products keyed by a short name."""
    rows = {
        "paracetamol": Product(
            pharmacy_id=pharmacy.id, sku="7501000000017", name="Paracetamol 500mg",
            price_cents=250, units_available=100,
        ),
        "ibuprofen": Product(
            pharmacy_id=pharmacy.id, sku="7501000000024", name="Ibuprofen 400mg",
            price_cents=420, units_available=5,
        ),
        "amoxicillin": Product(
            pharmacy_id=pharmacy.id, sku="7501000000031", name="Amoxicillin 500mg",
            price_cents=1200, units_available=2,
        ),
        "syrup": Product(
            pharmacy_id=pharmacy.id, sku="7501000000048", name="Cough Syrup 120ml",
            price_cents=12000, units_available=10,
        ),
        "vitamin": Product(
            pharmacy_id=pharmacy.id, sku="7501000000055", name="Vitamin C 1g",
            price_cents=7550, units_available=10,
        ),
    }
    db_session.add_all(rows.values())
    db_session.commit()
    return rows


@pytest.fixture(scope='function')
def prescription(db_session):
    """Pending prescription for patient P-100: 30 paracetamol, 2 amoxicillin."""
    prescription = Prescription(
        patient_id="P-100",
        consultation_date=today(),
        diagnosis="Acute sinusitis",
        items=[
            {
                "name": "Paracetamol 500mg",
                "active_ingredient": "paracetamol",
                "dose": "500mg",
                "route": "oral",
                "frequency": "every 8 hours",
                "duration": "10 days",
                "quantity_to_dispense": "30",
                "unit": "tablets",
            },
            {
                "name": "Amoxicillin 500mg",
                "active_ingredient": "amoxicillin",
                "dose": "500mg",
                "route": "oral",
                "frequency": "every 12 hours",
                "duration": "1 day",
                "quantity_to_dispense": 2,
                "unit": "capsules",
            },
        ],
    )
    db_session.add(prescription)
    db_session.commit()
    return prescription


@pytest.fixture(scope='function')
def open_session(db_session, pharmacy, worker):
    """Cash session opened with a 500.00 float."""
    return cash_session_service.open_session(pharmacy.id, worker.id, 50000)


@pytest.fixture(scope='function')
def appointment_payment(db_session):
    payment = AppointmentPayment(
        receipt_number="APT-0001",
        appointment_id="A-77",
        patient_name="Maria Lopez",
    )
    db_session.add(payment)
    db_session.commit()
    return payment


class QRProviderDouble:
    """Records preference requests and answers like the provider would."""

    def __init__(self):
        self.requests = []
        self.fail_with = None

    def handler(self, request: httpx.Request) -> httpx.Response:
        self.requests.append(request)
        if self.fail_with is not None:
            return httpx.Response(self.fail_with, json={"message": "rejected"})
        body = json.loads(request.content)
        pref_id = f"pref-{len(self.requests)}"
        return httpx.Response(201, json={
            "id": pref_id,
            "init_point": f"https://mp.test/checkout?pref_id={pref_id}",
            "external_reference": body["external_reference"],
        })


@pytest.fixture(scope='function')
def qr_provider(app):
    """Install a QR gateway backed by httpx.MockTransport for one test."""
    provider = QRProviderDouble()
    original = app.extensions["qr_gateway"]
    app.extensions["qr_gateway"] = QRPaymentGateway(
        "test-token",
        base_url="https://mp.test",
        transport=httpx.MockTransport(provider.handler),
    )
    yield provider
    app.extensions["qr_gateway"].close()
    app.extensions["qr_gateway"] = original


# ----------------------------------------------------------------------
# In-memory store for terminal engine tests
# ----------------------------------------------------------------------

class FakeStore:
    """
    Collaborator double for the terminal engine.

    Implements the same methods as ServiceBackend/HttpBackend over plain
    dicts. Tests can queue an exception for the next order submission
    (submit_error) and hide sessions for a number of lookups
    (invisible_lookups) to simulate a session that is not yet visible.
    """

    def __init__(self, pharmacy_id=1):
        self.pharmacy_id = pharmacy_id
        self.products = {}
        self.prescriptions = []
        self.orders = {}
        self.sessions = {}
        self.appointments = {}
        self.submitted = []
        self.submit_error = None
        self.close_error = None
        self.invisible_lookups = 0
        self.lookups = 0
        self._next_session_id = 1
        self._next_order_id = 1

    # -- seed helpers ---------------------------------------------------

    def add_product(self, sku, name, price_cents, units_available):
        self.products[sku] = {
            "sku": sku,
            "name": name,
            "price_cents": price_cents,
            "units_available": units_available,
        }

    def set_units(self, sku, units_available):
        self.products[sku]["units_available"] = units_available

    # -- stock oracle ---------------------------------------------------

    def query(self, sku, pharmacy_id):
        if sku not in self.products:
            raise ValidationError(f"Unknown sku {sku!r}", details={"sku": sku})
        return ProductSnapshot.from_dict(self.products[sku])

    def find_by_name(self, name, pharmacy_id):
        for product in self.products.values():
            if product["name"].lower() == name.strip().lower():
                return ProductSnapshot.from_dict(product)
        return None

    def search_products(self, pharmacy_id, query):
        return [
            ProductSnapshot.from_dict(p) for p in self.products.values()
            if query.lower() in p["name"].lower() or p["sku"] == query
        ]

    def fetch_prescriptions(self, patient_id):
        return [p for p in self.prescriptions if p.patient_id == patient_id]

    # -- orders ---------------------------------------------------------

    def submit_order(self, request):
        self.submitted.append(request)
        if self.submit_error is not None:
            error, self.submit_error = self.submit_error, None
            raise error

        session = self.sessions.get(request["cash_session_id"])
        if session is None or session["status"] != "OPEN":
            raise SessionError("Cash session is closed", details={"cash_session_id": request["cash_session_id"]})

        requested = {}
        for item in request["items"]:
            requested[item["sku"]] = requested.get(item["sku"], 0) + item["quantity"]
        conflicts = [
            {"sku": sku, "requested": qty, "available": self.products[sku]["units_available"],
             "reason": "insufficient_stock"}
            for sku, qty in requested.items()
            if self.products[sku]["units_available"] < qty
        ]
        if conflicts:
            raise StockConflict("Insufficient stock to commit order", conflicts)

        for sku, qty in requested.items():
            self.products[sku]["units_available"] -= qty

        order_id = self._next_order_id
        self._next_order_id += 1
        method = request["payment_method"]
        order = {
            "id": order_id,
            "receipt_number": f"R-{request['pharmacy_id']}-{order_id:06d}",
            "payment_method": method,
            "cash_session_id": request["cash_session_id"],
            "total_cents": sum(
                self.products[i["sku"]]["price_cents"] * i["quantity"] for i in request["items"]
            ),
            "settlement_status": "PENDING" if method == "qr" else "SETTLED",
            "provider_order_id": f"pref-{order_id}" if method == "qr" else None,
            "qr_payload": f"https://mp.test/checkout?pref_id=pref-{order_id}" if method == "qr" else None,
            "dispensation": request.get("dispensation"),
        }
        self.orders[order_id] = order
        return dict(order)

    def get_order(self, order_id):
        order = self.orders.get(order_id)
        return dict(order) if order else None

    # -- cash sessions --------------------------------------------------

    def _record(self, row):
        return CashSessionRecord.from_dict(row)

    def open_session(self, pharmacy_id, worker_id, opening_float_cents):
        for row in self.sessions.values():
            if row["pharmacy_id"] == pharmacy_id and row["status"] == "OPEN":
                raise SessionConflict(
                    "A cash session is already open for this pharmacy",
                    holder={"session_id": row["id"], "worker_id": row["worker_id"],
                            "worker_name": row["worker_name"]},
                )
        session_id = self._next_session_id
        self._next_session_id += 1
        self.sessions[session_id] = {
            "id": session_id,
            "pharmacy_id": pharmacy_id,
            "worker_id": worker_id,
            "worker_name": f"Worker {worker_id}",
            "status": "OPEN",
            "opening_float_cents": opening_float_cents,
        }
        return self._record(self.sessions[session_id])

    def get_session(self, session_id):
        self.lookups += 1
        if self.invisible_lookups > 0:
            self.invisible_lookups -= 1
            return None
        row = self.sessions.get(session_id)
        return self._record(row) if row else None

    def get_open_session(self, pharmacy_id):
        for row in self.sessions.values():
            if row["pharmacy_id"] == pharmacy_id and row["status"] == "OPEN":
                return self._record(row)
        return None

    def session_summary(self, session_id):
        row = self.sessions[session_id]
        orders = [o for o in self.orders.values() if o["cash_session_id"] == session_id]

        def _sum(method, status=None):
            return sum(
                o["total_cents"] for o in orders
                if o["payment_method"] == method and (status is None or o["settlement_status"] == status)
            )

        appointments = [a for a in self.appointments.values() if a.get("cash_session_id") == session_id]
        return CashSessionSummary(
            session_id=session_id,
            opening_float_cents=row["opening_float_cents"],
            cash_sales_cents=_sum("cash"),
            card_sales_cents=_sum("card"),
            qr_sales_cents=_sum("qr", "CONFIRMED"),
            qr_pending_cents=_sum("qr", "PENDING"),
            cash_appointment_payments_cents=sum(
                a["price_cents"] for a in appointments if a["payment_method"] == "cash"
            ),
            other_appointment_payments_cents=sum(
                a["price_cents"] for a in appointments if a["payment_method"] != "cash"
            ),
        )

    def close_session(self, session_id, counted_cash_cents, notes=None):
        if self.close_error is not None:
            error, self.close_error = self.close_error, None
            raise error
        row = self.sessions[session_id]
        if row["status"] != "OPEN":
            raise SessionError("Cash session already closed", details={"session_id": session_id})
        expected = self.session_summary(session_id).expected_cash_cents
        row.update({
            "status": "CLOSED",
            "calculated_closing_cents": expected,
            "counted_closing_cents": counted_cash_cents,
            "variance_cents": counted_cash_cents - expected,
            "closing_notes": notes,
        })
        return self._record(row)

    # -- appointment payments -------------------------------------------

    def find_appointment_payment(self, receipt_number):
        payment = self.appointments.get(receipt_number)
        return dict(payment) if payment else None

    def pay_appointment(self, receipt_number, **payment):
        row = self.appointments.get(receipt_number)
        if row is None or row["status"] != "PENDING":
            raise ValidationError("Appointment payment is not pending")
        row.update(payment, status="PAID")
        return dict(row)


@pytest.fixture
def fake_store():
    store = FakeStore()
    store.add_product("X", "Product X", 1000, 2)
    store.add_product("7501000000017", "Paracetamol 500mg", 250, 100)
    store.add_product("7501000000031", "Amoxicillin 500mg", 1200, 1)
    store.add_product("SYRUP-120", "Cough Syrup 120ml", 12000, 10)
    store.add_product("VITC-1G", "Vitamin C 1g", 7550, 10)
    return store


class FakeClock:
    """Monotonic clock the tests advance by hand."""

    def __init__(self, start=1000.0):
        self.now = start

    def __call__(self):
        return self.now

    def advance(self, seconds):
        self.now += seconds


@pytest.fixture
def clock():
    return FakeClock()


@pytest.fixture
def terminal(fake_store, clock, tmp_path):
    """Terminal over the fake store with its own session memory file."""
    return Terminal(
        fake_store,
        pharmacy_id=1,
        worker_id=7,
        memory=SessionMemory(str(tmp_path / "pos_state.json")),
        card_settle_seconds=10,
        clock=clock,
        sleep=lambda seconds: None,
    )
