from pharmapos.models import Pharmacy, Product, Worker


def test_seed_commands(app, db_session):
    runner = app.test_cli_runner()

    result = runner.invoke(args=["pharmacies", "create", "--name", "Farmacia Sur"])
    assert "PASS Created pharmacy: Farmacia Sur" in result.output
    pharmacy = db_session.query(Pharmacy).filter_by(name="Farmacia Sur").one()

    result = runner.invoke(args=["workers", "create", "--pharmacy-id", str(pharmacy.id), "--name", "Ana"])
    assert "PASS" in result.output

    args = ["products", "create", "--pharmacy-id", str(pharmacy.id), "--sku", "7501000",
            "--name", "Paracetamol 500mg", "--price-cents", "4500", "--units", "40"]
    assert "PASS" in runner.invoke(args=args).output
    assert "already exists" in runner.invoke(args=args).output

    db_session.expire_all()
    assert db_session.query(Worker).filter_by(pharmacy_id=pharmacy.id).count() == 1
    assert db_session.query(Product).filter_by(pharmacy_id=pharmacy.id).one().units_available == 40


def test_unknown_pharmacy_is_reported(app, db_session):
    result = app.test_cli_runner().invoke(args=["workers", "create", "--pharmacy-id", "99999", "--name", "Ana"])
    assert "FAIL Pharmacy ID 99999 not found" in result.output


def test_sessions_list(app, db_session, open_session):
    result = app.test_cli_runner().invoke(args=["sessions", "list", "--status", "OPEN"])

    assert "Ana Gomez" in result.output
    assert "OPEN" in result.output
