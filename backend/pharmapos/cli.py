# Overview: Flask CLI command groups for bootstrap and inspection.

# backend/pharmapos/cli.py
# Commands Legend (run from the backend directory):
# Prereqs:
# - Activate your virtualenv.
# - Set FLASK_APP to wsgi.py (PowerShell: $env:FLASK_APP="wsgi.py").
# - Use: python -m flask <group> <command> [options]
#
# System bootstrap/repair:
# - python -m flask system init-db
#   Create all tables that do not exist yet.
# - python -m flask system reset-db --yes
#   DEV/TEST only: drop and recreate all tables (deletes all data).
#
# Pharmacy setup:
# - python -m flask pharmacies create --name "Farmacia Centro"
# - python -m flask pharmacies list
# - python -m flask workers create --pharmacy-id 1 --name "Ana"
# - python -m flask products create --pharmacy-id 1 --sku 7501000 --name "Paracetamol 500mg" --price-cents 4500 --units 40
#
# Cash session inspection:
# - python -m flask sessions list --pharmacy-id 1 --status OPEN --limit 20
#   List recent cash sessions with optional filters.

import click
from flask.cli import with_appcontext

from .extensions import db
from .models import CashSession, Pharmacy, Product, Worker


@click.group('system')
def system_group():
    """System bootstrap and repair commands."""


@system_group.command('init-db')
@with_appcontext
def init_db():
    """Create missing tables (no data is touched)."""
    db.create_all()
    click.echo("PASS Database schema ready")


@system_group.command('reset-db')
@click.option('--yes', is_flag=True, help='Skip confirmation')
@with_appcontext
def reset_db(yes):
    """
    DANGER: Drop all tables and recreate schema.

    This will DELETE ALL DATA!
    """
    if not yes:
        click.confirm("WARN This will DELETE ALL DATA. Are you sure?", abort=True)

    click.echo("DELETE  Dropping all tables...")
    db.drop_all()
    click.echo("BUILD  Recreating schema...")
    db.create_all()
    click.echo("PASS Database reset complete")


@click.group('pharmacies')
def pharmacies_group():
    """Pharmacy management commands."""


@pharmacies_group.command('create')
@click.option('--name', required=True, help='Pharmacy name')
@with_appcontext
def create_pharmacy_cli(name):
    pharmacy = Pharmacy(name=name)
    db.session.add(pharmacy)
    db.session.commit()
    click.echo(f"PASS Created pharmacy: {pharmacy.name} (ID: {pharmacy.id})")


@pharmacies_group.command('list')
@with_appcontext
def list_pharmacies_cli():
    pharmacies = db.session.query(Pharmacy).order_by(Pharmacy.id).all()
    if not pharmacies:
        click.echo("No pharmacies found.")
        return

    click.echo("\n" + "="*60)
    click.echo(f"{'ID':<5} {'Name':<40} {'Workers'}")
    click.echo("="*60)
    for pharmacy in pharmacies:
        worker_count = db.session.query(Worker).filter_by(pharmacy_id=pharmacy.id).count()
        click.echo(f"{pharmacy.id:<5} {pharmacy.name:<40} {worker_count}")
    click.echo("="*60 + "\n")


@click.group('workers')
def workers_group():
    """Worker management commands."""


@workers_group.command('create')
@click.option('--pharmacy-id', type=int, required=True, help='Pharmacy ID')
@click.option('--name', required=True, help='Worker name')
@with_appcontext
def create_worker_cli(pharmacy_id, name):
    if not db.session.get(Pharmacy, pharmacy_id):
        click.echo(f"FAIL Pharmacy ID {pharmacy_id} not found")
        return

    worker = Worker(pharmacy_id=pharmacy_id, name=name, is_active=True)
    db.session.add(worker)
    db.session.commit()
    click.echo(f"PASS Created worker: {worker.name} (ID: {worker.id}) in pharmacy {pharmacy_id}")


@click.group('products')
def products_group():
    """Product seeding commands."""


@products_group.command('create')
@click.option('--pharmacy-id', type=int, required=True, help='Pharmacy ID')
@click.option('--sku', required=True, help='Scannable code (UPC)')
@click.option('--name', required=True, help='Product name')
@click.option('--price-cents', type=int, required=True, help='Unit price in cents')
@click.option('--units', type=int, default=0, help='Units available')
@with_appcontext
def create_product_cli(pharmacy_id, sku, name, price_cents, units):
    if not db.session.get(Pharmacy, pharmacy_id):
        click.echo(f"FAIL Pharmacy ID {pharmacy_id} not found")
        return
    if db.session.query(Product).filter_by(pharmacy_id=pharmacy_id, sku=sku).first():
        click.echo(f"FAIL Product with sku '{sku}' already exists in this pharmacy")
        return

    product = Product(pharmacy_id=pharmacy_id, sku=sku, name=name, price_cents=price_cents, units_available=units)
    db.session.add(product)
    db.session.commit()
    click.echo(f"PASS Created product: {product.name} (sku {product.sku}, {product.units_available} units)")


@click.group('sessions')
def sessions_group():
    """Cash session inspection commands."""


@sessions_group.command('list')
@click.option('--pharmacy-id', type=int, help='Filter by pharmacy ID')
@click.option('--status', type=click.Choice(['OPEN', 'CLOSED']), help='Filter by status')
@click.option('--limit', type=int, default=20, help='Max sessions to show')
@with_appcontext
def list_sessions_cli(pharmacy_id, status, limit):
    """
    List cash sessions.

    Example:
        flask sessions list
        flask sessions list --pharmacy-id 1
        flask sessions list --status OPEN
    """
    query = db.session.query(CashSession)

    if pharmacy_id:
        query = query.filter_by(pharmacy_id=pharmacy_id)

    if status:
        query = query.filter_by(status=status)

    sessions = query.order_by(CashSession.opened_at.desc()).limit(limit).all()

    if not sessions:
        click.echo("No sessions found.")
        return

    click.echo("\n" + "="*100)
    click.echo(f"{'ID':<5} {'Pharmacy':<10} {'Worker':<20} {'Status':<8} {'Opened':<20} {'Variance':<12} {'Notes'}")
    click.echo("="*100)

    for session in sessions:
        worker_name = session.worker.name if session.worker else "Unknown"

        variance_str = "-"
        if session.variance_cents is not None:
            variance = session.variance_cents / 100
            variance_str = f"${variance:+.2f}"

        opened = session.opened_at.strftime("%Y-%m-%d %H:%M") if session.opened_at else "-"
        notes = (session.closing_notes or "")[:30]
        click.echo(
            f"{session.id:<5} {session.pharmacy_id:<10} {worker_name:<20} {session.status:<8} "
            f"{opened:<20} {variance_str:<12} {notes}"
        )

    click.echo("="*100 + "\n")


def register_commands(app):
    """Register all CLI commands with Flask app."""
    app.cli.add_command(system_group)
    app.cli.add_command(pharmacies_group)
    app.cli.add_command(workers_group)
    app.cli.add_command(products_group)
    app.cli.add_command(sessions_group)
