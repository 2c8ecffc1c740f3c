"""initial pos schema

Revision ID: p0001_initial
Revises:
Create Date: 2026-10-19 00:00:00.000000

Creates the pharmacy POS schema:
- pharmacies, workers: who sells and where
- products: stock per pharmacy (units_available is authoritative)
- prescriptions: prescribed items (JSON) and dispensation status
- cash_sessions: till accountability, one OPEN per pharmacy (partial unique index)
- orders, order_lines: committed sales with QR settlement status
- appointment_payments: appointment fees collected at the till
"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'p0001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    op.create_table(
        'pharmacies',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=160), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )

    op.create_table(
        'workers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('pharmacy_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(length=160), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['pharmacy_id'], ['pharmacies.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_workers_pharmacy_id', 'workers', ['pharmacy_id'])

    op.create_table(
        'products',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('pharmacy_id', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('price_cents', sa.Integer(), nullable=False),
        sa.Column('units_available', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['pharmacy_id'], ['pharmacies.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('pharmacy_id', 'sku', name='uq_products_pharmacy_sku'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_products_pharmacy_id', 'products', ['pharmacy_id'])
    op.create_index('ix_products_pharmacy_name', 'products', ['pharmacy_id', 'name'])

    op.create_table(
        'prescriptions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('patient_id', sa.String(length=64), nullable=False),
        sa.Column('consultation_date', sa.Date(), nullable=False),
        sa.Column('issued_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('diagnosis', sa.Text(), nullable=True),
        sa.Column('items', sa.JSON(), nullable=False),
        sa.Column('dispensation_status', sa.String(length=16), nullable=True),
        sa.Column('dispensed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_prescriptions_patient_date', 'prescriptions', ['patient_id', 'consultation_date'])
    op.create_index('ix_prescriptions_dispensation_status', 'prescriptions', ['dispensation_status'])

    # ============================================================================
    # cash_sessions: at most one OPEN row per pharmacy
    # ============================================================================
    op.create_table(
        'cash_sessions',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('pharmacy_id', sa.Integer(), nullable=False),
        sa.Column('worker_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='OPEN'),
        sa.Column('opening_float_cents', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('calculated_closing_cents', sa.Integer(), nullable=True),
        sa.Column('counted_closing_cents', sa.Integer(), nullable=True),
        sa.Column('variance_cents', sa.Integer(), nullable=True),
        sa.Column('opened_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('closed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('closing_notes', sa.Text(), nullable=True),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['pharmacy_id'], ['pharmacies.id']),
        sa.ForeignKeyConstraint(['worker_id'], ['workers.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_cash_sessions_pharmacy_id', 'cash_sessions', ['pharmacy_id'])
    op.create_index('ix_cash_sessions_worker_id', 'cash_sessions', ['worker_id'])
    op.create_index('ix_cash_sessions_status', 'cash_sessions', ['status'])
    op.create_index('ix_cash_sessions_opened_at', 'cash_sessions', ['opened_at'])
    op.create_index(
        'uq_cash_sessions_open_per_pharmacy',
        'cash_sessions',
        ['pharmacy_id'],
        unique=True,
        sqlite_where=sa.text("status = 'OPEN'"),
        postgresql_where=sa.text("status = 'OPEN'"),
    )

    op.create_table(
        'orders',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('pharmacy_id', sa.Integer(), nullable=False),
        sa.Column('cash_session_id', sa.Integer(), nullable=False),
        sa.Column('worker_id', sa.Integer(), nullable=False),
        sa.Column('receipt_number', sa.String(length=64), nullable=True),
        sa.Column('patient_id', sa.String(length=64), nullable=True),
        sa.Column('walk_in', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('payment_method', sa.String(length=16), nullable=False),
        sa.Column('total_cents', sa.Integer(), nullable=False),
        sa.Column('card_reference', sa.String(length=128), nullable=True),
        sa.Column('provider_order_id', sa.String(length=128), nullable=True),
        sa.Column('qr_payload', sa.Text(), nullable=True),
        sa.Column('settlement_status', sa.String(length=16), nullable=False, server_default='SETTLED'),
        sa.Column('settled_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('dispensation', sa.JSON(), nullable=True),
        sa.Column('description', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.Column('version_id', sa.Integer(), nullable=False, server_default='1'),
        sa.ForeignKeyConstraint(['pharmacy_id'], ['pharmacies.id']),
        sa.ForeignKeyConstraint(['cash_session_id'], ['cash_sessions.id']),
        sa.ForeignKeyConstraint(['worker_id'], ['workers.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('receipt_number', name='uq_orders_receipt_number'),
        sa.UniqueConstraint('provider_order_id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_orders_pharmacy_id', 'orders', ['pharmacy_id'])
    op.create_index('ix_orders_cash_session_id', 'orders', ['cash_session_id'])
    op.create_index('ix_orders_patient_id', 'orders', ['patient_id'])
    op.create_index('ix_orders_settlement_status', 'orders', ['settlement_status'])
    op.create_index('ix_orders_session_method', 'orders', ['cash_session_id', 'payment_method'])

    op.create_table(
        'order_lines',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('order_id', sa.Integer(), nullable=False),
        sa.Column('product_id', sa.Integer(), nullable=False),
        sa.Column('sku', sa.String(length=64), nullable=False),
        sa.Column('name', sa.String(length=255), nullable=False),
        sa.Column('quantity', sa.Integer(), nullable=False),
        sa.Column('unit_price_cents', sa.Integer(), nullable=False),
        sa.Column('line_total_cents', sa.Integer(), nullable=False),
        sa.Column('prescription_id', sa.Integer(), nullable=True),
        sa.Column('prescribed_item_name', sa.String(length=255), nullable=True),
        sa.ForeignKeyConstraint(['order_id'], ['orders.id']),
        sa.ForeignKeyConstraint(['product_id'], ['products.id']),
        sa.ForeignKeyConstraint(['prescription_id'], ['prescriptions.id']),
        sa.PrimaryKeyConstraint('id'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_order_lines_order_id', 'order_lines', ['order_id'])
    op.create_index('ix_order_lines_prescription_id', 'order_lines', ['prescription_id'])

    op.create_table(
        'appointment_payments',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('receipt_number', sa.String(length=64), nullable=False),
        sa.Column('appointment_id', sa.String(length=64), nullable=True),
        sa.Column('patient_name', sa.String(length=160), nullable=True),
        sa.Column('appointment_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(length=16), nullable=False, server_default='PENDING'),
        sa.Column('price_cents', sa.Integer(), nullable=True),
        sa.Column('payment_method', sa.String(length=16), nullable=True),
        sa.Column('card_reference', sa.String(length=128), nullable=True),
        sa.Column('pharmacy_id', sa.Integer(), nullable=True),
        sa.Column('cash_session_id', sa.Integer(), nullable=True),
        sa.Column('worker_id', sa.Integer(), nullable=True),
        sa.Column('paid_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False,
                  server_default=sa.text('CURRENT_TIMESTAMP')),
        sa.ForeignKeyConstraint(['pharmacy_id'], ['pharmacies.id']),
        sa.ForeignKeyConstraint(['cash_session_id'], ['cash_sessions.id']),
        sa.ForeignKeyConstraint(['worker_id'], ['workers.id']),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('receipt_number', name='uq_appointment_payments_receipt'),
        sqlite_autoincrement=True
    )
    op.create_index('ix_appointment_payments_status', 'appointment_payments', ['status'])
    op.create_index('ix_appointment_payments_pharmacy_id', 'appointment_payments', ['pharmacy_id'])
    op.create_index('ix_appointment_payments_cash_session_id', 'appointment_payments', ['cash_session_id'])


def downgrade():
    op.drop_table('appointment_payments')
    op.drop_table('order_lines')
    op.drop_table('orders')
    op.drop_index('uq_cash_sessions_open_per_pharmacy', table_name='cash_sessions')
    op.drop_table('cash_sessions')
    op.drop_table('prescriptions')
    op.drop_table('products')
    op.drop_table('workers')
    op.drop_table('pharmacies')
