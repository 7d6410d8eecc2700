"""Initial billing schema

Revision ID: 20261019_0900
Revises:
Create Date: 2026-10-19 09:00:00.000000

This migration adds:
- users: plan, invoice quota, numbering counter and notification preferences
- clients: billing targets owned by a user
- recurring_invoices / recurring_invoice_items: schedule and item template
- invoices / invoice_items: the invoice ledger
- payments: payments and refund rows (negative amounts)
- invoice_history: append-only audit trail, integer key gives the order
"""

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic
revision = '20261019_0900'
down_revision = None
branch_labels = None
depends_on = None


# Enum labels are the Python member names
subscription_plan_enum = postgresql.ENUM(
    'FREE', 'BASIC', 'PREMIUM', 'ENTERPRISE',
    name='subscriptionplan', create_type=False,
)
invoice_status_enum = postgresql.ENUM(
    'DRAFT', 'SENT', 'VIEWED', 'PARTIALLY_PAID', 'PAID', 'OVERDUE', 'CANCELLED',
    name='invoicestatus', create_type=False,
)
discount_type_enum = postgresql.ENUM('FIXED', 'PERCENTAGE', name='discounttype', create_type=False)
history_action_enum = postgresql.ENUM(
    'CREATED', 'UPDATED', 'SENT', 'VIEWED', 'PAYMENT_RECEIVED', 'PAYMENT_FAILED',
    'REMINDER_SENT', 'STATUS_CHANGED', 'CANCELLED', 'DELETED', 'EXPORTED', 'NOTIFICATION',
    name='historyaction', create_type=False,
)
payment_status_enum = postgresql.ENUM(
    'PENDING', 'PROCESSING', 'COMPLETED', 'FAILED', 'REFUNDED', 'CANCELLED',
    name='paymentstatus', create_type=False,
)
payment_method_enum = postgresql.ENUM(
    'CASH', 'BANK_TRANSFER', 'CREDIT_CARD', 'DEBIT_CARD', 'PAYPAL', 'STRIPE', 'CHECK', 'OTHER',
    name='paymentmethod', create_type=False,
)
recurring_frequency_enum = postgresql.ENUM(
    'DAILY', 'WEEKLY', 'MONTHLY', 'YEARLY', name='recurringfrequency', create_type=False,
)
recurring_status_enum = postgresql.ENUM(
    'ACTIVE', 'PAUSED', 'CANCELLED', name='recurringstatus', create_type=False,
)

ALL_ENUMS = [
    subscription_plan_enum, invoice_status_enum, discount_type_enum, history_action_enum,
    payment_status_enum, payment_method_enum, recurring_frequency_enum, recurring_status_enum,
]


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime, server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime, server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    ]


def upgrade() -> None:
    # Create ENUM types first
    for enum in ALL_ENUMS:
        enum.create(op.get_bind(), checkfirst=True)

    op.create_table(
        'users',
        sa.Column('id', sa.Uuid, primary_key=True),
        *_timestamps(),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('full_name', sa.String(255), nullable=False),
        sa.Column('company_name', sa.String(255), nullable=True),
        sa.Column('is_active', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('subscription_plan', subscription_plan_enum, nullable=False, server_default='FREE'),
        sa.Column('invoice_limit', sa.Integer, nullable=False, server_default='0'),
        sa.Column('invoice_prefix', sa.String(20), nullable=False, server_default='INV'),
        sa.Column('invoice_start_number', sa.Integer, nullable=False, server_default='1'),
        sa.Column('payment_terms', sa.Integer, nullable=False, server_default='30'),
        sa.Column('default_currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('email_notifications_enabled', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('email_notify_new_invoice', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('email_notify_payment_received', sa.Boolean, nullable=False, server_default=sa.true()),
        sa.Column('email_notify_invoice_overdue', sa.Boolean, nullable=False, server_default=sa.true()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'clients',
        sa.Column('id', sa.Uuid, primary_key=True),
        *_timestamps(),
        sa.Column('user_id', sa.Uuid, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('email', sa.String(255), nullable=True),
        sa.Column('company', sa.String(255), nullable=True),
        sa.Column('phone', sa.String(50), nullable=True),
        sa.Column('address', sa.Text, nullable=True),
    )
    op.create_index('ix_clients_user_id', 'clients', ['user_id'])

    op.create_table(
        'recurring_invoices',
        sa.Column('id', sa.Uuid, primary_key=True),
        *_timestamps(),
        sa.Column('user_id', sa.Uuid, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('client_id', sa.Uuid, sa.ForeignKey('clients.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        # Schedule
        sa.Column('frequency', recurring_frequency_enum, nullable=False),
        sa.Column('interval', sa.Integer, nullable=False, server_default='1'),
        sa.Column('start_date', sa.Date, nullable=False),
        sa.Column('end_date', sa.Date, nullable=True),
        sa.Column('max_occurrences', sa.Integer, nullable=True),
        sa.Column('occurrences_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('next_run_at', sa.DateTime, nullable=False),
        sa.Column('last_run_at', sa.DateTime, nullable=True),
        sa.Column('status', recurring_status_enum, nullable=False, server_default='ACTIVE'),
        sa.Column('auto_send', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('due_in_days', sa.Integer, nullable=True),
        # Pricing template
        sa.Column('tax_rate', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('discount', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('discount_type', discount_type_enum, nullable=False, server_default='FIXED'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('terms', sa.Text, nullable=True),
    )
    op.create_index('ix_recurring_invoices_user_id', 'recurring_invoices', ['user_id'])
    op.create_index('ix_recurring_invoices_client_id', 'recurring_invoices', ['client_id'])
    op.create_index('ix_recurring_invoices_status', 'recurring_invoices', ['status'])
    op.create_index('ix_recurring_invoices_next_run_at', 'recurring_invoices', ['next_run_at'])

    op.create_table(
        'recurring_invoice_items',
        sa.Column('id', sa.Uuid, primary_key=True),
        *_timestamps(),
        sa.Column(
            'recurring_invoice_id', sa.Uuid,
            sa.ForeignKey('recurring_invoices.id', ondelete='CASCADE'), nullable=False,
        ),
        sa.Column('position', sa.Integer, nullable=False, server_default='0'),
        sa.Column('description', sa.String(500), nullable=False),
        sa.Column('quantity', sa.Numeric(12, 2), nullable=False),
        sa.Column('rate', sa.Numeric(15, 2), nullable=False),
    )
    op.create_index(
        'ix_recurring_invoice_items_recurring_invoice_id', 'recurring_invoice_items', ['recurring_invoice_id']
    )

    op.create_table(
        'invoices',
        sa.Column('id', sa.Uuid, primary_key=True),
        *_timestamps(),
        sa.Column('user_id', sa.Uuid, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('client_id', sa.Uuid, sa.ForeignKey('clients.id', ondelete='RESTRICT'), nullable=False),
        sa.Column('invoice_number', sa.String(50), nullable=False),
        sa.Column('status', invoice_status_enum, nullable=False, server_default='DRAFT'),
        # Dates
        sa.Column('invoice_date', sa.Date, nullable=False),
        sa.Column('due_date', sa.Date, nullable=False),
        sa.Column('sent_at', sa.DateTime, nullable=True),
        sa.Column('viewed_at', sa.DateTime, nullable=True),
        sa.Column('paid_at', sa.DateTime, nullable=True),
        sa.Column('cancelled_at', sa.DateTime, nullable=True),
        # Amounts
        sa.Column('subtotal', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('tax_rate', sa.Numeric(5, 2), nullable=False, server_default='0'),
        sa.Column('tax_amount', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('discount', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('discount_type', discount_type_enum, nullable=False, server_default='FIXED'),
        sa.Column('discount_amount', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('total_amount', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('paid_amount', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('balance_due', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        # Content
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('terms', sa.Text, nullable=True),
        sa.Column('po_number', sa.String(100), nullable=True),
        # Share link
        sa.Column('share_id', sa.String(64), nullable=True),
        sa.Column('share_enabled', sa.Boolean, nullable=False, server_default=sa.false()),
        # Recurring origin
        sa.Column('generated_from_recurring', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column(
            'recurring_template_id', sa.Uuid,
            sa.ForeignKey('recurring_invoices.id', ondelete='SET NULL'), nullable=True,
        ),
        sa.UniqueConstraint('user_id', 'invoice_number', name='uq_invoices_user_id_invoice_number'),
    )
    op.create_index('ix_invoices_user_id', 'invoices', ['user_id'])
    op.create_index('ix_invoices_client_id', 'invoices', ['client_id'])
    op.create_index('ix_invoices_invoice_number', 'invoices', ['invoice_number'])
    op.create_index('ix_invoices_status', 'invoices', ['status'])
    op.create_index('ix_invoices_due_date', 'invoices', ['due_date'])
    op.create_index('ix_invoices_share_id', 'invoices', ['share_id'], unique=True)
    op.create_index('ix_invoices_recurring_template_id', 'invoices', ['recurring_template_id'])

    op.create_table(
        'invoice_items',
        sa.Column('id', sa.Uuid, primary_key=True),
        *_timestamps(),
        sa.Column('invoice_id', sa.Uuid, sa.ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('position', sa.Integer, nullable=False, server_default='0'),
        sa.Column('description', sa.String(500), nullable=False),
        sa.Column('quantity', sa.Numeric(12, 2), nullable=False),
        sa.Column('rate', sa.Numeric(15, 2), nullable=False),
        sa.Column('amount', sa.Numeric(15, 2), nullable=False),
    )
    op.create_index('ix_invoice_items_invoice_id', 'invoice_items', ['invoice_id'])

    op.create_table(
        'payments',
        sa.Column('id', sa.Uuid, primary_key=True),
        *_timestamps(),
        sa.Column('invoice_id', sa.Uuid, sa.ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('user_id', sa.Uuid, sa.ForeignKey('users.id', ondelete='CASCADE'), nullable=False),
        sa.Column('payment_number', sa.String(50), nullable=False),
        sa.Column('amount', sa.Numeric(15, 2), nullable=False),
        sa.Column('net_amount', sa.Numeric(15, 2), nullable=False, server_default='0'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='USD'),
        sa.Column('status', payment_status_enum, nullable=False, server_default='PENDING'),
        sa.Column('payment_method', payment_method_enum, nullable=False, server_default='OTHER'),
        sa.Column('transaction_id', sa.String(255), nullable=True),
        sa.Column('payment_date', sa.DateTime, nullable=False),
        sa.Column('notes', sa.Text, nullable=True),
        sa.Column('failure_reason', sa.Text, nullable=True),
    )
    op.create_index('ix_payments_invoice_id', 'payments', ['invoice_id'])
    op.create_index('ix_payments_user_id', 'payments', ['user_id'])
    op.create_index('ix_payments_payment_number', 'payments', ['payment_number'])
    op.create_index('ix_payments_status', 'payments', ['status'])
    op.create_index('ix_payments_transaction_id', 'payments', ['transaction_id'])

    op.create_table(
        'invoice_history',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('invoice_id', sa.Uuid, sa.ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False),
        sa.Column('action', history_action_enum, nullable=False),
        sa.Column('description', sa.Text, nullable=False),
        sa.Column('amount', sa.Numeric(15, 2), nullable=True),
        sa.Column('performed_by', sa.Uuid, nullable=True),
        sa.Column('created_at', sa.DateTime, server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
    )
    op.create_index('ix_invoice_history_invoice_id', 'invoice_history', ['invoice_id'])
    op.create_index('ix_invoice_history_action', 'invoice_history', ['action'])


def downgrade() -> None:
    op.drop_table('invoice_history')
    op.drop_table('payments')
    op.drop_table('invoice_items')
    op.drop_table('invoices')
    op.drop_table('recurring_invoice_items')
    op.drop_table('recurring_invoices')
    op.drop_table('clients')
    op.drop_table('users')

    for enum in reversed(ALL_ENUMS):
        enum.drop(op.get_bind(), checkfirst=True)
