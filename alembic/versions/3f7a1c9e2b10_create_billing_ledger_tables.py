"""create billing ledger tables

Revision ID: 3f7a1c9e2b10
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision: str = '3f7a1c9e2b10'
down_revision: Union[str, Sequence[str], None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

LIVE_WHERE = sa.text("status IN ('active', 'past_due', 'paused')")
INITIAL_WHERE = sa.text("stripe_invoice_id IS NULL")


def upgrade() -> None:
    """Create plans, overrides, billing cycles, seats, notifications, courses and stripe events."""
    op.create_table(
        'plans',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=50), nullable=False, comment='slug: basic, pro, annual'),
        sa.Column('display_name', sa.String(length=100), nullable=False),
        sa.Column('stripe_price_id', sa.String(length=255), nullable=True),
        sa.Column('price_cents', sa.Integer(), nullable=False, comment='Price per cycle in cents'),
        sa.Column('billing_cycle', sa.String(length=20), nullable=False, comment='monthly|annual'),
        sa.Column('default_seat_limit', sa.Integer(), nullable=False, comment='Mentees included'),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('sort_order', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )
    op.create_index(op.f('ix_plans_id'), 'plans', ['id'], unique=False)

    op.create_table(
        'plan_overrides',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('buyer_id', sa.BigInteger(), nullable=False, comment='Host user id of the mentor'),
        sa.Column('plan_id', sa.Uuid(), nullable=False),
        sa.Column('price_override_cents', sa.Integer(), nullable=True),
        sa.Column('seat_limit_override', sa.Integer(), nullable=True),
        sa.Column('stripe_price_id_override', sa.String(length=255), nullable=True),
        sa.Column('valid_from', sa.DateTime(), nullable=False),
        sa.Column('valid_until', sa.DateTime(), nullable=True),
        sa.Column('admin_notes', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['plan_id'], ['plans.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_plan_overrides_id'), 'plan_overrides', ['id'], unique=False)
    op.create_index('ix_plan_overrides_buyer_plan', 'plan_overrides', ['buyer_id', 'plan_id'], unique=False)

    op.create_table(
        'billing_cycles',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('buyer_id', sa.BigInteger(), nullable=False, comment='Host user id of the mentor'),
        sa.Column('plan_id', sa.Uuid(), nullable=False),
        sa.Column('override_id', sa.Uuid(), nullable=True),
        sa.Column('billed_price_cents', sa.Integer(), nullable=False),
        sa.Column('billed_seat_limit', sa.Integer(), nullable=False),
        sa.Column('billing_cycle', sa.String(length=20), nullable=False, comment='monthly|annual'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='active|past_due|paused|superseded|cancelled|expired'),
        sa.Column('stripe_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_customer_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_invoice_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_payment_intent_id', sa.String(length=255), nullable=True),
        sa.Column('stripe_price_id_used', sa.String(length=255), nullable=True),
        sa.Column('period_start', sa.DateTime(), nullable=False),
        sa.Column('period_end', sa.DateTime(), nullable=False),
        sa.Column('cancel_at_period_end', sa.Boolean(), nullable=False),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['plan_id'], ['plans.id'], ondelete='RESTRICT'),
        sa.ForeignKeyConstraint(['override_id'], ['plan_overrides.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stripe_invoice_id'),
    )
    op.create_index(op.f('ix_billing_cycles_id'), 'billing_cycles', ['id'], unique=False)
    op.create_index(op.f('ix_billing_cycles_plan_id'), 'billing_cycles', ['plan_id'], unique=False)
    op.create_index(op.f('ix_billing_cycles_stripe_subscription_id'), 'billing_cycles', ['stripe_subscription_id'], unique=False)
    op.create_index(op.f('ix_billing_cycles_stripe_customer_id'), 'billing_cycles', ['stripe_customer_id'], unique=False)
    op.create_index(op.f('ix_billing_cycles_period_end'), 'billing_cycles', ['period_end'], unique=False)
    op.create_index('ix_billing_cycles_buyer_status', 'billing_cycles', ['buyer_id', 'status'], unique=False)
    op.create_index(
        'uq_billing_cycles_live_buyer', 'billing_cycles', ['buyer_id'],
        unique=True, postgresql_where=LIVE_WHERE, sqlite_where=LIVE_WHERE,
    )
    op.create_index(
        'uq_billing_cycles_initial_subscription', 'billing_cycles', ['stripe_subscription_id'],
        unique=True, postgresql_where=INITIAL_WHERE, sqlite_where=INITIAL_WHERE,
    )

    op.create_table(
        'seats',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('buyer_id', sa.BigInteger(), nullable=False, comment='Host user id of the mentor'),
        sa.Column('dependent_id', sa.BigInteger(), nullable=False, comment='Host user id of the mentee'),
        sa.Column('cycle_id', sa.Uuid(), nullable=False, comment='Cycle that last authorized the seat'),
        sa.Column('is_active', sa.Boolean(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['cycle_id'], ['billing_cycles.id'], ondelete='RESTRICT'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('dependent_id'),
    )
    op.create_index(op.f('ix_seats_id'), 'seats', ['id'], unique=False)
    op.create_index('ix_seats_buyer_active', 'seats', ['buyer_id', 'is_active'], unique=False)

    op.create_table(
        'processed_notifications',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('cycle_id', sa.Uuid(), nullable=False),
        sa.Column('notification_type', sa.String(length=50), nullable=False, comment='expiry'),
        sa.Column('threshold', sa.Integer(), nullable=False, comment='Days before period_end'),
        sa.Column('message_id', sa.String(length=255), nullable=True, comment='Id returned by the host messaging API'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.ForeignKeyConstraint(['cycle_id'], ['billing_cycles.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('cycle_id', 'notification_type', 'threshold', name='uq_processed_notifications_key'),
    )
    op.create_index(op.f('ix_processed_notifications_id'), 'processed_notifications', ['id'], unique=False)

    op.create_table(
        'managed_courses',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('course_id', sa.BigInteger(), nullable=False, comment='Host course id'),
        sa.Column('sort_order', sa.Integer(), nullable=False),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('course_id'),
    )
    op.create_index(op.f('ix_managed_courses_id'), 'managed_courses', ['id'], unique=False)

    op.create_table(
        'stripe_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('event_id', sa.String(length=255), nullable=False, comment='evt_xxx from Stripe'),
        sa.Column('event_type', sa.String(length=100), nullable=False, comment='checkout.session.completed|invoice.paid|etc'),
        sa.Column('status', sa.String(length=20), nullable=False, comment='processed|failed|ignored'),
        sa.Column('customer_id', sa.String(length=255), nullable=True, comment='cus_xxx from Stripe'),
        sa.Column('subscription_id', sa.String(length=255), nullable=True, comment='sub_xxx from Stripe'),
        sa.Column('buyer_id', sa.BigInteger(), nullable=True),
        sa.Column('attempts', sa.BigInteger(), nullable=False),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('payload_summary', sa.String(length=500), nullable=True, comment='str(data)[:500]'),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index(op.f('ix_stripe_events_id'), 'stripe_events', ['id'], unique=False)
    op.create_index(op.f('ix_stripe_events_event_id'), 'stripe_events', ['event_id'], unique=True)
    op.create_index(op.f('ix_stripe_events_event_type'), 'stripe_events', ['event_type'], unique=False)
    op.create_index(op.f('ix_stripe_events_status'), 'stripe_events', ['status'], unique=False)
    op.create_index(op.f('ix_stripe_events_buyer_id'), 'stripe_events', ['buyer_id'], unique=False)
    op.create_index(op.f('ix_stripe_events_created_at'), 'stripe_events', ['created_at'], unique=False)


def downgrade() -> None:
    """Drop all billing ledger tables."""
    op.drop_index(op.f('ix_stripe_events_created_at'), table_name='stripe_events')
    op.drop_index(op.f('ix_stripe_events_buyer_id'), table_name='stripe_events')
    op.drop_index(op.f('ix_stripe_events_status'), table_name='stripe_events')
    op.drop_index(op.f('ix_stripe_events_event_type'), table_name='stripe_events')
    op.drop_index(op.f('ix_stripe_events_event_id'), table_name='stripe_events')
    op.drop_index(op.f('ix_stripe_events_id'), table_name='stripe_events')
    op.drop_table('stripe_events')

    op.drop_index(op.f('ix_managed_courses_id'), table_name='managed_courses')
    op.drop_table('managed_courses')

    op.drop_index(op.f('ix_processed_notifications_id'), table_name='processed_notifications')
    op.drop_table('processed_notifications')

    op.drop_index('ix_seats_buyer_active', table_name='seats')
    op.drop_index(op.f('ix_seats_id'), table_name='seats')
    op.drop_table('seats')

    op.drop_index('uq_billing_cycles_initial_subscription', table_name='billing_cycles')
    op.drop_index('uq_billing_cycles_live_buyer', table_name='billing_cycles')
    op.drop_index('ix_billing_cycles_buyer_status', table_name='billing_cycles')
    op.drop_index(op.f('ix_billing_cycles_period_end'), table_name='billing_cycles')
    op.drop_index(op.f('ix_billing_cycles_stripe_customer_id'), table_name='billing_cycles')
    op.drop_index(op.f('ix_billing_cycles_stripe_subscription_id'), table_name='billing_cycles')
    op.drop_index(op.f('ix_billing_cycles_plan_id'), table_name='billing_cycles')
    op.drop_index(op.f('ix_billing_cycles_id'), table_name='billing_cycles')
    op.drop_table('billing_cycles')

    op.drop_index('ix_plan_overrides_buyer_plan', table_name='plan_overrides')
    op.drop_index(op.f('ix_plan_overrides_id'), table_name='plan_overrides')
    op.drop_table('plan_overrides')

    op.drop_index(op.f('ix_plans_id'), table_name='plans')
    op.drop_table('plans')
