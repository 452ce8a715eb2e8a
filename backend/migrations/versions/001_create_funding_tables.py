"""Create funding and payout tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

ACTIVE_WHERE = sa.text("status IN ('pending', 'processing')")


def upgrade() -> None:
    # Tables may already exist if Base.metadata.create_all ran first
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    if 'users' not in existing_tables:
        op.create_table(
            'users',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('email', sa.String(length=255), nullable=False),
            sa.Column('display_name', sa.String(length=255), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_users_id', 'users', ['id'])
        op.create_index('ix_users_email', 'users', ['email'], unique=True)

    if 'events' not in existing_tables:
        op.create_table(
            'events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('title', sa.String(length=255), nullable=False),
            sa.Column('slug', sa.String(length=255), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_events_id', 'events', ['id'])
        op.create_index('ix_events_user_id', 'events', ['user_id'])
        op.create_index('ix_events_slug', 'events', ['slug'], unique=True)

    if 'items' not in existing_tables:
        op.create_table(
            'items',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('event_id', sa.Integer(), nullable=False),
            sa.Column('title', sa.String(length=255), nullable=False),
            sa.Column('image_url', sa.String(length=1024), nullable=True),
            sa.Column('price_cents', sa.Integer(), nullable=False),
            sa.Column('current_amount_cents', sa.Integer(), nullable=False, server_default='0'),
            sa.Column('is_fulfilled', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('fulfilled_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['event_id'], ['events.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id'),
            sa.CheckConstraint('price_cents > 0', name='ck_items_price_positive'),
            sa.CheckConstraint('current_amount_cents >= 0', name='ck_items_amount_non_negative')
        )
        op.create_index('ix_items_id', 'items', ['id'])
        op.create_index('ix_items_event_id', 'items', ['event_id'])

    if 'contributions' not in existing_tables:
        op.create_table(
            'contributions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('item_id', sa.Integer(), nullable=False),
            sa.Column('amount_cents', sa.Integer(), nullable=False),
            sa.Column('stripe_reference', sa.String(length=255), nullable=False),
            sa.Column('contributor_name', sa.String(length=255), nullable=False, server_default=''),
            sa.Column('contributor_email', sa.String(length=255), nullable=True),
            sa.Column('confirmed_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['item_id'], ['items.id'], ondelete='RESTRICT'),
            sa.PrimaryKeyConstraint('id'),
            sa.CheckConstraint('amount_cents > 0', name='ck_contributions_amount_positive')
        )
        op.create_index('ix_contributions_id', 'contributions', ['id'])
        op.create_index('ix_contributions_item_id', 'contributions', ['item_id'])
        op.create_index('ix_contributions_stripe_reference', 'contributions', ['stripe_reference'], unique=True)

    if 'payout_accounts' not in existing_tables:
        op.create_table(
            'payout_accounts',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('stripe_account_id', sa.String(length=255), nullable=False),
            sa.Column('onboarding_completed', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('charges_enabled', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('payouts_enabled', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('transfers_active', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_payout_accounts_id', 'payout_accounts', ['id'])
        op.create_index('ix_payout_accounts_user_id', 'payout_accounts', ['user_id'], unique=True)
        op.create_index('ix_payout_accounts_stripe_account_id', 'payout_accounts', ['stripe_account_id'], unique=True)

    if 'fulfillments' not in existing_tables:
        op.create_table(
            'fulfillments',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('item_id', sa.Integer(), nullable=False),
            sa.Column('event_id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('gross_amount_cents', sa.Integer(), nullable=False),
            sa.Column('platform_fee_cents', sa.Integer(), nullable=False),
            sa.Column('net_amount_cents', sa.Integer(), nullable=False),
            sa.Column('fulfillment_method', sa.String(length=50), nullable=False, server_default='bank_transfer'),
            sa.Column('notes', sa.String(length=500), nullable=False, server_default=''),
            sa.Column('idempotency_key', sa.String(length=255), nullable=False),
            sa.Column('stripe_account_id', sa.String(length=255), nullable=True),
            sa.Column('stripe_transfer_id', sa.String(length=255), nullable=True),
            sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('error_code', sa.String(length=100), nullable=True),
            sa.Column('requested_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('transfer_attempted_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('processing_started_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
            sa.Column('failed_at', sa.DateTime(timezone=True), nullable=True),
            sa.ForeignKeyConstraint(['item_id'], ['items.id'], ondelete='RESTRICT'),
            sa.ForeignKeyConstraint(['event_id'], ['events.id'], ondelete='RESTRICT'),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='RESTRICT'),
            sa.PrimaryKeyConstraint('id'),
            sa.CheckConstraint(
                'gross_amount_cents = platform_fee_cents + net_amount_cents',
                name='ck_fulfillments_amounts_balance'
            ),
            sa.CheckConstraint('platform_fee_cents >= 0', name='ck_fulfillments_fee_non_negative'),
            sa.CheckConstraint(
                "status IN ('pending', 'processing', 'completed', 'failed')",
                name='ck_fulfillments_status'
            )
        )
        op.create_index('ix_fulfillments_id', 'fulfillments', ['id'])
        op.create_index('ix_fulfillments_item_id', 'fulfillments', ['item_id'])
        op.create_index('ix_fulfillments_event_id', 'fulfillments', ['event_id'])
        op.create_index('ix_fulfillments_user_id', 'fulfillments', ['user_id'])
        op.create_index('ix_fulfillments_idempotency_key', 'fulfillments', ['idempotency_key'], unique=True)
        op.create_index('ix_fulfillments_stripe_transfer_id', 'fulfillments', ['stripe_transfer_id'])
        op.create_index('ix_fulfillments_user_requested', 'fulfillments', ['user_id', 'requested_at'])
        op.create_index('ix_fulfillments_status_requested', 'fulfillments', ['status', 'requested_at'])
        # At most one pending/processing fulfillment per item
        op.create_index(
            'uq_fulfillments_active_item', 'fulfillments', ['item_id'],
            unique=True,
            postgresql_where=ACTIVE_WHERE,
            sqlite_where=ACTIVE_WHERE
        )

    if 'stripe_events' not in existing_tables:
        op.create_table(
            'stripe_events',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('stripe_event_id', sa.String(length=255), nullable=False),
            sa.Column('event_type', sa.String(length=100), nullable=False),
            sa.Column('processed', sa.Boolean(), nullable=False, server_default='false'),
            sa.Column('payload', sa.JSON(), nullable=False),
            sa.Column('error_message', sa.Text(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
            sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index('ix_stripe_events_id', 'stripe_events', ['id'])
        op.create_index('ix_stripe_events_stripe_event_id', 'stripe_events', ['stripe_event_id'], unique=True)
        op.create_index('ix_stripe_events_event_type', 'stripe_events', ['event_type'])
    else:
        existing_indexes = [idx['name'] for idx in inspector.get_indexes('stripe_events')]
        if 'ix_stripe_events_stripe_event_id' not in existing_indexes:
            op.create_index('ix_stripe_events_stripe_event_id', 'stripe_events', ['stripe_event_id'], unique=True)


def downgrade() -> None:
    conn = op.get_bind()
    inspector = inspect(conn)
    existing_tables = inspector.get_table_names()

    # Reverse dependency order
    for table in ('stripe_events', 'fulfillments', 'payout_accounts', 'contributions', 'items', 'events', 'users'):
        if table in existing_tables:
            op.drop_table(table)
