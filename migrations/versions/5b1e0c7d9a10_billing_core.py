"""billing core: users, roles, payment ledger, subscriber states, event + email logs

Revision ID: 5b1e0c7d9a10
Revises:
Create Date: 2026-10-19 10:00:00.000000
"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision = '5b1e0c7d9a10'
down_revision = None
branch_labels = None
depends_on = None

JSONType = sa.JSON().with_variant(postgresql.JSONB(astext_type=sa.Text()), "postgresql")


def upgrade():
    op.create_table(
        'users',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('password_hash', sa.String(length=255), nullable=False),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('is_admin', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_users_email', 'users', ['email'], unique=True)

    op.create_table(
        'user_roles',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=False),
        sa.Column('role', sa.String(length=64), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete="CASCADE"),
        sa.UniqueConstraint('user_id', 'role', name='uq_user_roles_user_role'),
    )
    op.create_index('ix_user_roles_user_id', 'user_roles', ['user_id'])

    op.create_table(
        'payment_ledger',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('subscriber_id', sa.Integer(), nullable=True),
        sa.Column('provider_transaction_id', sa.String(length=255), nullable=False),
        sa.Column('provider_customer_id', sa.String(length=255), nullable=False),
        sa.Column('subscription_id', sa.String(length=255), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('amount_minor_units', sa.BigInteger(), nullable=False),
        sa.Column('currency_code', sa.String(length=3), nullable=False),
        sa.Column('description', sa.Text(), nullable=False, server_default=sa.text("''")),
        sa.Column('metadata_json', JSONType, nullable=False),
        sa.Column('signup_notified_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['subscriber_id'], ['users.id'], ondelete="SET NULL"),
        sa.CheckConstraint("amount_minor_units >= 0", name='ck_payment_ledger_amount_non_negative'),
        sa.CheckConstraint("status IN ('succeeded','refunded','failed')", name='ck_payment_ledger_status_valid'),
    )
    # The unique index is the idempotency key for ledger writes
    op.create_index('ix_payment_ledger_provider_transaction_id', 'payment_ledger', ['provider_transaction_id'], unique=True)
    op.create_index('ix_payment_ledger_subscriber_id', 'payment_ledger', ['subscriber_id'])
    op.create_index('ix_payment_ledger_provider_customer_id', 'payment_ledger', ['provider_customer_id'])
    op.create_index('ix_payment_ledger_subscription_id', 'payment_ledger', ['subscription_id'])
    op.create_index('ix_payment_ledger_status', 'payment_ledger', ['status'])

    op.create_table(
        'subscriber_states',
        sa.Column('subscriber_id', sa.Integer(), primary_key=True),
        sa.Column('provider_customer_id', sa.String(length=255), nullable=True),
        sa.Column('active_subscription_id', sa.String(length=255), nullable=True),
        sa.Column('subscription_status', sa.String(length=32), nullable=False, server_default=sa.text("'none'")),
        sa.Column('role_granted', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
        sa.ForeignKeyConstraint(['subscriber_id'], ['users.id'], ondelete="CASCADE"),
        sa.CheckConstraint(
            "subscription_status IN ('none','trialing','active','past_due','payment_failed',"
            "'canceled','incomplete','incomplete_expired','unpaid')",
            name='ck_subscriber_states_status_valid',
        ),
    )
    op.create_index('ix_subscriber_states_provider_customer_id', 'subscriber_states', ['provider_customer_id'])
    op.create_index('ix_subscriber_states_active_subscription_id', 'subscriber_states', ['active_subscription_id'])

    op.create_table(
        'billing_event_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('stripe_event_id', sa.String(length=255), nullable=False),
        sa.Column('type', sa.String(length=80), nullable=False),
        sa.Column('livemode', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('signature_valid', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('payload', JSONType, nullable=False),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('retries', sa.Integer(), nullable=False, server_default=sa.text("0")),
        sa.Column('notes', sa.String(length=255), nullable=True),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False, server_default=sa.func.now()),
    )
    op.create_index('ix_billing_event_logs_stripe_event_id', 'billing_event_logs', ['stripe_event_id'], unique=True)
    op.create_index('ix_billing_event_logs_type', 'billing_event_logs', ['type'])

    op.create_table(
        'email_logs',
        sa.Column('id', sa.Integer(), primary_key=True),
        sa.Column('user_id', sa.Integer(), nullable=True),
        sa.Column('to_email', sa.String(length=320), nullable=False),
        sa.Column('template', sa.String(length=64), nullable=False),
        sa.Column('subject', sa.String(length=200), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False),
        sa.Column('meta', sa.JSON(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete="SET NULL"),
    )
    op.create_index('ix_email_logs_to_email', 'email_logs', ['to_email'])
    op.create_index('ix_email_logs_status', 'email_logs', ['status'])


def downgrade():
    op.drop_index('ix_email_logs_status', table_name='email_logs')
    op.drop_index('ix_email_logs_to_email', table_name='email_logs')
    op.drop_table('email_logs')

    op.drop_index('ix_billing_event_logs_type', table_name='billing_event_logs')
    op.drop_index('ix_billing_event_logs_stripe_event_id', table_name='billing_event_logs')
    op.drop_table('billing_event_logs')

    op.drop_index('ix_subscriber_states_active_subscription_id', table_name='subscriber_states')
    op.drop_index('ix_subscriber_states_provider_customer_id', table_name='subscriber_states')
    op.drop_table('subscriber_states')

    op.drop_index('ix_payment_ledger_status', table_name='payment_ledger')
    op.drop_index('ix_payment_ledger_subscription_id', table_name='payment_ledger')
    op.drop_index('ix_payment_ledger_provider_customer_id', table_name='payment_ledger')
    op.drop_index('ix_payment_ledger_subscriber_id', table_name='payment_ledger')
    op.drop_index('ix_payment_ledger_provider_transaction_id', table_name='payment_ledger')
    op.drop_table('payment_ledger')

    op.drop_index('ix_user_roles_user_id', table_name='user_roles')
    op.drop_table('user_roles')

    op.drop_index('ix_users_email', table_name='users')
    op.drop_table('users')
