"""create_users_and_subscriptions

Revision ID: 7c1e0b5d9a21
Revises:
Create Date: 2026-02-03 10:14:52.118204

Production-safe migration: only creates tables that do not exist yet.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy import inspect


# revision identifiers, used by Alembic.
revision: str = '7c1e0b5d9a21'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

SUBSCRIPTION_STATUSES = ('TRIALING', 'ACTIVE', 'PAST_DUE', 'CANCELED', 'EXPIRED')


def table_exists(table_name: str) -> bool:
    """Check if a table exists in the database."""
    bind = op.get_bind()
    inspector = inspect(bind)
    return table_name in inspector.get_table_names()


def upgrade() -> None:
    """Create users and subscriptions tables if they don't exist."""
    if not table_exists('users'):
        op.create_table('users',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('full_name', sa.String(), nullable=False),
            sa.Column('email', sa.String(), nullable=True),
            sa.Column('password_hash', sa.String(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
            sa.Column('deleted_at', sa.DateTime(), nullable=True),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_users_id'), 'users', ['id'], unique=False)
        op.create_index(op.f('ix_users_email'), 'users', ['email'], unique=True)

    if not table_exists('subscriptions'):
        op.create_table('subscriptions',
            sa.Column('id', sa.Integer(), nullable=False),
            sa.Column('user_id', sa.Integer(), nullable=False),
            sa.Column('status', sa.Enum(*SUBSCRIPTION_STATUSES, name='subscriptionstatus'), nullable=False),
            sa.Column('trial_ends_at', sa.DateTime(), nullable=True),
            sa.Column('current_period_start', sa.DateTime(), nullable=True),
            sa.Column('current_period_end', sa.DateTime(), nullable=True),
            sa.Column('canceled_at', sa.DateTime(), nullable=True),
            sa.Column('payment_provider', sa.String(), nullable=True),
            sa.Column('payment_provider_id', sa.String(), nullable=True),
            sa.Column('payment_customer_id', sa.String(), nullable=True),
            sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=False),
            sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('(CURRENT_TIMESTAMP)'), nullable=True),
            sa.ForeignKeyConstraint(['user_id'], ['users.id'], ),
            sa.PrimaryKeyConstraint('id')
        )
        op.create_index(op.f('ix_subscriptions_id'), 'subscriptions', ['id'], unique=False)
        op.create_index(op.f('ix_subscriptions_user_id'), 'subscriptions', ['user_id'], unique=True)
        op.create_index(op.f('ix_subscriptions_payment_provider_id'), 'subscriptions', ['payment_provider_id'], unique=False)
        # Sweep predicates filter on status + deadline
        op.create_index('idx_subscriptions_status_trial_end', 'subscriptions', ['status', 'trial_ends_at'], unique=False)
        op.create_index('idx_subscriptions_status_period_end', 'subscriptions', ['status', 'current_period_end'], unique=False)


def downgrade() -> None:
    """Drop subscriptions and users tables."""
    op.drop_index('idx_subscriptions_status_period_end', table_name='subscriptions')
    op.drop_index('idx_subscriptions_status_trial_end', table_name='subscriptions')
    op.drop_index(op.f('ix_subscriptions_payment_provider_id'), table_name='subscriptions')
    op.drop_index(op.f('ix_subscriptions_user_id'), table_name='subscriptions')
    op.drop_index(op.f('ix_subscriptions_id'), table_name='subscriptions')
    op.drop_table('subscriptions')
    sa.Enum(name='subscriptionstatus').drop(op.get_bind(), checkfirst=True)
    op.drop_index(op.f('ix_users_email'), table_name='users')
    op.drop_index(op.f('ix_users_id'), table_name='users')
    op.drop_table('users')
