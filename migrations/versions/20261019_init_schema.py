"""init schema

Revision ID: 20261019_init_schema
Revises:
Create Date: 2026-10-19 10:12:31.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '20261019_init_schema'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    op.create_table(
        'estimates',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(64), nullable=False),
        sa.Column('meal', sa.Text, nullable=False),
        sa.Column('portion', sa.String(8), nullable=False, server_default='medium'),
        sa.Column('details', sa.Text),
        sa.Column('calories', sa.Integer, nullable=False),
        sa.Column('protein_g', sa.Integer, nullable=False),
        sa.Column('carbs_g', sa.Integer, nullable=False),
        sa.Column('fat_g', sa.Integer, nullable=False),
        sa.Column('confidence', sa.String(8)),
        sa.Column('notes', sa.Text),
        sa.Column('source', sa.String(8), nullable=False, server_default='text'),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )
    op.create_index('ix_estimates_user_created', 'estimates', ['user_id', 'created_at'])

    op.create_table(
        'subscriptions',
        sa.Column('user_id', sa.String(64), primary_key=True),
        sa.Column('status', sa.String(32), nullable=False),
        sa.Column('provider', sa.String(16), nullable=False),
        sa.Column('price_id', sa.String(128)),
        sa.Column('current_period_end', sa.DateTime(timezone=True)),
        sa.Column('stripe_customer_id', sa.String(64)),
        sa.Column('stripe_subscription_id', sa.String(64)),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now()),
    )

    op.create_table(
        'profiles',
        sa.Column('user_id', sa.String(64), primary_key=True),
        sa.Column('stripe_customer_id', sa.String(64), unique=True),
    )


def downgrade() -> None:
    op.drop_table('profiles')
    op.drop_table('subscriptions')
    op.drop_index('ix_estimates_user_created', table_name='estimates')
    op.drop_table('estimates')
