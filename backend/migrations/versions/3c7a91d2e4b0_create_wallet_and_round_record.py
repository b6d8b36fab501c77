"""create user, wallet_balance and round_record tables

Revision ID: 3c7a91d2e4b0
Revises:
Create Date: 2026-10-18 00:00:00
"""

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '3c7a91d2e4b0'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    bind = op.get_bind()
    insp = sa.inspect(bind)
    existing_tables = set(insp.get_table_names())

    if 'user' not in existing_tables:
        op.create_table(
            'user',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('username', sa.String(length=64), nullable=False),
            sa.Column('password_hash', sa.String(length=256), nullable=False),
        )
        op.create_index('ix_user_username', 'user', ['username'], unique=True)

    if 'wallet_balance' not in existing_tables:
        op.create_table(
            'wallet_balance',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('player_id', sa.String(length=64), nullable=False),
            sa.Column('crypto_type', sa.String(length=16), nullable=False),
            sa.Column('amount', sa.Float(), nullable=False),
            sa.UniqueConstraint('player_id', 'crypto_type', name='uq_wallet_balance_player_crypto'),
        )
        op.create_index('ix_wallet_balance_player_id', 'wallet_balance', ['player_id'])

    if 'round_record' not in existing_tables:
        op.create_table(
            'round_record',
            sa.Column('id', sa.Integer(), primary_key=True),
            sa.Column('round_id', sa.String(length=64), nullable=False),
            sa.Column('crash_point', sa.Float(), nullable=False),
            sa.Column('seed', sa.String(length=128), nullable=False),
            sa.Column('seed_hash', sa.String(length=128), nullable=False),
            sa.Column('opened_at', sa.DateTime(), nullable=True),
            sa.Column('started_at', sa.DateTime(), nullable=True),
            sa.Column('crashed_at', sa.DateTime(), nullable=True),
            sa.Column('ended_at', sa.DateTime(), nullable=True),
            sa.Column('participants', sa.Text(), nullable=True),
        )
        op.create_index('ix_round_record_round_id', 'round_record', ['round_id'], unique=True)


def downgrade():
    op.drop_index('ix_round_record_round_id', table_name='round_record')
    op.drop_table('round_record')
    op.drop_index('ix_wallet_balance_player_id', table_name='wallet_balance')
    op.drop_table('wallet_balance')
    op.drop_index('ix_user_username', table_name='user')
    op.drop_table('user')
