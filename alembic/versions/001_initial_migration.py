"""Initial migration - users, check-ins, payouts, activity logs

Revision ID: 001
Revises: 
Create Date: 2025-01-15 10:00:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects import postgresql

# revision identifiers, used by Alembic.
revision: str = '001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('now()'), nullable=False),
    ]


def upgrade() -> None:
    # Create enum types
    op.execute("CREATE TYPE userrole AS ENUM ('USER', 'ADMIN')")
    op.execute("CREATE TYPE userstatus AS ENUM ('ACTIVE', 'SUSPENDED', 'BLACKLISTED')")
    op.execute("CREATE TYPE checkinstatus AS ENUM ('PENDING', 'SUCCESS', 'FAILED')")
    op.execute("CREATE TYPE paymentstatus AS ENUM ('pending_payment', 'payment_failed', 'payment_success')")
    op.execute("CREATE TYPE payoutstatus AS ENUM ('QUEUED', 'PROCESSING', 'SUCCESS', 'FAILED', 'FAILED_PERMANENT')")
    op.execute("CREATE TYPE activityaction AS ENUM ('CHECK_IN', 'PAYOUT', 'AUTHORIZATION', 'RETRY')")
    op.execute("CREATE TYPE activitystatus AS ENUM ('success', 'failure', 'info')")

    # Create users table
    op.create_table('users',
        sa.Column('id', sa.String(length=36), nullable=False, comment='User identifier (uuid)'),
        sa.Column('did', sa.String(length=128), nullable=False, comment='Decentralized identifier did:pkh:eip155:{chain_id}:{address}'),
        sa.Column('wallet_address', sa.String(length=42), nullable=True, comment='Lowercased EVM wallet address'),
        sa.Column('chain_id', sa.Integer(), nullable=False, comment='EVM chain id the wallet signed in with'),
        sa.Column('role', postgresql.ENUM('USER', 'ADMIN', name='userrole', create_type=False), nullable=False, comment='Access role'),
        sa.Column('status', postgresql.ENUM('ACTIVE', 'SUSPENDED', 'BLACKLISTED', name='userstatus', create_type=False), nullable=False, comment='Account status'),
        sa.Column('profile_completed', sa.Boolean(), nullable=False, comment='Whether onboarding is finished'),
        sa.Column('total_rewards', sa.String(length=78), nullable=False, comment='Sum of successful payouts in token base units'),
        sa.Column('last_checkin_at', sa.DateTime(timezone=True), nullable=True, comment='Time of the last rewarded check-in'),
        sa.Column('last_login_at', sa.DateTime(timezone=True), nullable=True, comment='Time of the last signature login'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('did'),
        sa.UniqueConstraint('wallet_address')
    )

    # Create check_ins table
    op.create_table('check_ins',
        sa.Column('id', sa.String(length=36), nullable=False, comment='Check-in identifier (uuid)'),
        sa.Column('user_id', sa.String(length=36), nullable=False, comment='Owning user'),
        sa.Column('did', sa.String(length=128), nullable=False, comment='DID of the owning user'),
        sa.Column('date', sa.Date(), nullable=False, comment='UTC calendar day of the check-in'),
        sa.Column('status', postgresql.ENUM('PENDING', 'SUCCESS', 'FAILED', name='checkinstatus', create_type=False), nullable=False, comment='Check-in status'),
        sa.Column('payout_id', sa.String(length=36), nullable=True, comment='Linked token payout'),
        sa.Column('payment_order_id', sa.String(length=128), nullable=True, comment='X402 order that paid for this check-in'),
        sa.Column('payment_status', postgresql.ENUM('pending_payment', 'payment_failed', 'payment_success', name='paymentstatus', create_type=False), nullable=True, comment='Payment outcome for gated check-ins'),
        sa.Column('error_reason', sa.Text(), nullable=True, comment='Failure reason'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('payment_order_id')
    )

    # Create token_payouts table
    op.create_table('token_payouts',
        sa.Column('id', sa.String(length=36), nullable=False, comment='Payout identifier (uuid)'),
        sa.Column('user_id', sa.String(length=36), nullable=False, comment='Recipient user'),
        sa.Column('did', sa.String(length=128), nullable=False, comment='DID of the recipient'),
        sa.Column('check_in_id', sa.String(length=36), nullable=True, comment='Check-in this payout rewards'),
        sa.Column('amount', sa.String(length=78), nullable=False, comment='Amount in token base units as a decimal-integer string'),
        sa.Column('status', postgresql.ENUM('QUEUED', 'PROCESSING', 'SUCCESS', 'FAILED', 'FAILED_PERMANENT', name='payoutstatus', create_type=False), nullable=False, comment='Payout status'),
        sa.Column('tx_hash', sa.String(length=66), nullable=True, comment='Broadcast transaction hash'),
        sa.Column('error_reason', sa.Text(), nullable=True, comment='Last failure reason'),
        sa.Column('retry_count', sa.Integer(), nullable=False, comment='Number of explicit retries'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True, comment='When the payout reached a terminal state'),
        *_timestamps(),
        sa.ForeignKeyConstraint(['user_id'], ['users.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['check_in_id'], ['check_ins.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id')
    )

    # Create activity_logs table
    op.create_table('activity_logs',
        sa.Column('id', sa.String(length=36), nullable=False),
        sa.Column('user_id', sa.String(length=36), nullable=True, comment='Acting or affected user'),
        sa.Column('did', sa.String(length=128), nullable=True),
        sa.Column('action', postgresql.ENUM('CHECK_IN', 'PAYOUT', 'AUTHORIZATION', 'RETRY', name='activityaction', create_type=False), nullable=False, comment='Audited action'),
        sa.Column('status', postgresql.ENUM('success', 'failure', 'info', name='activitystatus', create_type=False), nullable=False, comment='Outcome'),
        sa.Column('metadata', sa.JSON(), nullable=True, comment='Free-form event payload'),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id')
    )

    # Create indexes
    op.create_index('idx_user_status', 'users', ['status'])
    op.create_index('ix_users_created_at', 'users', ['created_at'])

    op.create_index('idx_checkin_user_date_unique', 'check_ins', ['user_id', 'date'], unique=True)
    op.create_index('idx_checkin_status_updated', 'check_ins', ['status', 'updated_at'])
    op.create_index('ix_check_ins_payout_id', 'check_ins', ['payout_id'])
    op.create_index('ix_check_ins_created_at', 'check_ins', ['created_at'])

    op.create_index('idx_payout_status_created', 'token_payouts', ['status', 'created_at'])
    op.create_index('idx_payout_user', 'token_payouts', ['user_id'])
    op.create_index('ix_token_payouts_check_in_id', 'token_payouts', ['check_in_id'])
    op.create_index('ix_token_payouts_created_at', 'token_payouts', ['created_at'])

    op.create_index('idx_activity_user_action', 'activity_logs', ['user_id', 'action'])
    op.create_index('ix_activity_logs_created_at', 'activity_logs', ['created_at'])


def downgrade() -> None:
    # Drop indexes
    op.drop_index('ix_activity_logs_created_at', table_name='activity_logs')
    op.drop_index('idx_activity_user_action', table_name='activity_logs')

    op.drop_index('ix_token_payouts_created_at', table_name='token_payouts')
    op.drop_index('ix_token_payouts_check_in_id', table_name='token_payouts')
    op.drop_index('idx_payout_user', table_name='token_payouts')
    op.drop_index('idx_payout_status_created', table_name='token_payouts')

    op.drop_index('ix_check_ins_created_at', table_name='check_ins')
    op.drop_index('ix_check_ins_payout_id', table_name='check_ins')
    op.drop_index('idx_checkin_status_updated', table_name='check_ins')
    op.drop_index('idx_checkin_user_date_unique', table_name='check_ins')

    op.drop_index('ix_users_created_at', table_name='users')
    op.drop_index('idx_user_status', table_name='users')

    # Drop tables
    op.drop_table('activity_logs')
    op.drop_table('token_payouts')
    op.drop_table('check_ins')
    op.drop_table('users')

    # Drop enum types
    op.execute("DROP TYPE activitystatus")
    op.execute("DROP TYPE activityaction")
    op.execute("DROP TYPE payoutstatus")
    op.execute("DROP TYPE paymentstatus")
    op.execute("DROP TYPE checkinstatus")
    op.execute("DROP TYPE userstatus")
    op.execute("DROP TYPE userrole")
