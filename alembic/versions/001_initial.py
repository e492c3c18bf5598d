"""Initial schema: merchants and widget_sessions tables

Revision ID: 001_initial
Revises:
Create Date: 2026-10-19 10:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = '001_initial'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # Create merchants table
    op.create_table(
        'merchants',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('business_name', sa.String(length=255), nullable=False),
        sa.Column('live_key', sa.String(length=64), nullable=False),
        sa.Column('test_key', sa.String(length=64), nullable=False),
        sa.Column('allowed_domains', sa.JSON(), nullable=False),
        sa.Column('plan', sa.String(length=50), nullable=False, server_default='free'),
        sa.Column('monthly_quota', sa.Integer(), nullable=True),
        sa.Column('quota_used', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('quota_reset_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='active'),
        sa.Column('webhook_url', sa.String(length=500), nullable=True),
        sa.Column('webhook_secret', sa.String(length=64), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email', name='uq_merchants_email'),
        sa.UniqueConstraint('live_key', name='uq_merchants_live_key'),
        sa.UniqueConstraint('test_key', name='uq_merchants_test_key'),
    )
    op.create_index('ix_merchants_status', 'merchants', ['status'])

    # Create widget_sessions table
    op.create_table(
        'widget_sessions',
        sa.Column('id', sa.String(length=64), nullable=False),
        sa.Column('merchant_id', sa.Integer(), nullable=True),
        sa.Column('product_id', sa.String(length=255), nullable=False),
        sa.Column('product_name', sa.String(length=255), nullable=False),
        sa.Column('product_image', sa.String(length=2000), nullable=False),
        sa.Column('product_category', sa.String(length=50), nullable=True),
        sa.Column('product_price', sa.Numeric(10, 2), nullable=True),
        sa.Column('product_currency', sa.String(length=3), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('try_on_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('max_try_ons', sa.Integer(), nullable=False, server_default='3'),
        sa.Column('result_image', sa.String(length=2000), nullable=True),
        sa.Column('processing_time_ms', sa.Integer(), nullable=True),
        sa.Column('error_code', sa.String(length=50), nullable=True),
        sa.Column('error_message', sa.Text(), nullable=True),
        sa.Column('external_user_id', sa.String(length=255), nullable=True),
        sa.Column('callback_url', sa.String(length=1000), nullable=True),
        sa.Column('origin_domain', sa.String(length=255), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.text('CURRENT_TIMESTAMP'), nullable=False),
        sa.Column('expires_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['merchant_id'], ['merchants.id'], ondelete='SET NULL'),
        sa.CheckConstraint('try_on_count <= max_try_ons', name='ck_widget_sessions_try_on_ceiling'),
    )
    op.create_index('idx_widget_sessions_merchant', 'widget_sessions', ['merchant_id'])
    op.create_index('idx_widget_sessions_status_expiry', 'widget_sessions', ['status', 'expires_at'])


def downgrade() -> None:
    # Drop widget_sessions table
    op.drop_index('idx_widget_sessions_status_expiry', table_name='widget_sessions')
    op.drop_index('idx_widget_sessions_merchant', table_name='widget_sessions')
    op.drop_table('widget_sessions')

    # Drop merchants table
    op.drop_index('ix_merchants_status', table_name='merchants')
    op.drop_table('merchants')
