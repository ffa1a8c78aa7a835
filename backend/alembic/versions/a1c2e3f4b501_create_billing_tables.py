"""create organizer billing tables

Revision ID: a1c2e3f4b501
Revises:
Create Date: 2026-10-17 09:00:00.000000

"""
from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision = 'a1c2e3f4b501'
down_revision = None
branch_labels = None
depends_on = None


def upgrade() -> None:
    # organizers テーブル (テナント)
    op.create_table(
        'organizers',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('user_id', sa.String(64), nullable=False, comment='認証サービス側のユーザーID'),
        sa.Column('email', sa.String(255), nullable=False),
        sa.Column('business_name', sa.String(255), nullable=True),
        sa.Column('trial_used', sa.Boolean(), nullable=False, server_default=sa.false(),
                  comment='Stripeトライアル使用済み (一度立てたら戻さない)'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_organizers_user_id', 'organizers', ['user_id'], unique=True)
    op.create_index('ix_organizers_email', 'organizers', ['email'])

    # communities テーブル (購読状態に応じて公開/非公開)
    op.create_table(
        'communities',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('organizer_id', sa.Integer(), nullable=False),
        sa.Column('name', sa.String(255), nullable=False),
        sa.Column('slug', sa.String(255), nullable=True),
        sa.Column('status', sa.Enum('active', 'draft', name='community_status'), nullable=False,
                  server_default='draft', comment='公開状態: active=公開, draft=非公開'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['organizer_id'], ['organizers.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('slug'),
    )
    op.create_index('ix_communities_organizer_id', 'communities', ['organizer_id'])

    # organizer_subscriptions テーブル (主催者ごとに1件)
    op.create_table(
        'organizer_subscriptions',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('organizer_id', sa.Integer(), nullable=False),
        sa.Column('status', sa.String(32), nullable=False, server_default='incomplete',
                  comment='Stripe subscription status (生値)'),
        sa.Column('stripe_customer_id', sa.String(255), nullable=True),
        sa.Column('stripe_subscription_id', sa.String(255), nullable=True),
        sa.Column('trial_start', sa.DateTime(), nullable=True),
        sa.Column('trial_end', sa.DateTime(), nullable=True),
        sa.Column('current_period_start', sa.DateTime(), nullable=True),
        sa.Column('current_period_end', sa.DateTime(), nullable=True),
        sa.Column('cancel_at', sa.DateTime(), nullable=True, comment='期間終了時キャンセル予定日時'),
        sa.Column('canceled_at', sa.DateTime(), nullable=True),
        sa.Column('placement_credits_available', sa.Integer(), nullable=False, server_default='0',
                  comment='今サイクルの付与クレジット'),
        sa.Column('placement_credits_used', sa.Integer(), nullable=False, server_default='0',
                  comment='今サイクルの使用済みクレジット'),
        sa.Column('credits_reset_date', sa.DateTime(), nullable=True, comment='次回クレジットリセット日時'),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['organizer_id'], ['organizers.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stripe_subscription_id'),
    )
    op.create_index('ix_organizer_subscriptions_organizer_id', 'organizer_subscriptions', ['organizer_id'], unique=True)
    op.create_index('ix_organizer_subscriptions_stripe_customer_id', 'organizer_subscriptions', ['stripe_customer_id'])

    # billing_events テーブル (Webhookイベントログ・冪等性)
    op.create_table(
        'billing_events',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('stripe_event_id', sa.String(255), nullable=False),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('payload', sa.JSON(), nullable=True, comment='event.data.object'),
        sa.Column('processed', sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column('processing_error', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.Column('processed_at', sa.DateTime(), nullable=True),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_billing_events_stripe_event_id', 'billing_events', ['stripe_event_id'], unique=True)
    op.create_index('ix_billing_events_event_type', 'billing_events', ['event_type'])

    # subscription_payments テーブル (請求書支払い履歴)
    op.create_table(
        'subscription_payments',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('subscription_id', sa.Integer(), nullable=False),
        sa.Column('organizer_id', sa.Integer(), nullable=False),
        sa.Column('stripe_invoice_id', sa.String(255), nullable=False),
        sa.Column('amount_paid', sa.Integer(), nullable=False, server_default='0', comment='最小通貨単位'),
        sa.Column('currency', sa.String(3), nullable=False, server_default='CAD'),
        sa.Column('status', sa.Enum('succeeded', 'failed', name='payment_status'), nullable=False),
        sa.Column('billing_period_start', sa.DateTime(), nullable=True),
        sa.Column('billing_period_end', sa.DateTime(), nullable=True),
        sa.Column('receipt_url', sa.String(500), nullable=True),
        sa.Column('failure_reason', sa.String(255), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['subscription_id'], ['organizer_subscriptions.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['organizer_id'], ['organizers.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('stripe_invoice_id', 'status', name='uq_subscription_payments_invoice_status'),
    )
    op.create_index('ix_subscription_payments_subscription_id', 'subscription_payments', ['subscription_id'])
    op.create_index('ix_subscription_payments_organizer_id', 'subscription_payments', ['organizer_id'])

    # placement_credit_usages テーブル (クレジット使用履歴)
    op.create_table(
        'placement_credit_usages',
        sa.Column('id', sa.Integer(), autoincrement=True, nullable=False),
        sa.Column('organizer_id', sa.Integer(), nullable=False),
        sa.Column('subscription_id', sa.Integer(), nullable=True),
        sa.Column('campaign_id', sa.String(64), nullable=True),
        sa.Column('placements_used', sa.JSON(), nullable=False, comment='使用した掲載枠の一覧'),
        sa.Column('credits_deducted', sa.Integer(), nullable=False),
        sa.Column('start_date', sa.Date(), nullable=True),
        sa.Column('end_date', sa.Date(), nullable=True),
        sa.Column('created_at', sa.DateTime(), server_default=sa.func.now(), nullable=False),
        sa.ForeignKeyConstraint(['organizer_id'], ['organizers.id'], ondelete='CASCADE'),
        sa.ForeignKeyConstraint(['subscription_id'], ['organizer_subscriptions.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_placement_credit_usages_organizer_id', 'placement_credit_usages', ['organizer_id'])
    op.create_index('ix_placement_credit_usages_subscription_id', 'placement_credit_usages', ['subscription_id'])


def downgrade() -> None:
    op.drop_table('placement_credit_usages')
    op.drop_table('subscription_payments')
    op.drop_table('billing_events')
    op.drop_table('organizer_subscriptions')
    op.drop_table('communities')
    op.drop_table('organizers')
