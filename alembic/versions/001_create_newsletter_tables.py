"""Create newsletter tables

Revision ID: 001
Revises:
Create Date: 2026-10-19 12:00:00.000000

"""
from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSON


# revision identifiers, used by Alembic.
revision = '001'
down_revision = None
branch_labels = None
depends_on = None


def upgrade():
    """Create newsletter subscriber and campaign tables."""

    # 1. Create newsletter_subscribers table
    op.create_table(
        'newsletter_subscribers',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('email', sa.String(length=255), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=True),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='pending'),
        sa.Column('source', sa.String(length=20), nullable=False, server_default='website'),
        sa.Column('locale', sa.String(length=5), nullable=False, server_default='ar'),
        sa.Column('subscribed_at', sa.DateTime(), nullable=False),
        sa.Column('unsubscribed_at', sa.DateTime(), nullable=True),
        sa.Column('verification_token', sa.String(length=255), nullable=True),
        sa.Column('unsubscribe_token', sa.String(length=255), nullable=False),
        sa.Column('ip_address', sa.String(length=45), nullable=True),
        sa.Column('user_agent', sa.Text(), nullable=True),
        sa.Column('referrer', sa.String(length=2000), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('email'),
    )
    op.create_index('ix_newsletter_subscribers_email', 'newsletter_subscribers', ['email'])
    op.create_index('ix_newsletter_subscribers_status', 'newsletter_subscribers', ['status'])
    op.create_index('ix_newsletter_subscribers_source', 'newsletter_subscribers', ['source'])
    op.create_index('ix_newsletter_subscribers_subscribed_at', 'newsletter_subscribers', ['subscribed_at'])
    op.create_index('ix_newsletter_subscribers_verification_token', 'newsletter_subscribers', ['verification_token'])
    op.create_index('ix_newsletter_subscribers_unsubscribe_token', 'newsletter_subscribers', ['unsubscribe_token'])
    op.create_index('ix_newsletter_subscribers_created_at', 'newsletter_subscribers', ['created_at'])

    # 2. Create newsletter_subscriber_tags table
    op.create_table(
        'newsletter_subscriber_tags',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('subscriber_id', sa.Integer(), nullable=False),
        sa.Column('tag', sa.String(length=50), nullable=False),
        sa.Column('added_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.ForeignKeyConstraint(['subscriber_id'], ['newsletter_subscribers.id'], ondelete='CASCADE'),
        sa.UniqueConstraint('subscriber_id', 'tag', name='uq_subscriber_tag'),
    )
    op.create_index('ix_newsletter_subscriber_tags_subscriber_id', 'newsletter_subscriber_tags', ['subscriber_id'])
    op.create_index('ix_newsletter_subscriber_tags_tag', 'newsletter_subscriber_tags', ['tag'])

    # 3. Create newsletter_campaigns table
    op.create_table(
        'newsletter_campaigns',
        sa.Column('id', sa.Integer(), nullable=False),
        sa.Column('subject_ar', sa.String(length=200), nullable=False),
        sa.Column('subject_en', sa.String(length=200), nullable=False),
        sa.Column('preheader_ar', sa.String(length=150), nullable=True),
        sa.Column('preheader_en', sa.String(length=150), nullable=True),
        sa.Column('content_ar', sa.Text(), nullable=False),
        sa.Column('content_en', sa.Text(), nullable=False),
        sa.Column('status', sa.String(length=20), nullable=False, server_default='draft'),
        sa.Column('scheduled_at', sa.DateTime(), nullable=True),
        sa.Column('sent_at', sa.DateTime(), nullable=True),
        sa.Column('cancelled_at', sa.DateTime(), nullable=True),
        sa.Column('recipient_type', sa.String(length=20), nullable=False, server_default='all'),
        sa.Column('recipient_tags', JSON, nullable=True),
        sa.Column('recipient_ids', JSON, nullable=True),
        sa.Column('recipient_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('sent_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('open_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('click_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('bounce_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('unsubscribe_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('created_by_id', sa.Integer(), nullable=True),
        sa.Column('updated_by_id', sa.Integer(), nullable=True),
        sa.Column('created_at', sa.DateTime(), nullable=False),
        sa.Column('updated_at', sa.DateTime(), nullable=False),
        sa.PrimaryKeyConstraint('id'),
        sa.CheckConstraint(
            'recipient_count >= 0 AND sent_count >= 0 AND open_count >= 0 AND click_count >= 0 '
            'AND bounce_count >= 0 AND unsubscribe_count >= 0',
            name='ck_newsletter_campaigns_metrics_non_negative'
        ),
    )
    op.create_index('ix_newsletter_campaigns_status', 'newsletter_campaigns', ['status'])
    op.create_index('ix_newsletter_campaigns_scheduled_at', 'newsletter_campaigns', ['scheduled_at'])
    op.create_index('ix_newsletter_campaigns_sent_at', 'newsletter_campaigns', ['sent_at'])
    op.create_index('ix_newsletter_campaigns_created_at', 'newsletter_campaigns', ['created_at'])


def downgrade():
    """Drop newsletter tables."""
    # Drop in reverse order of creation
    op.drop_index('ix_newsletter_campaigns_created_at', table_name='newsletter_campaigns')
    op.drop_index('ix_newsletter_campaigns_sent_at', table_name='newsletter_campaigns')
    op.drop_index('ix_newsletter_campaigns_scheduled_at', table_name='newsletter_campaigns')
    op.drop_index('ix_newsletter_campaigns_status', table_name='newsletter_campaigns')
    op.drop_table('newsletter_campaigns')

    op.drop_index('ix_newsletter_subscriber_tags_tag', table_name='newsletter_subscriber_tags')
    op.drop_index('ix_newsletter_subscriber_tags_subscriber_id', table_name='newsletter_subscriber_tags')
    op.drop_table('newsletter_subscriber_tags')

    op.drop_index('ix_newsletter_subscribers_created_at', table_name='newsletter_subscribers')
    op.drop_index('ix_newsletter_subscribers_unsubscribe_token', table_name='newsletter_subscribers')
    op.drop_index('ix_newsletter_subscribers_verification_token', table_name='newsletter_subscribers')
    op.drop_index('ix_newsletter_subscribers_subscribed_at', table_name='newsletter_subscribers')
    op.drop_index('ix_newsletter_subscribers_source', table_name='newsletter_subscribers')
    op.drop_index('ix_newsletter_subscribers_status', table_name='newsletter_subscribers')
    op.drop_index('ix_newsletter_subscribers_email', table_name='newsletter_subscribers')
    op.drop_table('newsletter_subscribers')
