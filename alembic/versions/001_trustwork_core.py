"""TrustWork core tables

This migration creates:
1. profiles and bank_accounts
2. assignments and applications (one active application per freelancer and assignment)
3. gigs and milestones
4. escrow_payments and disputes
5. notifications
6. outbox_events and audit_log

Revision ID: 001_trustwork_core
Revises:
Create Date: 2026-10-18
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers
revision = '001_trustwork_core'
down_revision = None
branch_labels = None
depends_on = None


ACTIVE_APPLICATION = sa.text("status IN ('pending', 'reviewing', 'shortlisted', 'accepted')")


def _enum(name, *values):
    return sa.Enum(*values, name=name)


def _timestamps():
    return [
        sa.Column('created_at', sa.DateTime),
        sa.Column('updated_at', sa.DateTime),
        sa.Column('version', sa.Integer, nullable=False, server_default='1'),
    ]


def upgrade():
    # 1. Profiles & bank accounts
    op.create_table('profiles',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('role', _enum('userrole', 'freelancer', 'employer', 'admin'), nullable=False),
        sa.Column('display_name', sa.String(100), nullable=False),
        sa.Column('email', sa.String(255)),
        sa.Column('phone', sa.String(20)),
        sa.Column('location', sa.String(100)),
        sa.Column('skills', sa.JSON),
        sa.Column('verified', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('rating', sa.Float, server_default='0'),
        sa.Column('review_count', sa.Integer, server_default='0'),
        *_timestamps(),
    )
    op.create_index('ix_profiles_email', 'profiles', ['email'], unique=True)

    op.create_table('bank_accounts',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('owner_id', sa.String(36), sa.ForeignKey('profiles.id', ondelete='CASCADE'),
                  unique=True, nullable=False),
        sa.Column('bank_name', sa.String(100), nullable=False),
        sa.Column('account_number', sa.String(20), nullable=False),
        sa.Column('account_holder', sa.String(150), nullable=False),
        sa.Column('branch_code', sa.String(10)),
        sa.Column('account_type', _enum('bankaccounttype', 'savings', 'cheque', 'current')),
        sa.Column('verified', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('verified_at', sa.DateTime),
        *_timestamps(),
    )

    # 2. Assignments & applications
    op.create_table('assignments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('employer_id', sa.String(36), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('description', sa.Text, nullable=False),
        sa.Column('category', sa.String(100)),
        sa.Column('budget_min', sa.Numeric(12, 2)),
        sa.Column('budget_max', sa.Numeric(12, 2)),
        sa.Column('budget_type', _enum('budgettype', 'fixed', 'hourly')),
        sa.Column('required_skills', sa.JSON),
        sa.Column('location', sa.String(100)),
        sa.Column('remote_allowed', sa.Boolean),
        sa.Column('job_type', sa.String(50)),
        sa.Column('experience_level', sa.String(50)),
        sa.Column('urgent', sa.Boolean),
        sa.Column('status', _enum('assignmentstatus', 'draft', 'open', 'closed', 'filled'), nullable=False),
        sa.Column('deadline', sa.DateTime),
        *_timestamps(),
    )
    op.create_index('ix_assignments_employer_id', 'assignments', ['employer_id'])

    op.create_table('applications',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('assignment_id', sa.String(36), sa.ForeignKey('assignments.id', ondelete='CASCADE'),
                  nullable=False),
        sa.Column('freelancer_id', sa.String(36), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('employer_id', sa.String(36), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('cover_letter', sa.Text, nullable=False),
        sa.Column('proposed_rate', sa.Numeric(12, 2)),
        sa.Column('proposed_timeline', sa.String(100)),
        sa.Column('availability_start', sa.Date),
        sa.Column('portfolio_links', sa.JSON),
        sa.Column('status', _enum('applicationstatus', 'pending', 'reviewing', 'shortlisted',
                                  'accepted', 'rejected', 'withdrawn'), nullable=False),
        sa.Column('employer_message', sa.Text),
        sa.Column('rejection_reason', sa.Text),
        sa.Column('withdrawal_reason', sa.Text),
        sa.Column('reviewed_at', sa.DateTime),
        sa.Column('reviewed_by', sa.String(36), sa.ForeignKey('profiles.id')),
        *_timestamps(),
    )
    op.create_index('ix_applications_assignment_status', 'applications', ['assignment_id', 'status'])
    op.create_index('ix_applications_freelancer_status', 'applications', ['freelancer_id', 'status'])
    op.create_index('uq_applications_active_per_freelancer', 'applications', ['assignment_id', 'freelancer_id'],
                    unique=True, postgresql_where=ACTIVE_APPLICATION, sqlite_where=ACTIVE_APPLICATION)

    # 3. Gigs & milestones
    op.create_table('gigs',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('assignment_id', sa.String(36), sa.ForeignKey('assignments.id')),
        sa.Column('application_id', sa.String(36), sa.ForeignKey('applications.id')),
        sa.Column('client_id', sa.String(36), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('freelancer_id', sa.String(36), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('category', sa.String(100)),
        sa.Column('budget', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', _enum('gigstatus', 'draft', 'open', 'in_progress', 'completed',
                                  'cancelled', 'disputed'), nullable=False),
        sa.Column('started_at', sa.DateTime),
        sa.Column('deadline', sa.DateTime),
        sa.Column('completed_at', sa.DateTime),
        *_timestamps(),
    )
    op.create_index('ix_gigs_client_id', 'gigs', ['client_id'])
    op.create_index('ix_gigs_freelancer_id', 'gigs', ['freelancer_id'])

    op.create_table('milestones',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('gig_id', sa.String(36), sa.ForeignKey('gigs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('client_id', sa.String(36), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('freelancer_id', sa.String(36), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('ordinal', sa.Integer, nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('percentage', sa.Numeric(5, 2), nullable=False),
        sa.Column('due_date', sa.DateTime),
        sa.Column('status', _enum('milestonestatus', 'pending', 'in_progress', 'submitted', 'approved',
                                  'rejected', 'revision_requested'), nullable=False),
        sa.Column('revision_count', sa.Integer, nullable=False, server_default='0'),
        sa.Column('max_revisions', sa.Integer, nullable=False, server_default='2'),
        sa.Column('started_at', sa.DateTime),
        sa.Column('submitted_at', sa.DateTime),
        sa.Column('approved_at', sa.DateTime),
        sa.Column('client_notes', sa.Text),
        sa.Column('submission_notes', sa.Text),
        sa.Column('payment_released', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('payment_released_at', sa.DateTime),
        *_timestamps(),
    )
    op.create_index('ix_milestones_gig_ordinal', 'milestones', ['gig_id', 'ordinal'], unique=True)

    # 4. Escrow & disputes
    op.create_table('escrow_payments',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('gig_id', sa.String(36), sa.ForeignKey('gigs.id'), nullable=False),
        sa.Column('milestone_id', sa.String(36), sa.ForeignKey('milestones.id')),
        sa.Column('application_id', sa.String(36), sa.ForeignKey('applications.id')),
        sa.Column('payer_id', sa.String(36), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('recipient_id', sa.String(36), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('amount', sa.Numeric(12, 2), nullable=False),
        sa.Column('platform_fee', sa.Numeric(12, 2), nullable=False),
        sa.Column('payment_method', _enum('paymentmethod', 'eft', 'cc'), nullable=False),
        sa.Column('payment_fee', sa.Numeric(12, 2), nullable=False),
        sa.Column('status', _enum('escrowstatus', 'pending', 'held', 'released', 'refunded',
                                  'disputed', 'discarded'), nullable=False),
        sa.Column('payout_status', _enum('payoutstatus', 'pending', 'processing', 'completed', 'failed')),
        sa.Column('gateway_ref', sa.String(100)),
        sa.Column('payout_ref', sa.String(100)),
        sa.Column('payout_attempts', sa.Integer, nullable=False, server_default='0'),
        sa.Column('next_payout_attempt_at', sa.DateTime),
        sa.Column('payout_error', sa.Text),
        sa.Column('held_at', sa.DateTime),
        sa.Column('released_at', sa.DateTime),
        sa.Column('refunded_at', sa.DateTime),
        sa.Column('disputed_at', sa.DateTime),
        sa.Column('discarded_at', sa.DateTime),
        sa.Column('payout_started_at', sa.DateTime),
        sa.Column('payout_completed_at', sa.DateTime),
        *_timestamps(),
    )
    op.create_index('ix_escrow_payments_payer_id', 'escrow_payments', ['payer_id'])
    op.create_index('ix_escrow_payments_recipient_id', 'escrow_payments', ['recipient_id'])
    op.create_index('ix_escrow_payments_gateway_ref', 'escrow_payments', ['gateway_ref'])
    op.create_index('ix_escrow_payments_gig_status', 'escrow_payments', ['gig_id', 'status'])
    op.create_index('ix_escrow_payments_payout_queue', 'escrow_payments', ['status', 'payout_status'])

    op.create_table('disputes',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('gig_id', sa.String(36), sa.ForeignKey('gigs.id', ondelete='CASCADE'), nullable=False),
        sa.Column('escrow_payment_id', sa.String(36), sa.ForeignKey('escrow_payments.id'), nullable=False),
        sa.Column('initiated_by', sa.String(36), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('respondent_id', sa.String(36), sa.ForeignKey('profiles.id'), nullable=False),
        sa.Column('reason', sa.String(100), nullable=False),
        sa.Column('description', sa.Text),
        sa.Column('response', sa.Text),
        sa.Column('status', _enum('disputestatus', 'open', 'under_review', 'escalated', 'resolved'),
                  nullable=False),
        sa.Column('decision', _enum('disputedecision', 'release', 'refund')),
        sa.Column('resolution_notes', sa.Text),
        sa.Column('resolved_by', sa.String(36), sa.ForeignKey('profiles.id')),
        sa.Column('response_deadline', sa.DateTime, nullable=False),
        sa.Column('responded_at', sa.DateTime),
        sa.Column('escalated_at', sa.DateTime),
        sa.Column('resolved_at', sa.DateTime),
        *_timestamps(),
    )

    # 5. Notifications
    op.create_table('notifications',
        sa.Column('id', sa.String(36), primary_key=True),
        sa.Column('user_id', sa.String(36), sa.ForeignKey('profiles.id', ondelete='CASCADE'), nullable=False),
        sa.Column('type', _enum('notificationtype', 'job_match', 'application', 'message', 'payment',
                                'safety', 'system'), nullable=False),
        sa.Column('priority', _enum('notificationpriority', 'low', 'medium', 'high'), nullable=False),
        sa.Column('title', sa.String(200), nullable=False),
        sa.Column('message', sa.Text, nullable=False),
        sa.Column('action_url', sa.String(500)),
        sa.Column('data', sa.JSON),
        sa.Column('read', sa.Boolean, nullable=False, server_default=sa.false()),
        sa.Column('read_at', sa.DateTime),
        sa.Column('created_at', sa.DateTime),
    )
    op.create_index('ix_notifications_user_read_created', 'notifications',
                    ['user_id', 'read', sa.text('created_at DESC')])

    # 6. Outbox & audit
    op.create_table('outbox_events',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('event_type', sa.String(100), nullable=False),
        sa.Column('aggregate_type', sa.String(50), nullable=False),
        sa.Column('aggregate_id', sa.String(36), nullable=False),
        sa.Column('payload', sa.JSON, nullable=False),
        sa.Column('created_at', sa.DateTime),
        sa.Column('claimed_at', sa.DateTime),
        sa.Column('dispatched_at', sa.DateTime),
    )
    op.create_index('ix_outbox_events_aggregate_id', 'outbox_events', ['aggregate_id'])
    op.create_index('ix_outbox_events_dispatched_at', 'outbox_events', ['dispatched_at'])

    op.create_table('audit_log',
        sa.Column('id', sa.Integer, primary_key=True, autoincrement=True),
        sa.Column('kind', sa.String(50), nullable=False),
        sa.Column('event_type', sa.String(100)),
        sa.Column('aggregate_id', sa.String(36)),
        sa.Column('subscriber', sa.String(100)),
        sa.Column('detail', sa.Text),
        sa.Column('payload', sa.JSON),
        sa.Column('created_at', sa.DateTime),
    )


def downgrade():
    for table in ('audit_log', 'outbox_events', 'notifications', 'disputes', 'escrow_payments',
                  'milestones', 'gigs', 'applications', 'assignments', 'bank_accounts', 'profiles'):
        op.drop_table(table)

    for enum_name in ('notificationpriority', 'notificationtype', 'disputedecision', 'disputestatus',
                      'payoutstatus', 'escrowstatus', 'paymentmethod', 'milestonestatus', 'gigstatus',
                      'applicationstatus', 'assignmentstatus', 'budgettype', 'bankaccounttype', 'userrole'):
        sa.Enum(name=enum_name).drop(op.get_bind(), checkfirst=True)
