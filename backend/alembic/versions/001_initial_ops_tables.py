"""Initial ops orchestrator tables

Revision ID: 001_initial_ops
Revises:
Create Date: 2026-10-18

Creates all tables for:
- Policies (ops_policies)
- Proposals, missions and steps (ops_proposals, ops_missions,
  ops_mission_steps)
- Triggers (ops_triggers)
- Event log and reaction queue (ops_agent_events, ops_reaction_queue)
"""

from alembic import op
import sqlalchemy as sa

# revision identifiers, used by Alembic.
revision = '001_initial_ops'
down_revision = None
branch_labels = None
depends_on = None


PROPOSAL_SOURCES = ('api', 'trigger', 'reaction')
PROPOSAL_STATUSES = ('pending', 'approved', 'rejected')
MISSION_STATUSES = ('pending', 'succeeded', 'failed')
STEP_STATUSES = ('queued', 'running', 'completed', 'failed')
REACTION_STATUSES = ('pending', 'completed', 'failed')


def _timestamps() -> list:
    return [
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
        sa.Column('updated_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    ]


def upgrade() -> None:
    # ==========================================================================
    # Policies
    # ==========================================================================

    op.create_table(
        'ops_policies',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('value', sa.JSON(), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_ops_policies_name', 'ops_policies', ['name'], unique=True)
    op.create_index('ix_ops_policies_created_at', 'ops_policies', ['created_at'])

    # ==========================================================================
    # Proposals, Missions & Steps
    # ==========================================================================

    op.create_table(
        'ops_proposals',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('title', sa.String(length=500), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('step_kinds', sa.JSON(), nullable=False),
        sa.Column('source', sa.Enum(*PROPOSAL_SOURCES, name='proposalsource'), nullable=False),
        sa.Column('created_by', sa.String(length=100), nullable=True),
        sa.Column('status', sa.Enum(*PROPOSAL_STATUSES, name='proposalstatus'), nullable=False, server_default='pending'),
        sa.Column('rejection_reason', sa.Text(), nullable=True),
        sa.Column('auto_approve_requested', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('approved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('reviewed_by', sa.String(length=100), nullable=True),
        sa.Column('reviewed_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_ops_proposals_status', 'ops_proposals', ['status'])
    op.create_index('ix_ops_proposals_created_at', 'ops_proposals', ['created_at'])

    op.create_table(
        'ops_missions',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('proposal_id', sa.Uuid(), nullable=False),
        sa.Column('title', sa.String(length=500), nullable=False),
        sa.Column('status', sa.Enum(*MISSION_STATUSES, name='missionstatus'), nullable=False, server_default='pending'),
        sa.Column('step_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('completed_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('failed_count', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('finalized_at', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['proposal_id'], ['ops_proposals.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('proposal_id'),
    )
    op.create_index('ix_ops_missions_status', 'ops_missions', ['status'])
    op.create_index('ix_ops_missions_created_at', 'ops_missions', ['created_at'])

    op.create_table(
        'ops_mission_steps',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('mission_id', sa.Uuid(), nullable=False),
        sa.Column('step_kind', sa.String(length=50), nullable=False),
        sa.Column('step_order', sa.Integer(), nullable=False),
        sa.Column('status', sa.Enum(*STEP_STATUSES, name='stepstatus'), nullable=False, server_default='queued'),
        sa.Column('reserved_by', sa.String(length=100), nullable=True),
        sa.Column('reserved_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('started_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('result', sa.JSON(), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['mission_id'], ['ops_missions.id'], ondelete='CASCADE'),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('mission_id', 'step_order', name='uq_mission_step_order'),
    )
    op.create_index('ix_ops_mission_steps_mission_id', 'ops_mission_steps', ['mission_id'])
    op.create_index('ix_ops_mission_steps_step_kind', 'ops_mission_steps', ['step_kind'])
    op.create_index('ix_ops_mission_steps_status', 'ops_mission_steps', ['status'])
    op.create_index('ix_ops_mission_steps_reserved_by', 'ops_mission_steps', ['reserved_by'])
    op.create_index('ix_ops_mission_steps_created_at', 'ops_mission_steps', ['created_at'])

    # ==========================================================================
    # Triggers
    # ==========================================================================

    op.create_table(
        'ops_triggers',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('name', sa.String(length=100), nullable=False),
        sa.Column('description', sa.Text(), nullable=True),
        sa.Column('condition', sa.JSON(), nullable=False),
        sa.Column('cooldown_seconds', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('action', sa.JSON(), nullable=False),
        sa.Column('enabled', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column('last_triggered', sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
        sa.UniqueConstraint('name'),
    )
    op.create_index('ix_ops_triggers_enabled', 'ops_triggers', ['enabled'])
    op.create_index('ix_ops_triggers_created_at', 'ops_triggers', ['created_at'])

    # ==========================================================================
    # Event Log & Reaction Queue
    # ==========================================================================

    op.create_table(
        'ops_agent_events',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('agent_id', sa.String(length=100), nullable=False, server_default='system'),
        sa.Column('event_type', sa.String(length=100), nullable=False),
        sa.Column('event_data', sa.JSON(), nullable=False),
        sa.Column('mission_id', sa.Uuid(), nullable=True),
        sa.Column('step_id', sa.Uuid(), nullable=True),
        *_timestamps(),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_ops_agent_events_event_type', 'ops_agent_events', ['event_type'])
    op.create_index('ix_ops_agent_events_mission_id', 'ops_agent_events', ['mission_id'])
    op.create_index('ix_ops_agent_events_created_at', 'ops_agent_events', ['created_at'])

    op.create_table(
        'ops_reaction_queue',
        sa.Column('id', sa.Uuid(), nullable=False),
        sa.Column('source_event_id', sa.Uuid(), nullable=True),
        sa.Column('status', sa.Enum(*REACTION_STATUSES, name='reactionstatus'), nullable=False, server_default='pending'),
        sa.Column('processed_at', sa.DateTime(timezone=True), nullable=True),
        sa.Column('error', sa.Text(), nullable=True),
        *_timestamps(),
        sa.ForeignKeyConstraint(['source_event_id'], ['ops_agent_events.id'], ondelete='SET NULL'),
        sa.PrimaryKeyConstraint('id'),
    )
    op.create_index('ix_ops_reaction_queue_status', 'ops_reaction_queue', ['status'])
    op.create_index('ix_ops_reaction_queue_created_at', 'ops_reaction_queue', ['created_at'])


def downgrade() -> None:
    # Drop tables in reverse order
    op.drop_table('ops_reaction_queue')
    op.drop_table('ops_agent_events')
    op.drop_table('ops_triggers')
    op.drop_table('ops_mission_steps')
    op.drop_table('ops_missions')
    op.drop_table('ops_proposals')
    op.drop_table('ops_policies')

    # Drop enums
    if op.get_bind().dialect.name == 'postgresql':
        op.execute("DROP TYPE IF EXISTS reactionstatus")
        op.execute("DROP TYPE IF EXISTS stepstatus")
        op.execute("DROP TYPE IF EXISTS missionstatus")
        op.execute("DROP TYPE IF EXISTS proposalstatus")
        op.execute("DROP TYPE IF EXISTS proposalsource")
