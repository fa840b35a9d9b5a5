"""Initial schema: signal records, insight cache, nudge rules and hits

Revision ID: signal_001
Revises:
Create Date: 2026-10-19

insight_cache holds one row per (owner_id, kind); writes are upserts on
that pair. nudge_hit is append-only.
"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa
from sqlalchemy.dialects.postgresql import JSONB


# revision identifiers, used by Alembic.
revision: str = 'signal_001'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

JSONType = sa.JSON().with_variant(JSONB(), "postgresql")


def upgrade() -> None:
    op.create_table(
        'quiz_attempt',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('owner_id', sa.Uuid(), nullable=False),
        sa.Column('quiz_id', sa.Text(), nullable=False),
        sa.Column('result_key', sa.Text(), nullable=True),
        sa.Column('result_title', sa.Text(), nullable=True),
        sa.Column('result_totals', JSONType, nullable=True),
        sa.Column('completed_at', sa.DateTime(timezone=True), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), server_default=sa.func.now(), nullable=False),
    )
    op.create_index('ix_quiz_attempt_owner_completed', 'quiz_attempt', ['owner_id', 'completed_at'])

    op.create_table(
        'quiz_answer',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('attempt_id', sa.Uuid(), sa.ForeignKey('quiz_attempt.id'), nullable=False),
        sa.Column('question_id', sa.Text(), nullable=False),
        sa.Column('answer', JSONType, nullable=False),
    )
    op.create_index('ix_quiz_answer_attempt_id', 'quiz_answer', ['attempt_id'])

    op.create_table(
        'mood_checkin',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('owner_id', sa.Uuid(), nullable=False),
        sa.Column('mood', sa.Integer(), nullable=True),
        sa.Column('social_battery', sa.Integer(), nullable=True),
        sa.Column('need', sa.Text(), nullable=True),
        sa.Column('love_language', sa.Text(), nullable=True),
        sa.Column('reflection', sa.Text(), nullable=True),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_mood_checkin_owner_created', 'mood_checkin', ['owner_id', 'created_at'])

    op.create_table(
        'insight_cache',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('owner_id', sa.Uuid(), nullable=False),
        sa.Column('kind', sa.Text(), nullable=False),
        sa.Column('fingerprint', sa.Text(), nullable=False),
        sa.Column('payload', JSONType, nullable=False),
        sa.Column('source_model', sa.Text(), nullable=True),
        sa.Column('updated_at', sa.DateTime(timezone=True), nullable=False),
        sa.UniqueConstraint('owner_id', 'kind', name='uq_insight_cache_owner_kind'),
    )

    op.create_table(
        'nudge_rule',
        sa.Column('id', sa.Text(), primary_key=True),
        sa.Column('quiz_id', sa.Text(), nullable=True),
        sa.Column('scope', sa.Text(), nullable=False),
        sa.Column('trigger', JSONType, nullable=False),
        sa.Column('audience', JSONType, nullable=False),
        sa.Column('copy_template', JSONType, nullable=False),
        sa.Column('priority', sa.Integer(), nullable=False, server_default='100'),
        sa.Column('cooldown_days', sa.Integer(), nullable=False, server_default='0'),
        sa.Column('is_active', sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.CheckConstraint("scope IN ('macro', 'micro')", name='ck_nudge_rule_scope'),
    )
    op.create_index('ix_nudge_rule_quiz_id', 'nudge_rule', ['quiz_id'])

    op.create_table(
        'nudge_hit',
        sa.Column('id', sa.Uuid(), primary_key=True),
        sa.Column('owner_id', sa.Uuid(), nullable=False),
        sa.Column('rule_id', sa.Text(), sa.ForeignKey('nudge_rule.id'), nullable=False),
        sa.Column('quiz_id', sa.Text(), nullable=False),
        sa.Column('attempt_id', sa.Uuid(), sa.ForeignKey('quiz_attempt.id'), nullable=False),
        sa.Column('dedupe_key', sa.Text(), nullable=False),
        sa.Column('created_at', sa.DateTime(timezone=True), nullable=False),
    )
    op.create_index('ix_nudge_hit_owner_rule_created', 'nudge_hit', ['owner_id', 'rule_id', 'created_at'])


def downgrade() -> None:
    op.drop_index('ix_nudge_hit_owner_rule_created', table_name='nudge_hit')
    op.drop_table('nudge_hit')
    op.drop_index('ix_nudge_rule_quiz_id', table_name='nudge_rule')
    op.drop_table('nudge_rule')
    op.drop_table('insight_cache')
    op.drop_index('ix_mood_checkin_owner_created', table_name='mood_checkin')
    op.drop_table('mood_checkin')
    op.drop_index('ix_quiz_answer_attempt_id', table_name='quiz_answer')
    op.drop_table('quiz_answer')
    op.drop_index('ix_quiz_attempt_owner_completed', table_name='quiz_attempt')
    op.drop_table('quiz_attempt')
