"""create_callwise_schema

Revision ID: a3c19e0d7b52
Revises:
Create Date: 2026-10-18 09:30:00.000000

"""
from typing import Sequence, Union

from alembic import op
import sqlalchemy as sa


# revision identifiers, used by Alembic.
revision: str = "a3c19e0d7b52"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None


def _ts(name: str, nullable: bool = False) -> sa.Column:
    return sa.Column(name, sa.DateTime(timezone=True), nullable=nullable)


def upgrade() -> None:
    op.create_table(
        "callers",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=True),
        sa.Column("phone", sa.String(length=40), nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_callers_phone", "callers", ["phone"], unique=False)

    op.create_table(
        "calls",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("caller_id", sa.String(length=36), sa.ForeignKey("callers.id"), nullable=False),
        sa.Column("sequence_number", sa.Integer(), nullable=False),
        sa.Column("previous_call_id", sa.String(length=36), sa.ForeignKey("calls.id"), nullable=True),
        sa.Column("transcript", sa.Text(), nullable=False, server_default=""),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="IN_PROGRESS"),
        _ts("created_at"),
        _ts("ended_at", nullable=True),
        sa.UniqueConstraint("caller_id", "sequence_number", name="uq_call_caller_sequence"),
    )
    op.create_index("ix_calls_caller_id", "calls", ["caller_id"], unique=False)
    op.create_index("ix_calls_status", "calls", ["status"], unique=False)

    op.create_table(
        "parameters",
        sa.Column("parameter_id", sa.String(length=80), primary_key=True),
        sa.Column("name", sa.String(length=120), nullable=False),
        sa.Column("definition", sa.Text(), nullable=True),
        sa.Column("interpretation_high", sa.Text(), nullable=True),
        sa.Column("interpretation_low", sa.Text(), nullable=True),
        sa.Column("domain_group", sa.String(length=80), nullable=True),
    )

    op.create_table(
        "analysis_specs",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("slug", sa.String(length=120), nullable=False, unique=True),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("version", sa.String(length=20), nullable=False, server_default="1.0"),
        sa.Column("output_type", sa.String(length=20), nullable=False),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("is_active", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("is_dirty", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="DRAFT"),
        sa.Column("config", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        _ts("compiled_at", nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_analysis_specs_output_type", "analysis_specs", ["output_type"], unique=False)

    op.create_table(
        "analysis_triggers",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("spec_id", sa.String(length=36), sa.ForeignKey("analysis_specs.id"), nullable=False),
        sa.Column("name", sa.String(length=200), nullable=True),
        sa.Column("given", sa.Text(), nullable=False, server_default=""),
        sa.Column("when", sa.Text(), nullable=False, server_default=""),
        sa.Column("then", sa.Text(), nullable=False, server_default=""),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_analysis_triggers_spec_id", "analysis_triggers", ["spec_id"], unique=False)

    op.create_table(
        "analysis_actions",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("trigger_id", sa.Integer(), sa.ForeignKey("analysis_triggers.id"), nullable=False),
        sa.Column("description", sa.Text(), nullable=False, server_default=""),
        sa.Column("parameter_id", sa.String(length=80), sa.ForeignKey("parameters.parameter_id"), nullable=True),
        sa.Column("learn_category", sa.String(length=40), nullable=True),
        sa.Column("learn_key_prefix", sa.String(length=80), nullable=True),
        sa.Column("learn_key_hint", sa.String(length=120), nullable=True),
        sa.Column("weight", sa.Float(), nullable=False, server_default="1"),
        sa.Column("sort_order", sa.Integer(), nullable=False, server_default="0"),
    )
    op.create_index("ix_analysis_actions_trigger_id", "analysis_actions", ["trigger_id"], unique=False)

    op.create_table(
        "call_scores",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("call_id", sa.String(length=36), sa.ForeignKey("calls.id"), nullable=False),
        sa.Column("caller_id", sa.String(length=36), sa.ForeignKey("callers.id"), nullable=False),
        sa.Column("parameter_id", sa.String(length=80), nullable=False),
        sa.Column("score", sa.Float(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("evidence", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("reasoning", sa.Text(), nullable=True),
        sa.Column("analysis_spec_id", sa.String(length=36), nullable=True),
        sa.Column("scored_by", sa.String(length=40), nullable=False, server_default="mock_v1"),
        _ts("scored_at"),
        sa.UniqueConstraint("call_id", "parameter_id", name="uq_call_score_call_parameter"),
    )
    op.create_index("ix_call_scores_call_id", "call_scores", ["call_id"], unique=False)
    op.create_index("ix_call_scores_caller_id", "call_scores", ["caller_id"], unique=False)
    op.create_index("ix_call_scores_parameter_id", "call_scores", ["parameter_id"], unique=False)

    op.create_table(
        "caller_memories",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("caller_id", sa.String(length=36), sa.ForeignKey("callers.id"), nullable=False),
        sa.Column("call_id", sa.String(length=36), sa.ForeignKey("calls.id"), nullable=True),
        sa.Column("category", sa.String(length=20), nullable=False, server_default="FACT"),
        sa.Column("key", sa.String(length=120), nullable=False),
        sa.Column("value", sa.Text(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0.5"),
        sa.Column("evidence", sa.Text(), nullable=True),
        sa.Column("source_spec_slug", sa.String(length=120), nullable=True),
        sa.Column("extracted_by", sa.String(length=40), nullable=False, server_default="mock_v1"),
        sa.Column("superseded_by_id", sa.String(length=36), sa.ForeignKey("caller_memories.id"), nullable=True),
        _ts("expires_at", nullable=True),
        _ts("extracted_at"),
    )
    op.create_index("ix_caller_memories_caller_id", "caller_memories", ["caller_id"], unique=False)
    op.create_index("ix_caller_memories_category", "caller_memories", ["category"], unique=False)
    op.create_index("ix_caller_memories_superseded_by_id", "caller_memories", ["superseded_by_id"], unique=False)
    op.create_index("ix_caller_memories_caller_key", "caller_memories", ["caller_id", "key"], unique=False)

    op.create_table(
        "caller_memory_summaries",
        sa.Column("caller_id", sa.String(length=36), sa.ForeignKey("callers.id"), primary_key=True),
        sa.Column("fact_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("preference_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("event_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("topic_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("relationship_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("context_count", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("key_facts", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("preferences", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("recent_memories", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        _ts("updated_at"),
    )

    op.create_table(
        "caller_personalities",
        sa.Column("caller_id", sa.String(length=36), sa.ForeignKey("callers.id"), primary_key=True),
        sa.Column("openness", sa.Float(), nullable=True),
        sa.Column("conscientiousness", sa.Float(), nullable=True),
        sa.Column("extraversion", sa.Float(), nullable=True),
        sa.Column("agreeableness", sa.Float(), nullable=True),
        sa.Column("neuroticism", sa.Float(), nullable=True),
        sa.Column("confidence_score", sa.Float(), nullable=False, server_default="0"),
        sa.Column("calls_used", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("decay_half_life_days", sa.Float(), nullable=False, server_default="30"),
        _ts("last_aggregated_at"),
    )

    op.create_table(
        "behavior_measurements",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("call_id", sa.String(length=36), sa.ForeignKey("calls.id"), nullable=False),
        sa.Column("parameter_id", sa.String(length=80), nullable=False),
        sa.Column("actual_value", sa.Float(), nullable=False),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0"),
        sa.Column("evidence", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        sa.Column("measured_by", sa.String(length=40), nullable=False, server_default="heuristic_v1"),
        _ts("measured_at"),
        sa.UniqueConstraint("call_id", "parameter_id", name="uq_behavior_measurement_call_parameter"),
    )
    op.create_index("ix_behavior_measurements_call_id", "behavior_measurements", ["call_id"], unique=False)
    op.create_index("ix_behavior_measurements_parameter_id", "behavior_measurements", ["parameter_id"], unique=False)

    op.create_table(
        "behavior_targets",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("scope", sa.String(length=20), nullable=False, server_default="SYSTEM"),
        sa.Column("scope_ref", sa.String(length=36), nullable=False, server_default=""),
        sa.Column("parameter_id", sa.String(length=80), nullable=False),
        sa.Column("target_value", sa.Float(), nullable=False, server_default="0.5"),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="0.5"),
        sa.Column("source", sa.String(length=20), nullable=False, server_default="SEED"),
        _ts("updated_at"),
        sa.UniqueConstraint("scope", "scope_ref", "parameter_id", name="uq_behavior_target_scope_parameter"),
    )
    op.create_index("ix_behavior_targets_scope", "behavior_targets", ["scope"], unique=False)
    op.create_index("ix_behavior_targets_parameter_id", "behavior_targets", ["parameter_id"], unique=False)

    op.create_table(
        "reward_scores",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("call_id", sa.String(length=36), sa.ForeignKey("calls.id"), nullable=False, unique=True),
        sa.Column("overall_score", sa.Float(), nullable=False),
        sa.Column("parameter_diffs", sa.JSON(), nullable=False, server_default=sa.text("'[]'")),
        _ts("computed_at"),
    )

    op.create_table(
        "goals",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("caller_id", sa.String(length=36), sa.ForeignKey("callers.id"), nullable=False),
        sa.Column("type", sa.String(length=20), nullable=False, server_default="LEARN"),
        sa.Column("name", sa.String(length=200), nullable=False),
        sa.Column("content_spec_id", sa.String(length=36), sa.ForeignKey("analysis_specs.id"), nullable=True),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="IDLE"),
        sa.Column("progress", sa.Float(), nullable=False, server_default="0"),
        sa.Column("progress_metrics", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        _ts("started_at", nullable=True),
        _ts("completed_at", nullable=True),
        _ts("created_at"),
    )
    op.create_index("ix_goals_caller_id", "goals", ["caller_id"], unique=False)
    op.create_index("ix_goals_status", "goals", ["status"], unique=False)

    op.create_table(
        "caller_attributes",
        sa.Column("id", sa.Integer(), primary_key=True, autoincrement=True),
        sa.Column("caller_id", sa.String(length=36), sa.ForeignKey("callers.id"), nullable=False),
        sa.Column("scope", sa.String(length=40), nullable=False),
        sa.Column("key", sa.String(length=200), nullable=False),
        sa.Column("value_type", sa.String(length=20), nullable=False, server_default="STRING"),
        sa.Column("string_value", sa.Text(), nullable=True),
        sa.Column("number_value", sa.Float(), nullable=True),
        sa.Column("boolean_value", sa.Boolean(), nullable=True),
        sa.Column("json_value", sa.JSON(), nullable=True),
        sa.Column("source_spec_slug", sa.String(length=120), nullable=True),
        sa.Column("confidence", sa.Float(), nullable=False, server_default="1"),
        _ts("updated_at"),
        sa.UniqueConstraint("caller_id", "key", "scope", name="uq_caller_attribute_key_scope"),
    )
    op.create_index("ix_caller_attributes_caller_id", "caller_attributes", ["caller_id"], unique=False)
    op.create_index("ix_caller_attributes_scope", "caller_attributes", ["scope"], unique=False)

    op.create_table(
        "composed_prompts",
        sa.Column("id", sa.String(length=36), primary_key=True),
        sa.Column("caller_id", sa.String(length=36), sa.ForeignKey("callers.id"), nullable=False),
        sa.Column("prompt", sa.Text(), nullable=False),
        sa.Column("llm_prompt", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        sa.Column("trigger_type", sa.String(length=40), nullable=False, server_default="manual"),
        sa.Column("trigger_call_id", sa.String(length=36), sa.ForeignKey("calls.id"), nullable=True),
        sa.Column("model", sa.String(length=80), nullable=False, server_default="template_v1"),
        sa.Column("status", sa.String(length=20), nullable=False, server_default="active"),
        sa.Column("inputs", sa.JSON(), nullable=False, server_default=sa.text("'{}'")),
        _ts("composed_at"),
    )
    op.create_index("ix_composed_prompts_caller_id", "composed_prompts", ["caller_id"], unique=False)
    op.create_index("ix_composed_prompts_status", "composed_prompts", ["status"], unique=False)

    op.create_table(
        "system_settings",
        sa.Column("key", sa.String(length=200), primary_key=True),
        sa.Column("value", sa.Text(), nullable=False),
        _ts("updated_at"),
    )


def downgrade() -> None:
    for table in (
        "system_settings",
        "composed_prompts",
        "caller_attributes",
        "goals",
        "reward_scores",
        "behavior_targets",
        "behavior_measurements",
        "caller_personalities",
        "caller_memory_summaries",
        "caller_memories",
        "call_scores",
        "analysis_actions",
        "analysis_triggers",
        "analysis_specs",
        "parameters",
        "calls",
        "callers",
    ):
        op.drop_table(table)
