from __future__ import annotations

import datetime as dt
import uuid

from sqlalchemy import (
    JSON,
    Boolean,
    DateTime,
    Float,
    ForeignKey,
    Index,
    Integer,
    String,
    Text,
    UniqueConstraint,
)
from sqlalchemy.orm import Mapped, mapped_column, relationship

from .db import Base


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _uuid() -> str:
    return str(uuid.uuid4())


class Caller(Base):
    __tablename__ = "callers"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    name: Mapped[str | None] = mapped_column(String(120), nullable=True)
    phone: Mapped[str | None] = mapped_column(String(40), nullable=True, index=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class Call(Base):
    __tablename__ = "calls"
    __table_args__ = (
        UniqueConstraint("caller_id", "sequence_number", name="uq_call_caller_sequence"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    caller_id: Mapped[str] = mapped_column(String(36), ForeignKey("callers.id"), nullable=False, index=True)
    sequence_number: Mapped[int] = mapped_column(Integer, nullable=False)
    previous_call_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("calls.id"), nullable=True)
    transcript: Mapped[str] = mapped_column(Text, nullable=False, default="")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="IN_PROGRESS", index=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
    ended_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)


class Parameter(Base):
    __tablename__ = "parameters"

    parameter_id: Mapped[str] = mapped_column(String(80), primary_key=True)
    name: Mapped[str] = mapped_column(String(120), nullable=False)
    definition: Mapped[str | None] = mapped_column(Text, nullable=True)
    interpretation_high: Mapped[str | None] = mapped_column(Text, nullable=True)
    interpretation_low: Mapped[str | None] = mapped_column(Text, nullable=True)
    domain_group: Mapped[str | None] = mapped_column(String(80), nullable=True)


class AnalysisSpec(Base):
    __tablename__ = "analysis_specs"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    slug: Mapped[str] = mapped_column(String(120), nullable=False, unique=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    version: Mapped[str] = mapped_column(String(20), nullable=False, default="1.0")
    output_type: Mapped[str] = mapped_column(String(20), nullable=False, index=True)
    priority: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    is_active: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    is_dirty: Mapped[bool] = mapped_column(Boolean, nullable=False, default=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="DRAFT")
    config: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    compiled_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)

    triggers: Mapped[list[AnalysisTrigger]] = relationship(
        back_populates="spec",
        cascade="all, delete-orphan",
        order_by="AnalysisTrigger.sort_order",
    )


class AnalysisTrigger(Base):
    __tablename__ = "analysis_triggers"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    spec_id: Mapped[str] = mapped_column(String(36), ForeignKey("analysis_specs.id"), nullable=False, index=True)
    name: Mapped[str | None] = mapped_column(String(200), nullable=True)
    given: Mapped[str] = mapped_column(Text, nullable=False, default="")
    when: Mapped[str] = mapped_column(Text, nullable=False, default="")
    then: Mapped[str] = mapped_column(Text, nullable=False, default="")
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    spec: Mapped[AnalysisSpec] = relationship(back_populates="triggers")
    actions: Mapped[list[AnalysisAction]] = relationship(
        back_populates="trigger",
        cascade="all, delete-orphan",
        order_by="AnalysisAction.sort_order",
    )


class AnalysisAction(Base):
    __tablename__ = "analysis_actions"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    trigger_id: Mapped[int] = mapped_column(Integer, ForeignKey("analysis_triggers.id"), nullable=False, index=True)
    description: Mapped[str] = mapped_column(Text, nullable=False, default="")
    parameter_id: Mapped[str | None] = mapped_column(String(80), ForeignKey("parameters.parameter_id"), nullable=True)
    learn_category: Mapped[str | None] = mapped_column(String(40), nullable=True)
    learn_key_prefix: Mapped[str | None] = mapped_column(String(80), nullable=True)
    learn_key_hint: Mapped[str | None] = mapped_column(String(120), nullable=True)
    weight: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    sort_order: Mapped[int] = mapped_column(Integer, nullable=False, default=0)

    trigger: Mapped[AnalysisTrigger] = relationship(back_populates="actions")


class CallScore(Base):
    __tablename__ = "call_scores"
    __table_args__ = (
        UniqueConstraint("call_id", "parameter_id", name="uq_call_score_call_parameter"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    call_id: Mapped[str] = mapped_column(String(36), ForeignKey("calls.id"), nullable=False, index=True)
    caller_id: Mapped[str] = mapped_column(String(36), ForeignKey("callers.id"), nullable=False, index=True)
    parameter_id: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    score: Mapped[float] = mapped_column(Float, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    evidence: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    reasoning: Mapped[str | None] = mapped_column(Text, nullable=True)
    analysis_spec_id: Mapped[str | None] = mapped_column(String(36), nullable=True)
    scored_by: Mapped[str] = mapped_column(String(40), nullable=False, default="mock_v1")
    scored_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class CallerMemory(Base):
    __tablename__ = "caller_memories"
    __table_args__ = (
        Index("ix_caller_memories_caller_key", "caller_id", "key"),
    )

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    caller_id: Mapped[str] = mapped_column(String(36), ForeignKey("callers.id"), nullable=False, index=True)
    call_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("calls.id"), nullable=True)
    category: Mapped[str] = mapped_column(String(20), nullable=False, default="FACT", index=True)
    key: Mapped[str] = mapped_column(String(120), nullable=False)
    value: Mapped[str] = mapped_column(Text, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    evidence: Mapped[str | None] = mapped_column(Text, nullable=True)
    source_spec_slug: Mapped[str | None] = mapped_column(String(120), nullable=True)
    extracted_by: Mapped[str] = mapped_column(String(40), nullable=False, default="mock_v1")
    superseded_by_id: Mapped[str | None] = mapped_column(
        String(36),
        ForeignKey("caller_memories.id"),
        nullable=True,
        index=True,
    )
    expires_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    extracted_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class CallerMemorySummary(Base):
    __tablename__ = "caller_memory_summaries"

    caller_id: Mapped[str] = mapped_column(String(36), ForeignKey("callers.id"), primary_key=True)
    fact_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    preference_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    event_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    topic_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    relationship_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    context_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    key_facts: Mapped[list[dict]] = mapped_column(JSON, default=list, nullable=False)
    preferences: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    recent_memories: Mapped[list[dict]] = mapped_column(JSON, default=list, nullable=False)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class CallerPersonality(Base):
    __tablename__ = "caller_personalities"

    caller_id: Mapped[str] = mapped_column(String(36), ForeignKey("callers.id"), primary_key=True)
    openness: Mapped[float | None] = mapped_column(Float, nullable=True)
    conscientiousness: Mapped[float | None] = mapped_column(Float, nullable=True)
    extraversion: Mapped[float | None] = mapped_column(Float, nullable=True)
    agreeableness: Mapped[float | None] = mapped_column(Float, nullable=True)
    neuroticism: Mapped[float | None] = mapped_column(Float, nullable=True)
    confidence_score: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    calls_used: Mapped[int] = mapped_column(Integer, nullable=False, default=0)
    decay_half_life_days: Mapped[float] = mapped_column(Float, nullable=False, default=30.0)
    last_aggregated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class BehaviorMeasurement(Base):
    __tablename__ = "behavior_measurements"
    __table_args__ = (
        UniqueConstraint("call_id", "parameter_id", name="uq_behavior_measurement_call_parameter"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    call_id: Mapped[str] = mapped_column(String(36), ForeignKey("calls.id"), nullable=False, index=True)
    parameter_id: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    actual_value: Mapped[float] = mapped_column(Float, nullable=False)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    evidence: Mapped[list[str]] = mapped_column(JSON, default=list, nullable=False)
    measured_by: Mapped[str] = mapped_column(String(40), nullable=False, default="heuristic_v1")
    measured_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class BehaviorTarget(Base):
    __tablename__ = "behavior_targets"
    __table_args__ = (
        UniqueConstraint("scope", "scope_ref", "parameter_id", name="uq_behavior_target_scope_parameter"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    scope: Mapped[str] = mapped_column(String(20), nullable=False, default="SYSTEM", index=True)
    # Empty for SYSTEM scope, caller id for CALLER scope.
    scope_ref: Mapped[str] = mapped_column(String(36), nullable=False, default="")
    parameter_id: Mapped[str] = mapped_column(String(80), nullable=False, index=True)
    target_value: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=0.5)
    source: Mapped[str] = mapped_column(String(20), nullable=False, default="SEED")
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class RewardScore(Base):
    __tablename__ = "reward_scores"

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    call_id: Mapped[str] = mapped_column(String(36), ForeignKey("calls.id"), nullable=False, unique=True)
    overall_score: Mapped[float] = mapped_column(Float, nullable=False)
    parameter_diffs: Mapped[list[dict]] = mapped_column(JSON, default=list, nullable=False)
    computed_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class Goal(Base):
    __tablename__ = "goals"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    caller_id: Mapped[str] = mapped_column(String(36), ForeignKey("callers.id"), nullable=False, index=True)
    type: Mapped[str] = mapped_column(String(20), nullable=False, default="LEARN")
    name: Mapped[str] = mapped_column(String(200), nullable=False)
    content_spec_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("analysis_specs.id"), nullable=True)
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="IDLE", index=True)
    progress: Mapped[float] = mapped_column(Float, nullable=False, default=0.0)
    progress_metrics: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    started_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    completed_at: Mapped[dt.datetime | None] = mapped_column(DateTime(timezone=True), nullable=True)
    created_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class CallerAttribute(Base):
    __tablename__ = "caller_attributes"
    __table_args__ = (
        UniqueConstraint("caller_id", "key", "scope", name="uq_caller_attribute_key_scope"),
    )

    id: Mapped[int] = mapped_column(Integer, primary_key=True, autoincrement=True)
    caller_id: Mapped[str] = mapped_column(String(36), ForeignKey("callers.id"), nullable=False, index=True)
    scope: Mapped[str] = mapped_column(String(40), nullable=False, index=True)
    key: Mapped[str] = mapped_column(String(200), nullable=False)
    value_type: Mapped[str] = mapped_column(String(20), nullable=False, default="STRING")
    string_value: Mapped[str | None] = mapped_column(Text, nullable=True)
    number_value: Mapped[float | None] = mapped_column(Float, nullable=True)
    boolean_value: Mapped[bool | None] = mapped_column(Boolean, nullable=True)
    json_value: Mapped[dict | list | None] = mapped_column(JSON, nullable=True)
    source_spec_slug: Mapped[str | None] = mapped_column(String(120), nullable=True)
    confidence: Mapped[float] = mapped_column(Float, nullable=False, default=1.0)
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class ComposedPrompt(Base):
    __tablename__ = "composed_prompts"

    id: Mapped[str] = mapped_column(String(36), primary_key=True, default=_uuid)
    caller_id: Mapped[str] = mapped_column(String(36), ForeignKey("callers.id"), nullable=False, index=True)
    prompt: Mapped[str] = mapped_column(Text, nullable=False)
    llm_prompt: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    trigger_type: Mapped[str] = mapped_column(String(40), nullable=False, default="manual")
    trigger_call_id: Mapped[str | None] = mapped_column(String(36), ForeignKey("calls.id"), nullable=True)
    model: Mapped[str] = mapped_column(String(80), nullable=False, default="template_v1")
    status: Mapped[str] = mapped_column(String(20), nullable=False, default="active", index=True)
    inputs: Mapped[dict] = mapped_column(JSON, default=dict, nullable=False)
    composed_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)


class SystemSetting(Base):
    __tablename__ = "system_settings"

    key: Mapped[str] = mapped_column(String(200), primary_key=True)
    value: Mapped[str] = mapped_column(Text, nullable=False)  # JSON-encoded
    updated_at: Mapped[dt.datetime] = mapped_column(DateTime(timezone=True), default=_utcnow, nullable=False)
