from __future__ import annotations

import datetime as dt
from typing import Annotated, Any, Literal, Union

from pydantic import BaseModel, Field, TypeAdapter


class APIModel(BaseModel):
    model_config = {"from_attributes": True}


OutputType = Literal["MEASURE", "LEARN", "MEASURE_AGENT", "ADAPT", "REWARD", "COMPOSE", "CONTENT"]
MemoryCategory = Literal["FACT", "PREFERENCE", "EVENT", "TOPIC", "RELATIONSHIP", "CONTEXT"]
PipelineMode = Literal["prep", "prompt"]
Engine = Literal["mock", "gemini"]


# --- Typed spec configuration, one variant per output type ---


class MeasureSpecConfig(BaseModel):
    output_type: Literal["MEASURE"] = "MEASURE"
    transcript_limit_chars: int | None = Field(default=None, ge=200)
    max_tokens: int = Field(default=256, ge=16)
    temperature: float = Field(default=0.3, ge=0.0, le=2.0)


class LearnSpecConfig(BaseModel):
    output_type: Literal["LEARN"] = "LEARN"
    transcript_limit_chars: int | None = Field(default=None, ge=200)
    max_tokens: int = Field(default=256, ge=16)
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)
    confidence_threshold: float | None = Field(default=None, ge=0.0, le=1.0)


class MeasureAgentSpecConfig(BaseModel):
    output_type: Literal["MEASURE_AGENT"] = "MEASURE_AGENT"
    transcript_limit_chars: int | None = Field(default=None, ge=200)
    max_tokens: int = Field(default=512, ge=16)
    temperature: float = Field(default=0.2, ge=0.0, le=2.0)


class RewardSpecConfig(BaseModel):
    output_type: Literal["REWARD"] = "REWARD"
    default_target: float = Field(default=0.5, ge=0.0, le=1.0)


class AdaptSpecConfig(BaseModel):
    output_type: Literal["ADAPT"] = "ADAPT"
    track_deltas: bool = True
    adjust_targets: bool = True


class LevelThresholds(BaseModel):
    high: float = Field(default=0.65, ge=0.0, le=1.0)
    low: float = Field(default=0.35, ge=0.0, le=1.0)


class TargetLevelThresholds(BaseModel):
    high: float = 0.8
    moderate_high: float = 0.6
    balanced: float = 0.4
    moderate_low: float = 0.2


class ConfidenceThresholds(BaseModel):
    still_learning: float = 0.4
    well_established: float = 0.7


class ComposeSpecConfig(BaseModel):
    output_type: Literal["COMPOSE"] = "COMPOSE"
    thresholds: LevelThresholds = Field(default_factory=LevelThresholds)
    target_levels: TargetLevelThresholds = Field(default_factory=TargetLevelThresholds)
    confidence: ConfidenceThresholds = Field(default_factory=ConfidenceThresholds)
    personality_high: float = 0.7
    personality_low: float = 0.3
    memories_limit: int = Field(default=50, ge=1)
    memories_per_category: int = Field(default=5, ge=1)
    recent_calls_limit: int = Field(default=5, ge=0)
    max_tokens: int = Field(default=1500, ge=64)
    temperature: float = Field(default=0.7, ge=0.0, le=2.0)
    # Bucket name -> parameter ids. Targets outside every bucket fall into their domain group.
    parameter_groups: dict[str, list[str]] = Field(default_factory=dict)


class SourceRef(BaseModel):
    trust_level: str = "UNVERIFIED"
    source_url: str | None = None
    title: str | None = None


class CurriculumModule(BaseModel):
    id: str = Field(min_length=1)
    title: str = ""
    sort_order: int = 0
    mastery_threshold: float = Field(default=0.8, ge=0.0, le=1.0)
    source_refs: list[SourceRef] = Field(default_factory=list)


class ContentSpecConfig(BaseModel):
    output_type: Literal["CONTENT"] = "CONTENT"
    modules: list[CurriculumModule] = Field(default_factory=list)
    pass_mark: float | None = Field(default=None, ge=0.0, le=1.0)


SpecConfig = Annotated[
    Union[
        MeasureSpecConfig,
        LearnSpecConfig,
        MeasureAgentSpecConfig,
        RewardSpecConfig,
        AdaptSpecConfig,
        ComposeSpecConfig,
        ContentSpecConfig,
    ],
    Field(discriminator="output_type"),
]

_spec_config_adapter: TypeAdapter[Any] = TypeAdapter(SpecConfig)


def parse_spec_config(output_type: str, raw: dict[str, Any] | None) -> Any:
    """Merge a stored config blob over the defaults of its output type."""
    payload = dict(raw or {})
    payload["output_type"] = output_type
    return _spec_config_adapter.validate_python(payload)


# --- Data contracts (storage key templates + thresholds) ---


class ContractStorage(BaseModel):
    model_config = {"populate_by_name": True}

    key_pattern: str = Field(alias="keyPattern")
    keys: dict[str, str] = Field(default_factory=dict)


class DataContract(BaseModel):
    model_config = {"populate_by_name": True}

    contract_id: str = Field(alias="contractId")
    version: str = "1.0"
    description: str = ""
    status: str = "active"
    storage: ContractStorage | None = None
    thresholds: dict[str, float] = Field(default_factory=dict)
    metadata: dict[str, Any] = Field(default_factory=dict)


# --- API payloads ---


class HealthOut(BaseModel):
    ok: bool
    service: str


class CallerCreate(BaseModel):
    name: str | None = Field(default=None, max_length=120)
    phone: str | None = Field(default=None, max_length=40)


class CallerOut(APIModel):
    id: str
    name: str | None
    phone: str | None
    created_at: dt.datetime


class CallCreate(BaseModel):
    caller_id: str
    transcript: str = ""


class CallComplete(BaseModel):
    transcript: str = ""
    run_pipeline: bool = False
    mode: PipelineMode = "prompt"
    engine: Engine | None = None


class CallOut(APIModel):
    id: str
    caller_id: str
    sequence_number: int
    previous_call_id: str | None
    transcript: str
    status: str
    created_at: dt.datetime
    ended_at: dt.datetime | None


class ParameterIn(BaseModel):
    parameter_id: str = Field(min_length=1, max_length=80)
    name: str = Field(min_length=1, max_length=120)
    definition: str | None = None
    interpretation_high: str | None = None
    interpretation_low: str | None = None
    domain_group: str | None = Field(default=None, max_length=80)


class ParameterOut(APIModel):
    parameter_id: str
    name: str
    definition: str | None
    interpretation_high: str | None
    interpretation_low: str | None
    domain_group: str | None


class ActionIn(BaseModel):
    description: str = ""
    parameter_id: str | None = None
    learn_category: str | None = None
    learn_key_prefix: str | None = None
    learn_key_hint: str | None = None
    weight: float = 1.0


class TriggerIn(BaseModel):
    name: str | None = None
    given: str = ""
    when: str = ""
    then: str = ""
    actions: list[ActionIn] = Field(default_factory=list)


class SpecCreate(BaseModel):
    slug: str = Field(min_length=1, max_length=120)
    name: str = Field(min_length=1, max_length=200)
    output_type: OutputType
    version: str = "1.0"
    priority: int = 0
    is_active: bool = True
    config: dict[str, Any] = Field(default_factory=dict)
    triggers: list[TriggerIn] = Field(default_factory=list)


class ActionOut(APIModel):
    id: int
    description: str
    parameter_id: str | None
    learn_category: str | None
    learn_key_prefix: str | None
    learn_key_hint: str | None
    weight: float


class TriggerOut(APIModel):
    id: int
    name: str | None
    given: str
    when: str
    then: str
    actions: list[ActionOut]


class SpecOut(APIModel):
    id: str
    slug: str
    name: str
    version: str
    output_type: str
    priority: int
    is_active: bool
    is_dirty: bool
    status: str
    config: dict[str, Any]
    compiled_at: dt.datetime | None
    triggers: list[TriggerOut]


class BehaviorTargetIn(BaseModel):
    parameter_id: str
    target_value: float = Field(ge=0.0, le=1.0)
    confidence: float = Field(default=0.5, ge=0.0, le=1.0)


class BehaviorTargetOut(APIModel):
    scope: str
    parameter_id: str
    target_value: float
    confidence: float
    source: str
    updated_at: dt.datetime


class SettingUpdate(BaseModel):
    value: Any


class PipelineRunRequest(BaseModel):
    caller_id: str | None = None
    mode: str = "prep"
    engine: Engine | None = None


class PipelineLogEntry(BaseModel):
    timestamp: str
    level: str
    message: str
    data: dict[str, Any] | None = None


class PipelineRunOut(BaseModel):
    ok: bool
    mode: str
    message: str
    data: dict[str, Any]
    prompt: ComposedPromptOut | None = None
    logs: list[PipelineLogEntry]
    stage_errors: dict[str, str]
    duration_ms: int


class OpRunRequest(BaseModel):
    caller_id: str | None = None
    engine: Engine | None = None


class OpResultOut(BaseModel):
    ok: bool
    op: str
    message: str
    data: dict[str, Any] = Field(default_factory=dict)
    error: str | None = None


class ComposePromptRequest(BaseModel):
    trigger_type: str = Field(default="manual", max_length=40)
    trigger_call_id: str | None = None
    engine: Engine | None = None


class ComposedPromptOut(APIModel):
    id: str
    caller_id: str
    prompt: str
    llm_prompt: dict[str, Any]
    trigger_type: str
    trigger_call_id: str | None
    model: str
    status: str
    inputs: dict[str, Any]
    composed_at: dt.datetime


class MemoryOut(APIModel):
    id: str
    caller_id: str
    call_id: str | None
    category: str
    key: str
    value: str
    confidence: float
    evidence: str | None
    extracted_by: str
    superseded_by_id: str | None
    expires_at: dt.datetime | None
    extracted_at: dt.datetime


class MemorySummaryOut(APIModel):
    caller_id: str
    fact_count: int
    preference_count: int
    event_count: int
    topic_count: int
    relationship_count: int
    context_count: int
    key_facts: list[dict[str, Any]]
    preferences: dict[str, Any]
    recent_memories: list[dict[str, Any]]
    updated_at: dt.datetime


class PersonalityOut(APIModel):
    caller_id: str
    openness: float | None
    conscientiousness: float | None
    extraversion: float | None
    agreeableness: float | None
    neuroticism: float | None
    confidence_score: float
    calls_used: int
    decay_half_life_days: float
    last_aggregated_at: dt.datetime


class CurriculumProgressOut(BaseModel):
    spec_slug: str
    current_module_id: str | None
    module_mastery: dict[str, float]
    last_accessed_at: str | None


class CurriculumProgressUpdate(BaseModel):
    current_module_id: str | None = None
    module_mastery: dict[str, float] = Field(default_factory=dict)


class ModuleCompleteRequest(BaseModel):
    module_id: str = Field(min_length=1)
    next_module_id: str | None = None


class ModuleTrustOut(BaseModel):
    module_id: str
    trust_level: str
    weight: float
    mastery: float
    counts_toward_certification: bool


class TrustWeightedProgressOut(BaseModel):
    certified_mastery: float
    supplementary_mastery: float
    certification_readiness: float
    module_breakdown: list[ModuleTrustOut]


class ExamReadinessOut(BaseModel):
    readiness_score: float
    level: Literal["not_ready", "borderline", "ready", "strong"]
    formative_score: float | None
    weak_modules: list[str]
    gate_status: ExamGateOut
    attempt_count: int
    last_attempt_passed: bool | None
    best_score: float | None


class ExamGateOut(BaseModel):
    allowed: bool
    reason: str
    readiness: float


class FormativeScoreRequest(BaseModel):
    module_scores: dict[str, float]


class ExamResultRequest(BaseModel):
    score: float = Field(ge=0.0, le=1.0)
    total_questions: int = Field(ge=0)
    correct_answers: int = Field(ge=0)
    pass_mark: float | None = Field(default=None, ge=0.0, le=1.0)


class ExamResultOut(BaseModel):
    passed: bool
    score: float
    attempt_number: int
    best_score: float
    readiness: ExamReadinessOut


PipelineRunOut.model_rebuild()
ExamReadinessOut.model_rebuild()


class CallCompleteOut(BaseModel):
    call: CallOut
    pipeline: PipelineRunOut | None = None
