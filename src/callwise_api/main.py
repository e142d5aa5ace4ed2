from __future__ import annotations

import datetime as dt
import json
from dataclasses import asdict
from typing import Annotated, Any

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.responses import JSONResponse
from sqlalchemy import func, select
from sqlalchemy.exc import IntegrityError
from sqlalchemy.orm import Session as DBSession

from .config import load_settings, validate_setting
from .db import Base, SessionLocal, engine, get_db
from .models import (
    AnalysisAction,
    AnalysisSpec,
    AnalysisTrigger,
    BehaviorTarget,
    Call,
    Caller,
    CallerMemorySummary,
    CallerPersonality,
    ComposedPrompt,
    Parameter,
    SystemSetting,
)
from .schemas import (
    BehaviorTargetIn,
    BehaviorTargetOut,
    CallComplete,
    CallCompleteOut,
    CallCreate,
    CallerCreate,
    CallerOut,
    CallOut,
    ComposedPromptOut,
    ComposePromptRequest,
    CurriculumProgressOut,
    CurriculumProgressUpdate,
    DataContract,
    ExamGateOut,
    ExamReadinessOut,
    ExamResultOut,
    ExamResultRequest,
    FormativeScoreRequest,
    HealthOut,
    MemoryOut,
    MemorySummaryOut,
    ModuleCompleteRequest,
    OpResultOut,
    OpRunRequest,
    ParameterIn,
    ParameterOut,
    PersonalityOut,
    PipelineRunOut,
    PipelineRunRequest,
    SettingUpdate,
    SpecCreate,
    SpecOut,
    TrustWeightedProgressOut,
)
from .services.completion import CompletionClient
from .services.composer import active_prompt, compose_prompt
from .services.curriculum import complete_module, get_progress, reset_progress, trust_progress_for, update_progress
from .services.errors import (
    ConfigMissingError,
    ContractMissingError,
    InvalidRequestError,
    NotFoundError,
    PipelineBusyError,
    PipelineError,
)
from .services.exam_readiness import (
    check_exam_gate,
    compute_readiness,
    get_all_exam_readiness,
    record_exam_result,
    update_formative_score,
)
from .services.memory_extract import current_memories
from .services.pipeline import PipelineOrchestrator, PipelineResult
from .services.spec_registry import (
    ContractRegistry,
    compile_spec,
    get_spec_by_slug,
    save_contract,
    seed_default_contracts,
)

app = FastAPI(
    title="Callwise API",
    version="0.1.0",
    description=(
        "Post-call personalization pipeline for AI voice agents. "
        "Scores calls, extracts caller memories, measures agent behavior against targets, "
        "adapts those targets and composes the next call's prompt."
    ),
)

_ERROR_STATUS: list[tuple[type[PipelineError], int]] = [
    (NotFoundError, status.HTTP_404_NOT_FOUND),
    (PipelineBusyError, status.HTTP_409_CONFLICT),
    (ContractMissingError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (ConfigMissingError, status.HTTP_422_UNPROCESSABLE_ENTITY),
    (InvalidRequestError, status.HTTP_422_UNPROCESSABLE_ENTITY),
]


@app.exception_handler(PipelineError)
def pipeline_error_handler(request: Request, exc: PipelineError) -> JSONResponse:
    code = status.HTTP_422_UNPROCESSABLE_ENTITY
    for exc_type, mapped in _ERROR_STATUS:
        if isinstance(exc, exc_type):
            code = mapped
            break
    return JSONResponse(status_code=code, content={"detail": str(exc), "error": type(exc).__name__})


@app.on_event("startup")
def on_startup() -> None:
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        seed_default_contracts(db)
        db.commit()


def _utcnow() -> dt.datetime:
    return dt.datetime.now(dt.timezone.utc)


def _must_get_caller(db: DBSession, caller_id: str) -> Caller:
    caller = db.get(Caller, caller_id)
    if caller is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Caller not found")
    return caller


def _must_get_call(db: DBSession, call_id: str) -> Call:
    call = db.get(Call, call_id)
    if call is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="Call not found")
    return call


def _pipeline_out(result: PipelineResult) -> PipelineRunOut:
    return PipelineRunOut(
        ok=result.ok,
        mode=result.mode,
        message=result.message,
        data=result.data,
        prompt=ComposedPromptOut.model_validate(result.prompt) if result.prompt is not None else None,
        logs=result.logs,
        stage_errors=result.stage_errors,
        duration_ms=result.duration_ms,
    )


@app.get("/health", response_model=HealthOut)
def health() -> HealthOut:
    return HealthOut(ok=True, service="callwise-api")


# --- Callers & calls ---


@app.post("/v1/callers", response_model=CallerOut, status_code=status.HTTP_201_CREATED)
def create_caller(payload: CallerCreate, db: Annotated[DBSession, Depends(get_db)]) -> Caller:
    caller = Caller(name=payload.name.strip() if payload.name else None, phone=payload.phone)
    db.add(caller)
    db.commit()
    db.refresh(caller)
    return caller


@app.get("/v1/callers/{caller_id}", response_model=CallerOut)
def get_caller(caller_id: str, db: Annotated[DBSession, Depends(get_db)]) -> Caller:
    return _must_get_caller(db, caller_id)


@app.post("/v1/calls", response_model=CallOut, status_code=status.HTTP_201_CREATED)
def create_call(payload: CallCreate, db: Annotated[DBSession, Depends(get_db)]) -> Call:
    _must_get_caller(db, payload.caller_id)
    in_progress = db.scalars(
        select(Call).where(Call.caller_id == payload.caller_id, Call.status == "IN_PROGRESS").limit(1)
    ).first()
    if in_progress is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Caller already has a call in progress")

    previous = db.scalars(
        select(Call).where(Call.caller_id == payload.caller_id).order_by(Call.sequence_number.desc()).limit(1)
    ).first()
    call = Call(
        caller_id=payload.caller_id,
        sequence_number=(previous.sequence_number + 1) if previous else 1,
        previous_call_id=previous.id if previous else None,
        transcript=payload.transcript,
        status="IN_PROGRESS",
    )
    db.add(call)
    try:
        db.commit()
    except IntegrityError as exc:
        # Another request took the same sequence number between the checks and the insert.
        db.rollback()
        raise PipelineBusyError(f"Caller {payload.caller_id} started another call concurrently") from exc
    db.refresh(call)
    return call


@app.get("/v1/calls/{call_id}", response_model=CallOut)
def get_call(call_id: str, db: Annotated[DBSession, Depends(get_db)]) -> Call:
    return _must_get_call(db, call_id)


@app.post("/v1/calls/{call_id}/complete", response_model=CallCompleteOut)
def complete_call(call_id: str, payload: CallComplete, db: Annotated[DBSession, Depends(get_db)]) -> CallCompleteOut:
    call = _must_get_call(db, call_id)
    if call.status != "IN_PROGRESS":
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Call is not in progress")
    if payload.transcript:
        call.transcript = payload.transcript
    call.status = "COMPLETED"
    call.ended_at = _utcnow()
    db.commit()

    pipeline_out: PipelineRunOut | None = None
    if payload.run_pipeline:
        result = PipelineOrchestrator(db).run(
            call.id,
            caller_id=call.caller_id,
            mode=payload.mode,
            engine=payload.engine,
        )
        db.commit()
        pipeline_out = _pipeline_out(result)
    db.refresh(call)
    return CallCompleteOut(call=CallOut.model_validate(call), pipeline=pipeline_out)


# --- Configuration: parameters, specs, targets, settings, contracts ---


@app.put("/v1/parameters/{parameter_id}", response_model=ParameterOut)
def upsert_parameter(parameter_id: str, payload: ParameterIn, db: Annotated[DBSession, Depends(get_db)]) -> Parameter:
    if payload.parameter_id != parameter_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="parameter_id mismatch")
    parameter = db.get(Parameter, parameter_id)
    if parameter is None:
        parameter = Parameter(parameter_id=parameter_id, name=payload.name)
        db.add(parameter)
    parameter.name = payload.name
    parameter.definition = payload.definition
    parameter.interpretation_high = payload.interpretation_high
    parameter.interpretation_low = payload.interpretation_low
    parameter.domain_group = payload.domain_group
    db.commit()
    db.refresh(parameter)
    return parameter


@app.get("/v1/parameters", response_model=list[ParameterOut])
def list_parameters(db: Annotated[DBSession, Depends(get_db)]) -> list[Parameter]:
    return list(db.scalars(select(Parameter).order_by(Parameter.parameter_id)).all())


@app.post("/v1/specs", response_model=SpecOut, status_code=status.HTTP_201_CREATED)
def create_spec(payload: SpecCreate, db: Annotated[DBSession, Depends(get_db)]) -> AnalysisSpec:
    if db.scalars(select(AnalysisSpec).where(AnalysisSpec.slug == payload.slug)).first() is not None:
        raise HTTPException(status_code=status.HTTP_409_CONFLICT, detail="Spec slug already exists")
    spec = AnalysisSpec(
        slug=payload.slug,
        name=payload.name,
        version=payload.version,
        output_type=payload.output_type,
        priority=payload.priority,
        is_active=payload.is_active,
        is_dirty=True,
        status="DRAFT",
        config=payload.config,
    )
    for t_index, trigger_in in enumerate(payload.triggers):
        trigger = AnalysisTrigger(
            name=trigger_in.name,
            given=trigger_in.given,
            when=trigger_in.when,
            then=trigger_in.then,
            sort_order=t_index,
        )
        for a_index, action_in in enumerate(trigger_in.actions):
            trigger.actions.append(
                AnalysisAction(
                    description=action_in.description,
                    parameter_id=action_in.parameter_id,
                    learn_category=action_in.learn_category,
                    learn_key_prefix=action_in.learn_key_prefix,
                    learn_key_hint=action_in.learn_key_hint,
                    weight=action_in.weight,
                    sort_order=a_index,
                )
            )
        spec.triggers.append(trigger)
    db.add(spec)
    db.commit()
    db.refresh(spec)
    return spec


@app.get("/v1/specs", response_model=list[SpecOut])
def list_specs(db: Annotated[DBSession, Depends(get_db)]) -> list[AnalysisSpec]:
    return list(db.scalars(select(AnalysisSpec).order_by(AnalysisSpec.output_type, AnalysisSpec.priority, AnalysisSpec.slug)).all())


@app.get("/v1/specs/{slug}", response_model=SpecOut)
def get_spec(slug: str, db: Annotated[DBSession, Depends(get_db)]) -> AnalysisSpec:
    return get_spec_by_slug(db, slug)


@app.post("/v1/specs/{slug}/compile", response_model=SpecOut)
def compile_analysis_spec(slug: str, db: Annotated[DBSession, Depends(get_db)]) -> AnalysisSpec:
    spec = get_spec_by_slug(db, slug)
    errors = compile_spec(db, spec)
    if errors:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=errors)
    db.commit()
    db.refresh(spec)
    return spec


@app.put("/v1/behavior-targets", response_model=BehaviorTargetOut)
def set_system_target(payload: BehaviorTargetIn, db: Annotated[DBSession, Depends(get_db)]) -> BehaviorTarget:
    target = db.scalars(
        select(BehaviorTarget).where(
            BehaviorTarget.scope == "SYSTEM",
            BehaviorTarget.scope_ref == "",
            BehaviorTarget.parameter_id == payload.parameter_id,
        )
    ).first()
    if target is None:
        target = BehaviorTarget(scope="SYSTEM", scope_ref="", parameter_id=payload.parameter_id, target_value=payload.target_value)
        db.add(target)
    target.target_value = payload.target_value
    target.confidence = payload.confidence
    target.source = "MANUAL"
    target.updated_at = _utcnow()
    db.commit()
    db.refresh(target)
    return target


@app.get("/v1/behavior-targets", response_model=list[BehaviorTargetOut])
def list_system_targets(db: Annotated[DBSession, Depends(get_db)]) -> list[BehaviorTarget]:
    return list(
        db.scalars(
            select(BehaviorTarget).where(BehaviorTarget.scope == "SYSTEM").order_by(BehaviorTarget.parameter_id)
        ).all()
    )


@app.get("/v1/settings")
def get_settings(db: Annotated[DBSession, Depends(get_db)]) -> dict[str, Any]:
    return {"settings": asdict(load_settings(db))}


@app.put("/v1/settings/{key}")
def put_setting(key: str, payload: SettingUpdate, db: Annotated[DBSession, Depends(get_db)]) -> dict[str, Any]:
    try:
        value = validate_setting(key, payload.value)
    except KeyError:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail=f"Unknown setting {key}")
    except ValueError as exc:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=str(exc))
    row = db.get(SystemSetting, key)
    if row is None:
        row = SystemSetting(key=key, value=json.dumps(value))
        db.add(row)
    row.value = json.dumps(value)
    row.updated_at = _utcnow()
    db.commit()
    return {"key": key, "value": value}


@app.get("/v1/contracts", response_model=list[DataContract])
def list_contracts(db: Annotated[DBSession, Depends(get_db)]) -> list[DataContract]:
    return ContractRegistry.load(db).list_contracts()


@app.put("/v1/contracts/{contract_id}", response_model=DataContract)
def put_contract(contract_id: str, payload: DataContract, db: Annotated[DBSession, Depends(get_db)]) -> DataContract:
    if payload.contract_id != contract_id:
        raise HTTPException(status_code=status.HTTP_400_BAD_REQUEST, detail="contractId mismatch")
    errors = save_contract(db, payload)
    if errors:
        raise HTTPException(status_code=status.HTTP_422_UNPROCESSABLE_ENTITY, detail=errors)
    db.commit()
    return payload


# --- Pipeline ---


@app.post("/v1/calls/{call_id}/pipeline", response_model=PipelineRunOut)
def run_pipeline(call_id: str, payload: PipelineRunRequest, db: Annotated[DBSession, Depends(get_db)]) -> PipelineRunOut:
    result = PipelineOrchestrator(db).run(call_id, caller_id=payload.caller_id, mode=payload.mode, engine=payload.engine)
    db.commit()
    return _pipeline_out(result)


@app.post("/v1/calls/{call_id}/ops/{op}", response_model=OpResultOut)
def run_single_op(call_id: str, op: str, payload: OpRunRequest, db: Annotated[DBSession, Depends(get_db)]) -> OpResultOut:
    try:
        data = PipelineOrchestrator(db).run_op(op, call_id, caller_id=payload.caller_id, engine=payload.engine)
    except (NotFoundError, PipelineBusyError, InvalidRequestError):
        db.rollback()
        raise
    except PipelineError as exc:
        db.rollback()
        return OpResultOut(ok=False, op=op, message=f"{op} failed", error=str(exc))
    db.commit()
    return OpResultOut(ok=True, op=op, message=f"{op} completed", data=data)


# --- Prompts, memories, personality ---


@app.post("/v1/callers/{caller_id}/prompts", response_model=ComposedPromptOut, status_code=status.HTTP_201_CREATED)
def compose_caller_prompt(
    caller_id: str,
    payload: ComposePromptRequest,
    db: Annotated[DBSession, Depends(get_db)],
) -> ComposedPrompt:
    settings = load_settings(db)
    client = CompletionClient.from_config(
        engine=payload.engine,
        max_retries=settings.pipeline.max_retries,
        force_mock=settings.pipeline.mock_mode,
    )
    prompt = compose_prompt(
        db,
        caller_id=caller_id,
        client=client,
        registry=ContractRegistry.load(db),
        trigger_type=payload.trigger_type,
        trigger_call_id=payload.trigger_call_id,
    )
    db.commit()
    db.refresh(prompt)
    return prompt


@app.get("/v1/callers/{caller_id}/prompts/active", response_model=ComposedPromptOut)
def get_active_prompt(caller_id: str, db: Annotated[DBSession, Depends(get_db)]) -> ComposedPrompt:
    _must_get_caller(db, caller_id)
    prompt = active_prompt(db, caller_id)
    if prompt is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No active prompt")
    return prompt


@app.get("/v1/callers/{caller_id}/memories", response_model=list[MemoryOut])
def list_current_memories(caller_id: str, db: Annotated[DBSession, Depends(get_db)]) -> list[Any]:
    _must_get_caller(db, caller_id)
    return current_memories(db, caller_id)


@app.get("/v1/callers/{caller_id}/memories/summary", response_model=MemorySummaryOut)
def get_memory_summary(caller_id: str, db: Annotated[DBSession, Depends(get_db)]) -> CallerMemorySummary:
    _must_get_caller(db, caller_id)
    summary = db.get(CallerMemorySummary, caller_id)
    if summary is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No memory summary")
    return summary


@app.get("/v1/callers/{caller_id}/personality", response_model=PersonalityOut)
def get_personality(caller_id: str, db: Annotated[DBSession, Depends(get_db)]) -> CallerPersonality:
    _must_get_caller(db, caller_id)
    personality = db.get(CallerPersonality, caller_id)
    if personality is None:
        raise HTTPException(status_code=status.HTTP_404_NOT_FOUND, detail="No personality profile")
    return personality


@app.get("/v1/callers/{caller_id}/calls", response_model=list[CallOut])
def list_caller_calls(caller_id: str, db: Annotated[DBSession, Depends(get_db)]) -> list[Call]:
    _must_get_caller(db, caller_id)
    return list(db.scalars(select(Call).where(Call.caller_id == caller_id).order_by(Call.sequence_number)).all())


@app.get("/v1/callers/{caller_id}/stats")
def caller_stats(caller_id: str, db: Annotated[DBSession, Depends(get_db)]) -> dict[str, Any]:
    _must_get_caller(db, caller_id)
    calls = db.scalar(select(func.count()).select_from(Call).where(Call.caller_id == caller_id)) or 0
    return {"caller_id": caller_id, "calls": int(calls), "memories": len(current_memories(db, caller_id))}


# --- Curriculum & exams ---


@app.get("/v1/callers/{caller_id}/curricula/{spec_slug}", response_model=CurriculumProgressOut)
def get_curriculum_progress(caller_id: str, spec_slug: str, db: Annotated[DBSession, Depends(get_db)]) -> dict[str, Any]:
    _must_get_caller(db, caller_id)
    get_spec_by_slug(db, spec_slug)
    return get_progress(db, ContractRegistry.load(db), caller_id=caller_id, spec_slug=spec_slug).as_dict()


@app.put("/v1/callers/{caller_id}/curricula/{spec_slug}", response_model=CurriculumProgressOut)
def put_curriculum_progress(
    caller_id: str,
    spec_slug: str,
    payload: CurriculumProgressUpdate,
    db: Annotated[DBSession, Depends(get_db)],
) -> dict[str, Any]:
    _must_get_caller(db, caller_id)
    get_spec_by_slug(db, spec_slug)
    progress = update_progress(
        db,
        ContractRegistry.load(db),
        caller_id=caller_id,
        spec_slug=spec_slug,
        current_module_id=payload.current_module_id,
        module_mastery=payload.module_mastery,
    )
    db.commit()
    return progress.as_dict()


@app.post("/v1/callers/{caller_id}/curricula/{spec_slug}/modules/complete", response_model=CurriculumProgressOut)
def complete_curriculum_module(
    caller_id: str,
    spec_slug: str,
    payload: ModuleCompleteRequest,
    db: Annotated[DBSession, Depends(get_db)],
) -> dict[str, Any]:
    _must_get_caller(db, caller_id)
    get_spec_by_slug(db, spec_slug)
    progress = complete_module(
        db,
        ContractRegistry.load(db),
        caller_id=caller_id,
        spec_slug=spec_slug,
        module_id=payload.module_id,
        next_module_id=payload.next_module_id,
    )
    db.commit()
    return progress.as_dict()


@app.delete("/v1/callers/{caller_id}/curricula/{spec_slug}")
def delete_curriculum_progress(caller_id: str, spec_slug: str, db: Annotated[DBSession, Depends(get_db)]) -> dict[str, Any]:
    _must_get_caller(db, caller_id)
    removed = reset_progress(db, ContractRegistry.load(db), caller_id=caller_id, spec_slug=spec_slug)
    db.commit()
    return {"ok": True, "removed": removed}


@app.get("/v1/callers/{caller_id}/curricula/{spec_slug}/trust", response_model=TrustWeightedProgressOut)
def get_trust_progress(caller_id: str, spec_slug: str, db: Annotated[DBSession, Depends(get_db)]) -> TrustWeightedProgressOut:
    _must_get_caller(db, caller_id)
    result = trust_progress_for(
        db,
        ContractRegistry.load(db),
        load_settings(db).trust,
        caller_id=caller_id,
        spec_slug=spec_slug,
    )
    db.commit()
    return result


@app.get("/v1/callers/{caller_id}/exams", response_model=dict[str, ExamReadinessOut])
def list_exam_readiness(caller_id: str, db: Annotated[DBSession, Depends(get_db)]) -> dict[str, ExamReadinessOut]:
    _must_get_caller(db, caller_id)
    return get_all_exam_readiness(db, ContractRegistry.load(db), caller_id=caller_id)


@app.get("/v1/callers/{caller_id}/exams/{spec_slug}", response_model=ExamReadinessOut)
def get_exam_readiness(caller_id: str, spec_slug: str, db: Annotated[DBSession, Depends(get_db)]) -> ExamReadinessOut:
    _must_get_caller(db, caller_id)
    get_spec_by_slug(db, spec_slug)
    return compute_readiness(db, ContractRegistry.load(db), caller_id=caller_id, spec_slug=spec_slug)


@app.get("/v1/callers/{caller_id}/exams/{spec_slug}/gate", response_model=ExamGateOut)
def get_exam_gate(caller_id: str, spec_slug: str, db: Annotated[DBSession, Depends(get_db)]) -> ExamGateOut:
    _must_get_caller(db, caller_id)
    get_spec_by_slug(db, spec_slug)
    return check_exam_gate(db, ContractRegistry.load(db), caller_id=caller_id, spec_slug=spec_slug)


@app.post("/v1/callers/{caller_id}/exams/{spec_slug}/formative", response_model=ExamReadinessOut)
def post_formative_score(
    caller_id: str,
    spec_slug: str,
    payload: FormativeScoreRequest,
    db: Annotated[DBSession, Depends(get_db)],
) -> ExamReadinessOut:
    _must_get_caller(db, caller_id)
    get_spec_by_slug(db, spec_slug)
    result = update_formative_score(
        db,
        ContractRegistry.load(db),
        caller_id=caller_id,
        spec_slug=spec_slug,
        module_scores=payload.module_scores,
    )
    db.commit()
    return result


@app.post("/v1/callers/{caller_id}/exams/{spec_slug}/results", response_model=ExamResultOut)
def post_exam_result(
    caller_id: str,
    spec_slug: str,
    payload: ExamResultRequest,
    db: Annotated[DBSession, Depends(get_db)],
) -> ExamResultOut:
    _must_get_caller(db, caller_id)
    result = record_exam_result(
        db,
        ContractRegistry.load(db),
        caller_id=caller_id,
        spec_slug=spec_slug,
        score=payload.score,
        total_questions=payload.total_questions,
        correct_answers=payload.correct_answers,
        pass_mark=payload.pass_mark,
    )
    db.commit()
    return result
