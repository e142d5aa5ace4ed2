from __future__ import annotations

import logging
from dataclasses import dataclass
from typing import Any

from sqlalchemy import case, select
from sqlalchemy.orm import Session

from ..models import AnalysisSpec, Goal
from ..schemas import ExamGateOut, ExamReadinessOut, ExamResultOut
from .curriculum import content_config, get_active_curricula, get_progress
from .spec_registry import EXAM_READINESS_V1, ContractRegistry, get_spec_by_slug
from .store import get_attribute, set_attribute, utcnow

logger = logging.getLogger(__name__)

THRESHOLD_DEFAULTS = {
    "notReadyMax": 0.50,
    "borderlineMax": 0.66,
    "readyMax": 0.80,
    "passMarkDefault": 0.66,
    "formativePassThreshold": 0.66,
    "masteryWeight": 0.6,
    "formativeWeight": 0.4,
}


@dataclass(frozen=True)
class ExamThresholds:
    not_ready_max: float
    borderline_max: float
    ready_max: float
    pass_mark_default: float
    formative_pass_threshold: float
    mastery_weight: float
    formative_weight: float

    @classmethod
    def from_registry(cls, registry: ContractRegistry) -> ExamThresholds:
        # The contract must be loaded; missing individual thresholds fall back to defaults.
        merged = {**THRESHOLD_DEFAULTS, **registry.thresholds(EXAM_READINESS_V1)}
        return cls(
            not_ready_max=merged["notReadyMax"],
            borderline_max=merged["borderlineMax"],
            ready_max=merged["readyMax"],
            pass_mark_default=merged["passMarkDefault"],
            formative_pass_threshold=merged["formativePassThreshold"],
            mastery_weight=merged["masteryWeight"],
            formative_weight=merged["formativeWeight"],
        )


def readiness_level(readiness: float, thresholds: ExamThresholds) -> str:
    if readiness < thresholds.not_ready_max:
        return "not_ready"
    if readiness < thresholds.borderline_max:
        return "borderline"
    if readiness < thresholds.ready_max:
        return "ready"
    return "strong"


def gate_decision(readiness: float, thresholds: ExamThresholds) -> ExamGateOut:
    allowed = readiness >= thresholds.not_ready_max
    if not allowed:
        reason = f"Readiness {readiness * 100:.0f}% is below minimum {thresholds.not_ready_max * 100:.0f}%"
    elif readiness_level(readiness, thresholds) == "borderline":
        reason = "Borderline readiness: exam allowed but targeted revision recommended"
    else:
        reason = "Readiness threshold met"
    return ExamGateOut(allowed=allowed, reason=reason, readiness=round(readiness, 4))


def _read(db: Session, registry: ContractRegistry, *, caller_id: str, spec_slug: str, key_name: str) -> Any:
    return get_attribute(
        db,
        caller_id=caller_id,
        scope=registry.scope(EXAM_READINESS_V1),
        key=registry.key(EXAM_READINESS_V1, key_name, spec_slug=spec_slug),
    )


def _write(db: Session, registry: ContractRegistry, *, caller_id: str, spec_slug: str, key_name: str, value: Any) -> None:
    set_attribute(
        db,
        caller_id=caller_id,
        scope=registry.scope(EXAM_READINESS_V1),
        key=registry.key(EXAM_READINESS_V1, key_name, spec_slug=spec_slug),
        value=value,
        source_spec_slug=spec_slug,
    )


def compute_readiness(
    db: Session,
    registry: ContractRegistry,
    *,
    caller_id: str,
    spec_slug: str,
) -> ExamReadinessOut:
    """
    readiness = avg module mastery * masteryWeight + formative score * formativeWeight,
    or avg mastery alone until a formative score has been recorded.
    """
    thresholds = ExamThresholds.from_registry(registry)
    mastery = get_progress(db, registry, caller_id=caller_id, spec_slug=spec_slug).module_mastery
    avg_mastery = sum(mastery.values()) / len(mastery) if mastery else 0.0

    formative = _read(db, registry, caller_id=caller_id, spec_slug=spec_slug, key_name="formativeScore")
    if formative is None:
        readiness = avg_mastery
    else:
        readiness = avg_mastery * thresholds.mastery_weight + float(formative) * thresholds.formative_weight

    attempts = _read(db, registry, caller_id=caller_id, spec_slug=spec_slug, key_name="attemptCount")
    best = _read(db, registry, caller_id=caller_id, spec_slug=spec_slug, key_name="bestScore")
    return ExamReadinessOut(
        readiness_score=round(readiness, 4),
        level=readiness_level(readiness, thresholds),
        formative_score=None if formative is None else float(formative),
        weak_modules=[m for m, v in mastery.items() if v < thresholds.formative_pass_threshold],
        gate_status=gate_decision(readiness, thresholds),
        attempt_count=int(attempts or 0),
        last_attempt_passed=_read(db, registry, caller_id=caller_id, spec_slug=spec_slug, key_name="lastAttemptPassed"),
        best_score=None if best is None else float(best),
    )


def _store_readiness(db: Session, registry: ContractRegistry, *, caller_id: str, spec_slug: str, result: ExamReadinessOut) -> None:
    _write(db, registry, caller_id=caller_id, spec_slug=spec_slug, key_name="readinessScore", value=result.readiness_score)
    _write(db, registry, caller_id=caller_id, spec_slug=spec_slug, key_name="weakModules", value=list(result.weak_modules))
    _write(db, registry, caller_id=caller_id, spec_slug=spec_slug, key_name="lastAssessedAt", value=utcnow().isoformat())


def update_formative_score(
    db: Session,
    registry: ContractRegistry,
    *,
    caller_id: str,
    spec_slug: str,
    module_scores: dict[str, float],
) -> ExamReadinessOut:
    scores = [max(0.0, min(1.0, float(v))) for v in module_scores.values()]
    average = sum(scores) / len(scores) if scores else 0.0
    _write(db, registry, caller_id=caller_id, spec_slug=spec_slug, key_name="formativeScore", value=round(average, 4))
    result = compute_readiness(db, registry, caller_id=caller_id, spec_slug=spec_slug)
    _store_readiness(db, registry, caller_id=caller_id, spec_slug=spec_slug, result=result)
    return result


def check_exam_gate(db: Session, registry: ContractRegistry, *, caller_id: str, spec_slug: str) -> ExamGateOut:
    return compute_readiness(db, registry, caller_id=caller_id, spec_slug=spec_slug).gate_status


def _complete_learn_goal(db: Session, spec: AnalysisSpec, *, caller_id: str, metrics: dict[str, Any]) -> Goal:
    goal = db.scalars(
        select(Goal)
        .where(
            Goal.caller_id == caller_id,
            Goal.content_spec_id == spec.id,
            Goal.type == "LEARN",
        )
        # Open goals first; a completed one is re-stamped rather than duplicated.
        .order_by(case((Goal.status == "COMPLETED", 1), else_=0), Goal.created_at.asc())
    ).first()
    now = utcnow()
    if goal is None:
        goal = Goal(
            caller_id=caller_id,
            type="LEARN",
            name=f"Complete {spec.name}",
            content_spec_id=spec.id,
            started_at=now,
        )
        db.add(goal)
        logger.info(f"Created completed LEARN goal for caller {caller_id} on {spec.slug}")
    goal.status = "COMPLETED"
    goal.started_at = goal.started_at or now
    goal.progress = 1.0
    goal.completed_at = now
    goal.progress_metrics = {**(goal.progress_metrics or {}), **metrics}
    db.flush()
    return goal


def record_exam_result(
    db: Session,
    registry: ContractRegistry,
    *,
    caller_id: str,
    spec_slug: str,
    score: float,
    total_questions: int,
    correct_answers: int,
    pass_mark: float | None = None,
) -> ExamResultOut:
    thresholds = ExamThresholds.from_registry(registry)
    spec = get_spec_by_slug(db, spec_slug)
    if pass_mark is None and spec.output_type == "CONTENT":
        pass_mark = content_config(spec).pass_mark
    if pass_mark is None:
        pass_mark = thresholds.pass_mark_default
    passed = score >= pass_mark

    attempts = int(_read(db, registry, caller_id=caller_id, spec_slug=spec_slug, key_name="attemptCount") or 0) + 1
    best = _read(db, registry, caller_id=caller_id, spec_slug=spec_slug, key_name="bestScore")
    best_score = score if best is None else max(float(best), score)

    _write(db, registry, caller_id=caller_id, spec_slug=spec_slug, key_name="attemptCount", value=attempts)
    _write(db, registry, caller_id=caller_id, spec_slug=spec_slug, key_name="lastAttemptPassed", value=passed)
    _write(db, registry, caller_id=caller_id, spec_slug=spec_slug, key_name="bestScore", value=best_score)

    if passed:
        _complete_learn_goal(
            db,
            spec,
            caller_id=caller_id,
            metrics={
                "exam_score": score,
                "exam_passed": True,
                "exam_attempts": attempts,
                "total_questions": total_questions,
                "correct_answers": correct_answers,
            },
        )
    logger.info(f"Exam result caller={caller_id} spec={spec_slug} score={score:.2f} passed={passed} attempt={attempts}")

    readiness = compute_readiness(db, registry, caller_id=caller_id, spec_slug=spec_slug)
    _store_readiness(db, registry, caller_id=caller_id, spec_slug=spec_slug, result=readiness)
    return ExamResultOut(
        passed=passed,
        score=score,
        attempt_number=attempts,
        best_score=best_score,
        readiness=readiness,
    )


def get_all_exam_readiness(db: Session, registry: ContractRegistry, *, caller_id: str) -> dict[str, ExamReadinessOut]:
    return {
        slug: compute_readiness(db, registry, caller_id=caller_id, spec_slug=slug)
        for slug in get_active_curricula(db, registry, caller_id=caller_id)
    }
