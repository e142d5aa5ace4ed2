from __future__ import annotations

import datetime as dt
import logging
import math
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import SettingsSnapshot
from ..models import Call, CallerPersonality, CallScore, Parameter
from ..schemas import MeasureSpecConfig
from .completion import CompletionClient, clamp01, float_01, map_completions
from .errors import ConfigMissingError
from .spec_registry import load_active_specs
from .store import as_utc, get_or_create, utcnow

logger = logging.getLogger(__name__)

TRAIT_MAPPING: dict[str, str] = {
    "PERS-OPENNESS": "openness",
    "PERS-CONSCIENTIOUSNESS": "conscientiousness",
    "PERS-EXTRAVERSION": "extraversion",
    "PERS-AGREEABLENESS": "agreeableness",
    "PERS-NEUROTICISM": "neuroticism",
}

DEFAULT_SCORE = 0.5
DEFAULT_CONFIDENCE = 0.3

SYSTEM_PROMPT = (
    "You are an expert at analyzing conversation transcripts to measure caller traits. "
    "Always respond with valid JSON only."
)

# (name fragments, raising phrases, lowering phrases)
_KEYWORD_HINTS: list[tuple[tuple[str, ...], tuple[str, ...], tuple[str, ...]]] = [
    (("open",), ("curious", "interesting", "new idea", "tell me more"), ("always done it", "traditional")),
    (("extrav",), ("excited", "love talking", "great to chat"), ("quiet", "prefer email", "keep it short")),
    (("conscien",), ("organized", "on schedule", "planned", "checklist"), ("forgot", "whenever", "no rush")),
    (("agree",), ("thank you", "happy to", "of course", "sounds good"), ("disagree", "that's wrong", "no way")),
    (("neurot", "anxi"), ("worried", "stressed", "anxious", "nervous"), ("relaxed", "no worries", "calm")),
]


@dataclass(frozen=True)
class ScoreJob:
    spec_id: str
    spec_slug: str
    parameter_id: str
    name: str
    definition: str | None
    transcript: str
    config: MeasureSpecConfig
    transcript_limit: int = 4000


@dataclass(frozen=True)
class ScoreOutcome:
    score: float
    confidence: float
    evidence: list[str]
    reasoning: str
    scored_by: str


def _mock_score(job: ScoreJob) -> ScoreOutcome:
    text = job.transcript.lower()
    name = f"{job.parameter_id} {job.name}".lower()
    score = DEFAULT_SCORE
    evidence: list[str] = []
    for fragments, raising, lowering in _KEYWORD_HINTS:
        if not any(fragment in name for fragment in fragments):
            continue
        for phrase in raising:
            if phrase in text:
                score += 0.15
                evidence.append(f"+{phrase}")
        for phrase in lowering:
            if phrase in text:
                score -= 0.1
                evidence.append(f"-{phrase}")
    return ScoreOutcome(
        score=round(clamp01(score), 3),
        confidence=0.6 if evidence else 0.4,
        evidence=evidence or ["[Mock scoring - no keyword signals]"],
        reasoning=f"Keyword heuristics for {job.name}",
        scored_by="mock_v1",
    )


def build_measure_prompt(job: ScoreJob) -> str:
    excerpt = job.transcript[: job.transcript_limit]
    definition = job.definition or "No definition provided."
    return (
        f"Analyze this call transcript and score the caller on the parameter below.\n\n"
        f"PARAMETER: {job.name}\n"
        f"DEFINITION: {definition}\n\n"
        f"TRANSCRIPT:\n{excerpt}\n\n"
        'Return JSON: {"score": <0.0-1.0>, "confidence": <0.0-1.0>, '
        '"evidence": ["<short quote>"], "reasoning": "<one sentence>"}'
    )


def score_parameter(client: CompletionClient, job: ScoreJob) -> ScoreOutcome:
    if client.offline:
        return _mock_score(job)

    payload, meta = client.complete_json(
        system_prompt=SYSTEM_PROMPT,
        user_prompt=build_measure_prompt(job),
        max_tokens=job.config.max_tokens,
        temperature=job.config.temperature,
    )
    score = float_01(payload.get("score")) if payload else None
    if payload is None or score is None:
        reason = meta["reason"] if payload is None else "invalid_payload"
        logger.warning(f"MEASURE {job.parameter_id} fell back to default: {reason}")
        return ScoreOutcome(
            score=DEFAULT_SCORE,
            confidence=DEFAULT_CONFIDENCE,
            evidence=[f"[completion failed: {reason}]"],
            reasoning="Default score after completion failure",
            scored_by="llm_v1",
        )

    confidence = float_01(payload.get("confidence"))
    evidence_raw = payload.get("evidence")
    if isinstance(evidence_raw, str):
        evidence = [evidence_raw]
    elif isinstance(evidence_raw, list):
        evidence = [str(item) for item in evidence_raw if str(item).strip()][:5]
    else:
        evidence = []
    return ScoreOutcome(
        score=score,
        confidence=confidence if confidence is not None else 0.7,
        evidence=evidence,
        reasoning=str(payload.get("reasoning") or "AI analysis"),
        scored_by="llm_v1",
    )


def upsert_call_score(
    db: Session,
    *,
    call: Call,
    parameter_id: str,
    score: float,
    confidence: float,
    evidence: list[str],
    reasoning: str | None,
    spec_id: str | None,
    scored_by: str,
) -> CallScore:
    row, _ = get_or_create(
        db,
        CallScore,
        defaults={"caller_id": call.caller_id, "score": score},
        call_id=call.id,
        parameter_id=parameter_id,
    )
    row.caller_id = call.caller_id
    row.score = round(clamp01(score), 4)
    row.confidence = round(clamp01(confidence), 4)
    row.evidence = list(evidence)
    row.reasoning = reasoning
    row.analysis_spec_id = spec_id
    row.scored_by = scored_by
    row.scored_at = utcnow()
    return row


def run_measure(
    db: Session,
    *,
    call: Call,
    client: CompletionClient,
    settings: SettingsSnapshot,
) -> dict[str, Any]:
    specs = load_active_specs(db, "MEASURE")
    if not specs:
        raise ConfigMissingError("No compiled MEASURE specs found")

    parameter_ids = {a.parameter_id for s in specs for a in s.actions if a.parameter_id}
    parameters = {
        p.parameter_id: p
        for p in db.scalars(select(Parameter).where(Parameter.parameter_id.in_(parameter_ids))).all()
    }
    transcript = call.transcript or ""

    jobs: list[ScoreJob] = []
    for spec in specs:
        for action in spec.actions:
            if not action.parameter_id:
                continue
            parameter = parameters.get(action.parameter_id)
            jobs.append(
                ScoreJob(
                    spec_id=spec.id,
                    spec_slug=spec.slug,
                    parameter_id=action.parameter_id,
                    name=parameter.name if parameter else action.parameter_id,
                    definition=parameter.definition if parameter else None,
                    transcript=transcript,
                    config=spec.config,
                    transcript_limit=spec.config.transcript_limit_chars or settings.pipeline.transcript_limit_chars,
                )
            )

    outcomes = map_completions(
        lambda job: score_parameter(client, job),
        jobs,
        max_workers=settings.pipeline.max_workers,
    )

    # Jobs are in spec order; a later spec scoring the same parameter overwrites the earlier one.
    written: dict[str, float] = {}
    fallbacks = 0
    for job, outcome in zip(jobs, outcomes):
        upsert_call_score(
            db,
            call=call,
            parameter_id=job.parameter_id,
            score=outcome.score,
            confidence=outcome.confidence,
            evidence=outcome.evidence,
            reasoning=outcome.reasoning,
            spec_id=job.spec_id,
            scored_by=outcome.scored_by,
        )
        written[job.parameter_id] = outcome.score
        if outcome.evidence and outcome.evidence[0].startswith("[completion failed"):
            fallbacks += 1
    db.flush()
    logger.info(f"MEASURE call={call.id} specs={len(specs)} scores={len(written)} fallbacks={fallbacks}")
    return {
        "scores_created": len(written),
        "scores": written,
        "specs_used": [s.slug for s in specs],
        "fallbacks": fallbacks,
    }


def aggregate_personality(
    db: Session,
    caller_id: str,
    *,
    half_life_days: float,
    now: dt.datetime | None = None,
) -> CallerPersonality | None:
    """
    Time-decayed, confidence-weighted average of personality scores across calls.
    weight = exp(-ln2 * age_days / half_life_days) * confidence
    """
    rows = db.execute(
        select(CallScore, Call.created_at)
        .join(Call, Call.id == CallScore.call_id)
        .where(
            CallScore.caller_id == caller_id,
            CallScore.parameter_id.in_(list(TRAIT_MAPPING)),
        )
    ).all()
    if not rows:
        return None

    now = as_utc(now or utcnow())
    half_life = max(0.1, float(half_life_days))
    sums: dict[str, float] = {trait: 0.0 for trait in TRAIT_MAPPING.values()}
    weights: dict[str, float] = {trait: 0.0 for trait in TRAIT_MAPPING.values()}
    calls_used: set[str] = set()

    for score, call_created_at in rows:
        age_days = max(0.0, (now - as_utc(call_created_at)).total_seconds() / 86400.0)
        weight = math.exp(-math.log(2) * age_days / half_life) * score.confidence
        trait = TRAIT_MAPPING[score.parameter_id]
        sums[trait] += score.score * weight
        weights[trait] += weight
        calls_used.add(score.call_id)

    personality, _ = get_or_create(db, CallerPersonality, caller_id=caller_id)
    for trait in TRAIT_MAPPING.values():
        value = round(sums[trait] / weights[trait], 4) if weights[trait] > 0 else None
        setattr(personality, trait, value)
    personality.calls_used = len(calls_used)
    personality.confidence_score = round(min(1.0, len(calls_used) / 10.0), 3)
    personality.decay_half_life_days = half_life
    personality.last_aggregated_at = utcnow()
    db.flush()
    return personality
