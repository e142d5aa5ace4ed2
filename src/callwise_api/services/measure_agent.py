from __future__ import annotations

import logging
import re
from dataclasses import dataclass
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import SettingsSnapshot
from ..models import BehaviorMeasurement, BehaviorTarget, Call, Parameter
from ..schemas import MeasureAgentSpecConfig
from .completion import CompletionClient, clamp01, float_01, map_completions
from .errors import ConfigMissingError
from .spec_registry import load_active_specs
from .store import get_or_create, utcnow

logger = logging.getLogger(__name__)

SYSTEM_PROMPT = (
    "You evaluate how an AI voice agent behaved during a call. "
    "Score the agent, not the caller. Always respond with valid JSON only."
)

EVIDENCE_MARKERS: dict[str, list[str]] = {
    "empathy": ["i understand", "that sounds difficult", "i hear you", "i appreciate"],
    "warmth": ["thank you", "please", "happy to help", "glad", "wonderful"],
    "active_listening": ["it sounds like", "you mentioned", "so what you're saying", "if i understand", "let me make sure"],
}

MARKER_NORMALIZERS: dict[str, float] = {"empathy": 5.0, "warmth": 10.0, "active_listening": 5.0}

_FAMILY_HINTS: list[tuple[str, tuple[str, ...]]] = [
    ("warmth", ("warm",)),
    ("empathy", ("empath",)),
    ("directness", ("direct", "concise")),
    ("question_asking", ("question",)),
    ("active_listening", ("listen",)),
]

_SPEAKER = re.compile(r"^\s*(agent|assistant|ai|bot|caller|user|customer)\s*:\s*(.*)$", re.I)
_AGENT_SPEAKERS = {"agent", "assistant", "ai", "bot"}
_SENTENCE_SPLIT = re.compile(r"(?<=[.!?])\s+")

HEURISTIC_CONFIDENCE = 0.7
DEFAULT_VALUE = 0.5
DEFAULT_CONFIDENCE = 0.3


def parameter_family(parameter_id: str, name: str) -> str | None:
    haystack = f"{parameter_id} {name}".lower()
    for family, hints in _FAMILY_HINTS:
        if any(hint in haystack for hint in hints):
            return family
    return None


def agent_text(transcript: str) -> str:
    """Agent turns only; the whole transcript when there are no speaker labels."""
    agent_lines: list[str] = []
    labelled = False
    for line in transcript.splitlines():
        match = _SPEAKER.match(line)
        if match is None:
            continue
        labelled = True
        if match.group(1).lower() in _AGENT_SPEAKERS:
            agent_lines.append(match.group(2).strip())
    if not labelled:
        return transcript
    return "\n".join(agent_lines)


def _sentences(text: str) -> list[str]:
    parts: list[str] = []
    for line in text.splitlines():
        parts.extend(s.strip() for s in _SENTENCE_SPLIT.split(line) if s.strip())
    return parts


def _directness(text: str) -> tuple[float, list[str]]:
    sentences = _sentences(text)
    if not sentences:
        return DEFAULT_VALUE, []
    avg_words = sum(len(s.split()) for s in sentences) / len(sentences)
    if avg_words <= 8:
        value = 0.9
    elif avg_words <= 12:
        value = 0.75
    elif avg_words <= 18:
        value = 0.5
    elif avg_words <= 25:
        value = 0.3
    else:
        value = 0.15
    return value, [f"avg_sentence_words={avg_words:.1f}"]


def _question_asking(text: str) -> tuple[float, list[str]]:
    sentences = _sentences(text)
    if not sentences:
        return DEFAULT_VALUE, []
    questions = [s for s in sentences if s.endswith("?")]
    ratio = len(questions) / len(sentences)
    return round(clamp01(ratio * 2.0), 3), questions[:3]


def _marker_score(text: str, family: str) -> tuple[float, list[str]]:
    lower = text.lower()
    hits: list[str] = []
    count = 0
    for marker in EVIDENCE_MARKERS[family]:
        n = lower.count(marker)
        if n:
            count += n
            hits.append(marker)
    return round(clamp01(count / MARKER_NORMALIZERS[family]), 3), hits


def heuristic_measure(family: str, text: str) -> tuple[float, list[str]]:
    if family == "directness":
        return _directness(text)
    if family == "question_asking":
        return _question_asking(text)
    return _marker_score(text, family)


@dataclass(frozen=True)
class AgentJob:
    parameter_id: str
    name: str
    definition: str | None
    interpretation_high: str | None
    interpretation_low: str | None
    transcript: str
    config: MeasureAgentSpecConfig
    transcript_limit: int = 4000


@dataclass(frozen=True)
class AgentOutcome:
    actual_value: float
    confidence: float
    evidence: list[str]
    measured_by: str


def build_agent_prompt(job: AgentJob) -> str:
    return (
        f"Measure the AGENT's behavior on this parameter.\n\n"
        f"PARAMETER: {job.name}\n"
        f"DEFINITION: {job.definition or 'No definition provided.'}\n"
        f"HIGH MEANS: {job.interpretation_high or 'n/a'}\n"
        f"LOW MEANS: {job.interpretation_low or 'n/a'}\n\n"
        f"TRANSCRIPT:\n{job.transcript[: job.transcript_limit]}\n\n"
        'Return JSON: {"actualValue": <0.0-1.0>, "confidence": <0.0-1.0>, '
        '"evidence": ["<short quote>"], "reasoning": "<one sentence>"}'
    )


def measure_parameter(client: CompletionClient, job: AgentJob) -> AgentOutcome:
    family = parameter_family(job.parameter_id, job.name)
    if family is not None:
        value, evidence = heuristic_measure(family, agent_text(job.transcript))
        return AgentOutcome(
            actual_value=value,
            confidence=HEURISTIC_CONFIDENCE,
            evidence=evidence or [f"no {family} markers"],
            measured_by="heuristic_v1",
        )
    if client.offline:
        return AgentOutcome(
            actual_value=DEFAULT_VALUE,
            confidence=DEFAULT_CONFIDENCE,
            evidence=["[no heuristic for parameter in offline mode]"],
            measured_by="mock_v1",
        )

    payload, meta = client.complete_json(
        system_prompt=SYSTEM_PROMPT,
        user_prompt=build_agent_prompt(job),
        max_tokens=job.config.max_tokens,
        temperature=job.config.temperature,
    )
    value = None
    if payload is not None:
        value = float_01(payload.get("actualValue", payload.get("actual_value")))
    if value is None:
        reason = meta["reason"] if payload is None else "invalid_payload"
        logger.warning(f"MEASURE_AGENT {job.parameter_id} fell back to default: {reason}")
        return AgentOutcome(
            actual_value=DEFAULT_VALUE,
            confidence=DEFAULT_CONFIDENCE,
            evidence=[f"[completion failed: {reason}]"],
            measured_by="llm_v1",
        )
    confidence = float_01(payload.get("confidence"))
    evidence_raw = payload.get("evidence")
    evidence = [str(e) for e in evidence_raw][:5] if isinstance(evidence_raw, list) else []
    return AgentOutcome(
        actual_value=value,
        confidence=confidence if confidence is not None else 0.7,
        evidence=evidence,
        measured_by="llm_v1",
    )


def upsert_measurement(
    db: Session,
    *,
    call_id: str,
    parameter_id: str,
    actual_value: float,
    confidence: float,
    evidence: list[str],
    measured_by: str,
) -> BehaviorMeasurement:
    row, _ = get_or_create(
        db,
        BehaviorMeasurement,
        defaults={"actual_value": actual_value},
        call_id=call_id,
        parameter_id=parameter_id,
    )
    row.actual_value = round(clamp01(actual_value), 4)
    row.confidence = round(clamp01(confidence), 4)
    row.evidence = list(evidence)
    row.measured_by = measured_by
    row.measured_at = utcnow()
    return row


def _parameters_to_measure(db: Session) -> tuple[list[tuple[str, MeasureAgentSpecConfig]], list[str]]:
    specs = load_active_specs(db, "MEASURE_AGENT")
    ordered: dict[str, MeasureAgentSpecConfig] = {}
    for spec in specs:
        for action in spec.actions:
            if action.parameter_id:
                ordered[action.parameter_id] = spec.config
    if ordered:
        return list(ordered.items()), [s.slug for s in specs]

    targets = db.scalars(
        select(BehaviorTarget.parameter_id)
        .where(BehaviorTarget.scope == "SYSTEM")
        .order_by(BehaviorTarget.parameter_id)
    ).all()
    default_config = MeasureAgentSpecConfig()
    return [(pid, default_config) for pid in dict.fromkeys(targets)], []


def run_measure_agent(
    db: Session,
    *,
    call: Call,
    client: CompletionClient,
    settings: SettingsSnapshot,
) -> dict[str, Any]:
    gates = settings.pipeline
    transcript = call.transcript or ""
    word_count = len(transcript.split())
    if word_count < gates.min_transcript_words:
        logger.info(f"MEASURE_AGENT call={call.id} skipped: {word_count} words < {gates.min_transcript_words}")
        return {"measurements_created": 0, "skipped": "transcript_too_short", "word_count": word_count}

    confidence_cap = 1.0
    if word_count < gates.short_transcript_threshold_words:
        confidence_cap = gates.short_transcript_confidence_cap

    targets, spec_slugs = _parameters_to_measure(db)
    if not targets:
        raise ConfigMissingError("No MEASURE_AGENT specs or SYSTEM behavior targets to measure")

    parameters = {
        p.parameter_id: p
        for p in db.scalars(select(Parameter).where(Parameter.parameter_id.in_([pid for pid, _ in targets]))).all()
    }
    jobs = []
    for parameter_id, config in targets:
        parameter = parameters.get(parameter_id)
        jobs.append(
            AgentJob(
                parameter_id=parameter_id,
                name=parameter.name if parameter else parameter_id,
                definition=parameter.definition if parameter else None,
                interpretation_high=parameter.interpretation_high if parameter else None,
                interpretation_low=parameter.interpretation_low if parameter else None,
                transcript=transcript,
                config=config,
                transcript_limit=config.transcript_limit_chars or gates.transcript_limit_chars,
            )
        )

    outcomes = map_completions(
        lambda job: measure_parameter(client, job),
        jobs,
        max_workers=gates.max_workers,
    )
    measured: dict[str, float] = {}
    for job, outcome in zip(jobs, outcomes):
        upsert_measurement(
            db,
            call_id=call.id,
            parameter_id=job.parameter_id,
            actual_value=outcome.actual_value,
            confidence=min(outcome.confidence, confidence_cap),
            evidence=outcome.evidence,
            measured_by=outcome.measured_by,
        )
        measured[job.parameter_id] = outcome.actual_value
    db.flush()
    logger.info(f"MEASURE_AGENT call={call.id} measured={len(measured)} confidence_cap={confidence_cap}")
    return {
        "measurements_created": len(measured),
        "measurements": measured,
        "confidence_cap": confidence_cap,
        "specs_used": spec_slugs,
    }
