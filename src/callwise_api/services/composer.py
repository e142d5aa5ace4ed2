from __future__ import annotations

import datetime as dt
import json
import logging
from typing import Any

from sqlalchemy import select, update
from sqlalchemy.orm import Session

from ..models import BehaviorTarget, Call, Caller, CallerPersonality, CallScore, ComposedPrompt, Parameter
from ..schemas import ComposeSpecConfig, ConfidenceThresholds, LevelThresholds, TargetLevelThresholds
from .completion import CompletionClient
from .curriculum import get_active_curricula, get_progress
from .errors import ContractMissingError, NotFoundError
from .exam_readiness import compute_readiness
from .memory_extract import CATEGORIES, current_memories, normalize_key
from .scoring import TRAIT_MAPPING
from .spec_registry import ContractRegistry, load_active_specs
from .store import utcnow

logger = logging.getLogger(__name__)

TEMPLATE_MODEL = "template_v1"

SYSTEM_PROMPT = (
    "You write the system prompt for an AI voice agent about to call a returning caller. "
    "Use only the structured context you are given. Write plain prose guidance in second person, "
    "organized under short headings. Do not invent facts."
)

TARGET_INSTRUCTIONS = {
    "high": "Strongly emphasize {name}.",
    "moderate-high": "Lean toward {name}.",
    "balanced": "Keep {name} balanced.",
    "moderate-low": "Use {name} sparingly.",
    "low": "Minimize {name}.",
}

TRAIT_DESCRIPTORS = {
    "openness": ("is curious and open to new ideas", "prefers familiar, practical approaches"),
    "conscientiousness": ("is organized and detail-oriented", "is relaxed about structure"),
    "extraversion": ("is outgoing and talkative", "is reserved; give them room to think"),
    "agreeableness": ("is cooperative and warm", "is direct and skeptical"),
    "neuroticism": ("tends to worry; be reassuring", "is calm and even-tempered"),
}


def classify_value(value: float, thresholds: LevelThresholds) -> str:
    if value >= thresholds.high:
        return "HIGH"
    if value <= thresholds.low:
        return "LOW"
    return "MODERATE"


def target_level(value: float, levels: TargetLevelThresholds) -> str:
    if value >= levels.high:
        return "high"
    if value >= levels.moderate_high:
        return "moderate-high"
    if value >= levels.balanced:
        return "balanced"
    if value >= levels.moderate_low:
        return "moderate-low"
    return "low"


def confidence_note(confidence: float, thresholds: ConfidenceThresholds) -> str:
    if confidence < thresholds.still_learning:
        return "still learning"
    if confidence >= thresholds.well_established:
        return "well established"
    return ""


def compose_config(db: Session) -> ComposeSpecConfig:
    specs = load_active_specs(db, "COMPOSE")
    return specs[-1].config if specs else ComposeSpecConfig()


def _memories_section(db: Session, caller_id: str, config: ComposeSpecConfig, now: dt.datetime) -> dict[str, list[dict]]:
    grouped: dict[str, list[dict]] = {}
    seen: set[str] = set()
    # Most confident first, so the first occurrence of a normalized key is the one kept.
    for memory in current_memories(db, caller_id, now=now, limit=config.memories_limit):
        key = normalize_key(memory.key)
        if key in seen:
            continue
        seen.add(key)
        bucket = grouped.setdefault(memory.category, [])
        if len(bucket) >= config.memories_per_category:
            continue
        bucket.append({"key": key, "value": memory.value, "confidence": round(memory.confidence, 3)})
    return {category: grouped[category] for category in CATEGORIES if category in grouped}


def _personality_section(db: Session, caller_id: str, config: ComposeSpecConfig) -> dict[str, Any] | None:
    personality = db.get(CallerPersonality, caller_id)
    if personality is None:
        return None
    traits: dict[str, Any] = {}
    for trait in TRAIT_MAPPING.values():
        value = getattr(personality, trait)
        if value is None:
            continue
        traits[trait] = {"value": round(value, 3), "level": classify_value(value, config.thresholds)}
    return {"traits": traits, "confidence": personality.confidence_score, "calls_used": personality.calls_used}


def _effective_targets(db: Session, caller_id: str) -> list[BehaviorTarget]:
    rows = db.scalars(
        select(BehaviorTarget).where(
            (BehaviorTarget.scope == "SYSTEM") | ((BehaviorTarget.scope == "CALLER") & (BehaviorTarget.scope_ref == caller_id))
        )
    ).all()
    chosen: dict[str, BehaviorTarget] = {}
    for row in sorted(rows, key=lambda r: r.scope != "SYSTEM"):
        # CALLER rows sort after SYSTEM rows and replace them.
        chosen[row.parameter_id] = row
    return [chosen[pid] for pid in sorted(chosen)]


def _targets_section(db: Session, caller_id: str, config: ComposeSpecConfig) -> dict[str, list[dict]]:
    targets = _effective_targets(db, caller_id)
    parameters = {
        p.parameter_id: p
        for p in db.scalars(select(Parameter).where(Parameter.parameter_id.in_([t.parameter_id for t in targets]))).all()
    }
    group_of = {pid: group for group, pids in config.parameter_groups.items() for pid in pids}

    buckets: dict[str, list[dict]] = {}
    for target in targets:
        parameter = parameters.get(target.parameter_id)
        bucket = group_of.get(target.parameter_id) or (parameter.domain_group if parameter else None) or "general"
        buckets.setdefault(bucket, []).append(
            {
                "parameter_id": target.parameter_id,
                "name": parameter.name if parameter else target.parameter_id,
                "target": round(target.target_value, 3),
                "classification": classify_value(target.target_value, config.thresholds),
                "level": target_level(target.target_value, config.target_levels),
                "confidence": round(target.confidence, 3),
                "confidence_note": confidence_note(target.confidence, config.confidence),
                "scope": target.scope,
            }
        )
    return buckets


def _history_section(db: Session, caller_id: str, config: ComposeSpecConfig) -> list[dict[str, Any]]:
    if config.recent_calls_limit == 0:
        return []
    calls = db.scalars(
        select(Call)
        .where(Call.caller_id == caller_id)
        .order_by(Call.sequence_number.desc())
        .limit(config.recent_calls_limit)
    ).all()
    history: list[dict[str, Any]] = []
    for call in calls:
        scores = db.scalars(select(CallScore).where(CallScore.call_id == call.id).order_by(CallScore.parameter_id)).all()
        history.append(
            {
                "call_id": call.id,
                "sequence_number": call.sequence_number,
                "status": call.status,
                "created_at": call.created_at.isoformat(),
                "scores": {
                    s.parameter_id: {"score": round(s.score, 3), "level": classify_value(s.score, config.thresholds)}
                    for s in scores
                },
            }
        )
    return history


def _learning_section(db: Session, registry: ContractRegistry, caller_id: str) -> list[dict[str, Any]]:
    learning: list[dict[str, Any]] = []
    for slug in get_active_curricula(db, registry, caller_id=caller_id):
        entry: dict[str, Any] = {"curriculum": get_progress(db, registry, caller_id=caller_id, spec_slug=slug).as_dict()}
        readiness = compute_readiness(db, registry, caller_id=caller_id, spec_slug=slug)
        entry["exam"] = {
            "readiness": readiness.readiness_score,
            "level": readiness.level,
            "allowed": readiness.gate_status.allowed,
            "weak_modules": readiness.weak_modules,
        }
        learning.append(entry)
    return learning


def build_structured_prompt(
    db: Session,
    *,
    caller: Caller,
    config: ComposeSpecConfig,
    registry: ContractRegistry,
    now: dt.datetime | None = None,
) -> dict[str, Any]:
    now = now or utcnow()
    payload: dict[str, Any] = {
        "caller": {"id": caller.id, "name": caller.name},
        "memories": _memories_section(db, caller.id, config, now),
        "personality": _personality_section(db, caller.id, config),
        "behavior_targets": _targets_section(db, caller.id, config),
        "call_history": _history_section(db, caller.id, config),
        "thresholds": {"high": config.thresholds.high, "low": config.thresholds.low},
    }
    try:
        payload["learning"] = _learning_section(db, registry, caller.id)
    except ContractMissingError as exc:
        logger.warning(f"Learning state omitted from prompt for caller {caller.id}: {exc}")
        payload["learning"] = []
    return payload


def render_template(payload: dict[str, Any], config: ComposeSpecConfig) -> str:
    lines: list[str] = []
    caller = payload["caller"]
    lines.append("## Caller Context")
    lines.append(f"You are speaking with {caller['name'] or 'a returning caller'}.")
    for category, memories in payload["memories"].items():
        facts = "; ".join(f"{m['key'].replace('_', ' ')}: {m['value']}" for m in memories)
        lines.append(f"- {category.title()}: {facts}")

    personality = payload.get("personality")
    if personality and personality["traits"]:
        lines.append("")
        lines.append("## Communication Style")
        for trait, info in personality["traits"].items():
            high, low = TRAIT_DESCRIPTORS[trait]
            if info["value"] >= config.personality_high:
                lines.append(f"- The caller {high}.")
            elif info["value"] <= config.personality_low:
                lines.append(f"- The caller {low}.")

    if payload["behavior_targets"]:
        lines.append("")
        lines.append("## Behavior Targets")
        for bucket, targets in sorted(payload["behavior_targets"].items()):
            lines.append(f"### {bucket.replace('_', ' ').title()}")
            for target in targets:
                instruction = TARGET_INSTRUCTIONS[target["level"]].format(name=target["name"].lower())
                note = f" ({target['confidence_note']})" if target["confidence_note"] else ""
                lines.append(f"- {instruction}{note}")

    if payload["call_history"]:
        lines.append("")
        lines.append("## Recent Interactions")
        for entry in payload["call_history"]:
            highs = [pid for pid, s in entry["scores"].items() if s["level"] == "HIGH"]
            lows = [pid for pid, s in entry["scores"].items() if s["level"] == "LOW"]
            summary = f"Call #{entry['sequence_number']} ({entry['status'].lower()})"
            if highs:
                summary += f"; high: {', '.join(highs)}"
            if lows:
                summary += f"; low: {', '.join(lows)}"
            lines.append(f"- {summary}")

    if payload.get("learning"):
        lines.append("")
        lines.append("## Learning Progress")
        for entry in payload["learning"]:
            curriculum = entry["curriculum"]
            exam = entry["exam"]
            lines.append(
                f"- {curriculum['spec_slug']}: current module {curriculum['current_module_id'] or 'not started'}, "
                f"exam readiness {exam['readiness']:.0%} ({exam['level'].replace('_', ' ')})"
            )
            if exam["weak_modules"]:
                lines.append(f"  Revisit: {', '.join(exam['weak_modules'])}")
    return "\n".join(lines).strip() + "\n"


def write_with_model(
    client: CompletionClient,
    payload: dict[str, Any],
    config: ComposeSpecConfig,
) -> tuple[str | None, dict[str, Any]]:
    meta: dict[str, Any] = {"attempted": False, "model": None, "reason": "disabled"}
    if client.offline:
        return None, meta
    meta = {"attempted": True, "model": client.model, "reason": "request_failed"}
    try:
        result = client.complete(
            system_prompt=SYSTEM_PROMPT,
            user_prompt=json.dumps(payload, indent=2, default=str),
            max_tokens=config.max_tokens,
            temperature=config.temperature,
        )
    except Exception as exc:  # noqa: BLE001
        return None, {**meta, "reason": f"request_error:{str(exc)[:160]}"}
    if not result.content:
        return None, {**meta, "reason": "empty_response"}
    return result.content, {**meta, "reason": "ok", "usage": result.usage}


def compose_prompt(
    db: Session,
    *,
    caller_id: str,
    client: CompletionClient,
    registry: ContractRegistry,
    trigger_type: str = "manual",
    trigger_call_id: str | None = None,
) -> ComposedPrompt:
    """
    Build and store a new active prompt for the caller. Any previous active prompt is
    marked superseded in the same transaction.
    """
    caller = db.get(Caller, caller_id)
    if caller is None:
        raise NotFoundError(f"Caller {caller_id} not found")
    if trigger_call_id is not None and db.get(Call, trigger_call_id) is None:
        raise NotFoundError(f"Call {trigger_call_id} not found")

    config = compose_config(db)
    payload = build_structured_prompt(db, caller=caller, config=config, registry=registry)
    text, meta = write_with_model(client, payload, config)
    model = f"{client.engine}:{client.model}"
    if text is None:
        if meta["attempted"]:
            logger.warning(f"Prompt composition for caller {caller_id} fell back to template: {meta['reason']}")
        text = render_template(payload, config)
        model = TEMPLATE_MODEL

    db.execute(
        update(ComposedPrompt)
        .where(ComposedPrompt.caller_id == caller_id, ComposedPrompt.status == "active")
        .values(status="superseded")
    )
    prompt = ComposedPrompt(
        caller_id=caller_id,
        prompt=text,
        llm_prompt=payload,
        trigger_type=trigger_type,
        trigger_call_id=trigger_call_id,
        model=model,
        status="active",
        inputs={
            "memories": sum(len(v) for v in payload["memories"].values()),
            "has_personality": payload["personality"] is not None,
            "targets": sum(len(v) for v in payload["behavior_targets"].values()),
            "recent_calls": len(payload["call_history"]),
            "composition": meta["reason"],
        },
        composed_at=utcnow(),
    )
    db.add(prompt)
    db.flush()
    logger.info(f"Composed prompt {prompt.id} for caller {caller_id} via {model}")
    return prompt


def active_prompt(db: Session, caller_id: str) -> ComposedPrompt | None:
    return db.scalars(
        select(ComposedPrompt)
        .where(ComposedPrompt.caller_id == caller_id, ComposedPrompt.status == "active")
        .order_by(ComposedPrompt.composed_at.desc())
        .limit(1)
    ).first()
