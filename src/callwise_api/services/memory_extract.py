from __future__ import annotations

import datetime as dt
import logging
import re
from dataclasses import dataclass
from typing import Any

from sqlalchemy import or_, select
from sqlalchemy.orm import Session

from ..config import SettingsSnapshot
from ..models import Call, CallerMemory, CallerMemorySummary
from ..schemas import LearnSpecConfig
from .completion import CompletionClient, float_01, map_completions
from .errors import ConfigMissingError
from .spec_registry import LoadedAction, load_active_specs
from .store import as_utc, get_or_create, utcnow

logger = logging.getLogger(__name__)

OFFLINE_CONFIDENCE = 0.75

SYSTEM_PROMPT = (
    "You are an expert at extracting structured information from conversations. "
    "Always respond with valid JSON."
)

KEY_NORMALIZATION: dict[str, str] = {
    "location": "location",
    "city": "location",
    "town": "location",
    "lives_in": "location",
    "residence": "location",
    "home_city": "location",
    "home_location": "location",
    "job": "occupation",
    "job_title": "occupation",
    "occupation": "occupation",
    "profession": "occupation",
    "work": "occupation",
    "role": "occupation",
    "position": "occupation",
    "works_at": "employer",
    "employer": "employer",
    "company": "employer",
    "organization": "employer",
    "spouse": "spouse",
    "spouse_name": "spouse",
    "wife": "spouse",
    "husband": "spouse",
    "partner": "spouse",
    "kids": "children_count",
    "children": "children_count",
    "children_count": "children_count",
    "number_of_kids": "children_count",
    "contact_method": "preferred_contact",
    "preferred_contact": "preferred_contact",
    "contact_preference": "preferred_contact",
    "best_way_to_reach": "preferred_contact",
    "response_length": "response_length_preference",
    "preferred_length": "response_length_preference",
}

CATEGORIES = ("FACT", "PREFERENCE", "EVENT", "TOPIC", "RELATIONSHIP", "CONTEXT")

_CATEGORY_ALIASES: dict[str, str] = {
    "BIOGRAPHICAL": "FACT",
    "PERSONAL": "FACT",
    "DEMOGRAPHIC": "FACT",
    "LIKE": "PREFERENCE",
    "DISLIKE": "PREFERENCE",
    "PREFER": "PREFERENCE",
    "APPOINTMENT": "EVENT",
    "MEETING": "EVENT",
    "HISTORY": "EVENT",
    "INTEREST": "TOPIC",
    "DISCUSSION": "TOPIC",
    "FAMILY": "RELATIONSHIP",
    "FRIEND": "RELATIONSHIP",
    "SITUATION": "CONTEXT",
    "TEMPORARY": "CONTEXT",
}

_VALUE = r"([^.,!?\n]+?)(?=\s+(?:and|but|with|so)\b|[.,!?\n]|$)"


@dataclass(frozen=True)
class _Pattern:
    key: str
    category: str
    regex: re.Pattern[str]
    expires_in_days: int | None = None


OFFLINE_PATTERNS: list[_Pattern] = [
    _Pattern("name", "FACT", re.compile(r"\bmy name is (\w+)", re.I)),
    _Pattern("location", "FACT", re.compile(r"\b(?:I live in|I'm located in|I am located in|based in)\s+" + _VALUE, re.I)),
    _Pattern("origin", "FACT", re.compile(r"\bI(?:'m| am) from\s+" + _VALUE, re.I)),
    _Pattern("employer", "FACT", re.compile(r"\b(?:I work (?:at|for)|employed by)\s+" + _VALUE, re.I)),
    _Pattern("occupation", "FACT", re.compile(r"\b(?:I work as an?|my job is)\s+" + _VALUE, re.I)),
    _Pattern("children_count", "RELATIONSHIP", re.compile(r"\b(?:I|we) have (\d+) (?:kids?|children)", re.I)),
    _Pattern("spouse", "RELATIONSHIP", re.compile(r"\bmy (?:wife|husband|partner|spouse)(?:'s name is|,)?\s+([A-Z][a-z]+)", re.I)),
    _Pattern(
        "preferred_contact",
        "PREFERENCE",
        re.compile(
            r"\b(?:prefer|rather have|like to receive)\s+(?:contact via |communication via |messages via |an? )?(email|phone|text|sms)\b",
            re.I,
        ),
    ),
    _Pattern("likes", "PREFERENCE", re.compile(r"\bI (?:really )?(?:like|love|enjoy)\s+" + _VALUE, re.I)),
    _Pattern("callback", "EVENT", re.compile(r"\bcall me (?:back )?(?:on |at )?(\w+day|tomorrow|next week)", re.I)),
    _Pattern(
        "traveling",
        "CONTEXT",
        re.compile(r"\b(?:I'm traveling|I'll be traveling|I am traveling|on vacation|on holiday)\s+(?:next|this)\s+(week|month)", re.I),
        expires_in_days=14,
    ),
]


def normalize_key(key: str) -> str:
    lower = re.sub(r"\s+", "_", key.strip().lower()).replace("-", "_")
    return KEY_NORMALIZATION.get(lower, lower)


def map_category(category: str | None) -> str:
    upper = (category or "").strip().upper()
    if upper in CATEGORIES:
        return upper
    return _CATEGORY_ALIASES.get(upper, "FACT")


def memory_key(*, extracted_key: str | None, prefix: str | None, category: str) -> str:
    base = normalize_key(extracted_key) if extracted_key else category.lower()
    if prefix:
        return f"{prefix.strip().rstrip('_')}_{base}"
    return base


@dataclass(frozen=True)
class MemoryCandidate:
    category: str
    key: str
    value: str
    confidence: float
    evidence: str | None
    expires_in_days: int | None = None


@dataclass(frozen=True)
class LearnJob:
    spec_slug: str
    action: LoadedAction
    transcript: str
    config: LearnSpecConfig
    transcript_limit: int = 4000


def extract_offline(transcript: str, action: LoadedAction) -> list[MemoryCandidate]:
    """Regex stand-in for the completion service, restricted to the action's category and key hint."""
    category = map_category(action.learn_category)
    hint = normalize_key(action.learn_key_hint) if action.learn_key_hint else None
    found: list[MemoryCandidate] = []
    for pattern in OFFLINE_PATTERNS:
        if pattern.category != category:
            continue
        if hint and pattern.key != hint:
            continue
        match = pattern.regex.search(transcript)
        if not match:
            continue
        value = match.group(1).strip()
        if not value:
            continue
        found.append(
            MemoryCandidate(
                category=category,
                key=memory_key(extracted_key=pattern.key, prefix=action.learn_key_prefix, category=category),
                value=value,
                confidence=OFFLINE_CONFIDENCE,
                evidence=match.group(0),
                expires_in_days=pattern.expires_in_days,
            )
        )
    return found


def build_learn_prompt(job: LearnJob) -> str:
    action = job.action
    lines = [
        "You are extracting structured information from a call transcript.",
        "",
        "CONTEXT:",
        f"- Given: {action.trigger_given}",
        f"- When: {action.trigger_when}",
        "",
        "WHAT TO EXTRACT:",
        action.description or "Any relevant detail about the caller.",
        "",
        f"MEMORY TYPE: {map_category(action.learn_category)}",
    ]
    if action.learn_key_prefix:
        lines.append(f"KEY PREFIX: {action.learn_key_prefix}")
    if action.learn_key_hint:
        lines.append(f"KEY HINT: {action.learn_key_hint}")
    lines += [
        "",
        "Only extract what is explicitly stated or clearly implied.",
        'Return JSON: {"found": true/false, "key": "<specific key>", "value": "<extracted value>", '
        '"confidence": <0.0-1.0>, "evidence": "<exact quote>"}',
        'If nothing matches, return {"found": false}.',
        "",
        "TRANSCRIPT:",
        job.transcript[: job.transcript_limit],
    ]
    return "\n".join(lines)


def extract_memories(client: CompletionClient, job: LearnJob) -> list[MemoryCandidate]:
    if client.offline:
        return extract_offline(job.transcript, job.action)

    payload, meta = client.complete_json(
        system_prompt=SYSTEM_PROMPT,
        user_prompt=build_learn_prompt(job),
        max_tokens=job.config.max_tokens,
        temperature=job.config.temperature,
    )
    if payload is None:
        logger.warning(f"LEARN action {job.action.id} extraction failed: {meta['reason']}")
        return []
    if not payload.get("found"):
        return []
    value = payload.get("value")
    if value is None or not str(value).strip():
        logger.warning(f"LEARN action {job.action.id} returned found=true without a value")
        return []

    category = map_category(job.action.learn_category)
    raw_key = payload.get("key")
    confidence = float_01(payload.get("confidence"))
    evidence = payload.get("evidence")
    return [
        MemoryCandidate(
            category=category,
            key=memory_key(
                extracted_key=str(raw_key) if raw_key else None,
                prefix=job.action.learn_key_prefix,
                category=category,
            ),
            value=str(value).strip(),
            confidence=confidence if confidence is not None else 0.7,
            evidence=str(evidence) if evidence else None,
        )
    ]


def _not_expired(now: dt.datetime):
    return or_(CallerMemory.expires_at.is_(None), CallerMemory.expires_at > now)


def _chain_head(db: Session, caller_id: str, key: str) -> CallerMemory | None:
    return db.scalars(
        select(CallerMemory)
        .where(
            CallerMemory.caller_id == caller_id,
            CallerMemory.key == key,
            CallerMemory.superseded_by_id.is_(None),
        )
        .order_by(CallerMemory.extracted_at.desc())
        .limit(1)
    ).first()


def find_current_memory(
    db: Session,
    caller_id: str,
    key: str,
    *,
    now: dt.datetime | None = None,
) -> CallerMemory | None:
    """The non-superseded memory for (caller, key), or None when absent or expired."""
    head = _chain_head(db, caller_id, key)
    if head is None:
        return None
    if head.expires_at is not None and as_utc(head.expires_at) <= as_utc(now or utcnow()):
        return None
    return head


def current_memories(
    db: Session,
    caller_id: str,
    *,
    now: dt.datetime | None = None,
    limit: int | None = None,
) -> list[CallerMemory]:
    stmt = (
        select(CallerMemory)
        .where(
            CallerMemory.caller_id == caller_id,
            CallerMemory.superseded_by_id.is_(None),
            _not_expired(now or utcnow()),
        )
        .order_by(CallerMemory.confidence.desc(), CallerMemory.extracted_at.desc())
    )
    if limit is not None:
        stmt = stmt.limit(limit)
    return list(db.scalars(stmt).all())


def memory_history(db: Session, caller_id: str, key: str) -> list[CallerMemory]:
    """Supersession chain for a key, newest first."""
    rows = db.scalars(
        select(CallerMemory).where(CallerMemory.caller_id == caller_id, CallerMemory.key == key)
    ).all()
    heads = [row for row in rows if row.superseded_by_id is None]
    if not heads:
        return []
    previous_of = {row.superseded_by_id: row for row in rows if row.superseded_by_id}
    chain = [heads[0]]
    while chain[-1].id in previous_of and len(chain) < len(rows):
        chain.append(previous_of[chain[-1].id])
    return chain


def store_memory(
    db: Session,
    *,
    caller_id: str,
    call_id: str | None,
    candidate: MemoryCandidate,
    extracted_by: str,
    spec_slug: str | None,
    now: dt.datetime | None = None,
) -> str:
    """
    Append a memory and chain the previous current one to it.
    Returns "created", "superseded" or "reinforced" (same value seen again).
    """
    now = now or utcnow()
    head = _chain_head(db, caller_id, candidate.key)
    head_live = head is not None and (head.expires_at is None or as_utc(head.expires_at) > as_utc(now))
    if head is not None and head_live and head.value.strip().lower() == candidate.value.strip().lower():
        head.confidence = max(head.confidence, candidate.confidence)
        if candidate.evidence:
            head.evidence = candidate.evidence
        return "reinforced"

    memory = CallerMemory(
        caller_id=caller_id,
        call_id=call_id,
        category=candidate.category,
        key=candidate.key,
        value=candidate.value,
        confidence=candidate.confidence,
        evidence=candidate.evidence,
        source_spec_slug=spec_slug,
        extracted_by=extracted_by,
        expires_at=(now + dt.timedelta(days=candidate.expires_in_days)) if candidate.expires_in_days else None,
        extracted_at=now,
    )
    db.add(memory)
    db.flush()
    if head is not None:
        head.superseded_by_id = memory.id
        db.flush()
        return "superseded"
    return "created"


def refresh_memory_summary(db: Session, caller_id: str, settings: SettingsSnapshot) -> CallerMemorySummary:
    memories = current_memories(db, caller_id)
    summary, _ = get_or_create(db, CallerMemorySummary, caller_id=caller_id)
    counts = {category: 0 for category in CATEGORIES}
    for memory in memories:
        counts[map_category(memory.category)] += 1
    summary.fact_count = counts["FACT"]
    summary.preference_count = counts["PREFERENCE"]
    summary.event_count = counts["EVENT"]
    summary.topic_count = counts["TOPIC"]
    summary.relationship_count = counts["RELATIONSHIP"]
    summary.context_count = counts["CONTEXT"]

    top = settings.memory.summary_top_limit
    summary.key_facts = [
        {"key": m.key, "value": m.value, "confidence": round(m.confidence, 3)}
        for m in memories
        if m.category in {"FACT", "RELATIONSHIP"}
    ][:top]
    preferences = [m for m in memories if m.category == "PREFERENCE"][:top]
    summary.preferences = {m.key: m.value for m in preferences}
    recent = sorted(memories, key=lambda m: as_utc(m.extracted_at), reverse=True)[: settings.memory.summary_recent_limit]
    summary.recent_memories = [
        {"key": m.key, "value": m.value, "category": m.category, "extracted_at": as_utc(m.extracted_at).isoformat()}
        for m in recent
    ]
    summary.updated_at = utcnow()
    db.flush()
    return summary


def run_learn(
    db: Session,
    *,
    call: Call,
    client: CompletionClient,
    settings: SettingsSnapshot,
) -> dict[str, Any]:
    specs = load_active_specs(db, "LEARN")
    if not specs:
        raise ConfigMissingError("No compiled LEARN specs found")

    transcript = call.transcript or ""
    jobs = [
        LearnJob(
            spec_slug=spec.slug,
            action=action,
            transcript=transcript,
            config=spec.config,
            transcript_limit=spec.config.transcript_limit_chars or settings.pipeline.transcript_limit_chars,
        )
        for spec in specs
        for action in spec.actions
        if action.learn_category
    ]
    extracted = map_completions(
        lambda job: extract_memories(client, job),
        jobs,
        max_workers=settings.pipeline.max_workers,
    )

    counts = {"created": 0, "superseded": 0, "reinforced": 0, "skipped": 0}
    extracted_by = "mock_v1" if client.offline else "llm_v1"
    for job, candidates in zip(jobs, extracted):
        threshold = job.config.confidence_threshold
        if threshold is None:
            threshold = settings.memory.confidence_threshold
        for candidate in candidates:
            if candidate.confidence < threshold:
                counts["skipped"] += 1
                continue
            outcome = store_memory(
                db,
                caller_id=call.caller_id,
                call_id=call.id,
                candidate=candidate,
                extracted_by=extracted_by,
                spec_slug=job.spec_slug,
            )
            counts[outcome] += 1

    refresh_memory_summary(db, call.caller_id, settings)
    db.flush()
    logger.info(
        f"LEARN call={call.id} created={counts['created']} superseded={counts['superseded']} "
        f"reinforced={counts['reinforced']} skipped={counts['skipped']}"
    )
    return {
        "memories_created": counts["created"] + counts["superseded"],
        "superseded": counts["superseded"],
        "reinforced": counts["reinforced"],
        "skipped_low_confidence": counts["skipped"],
        "specs_used": [s.slug for s in specs],
    }
