from __future__ import annotations

import logging
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import AdaptSettings, SettingsSnapshot
from ..models import BehaviorTarget, Call, CallScore, Parameter, RewardScore
from ..schemas import AdaptSpecConfig
from .scoring import upsert_call_score
from .spec_registry import load_active_specs
from .store import get_or_create, utcnow

logger = logging.getLogger(__name__)

DELTA_SUFFIX = "-DELTA"


def previous_call(db: Session, call: Call) -> Call | None:
    return db.scalars(
        select(Call)
        .where(Call.caller_id == call.caller_id, Call.sequence_number < call.sequence_number)
        .order_by(Call.sequence_number.desc())
        .limit(1)
    ).first()


def _scores_for(db: Session, call_id: str) -> dict[str, float]:
    rows = db.scalars(select(CallScore).where(CallScore.call_id == call_id)).all()
    return {row.parameter_id: row.score for row in rows if not row.parameter_id.endswith(DELTA_SUFFIX)}


def track_deltas(db: Session, *, call: Call, settings: SettingsSnapshot) -> dict[str, Any]:
    """
    Score change against the caller's previous call, stored as `<parameter>-DELTA`
    normalized to [0,1] via (delta + 1) / 2. Parameters without a DELTA definition are skipped.
    """
    prev = previous_call(db, call)
    if prev is None:
        return {"deltas_created": 0, "reason": "no_previous_call"}

    current = _scores_for(db, call.id)
    previous = _scores_for(db, prev.id)
    common = sorted(set(current) & set(previous))
    delta_ids = [f"{pid}{DELTA_SUFFIX}" for pid in common]
    defined = set(
        db.scalars(select(Parameter.parameter_id).where(Parameter.parameter_id.in_(delta_ids))).all()
    )

    created: dict[str, float] = {}
    skipped: list[str] = []
    for pid in common:
        delta_id = f"{pid}{DELTA_SUFFIX}"
        if delta_id not in defined:
            skipped.append(delta_id)
            continue
        delta = current[pid] - previous[pid]
        normalized = round((delta + 1.0) / 2.0, 4)
        upsert_call_score(
            db,
            call=call,
            parameter_id=delta_id,
            score=normalized,
            confidence=settings.adapt.delta_confidence,
            evidence=[f"delta={delta:+.3f} vs call {prev.id}"],
            reasoning=f"Change in {pid} since call #{prev.sequence_number}",
            spec_id=None,
            scored_by="adapt_v1",
        )
        created[delta_id] = normalized
    db.flush()
    return {"deltas_created": len(created), "deltas": created, "skipped_undefined": skipped}


def clamp_target(value: float, adapt: AdaptSettings) -> float:
    low = max(0.0, adapt.target_min)
    high = min(1.0, adapt.target_max)
    return max(low, min(high, value))


def adjust_targets(db: Session, *, call: Call, settings: SettingsSnapshot) -> dict[str, Any]:
    """
    Nudge SYSTEM targets toward observed behavior when behavior missed its target
    but the call still scored well overall.
    """
    adapt = settings.adapt
    reward = db.scalars(select(RewardScore).where(RewardScore.call_id == call.id)).first()
    if reward is None:
        return {"targets_adjusted": 0, "reason": "no_reward_score"}
    if reward.overall_score <= adapt.reward_threshold:
        return {"targets_adjusted": 0, "reason": "reward_below_threshold"}

    adjustments: list[dict[str, Any]] = []
    for entry in reward.parameter_diffs:
        diff = float(entry.get("diff", 0.0))
        if diff <= adapt.diff_threshold:
            continue
        parameter_id = entry["parameter_id"]
        actual = float(entry["actual"])
        target = float(entry["target"])
        adjustment = (actual - target) * adapt.learning_rate

        row, _ = get_or_create(
            db,
            BehaviorTarget,
            defaults={"target_value": target},
            scope="SYSTEM",
            scope_ref="",
            parameter_id=parameter_id,
        )
        old_value = row.target_value
        new_value = round(clamp_target(old_value + adjustment, adapt), 4)
        row.target_value = new_value
        row.source = "LEARNED"
        row.updated_at = utcnow()
        adjustments.append(
            {
                "parameter_id": parameter_id,
                "old_target": old_value,
                "new_target": new_value,
                "adjustment": round(adjustment, 4),
                "clamped": new_value != round(old_value + adjustment, 4),
            }
        )
    db.flush()
    return {"targets_adjusted": len(adjustments), "adjustments": adjustments}


def run_adapt(db: Session, *, call: Call, settings: SettingsSnapshot) -> dict[str, Any]:
    specs = load_active_specs(db, "ADAPT")
    config = specs[-1].config if specs else AdaptSpecConfig()
    result: dict[str, Any] = {}
    if config.track_deltas:
        result["deltas"] = track_deltas(db, call=call, settings=settings)
    if config.adjust_targets:
        result["targets"] = adjust_targets(db, call=call, settings=settings)
    logger.info(
        f"ADAPT call={call.id} deltas={result.get('deltas', {}).get('deltas_created', 0)} "
        f"targets={result.get('targets', {}).get('targets_adjusted', 0)}"
    )
    return result
