from __future__ import annotations

import logging
from statistics import mean
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import SettingsSnapshot
from ..models import BehaviorMeasurement, BehaviorTarget, Call, RewardScore
from ..schemas import RewardSpecConfig
from .errors import PipelineError
from .spec_registry import load_active_specs
from .store import get_or_create, utcnow

logger = logging.getLogger(__name__)


def system_targets(db: Session) -> dict[str, BehaviorTarget]:
    rows = db.scalars(select(BehaviorTarget).where(BehaviorTarget.scope == "SYSTEM")).all()
    return {row.parameter_id: row for row in rows}


def _reward_config(db: Session) -> RewardSpecConfig:
    specs = load_active_specs(db, "REWARD")
    # Highest-priority spec is last.
    return specs[-1].config if specs else RewardSpecConfig()


def compute_reward(
    measurements: list[tuple[str, float]],
    targets: dict[str, float],
    *,
    default_target: float = 0.5,
    tolerance: float = 0.2,
) -> tuple[float, list[dict[str, Any]]]:
    diffs: list[dict[str, Any]] = []
    for parameter_id, actual in measurements:
        target = targets.get(parameter_id, default_target)
        diff = abs(actual - target)
        diffs.append(
            {
                "parameter_id": parameter_id,
                "target": round(target, 4),
                "actual": round(actual, 4),
                "diff": round(diff, 4),
                "within_tolerance": diff <= tolerance,
            }
        )
    overall = max(0.0, 1.0 - mean(d["diff"] for d in diffs)) if diffs else 0.0
    return round(overall, 4), diffs


def run_reward(db: Session, *, call: Call, settings: SettingsSnapshot) -> dict[str, Any]:
    measurements = db.scalars(
        select(BehaviorMeasurement)
        .where(BehaviorMeasurement.call_id == call.id)
        .order_by(BehaviorMeasurement.parameter_id)
    ).all()
    if not measurements:
        logger.warning(f"REWARD call={call.id}: no behavior measurements, run MEASURE_AGENT first")
        raise PipelineError(f"No behavior measurements for call {call.id}; run MEASURE_AGENT first")

    config = _reward_config(db)
    targets = {pid: row.target_value for pid, row in system_targets(db).items()}
    overall, diffs = compute_reward(
        [(m.parameter_id, m.actual_value) for m in measurements],
        targets,
        default_target=config.default_target,
        tolerance=settings.adapt.diff_threshold,
    )

    reward, _ = get_or_create(db, RewardScore, defaults={"overall_score": overall}, call_id=call.id)
    reward.overall_score = overall
    reward.parameter_diffs = diffs
    reward.computed_at = utcnow()
    db.flush()
    logger.info(f"REWARD call={call.id} overall={overall:.3f} parameters={len(diffs)}")
    return {
        "overall_score": overall,
        "parameters": len(diffs),
        "defaulted_targets": sorted(d["parameter_id"] for d in diffs if d["parameter_id"] not in targets),
    }
