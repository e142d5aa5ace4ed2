from __future__ import annotations

import json
import logging
import os
from dataclasses import dataclass, field, fields
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from .models import SystemSetting

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PipelineSettings:
    min_transcript_words: int = 20
    short_transcript_threshold_words: int = 50
    short_transcript_confidence_cap: float = 0.3
    max_retries: int = 2
    mock_mode: bool = False
    max_workers: int = 4
    personality_decay_half_life_days: float = 30.0
    transcript_limit_chars: int = 4000


@dataclass(frozen=True)
class MemorySettings:
    confidence_threshold: float = 0.5
    summary_recent_limit: int = 10
    summary_top_limit: int = 5


@dataclass(frozen=True)
class AdaptSettings:
    diff_threshold: float = 0.2
    reward_threshold: float = 0.7
    learning_rate: float = 0.1
    target_min: float = 0.0
    target_max: float = 1.0
    delta_confidence: float = 0.9


@dataclass(frozen=True)
class TrustSettings:
    weight_l5_regulatory: float = 1.0
    weight_l4_accredited: float = 0.95
    weight_l3_published: float = 0.80
    weight_l2_expert: float = 0.60
    weight_l1_ai_assisted: float = 0.30
    weight_l0_unverified: float = 0.05
    certification_min_weight: float = 0.80


@dataclass(frozen=True)
class SettingsSnapshot:
    pipeline: PipelineSettings = field(default_factory=PipelineSettings)
    memory: MemorySettings = field(default_factory=MemorySettings)
    adapt: AdaptSettings = field(default_factory=AdaptSettings)
    trust: TrustSettings = field(default_factory=TrustSettings)


# Storage key for every settings field. Keys are stable across releases; field names are not.
SETTING_KEYS: dict[type, dict[str, str]] = {
    PipelineSettings: {
        "min_transcript_words": "pipeline.min_transcript_words",
        "short_transcript_threshold_words": "pipeline.short_transcript_threshold_words",
        "short_transcript_confidence_cap": "pipeline.short_transcript_confidence_cap",
        "max_retries": "pipeline.max_retries",
        "mock_mode": "pipeline.mock_mode",
        "max_workers": "pipeline.max_workers",
        "personality_decay_half_life_days": "scoring.personality_decay_half_life_days",
        "transcript_limit_chars": "scoring.transcript_limit_chars",
    },
    MemorySettings: {
        "confidence_threshold": "memory.confidence_threshold",
        "summary_recent_limit": "memory.summary_recent_limit",
        "summary_top_limit": "memory.summary_top_limit",
    },
    AdaptSettings: {
        "diff_threshold": "adapt.diff_threshold",
        "reward_threshold": "adapt.reward_threshold",
        "learning_rate": "adapt.learning_rate",
        "target_min": "adapt.target_min",
        "target_max": "adapt.target_max",
        "delta_confidence": "adapt.delta_confidence",
    },
    TrustSettings: {
        "weight_l5_regulatory": "trust.weight_l5_regulatory",
        "weight_l4_accredited": "trust.weight_l4_accredited",
        "weight_l3_published": "trust.weight_l3_published",
        "weight_l2_expert": "trust.weight_l2_expert",
        "weight_l1_ai_assisted": "trust.weight_l1_ai_assisted",
        "weight_l0_unverified": "trust.weight_l0_unverified",
        "certification_min_weight": "trust.certification_min_weight",
    },
}


def known_setting_keys() -> set[str]:
    return {key for group in SETTING_KEYS.values() for key in group.values()}


def _coerce(raw: Any, default: Any) -> Any:
    if isinstance(default, bool):
        if isinstance(raw, bool):
            return raw
        raise ValueError(f"expected bool, got {raw!r}")
    if isinstance(default, int):
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise ValueError(f"expected int, got {raw!r}")
        return int(raw)
    if isinstance(default, float):
        if isinstance(raw, bool) or not isinstance(raw, (int, float)):
            raise ValueError(f"expected number, got {raw!r}")
        return float(raw)
    return raw


def validate_setting(key: str, value: Any) -> Any:
    """Coerce a value for a known setting key; KeyError for unknown keys, ValueError for bad values."""
    for group_cls, mapping in SETTING_KEYS.items():
        for name, setting_key in mapping.items():
            if setting_key == key:
                return _coerce(value, getattr(group_cls(), name))
    raise KeyError(key)


def _load_group(group_cls: type, stored: dict[str, str]) -> Any:
    defaults = group_cls()
    values: dict[str, Any] = {}
    for f in fields(group_cls):
        key = SETTING_KEYS[group_cls][f.name]
        default = getattr(defaults, f.name)
        raw_text = stored.get(key)
        if raw_text is None:
            values[f.name] = default
            continue
        try:
            values[f.name] = _coerce(json.loads(raw_text), default)
        except (ValueError, TypeError) as exc:
            logger.warning(f"Failed to load setting {key!r}, using default {default!r}: {exc}")
            values[f.name] = default
    return group_cls(**values)


def load_settings(db: Session) -> SettingsSnapshot:
    """
    Read every known setting once and return an immutable snapshot.
    Callers pass the snapshot down instead of re-reading the store mid-computation.
    """
    keys = known_setting_keys()
    rows = db.scalars(select(SystemSetting).where(SystemSetting.key.in_(keys))).all()
    stored = {row.key: row.value for row in rows}
    return SettingsSnapshot(
        pipeline=_load_group(PipelineSettings, stored),
        memory=_load_group(MemorySettings, stored),
        adapt=_load_group(AdaptSettings, stored),
        trust=_load_group(TrustSettings, stored),
    )


@dataclass(frozen=True)
class CompletionConfig:
    engine: str
    model: str
    api_key: str | None
    timeout_seconds: float


def get_completion_config() -> CompletionConfig:
    engine = os.getenv("COMPLETION_ENGINE", "mock").strip().lower()
    model = os.getenv("GEMINI_MODEL", "gemini-3-flash-preview")
    api_key = os.getenv("GEMINI_API_KEY")
    try:
        timeout_seconds = float(os.getenv("COMPLETION_TIMEOUT_SECONDS", "30"))
    except ValueError:
        timeout_seconds = 30.0
    return CompletionConfig(engine=engine, model=model, api_key=api_key, timeout_seconds=timeout_seconds)
