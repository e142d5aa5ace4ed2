from __future__ import annotations

import logging
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy import select
from sqlalchemy.orm import Session

from ..config import TrustSettings
from ..models import AnalysisSpec
from ..schemas import ContentSpecConfig, CurriculumModule, ModuleTrustOut, TrustWeightedProgressOut
from .errors import ConfigMissingError
from .spec_registry import CONTENT_TRUST_V1, CURRICULUM_PROGRESS_V1, ContractRegistry, get_spec_by_slug
from .store import (
    attributes_with_prefix,
    delete_attributes_with_prefix,
    get_attribute,
    set_attribute,
    utcnow,
)

logger = logging.getLogger(__name__)

# Highest provenance first.
TRUST_LEVELS = (
    "REGULATORY_STANDARD",
    "ACCREDITED_MATERIAL",
    "PUBLISHED_REFERENCE",
    "EXPERT_CURATED",
    "AI_ASSISTED",
    "UNVERIFIED",
)


def trust_weights(trust: TrustSettings) -> dict[str, float]:
    return {
        "REGULATORY_STANDARD": trust.weight_l5_regulatory,
        "ACCREDITED_MATERIAL": trust.weight_l4_accredited,
        "PUBLISHED_REFERENCE": trust.weight_l3_published,
        "EXPERT_CURATED": trust.weight_l2_expert,
        "AI_ASSISTED": trust.weight_l1_ai_assisted,
        "UNVERIFIED": trust.weight_l0_unverified,
    }


@dataclass
class CurriculumProgress:
    spec_slug: str
    current_module_id: str | None = None
    module_mastery: dict[str, float] = field(default_factory=dict)
    last_accessed_at: str | None = None

    def as_dict(self) -> dict[str, Any]:
        return {
            "spec_slug": self.spec_slug,
            "current_module_id": self.current_module_id,
            "module_mastery": dict(self.module_mastery),
            "last_accessed_at": self.last_accessed_at,
        }


def content_config(spec: AnalysisSpec) -> ContentSpecConfig:
    if spec.output_type != "CONTENT":
        raise ConfigMissingError(f"Spec {spec.slug} is {spec.output_type}, not a CONTENT spec")
    return ContentSpecConfig.model_validate({**(spec.config or {}), "output_type": "CONTENT"})


def content_modules(db: Session, spec_slug: str) -> list[CurriculumModule]:
    config = content_config(get_spec_by_slug(db, spec_slug))
    return sorted(config.modules, key=lambda m: (m.sort_order, m.id))


def _scope(registry: ContractRegistry) -> str:
    return registry.scope(CURRICULUM_PROGRESS_V1)


def get_progress(db: Session, registry: ContractRegistry, *, caller_id: str, spec_slug: str) -> CurriculumProgress:
    scope = _scope(registry)
    current = get_attribute(
        db,
        caller_id=caller_id,
        scope=scope,
        key=registry.key(CURRICULUM_PROGRESS_V1, "currentModule", spec_slug=spec_slug),
    )
    last_accessed = get_attribute(
        db,
        caller_id=caller_id,
        scope=scope,
        key=registry.key(CURRICULUM_PROGRESS_V1, "lastAccessed", spec_slug=spec_slug),
    )
    prefix = registry.prefix(CURRICULUM_PROGRESS_V1, "mastery", spec_slug=spec_slug)
    rows = attributes_with_prefix(db, caller_id=caller_id, scope=scope, prefix=prefix)
    mastery = {key[len(prefix):]: float(value) for key, value in rows.items() if value is not None}
    return CurriculumProgress(
        spec_slug=spec_slug,
        current_module_id=current,
        module_mastery=dict(sorted(mastery.items())),
        last_accessed_at=last_accessed,
    )


def update_progress(
    db: Session,
    registry: ContractRegistry,
    *,
    caller_id: str,
    spec_slug: str,
    current_module_id: str | None = None,
    module_mastery: dict[str, float] | None = None,
) -> CurriculumProgress:
    scope = _scope(registry)
    if current_module_id is not None:
        set_attribute(
            db,
            caller_id=caller_id,
            scope=scope,
            key=registry.key(CURRICULUM_PROGRESS_V1, "currentModule", spec_slug=spec_slug),
            value=current_module_id,
            source_spec_slug=spec_slug,
        )
    for module_id, mastery in (module_mastery or {}).items():
        set_attribute(
            db,
            caller_id=caller_id,
            scope=scope,
            key=registry.key(CURRICULUM_PROGRESS_V1, "mastery", spec_slug=spec_slug, module_id=module_id),
            value=round(max(0.0, min(1.0, float(mastery))), 4),
            source_spec_slug=spec_slug,
        )
    set_attribute(
        db,
        caller_id=caller_id,
        scope=scope,
        key=registry.key(CURRICULUM_PROGRESS_V1, "lastAccessed", spec_slug=spec_slug),
        value=utcnow().isoformat(),
        source_spec_slug=spec_slug,
    )
    return get_progress(db, registry, caller_id=caller_id, spec_slug=spec_slug)


def complete_module(
    db: Session,
    registry: ContractRegistry,
    *,
    caller_id: str,
    spec_slug: str,
    module_id: str,
    next_module_id: str | None = None,
) -> CurriculumProgress:
    logger.info(f"Caller {caller_id} completed module {module_id} of {spec_slug}")
    return update_progress(
        db,
        registry,
        caller_id=caller_id,
        spec_slug=spec_slug,
        current_module_id=next_module_id,
        module_mastery={module_id: 1.0},
    )


def reset_progress(db: Session, registry: ContractRegistry, *, caller_id: str, spec_slug: str) -> int:
    removed = delete_attributes_with_prefix(
        db,
        caller_id=caller_id,
        scope=_scope(registry),
        prefix=registry.namespace(CURRICULUM_PROGRESS_V1, spec_slug=spec_slug),
    )
    logger.info(f"Reset curriculum {spec_slug} for caller {caller_id}: {removed} rows removed")
    return removed


def get_active_curricula(db: Session, registry: ContractRegistry, *, caller_id: str) -> list[str]:
    """Slugs of CONTENT specs the caller has a current module in."""
    slugs = db.scalars(
        select(AnalysisSpec.slug)
        .where(AnalysisSpec.output_type == "CONTENT", AnalysisSpec.is_active.is_(True))
        .order_by(AnalysisSpec.slug)
    ).all()
    scope = _scope(registry)
    active: list[str] = []
    for slug in slugs:
        key = registry.key(CURRICULUM_PROGRESS_V1, "currentModule", spec_slug=slug)
        if get_attribute(db, caller_id=caller_id, scope=scope, key=key) is not None:
            active.append(slug)
    return active


def track_after_call(db: Session, registry: ContractRegistry, *, caller_id: str, spec_slug: str) -> dict[str, Any]:
    modules = content_modules(db, spec_slug)
    if not modules:
        return {"spec_slug": spec_slug, "action": "no_modules"}
    progress = get_progress(db, registry, caller_id=caller_id, spec_slug=spec_slug)
    by_id = {m.id: m for m in modules}

    current = by_id.get(progress.current_module_id or "")
    if current is None:
        first = modules[0]
        update_progress(db, registry, caller_id=caller_id, spec_slug=spec_slug, current_module_id=first.id)
        return {"spec_slug": spec_slug, "action": "assigned", "module_id": first.id}

    mastery = progress.module_mastery.get(current.id, 0.0)
    if mastery < current.mastery_threshold:
        update_progress(db, registry, caller_id=caller_id, spec_slug=spec_slug)
        return {"spec_slug": spec_slug, "action": "in_progress", "module_id": current.id, "mastery": mastery}

    position = modules.index(current)
    next_module = modules[position + 1] if position + 1 < len(modules) else None
    if next_module is None:
        update_progress(db, registry, caller_id=caller_id, spec_slug=spec_slug)
        return {"spec_slug": spec_slug, "action": "curriculum_complete", "module_id": current.id}
    update_progress(db, registry, caller_id=caller_id, spec_slug=spec_slug, current_module_id=next_module.id)
    return {
        "spec_slug": spec_slug,
        "action": "advanced",
        "from_module_id": current.id,
        "module_id": next_module.id,
    }


# --- Trust-weighted progress ---


def module_trust_level(module: CurriculumModule, weights: dict[str, float]) -> str:
    """Highest-weight source reference wins; no references means UNVERIFIED."""
    levels = [ref.trust_level.upper() for ref in module.source_refs if ref.trust_level.upper() in weights]
    if not levels:
        return "UNVERIFIED"
    return max(levels, key=lambda level: weights[level])


def compute_trust_weighted_progress(
    module_mastery: dict[str, float],
    module_levels: dict[str, str],
    trust: TrustSettings,
) -> TrustWeightedProgressOut:
    weights = trust_weights(trust)
    breakdown: list[ModuleTrustOut] = []
    all_num = all_den = cert_num = cert_den = 0.0
    for module_id, mastery in sorted(module_mastery.items()):
        level = module_levels.get(module_id, "UNVERIFIED")
        weight = weights.get(level, trust.weight_l0_unverified)
        certified = weight >= trust.certification_min_weight
        all_num += mastery * weight
        all_den += weight
        if certified:
            cert_num += mastery * weight
            cert_den += weight
        breakdown.append(
            ModuleTrustOut(
                module_id=module_id,
                trust_level=level,
                weight=weight,
                mastery=mastery,
                counts_toward_certification=certified,
            )
        )
    certified_mastery = round(cert_num / cert_den, 4) if cert_den > 0 else 0.0
    supplementary_mastery = round(all_num / all_den, 4) if all_den > 0 else 0.0
    return TrustWeightedProgressOut(
        certified_mastery=certified_mastery,
        supplementary_mastery=supplementary_mastery,
        certification_readiness=certified_mastery,
        module_breakdown=breakdown,
    )


def store_trust_weighted_progress(
    db: Session,
    registry: ContractRegistry,
    *,
    caller_id: str,
    spec_slug: str,
    progress: TrustWeightedProgressOut,
) -> None:
    scope = registry.scope(CONTENT_TRUST_V1)
    values = {
        "certifiedMastery": progress.certified_mastery,
        "supplementaryMastery": progress.supplementary_mastery,
        "certificationReadiness": progress.certification_readiness,
    }
    for key_name, value in values.items():
        set_attribute(
            db,
            caller_id=caller_id,
            scope=scope,
            key=registry.key(CONTENT_TRUST_V1, key_name, spec_slug=spec_slug),
            value=value,
            source_spec_slug=spec_slug,
        )


def trust_progress_for(
    db: Session,
    registry: ContractRegistry,
    trust: TrustSettings,
    *,
    caller_id: str,
    spec_slug: str,
) -> TrustWeightedProgressOut:
    weights = trust_weights(trust)
    levels = {m.id: module_trust_level(m, weights) for m in content_modules(db, spec_slug)}
    progress = get_progress(db, registry, caller_id=caller_id, spec_slug=spec_slug)
    result = compute_trust_weighted_progress(progress.module_mastery, levels, trust)
    store_trust_weighted_progress(db, registry, caller_id=caller_id, spec_slug=spec_slug, progress=result)
    return result
