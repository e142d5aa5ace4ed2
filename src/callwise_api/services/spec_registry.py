from __future__ import annotations

import datetime as dt
import json
import logging
import re
from dataclasses import dataclass
from typing import Any

from pydantic import ValidationError
from sqlalchemy import select
from sqlalchemy.orm import Session, selectinload

from ..models import AnalysisSpec, AnalysisTrigger, Parameter, SystemSetting
from ..schemas import DataContract, parse_spec_config
from .errors import ContractMissingError, NotFoundError

logger = logging.getLogger(__name__)

CONTRACT_PREFIX = "contract:"
_PLACEHOLDER = re.compile(r"\{(\w+)\}")

MEMORY_CATEGORIES = {"FACT", "PREFERENCE", "EVENT", "TOPIC", "RELATIONSHIP", "CONTEXT"}

CURRICULUM_PROGRESS_V1 = "CURRICULUM_PROGRESS_V1"
EXAM_READINESS_V1 = "EXAM_READINESS_V1"
CONTENT_TRUST_V1 = "CONTENT_TRUST_V1"

DEFAULT_CONTRACTS: list[dict[str, Any]] = [
    {
        "contractId": CURRICULUM_PROGRESS_V1,
        "version": "1.0",
        "description": "Per-caller curriculum position and module mastery",
        "storage": {
            "keyPattern": "curriculum:{specSlug}:{key}",
            "keys": {
                "currentModule": "current_module",
                "mastery": "mastery:{moduleId}",
                "lastAccessed": "last_accessed",
            },
        },
        "thresholds": {"masteryComplete": 0.8, "masteryMinimum": 0.4},
        "metadata": {"scope": "CURRICULUM"},
    },
    {
        "contractId": EXAM_READINESS_V1,
        "version": "1.0",
        "description": "Exam readiness, formative assessment and attempt history",
        "storage": {
            "keyPattern": "exam_readiness:{specSlug}:{key}",
            "keys": {
                "readinessScore": "readiness_score",
                "formativeScore": "formative_score",
                "attemptCount": "attempt_count",
                "lastAttemptPassed": "last_attempt_passed",
                "bestScore": "best_score",
                "weakModules": "weak_modules",
                "lastAssessedAt": "last_assessed_at",
            },
        },
        "thresholds": {
            "notReadyMax": 0.50,
            "borderlineMax": 0.66,
            "readyMax": 0.80,
            "passMarkDefault": 0.66,
            "formativePassThreshold": 0.66,
            "masteryWeight": 0.6,
            "formativeWeight": 0.4,
        },
        "metadata": {"scope": "EXAM_READINESS"},
    },
    {
        "contractId": CONTENT_TRUST_V1,
        "version": "1.0",
        "description": "Trust-weighted mastery aggregates per content spec",
        "storage": {
            "keyPattern": "trust_progress:{specSlug}:{key}",
            "keys": {
                "certifiedMastery": "certified_mastery",
                "supplementaryMastery": "supplementary_mastery",
                "certificationReadiness": "certification_readiness",
            },
        },
        "metadata": {"scope": "CURRICULUM"},
    },
]


@dataclass(frozen=True)
class StorageKey:
    contract_id: str
    spec_slug: str
    key_name: str
    module_id: str | None = None


def _placeholders(template: str) -> set[str]:
    return set(_PLACEHOLDER.findall(template))


def _validate_contract(contract: DataContract) -> list[str]:
    errors: list[str] = []
    if contract.storage is None:
        return errors
    pattern_fields = _placeholders(contract.storage.key_pattern)
    if pattern_fields != {"specSlug", "key"}:
        errors.append(f"keyPattern must use exactly {{specSlug}} and {{key}}, got {sorted(pattern_fields)}")
    for name, template in contract.storage.keys.items():
        extra = _placeholders(template) - {"moduleId"}
        if extra:
            errors.append(f"key {name} uses unknown placeholders {sorted(extra)}")
    return errors


class ContractRegistry:
    """
    Loaded, validated set of data contracts.
    Built once per computation; storage keys are only produced through StorageKey values.
    """

    def __init__(self, contracts: dict[str, DataContract]):
        self._contracts = dict(contracts)

    @classmethod
    def load(cls, db: Session) -> ContractRegistry:
        rows = db.scalars(
            select(SystemSetting).where(SystemSetting.key.startswith(CONTRACT_PREFIX)).order_by(SystemSetting.key)
        ).all()
        contracts: dict[str, DataContract] = {}
        for row in rows:
            try:
                contract = DataContract.model_validate(json.loads(row.value))
            except (ValueError, ValidationError) as exc:
                logger.error(f"Skipping malformed contract {row.key}: {exc}")
                continue
            errors = _validate_contract(contract)
            if errors:
                logger.error(f"Skipping invalid contract {contract.contract_id}: {'; '.join(errors)}")
                continue
            contracts[contract.contract_id] = contract
        logger.info(f"Loaded {len(contracts)} data contracts")
        return cls(contracts)

    def list_contracts(self) -> list[DataContract]:
        return [self._contracts[k] for k in sorted(self._contracts)]

    def get(self, contract_id: str) -> DataContract:
        contract = self._contracts.get(contract_id)
        if contract is None:
            raise ContractMissingError(f"Contract {contract_id} is not loaded")
        return contract

    def thresholds(self, contract_id: str) -> dict[str, float]:
        return dict(self.get(contract_id).thresholds)

    def storage_key(
        self,
        contract_id: str,
        key_name: str,
        *,
        spec_slug: str,
        module_id: str | None = None,
    ) -> StorageKey:
        contract = self.get(contract_id)
        if contract.storage is None:
            raise ContractMissingError(f"Contract {contract_id} has no storage section")
        template = contract.storage.keys.get(key_name)
        if template is None:
            raise ContractMissingError(f"Contract {contract_id} does not define storage key {key_name!r}")
        needs_module = "moduleId" in _placeholders(template)
        if needs_module and not module_id:
            raise ValueError(f"Storage key {key_name!r} requires a module id")
        if not needs_module and module_id:
            raise ValueError(f"Storage key {key_name!r} does not take a module id")
        if not spec_slug:
            raise ValueError("spec_slug is required")
        return StorageKey(contract_id=contract_id, spec_slug=spec_slug, key_name=key_name, module_id=module_id)

    def render(self, key: StorageKey) -> str:
        contract = self.get(key.contract_id)
        if contract.storage is None or key.key_name not in contract.storage.keys:
            raise ContractMissingError(f"Contract {key.contract_id} does not define storage key {key.key_name!r}")
        inner = contract.storage.keys[key.key_name]
        if key.module_id is not None:
            inner = inner.replace("{moduleId}", key.module_id)
        return contract.storage.key_pattern.replace("{specSlug}", key.spec_slug).replace("{key}", inner)

    def key(self, contract_id: str, key_name: str, *, spec_slug: str, module_id: str | None = None) -> str:
        return self.render(self.storage_key(contract_id, key_name, spec_slug=spec_slug, module_id=module_id))

    def prefix(self, contract_id: str, key_name: str, *, spec_slug: str) -> str:
        """Rendered key up to the {moduleId} placeholder, for listing per-module rows."""
        contract = self.get(contract_id)
        if contract.storage is None or key_name not in contract.storage.keys:
            raise ContractMissingError(f"Contract {contract_id} does not define storage key {key_name!r}")
        inner = contract.storage.keys[key_name].split("{moduleId}")[0]
        return contract.storage.key_pattern.replace("{specSlug}", spec_slug).replace("{key}", inner)

    def namespace(self, contract_id: str, *, spec_slug: str) -> str:
        """Rendered prefix shared by every key of one spec under a contract."""
        contract = self.get(contract_id)
        if contract.storage is None:
            raise ContractMissingError(f"Contract {contract_id} has no storage section")
        return contract.storage.key_pattern.replace("{specSlug}", spec_slug).split("{key}")[0]

    def scope(self, contract_id: str) -> str:
        return str(self.get(contract_id).metadata.get("scope", "DEFAULT"))


def seed_default_contracts(db: Session) -> int:
    created = 0
    for payload in DEFAULT_CONTRACTS:
        setting_key = f"{CONTRACT_PREFIX}{payload['contractId']}"
        if db.get(SystemSetting, setting_key) is not None:
            continue
        db.add(SystemSetting(key=setting_key, value=json.dumps(payload)))
        created += 1
    db.flush()
    return created


def save_contract(db: Session, contract: DataContract) -> list[str]:
    """Validate and store a contract. Returns validation errors; nothing is written when any exist."""
    errors = _validate_contract(contract)
    if errors:
        return errors
    setting_key = f"{CONTRACT_PREFIX}{contract.contract_id}"
    payload = json.dumps(contract.model_dump(by_alias=True))
    row = db.get(SystemSetting, setting_key)
    if row is None:
        db.add(SystemSetting(key=setting_key, value=payload))
    else:
        row.value = payload
        row.updated_at = dt.datetime.now(dt.timezone.utc)
    db.flush()
    return []


@dataclass(frozen=True)
class LoadedAction:
    id: int
    description: str
    parameter_id: str | None
    learn_category: str | None
    learn_key_prefix: str | None
    learn_key_hint: str | None
    weight: float
    trigger_given: str
    trigger_when: str


@dataclass(frozen=True)
class LoadedSpec:
    id: str
    slug: str
    name: str
    output_type: str
    priority: int
    config: Any
    actions: tuple[LoadedAction, ...]


def _to_loaded(spec: AnalysisSpec) -> LoadedSpec:
    actions: list[LoadedAction] = []
    for trigger in spec.triggers:
        for action in trigger.actions:
            actions.append(
                LoadedAction(
                    id=action.id,
                    description=action.description,
                    parameter_id=action.parameter_id,
                    learn_category=action.learn_category,
                    learn_key_prefix=action.learn_key_prefix,
                    learn_key_hint=action.learn_key_hint,
                    weight=action.weight,
                    trigger_given=trigger.given,
                    trigger_when=trigger.when,
                )
            )
    return LoadedSpec(
        id=spec.id,
        slug=spec.slug,
        name=spec.name,
        output_type=spec.output_type,
        priority=spec.priority,
        config=parse_spec_config(spec.output_type, spec.config),
        actions=tuple(actions),
    )


def load_active_specs(db: Session, output_type: str) -> list[LoadedSpec]:
    """
    Active, compiled specs of one output type.
    Ordered by priority ascending then slug, so when two specs write the same row the
    higher-priority spec is processed last and its value is the one kept.
    """
    specs = db.scalars(
        select(AnalysisSpec)
        .where(
            AnalysisSpec.output_type == output_type,
            AnalysisSpec.is_active.is_(True),
            AnalysisSpec.is_dirty.is_(False),
        )
        .options(selectinload(AnalysisSpec.triggers).selectinload(AnalysisTrigger.actions))
        .order_by(AnalysisSpec.priority.asc(), AnalysisSpec.slug.asc())
    ).all()
    loaded: list[LoadedSpec] = []
    for spec in specs:
        try:
            loaded.append(_to_loaded(spec))
        except ValidationError as exc:
            logger.warning(f"Spec {spec.slug} has invalid config, skipping: {exc.error_count()} errors")
    return loaded


def get_spec_by_slug(db: Session, slug: str) -> AnalysisSpec:
    spec = db.scalars(select(AnalysisSpec).where(AnalysisSpec.slug == slug)).first()
    if spec is None:
        raise NotFoundError(f"Spec {slug} not found")
    return spec


def validate_spec(db: Session, spec: AnalysisSpec) -> list[str]:
    errors: list[str] = []
    try:
        parse_spec_config(spec.output_type, spec.config)
    except ValidationError as exc:
        for err in exc.errors():
            loc = ".".join(str(part) for part in err["loc"])
            errors.append(f"config.{loc}: {err['msg']}")

    for trigger in spec.triggers:
        for action in trigger.actions:
            if spec.output_type in {"MEASURE", "MEASURE_AGENT"}:
                if not action.parameter_id:
                    errors.append(f"action {action.id}: {spec.output_type} actions need a parameter")
                elif db.get(Parameter, action.parameter_id) is None:
                    errors.append(f"action {action.id}: unknown parameter {action.parameter_id}")
            if spec.output_type == "LEARN":
                if not action.learn_category:
                    errors.append(f"action {action.id}: LEARN actions need a learn category")
                elif action.learn_category.upper() not in MEMORY_CATEGORIES:
                    errors.append(f"action {action.id}: unknown learn category {action.learn_category}")
    return errors


def compile_spec(db: Session, spec: AnalysisSpec) -> list[str]:
    """Validate and mark a spec usable. Returns validation errors; the spec stays dirty when any exist."""
    errors = validate_spec(db, spec)
    if errors:
        return errors
    spec.is_dirty = False
    spec.status = "COMPILED"
    spec.compiled_at = dt.datetime.now(dt.timezone.utc)
    return []
