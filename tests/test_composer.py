from __future__ import annotations

import pytest
from sqlalchemy import select

from callwise_api.models import BehaviorTarget, ComposedPrompt
from callwise_api.schemas import ComposeSpecConfig, ConfidenceThresholds, LevelThresholds, TargetLevelThresholds
from callwise_api.services.composer import (
    TEMPLATE_MODEL,
    active_prompt,
    build_structured_prompt,
    classify_value,
    compose_prompt,
    confidence_note,
    target_level,
)
from callwise_api.services.curriculum import update_progress
from callwise_api.services.errors import NotFoundError
from callwise_api.services.memory_extract import MemoryCandidate, store_memory
from callwise_api.services.spec_registry import ContractRegistry


@pytest.fixture
def registry(db) -> ContractRegistry:
    return ContractRegistry.load(db)


def _remember(db, caller, key, value, confidence, category="FACT"):
    store_memory(
        db,
        caller_id=caller.id,
        call_id=None,
        candidate=MemoryCandidate(category=category, key=key, value=value, confidence=confidence, evidence=None, expires_in_days=None),
        extracted_by="mock_v1",
        spec_slug=None,
    )


def test_classification_is_monotonic() -> None:
    thresholds = LevelThresholds()
    order = {"LOW": 0, "MODERATE": 1, "HIGH": 2}
    levels = [order[classify_value(v / 20, thresholds)] for v in range(21)]
    assert levels == sorted(levels)
    assert levels[0] == 0 and levels[-1] == 2


def test_changing_thresholds_moves_classification() -> None:
    assert classify_value(0.6, LevelThresholds()) == "MODERATE"
    assert classify_value(0.6, LevelThresholds(high=0.55)) == "HIGH"
    assert classify_value(0.35, LevelThresholds()) == "LOW"


def test_target_levels_and_confidence_notes() -> None:
    levels = TargetLevelThresholds()
    assert [target_level(v, levels) for v in (0.85, 0.6, 0.5, 0.25, 0.1)] == [
        "high",
        "moderate-high",
        "balanced",
        "moderate-low",
        "low",
    ]
    notes = ConfidenceThresholds()
    assert confidence_note(0.2, notes) == "still learning"
    assert confidence_note(0.5, notes) == ""
    assert confidence_note(0.9, notes) == "well established"


def test_memories_are_deduplicated_by_normalized_key(db, registry, make_caller) -> None:
    caller = make_caller("Jordan")
    _remember(db, caller, "city", "Boston", 0.6)
    _remember(db, caller, "location", "Denver", 0.9)
    _remember(db, caller, "coffee", "black", 0.7, category="PREFERENCE")

    payload = build_structured_prompt(db, caller=caller, config=ComposeSpecConfig(), registry=registry)

    assert payload["memories"]["FACT"] == [{"key": "location", "value": "Denver", "confidence": 0.9}]
    assert list(payload["memories"]) == ["FACT", "PREFERENCE"]
    assert payload["personality"] is None


def test_caller_targets_override_system_targets(db, registry, make_caller, make_parameter, make_target) -> None:
    caller = make_caller()
    make_parameter("BEH-WARMTH", "Warmth", domain_group="tone")
    make_parameter("BEH-PACE", "Pace")
    make_target("BEH-WARMTH", 0.3)
    make_target("BEH-PACE", 0.5)
    db.add(BehaviorTarget(scope="CALLER", scope_ref=caller.id, parameter_id="BEH-WARMTH", target_value=0.9, confidence=0.8))
    db.flush()

    payload = build_structured_prompt(db, caller=caller, config=ComposeSpecConfig(), registry=registry)

    warmth = payload["behavior_targets"]["tone"][0]
    assert (warmth["target"], warmth["scope"], warmth["level"]) == (0.9, "CALLER", "high")
    assert payload["behavior_targets"]["general"][0]["parameter_id"] == "BEH-PACE"


def test_parameter_groups_take_precedence_over_domain_group(db, registry, make_caller, make_parameter, make_target) -> None:
    caller = make_caller()
    make_parameter("BEH-WARMTH", "Warmth", domain_group="tone")
    make_target("BEH-WARMTH", 0.7)
    config = ComposeSpecConfig(parameter_groups={"rapport": ["BEH-WARMTH"]})

    payload = build_structured_prompt(db, caller=caller, config=config, registry=registry)

    assert list(payload["behavior_targets"]) == ["rapport"]


def test_composing_twice_leaves_one_active_prompt(db, registry, make_caller, make_call, offline_client) -> None:
    caller = make_caller("Jordan")
    make_call(caller, "Caller: hello")
    _remember(db, caller, "location", "Boston", 0.8)

    first = compose_prompt(db, caller_id=caller.id, client=offline_client, registry=registry)
    second = compose_prompt(db, caller_id=caller.id, client=offline_client, registry=registry)

    statuses = {p.id: p.status for p in db.scalars(select(ComposedPrompt)).all()}
    assert statuses == {first.id: "superseded", second.id: "active"}
    assert active_prompt(db, caller.id).id == second.id
    assert second.model == TEMPLATE_MODEL
    assert "You are speaking with Jordan." in second.prompt
    assert "- Fact: location: Boston" in second.prompt
    assert "## Recent Interactions" in second.prompt
    assert second.inputs["memories"] == 1


def test_model_written_prompt_records_engine_and_model(db, registry, make_caller, fake_client) -> None:
    caller = make_caller("Jordan")
    client = fake_client("Greet Jordan warmly and ask about Boston.")

    prompt = compose_prompt(db, caller_id=caller.id, client=client, registry=registry, trigger_type="post_call")

    assert prompt.model == "gemini:gemini-test"
    assert prompt.prompt == "Greet Jordan warmly and ask about Boston."
    assert prompt.trigger_type == "post_call"
    assert prompt.inputs["composition"] == "ok"
    assert '"name": "Jordan"' in client.prompts[0]


def test_model_failure_falls_back_to_template(db, registry, make_caller, fake_client) -> None:
    caller = make_caller("Jordan")

    prompt = compose_prompt(db, caller_id=caller.id, client=fake_client(error=RuntimeError("quota")), registry=registry)

    assert prompt.model == TEMPLATE_MODEL
    assert prompt.inputs["composition"].startswith("request_error:")
    assert prompt.prompt.startswith("## Caller Context")


def test_learning_progress_appears_in_template(db, registry, make_caller, make_spec, offline_client) -> None:
    make_spec("food-safety", "CONTENT", config={"modules": [{"id": "m1"}, {"id": "m2", "sort_order": 1}]})
    caller = make_caller()
    update_progress(db, registry, caller_id=caller.id, spec_slug="food-safety", current_module_id="m1", module_mastery={"m1": 0.3})

    prompt = compose_prompt(db, caller_id=caller.id, client=offline_client, registry=registry)

    assert "## Learning Progress" in prompt.prompt
    assert "food-safety: current module m1" in prompt.prompt
    assert "Revisit: m1" in prompt.prompt


def test_learning_state_is_skipped_without_contracts(db, make_caller, make_spec) -> None:
    make_spec("food-safety", "CONTENT", config={"modules": [{"id": "m1"}]})
    caller = make_caller()

    payload = build_structured_prompt(db, caller=caller, config=ComposeSpecConfig(), registry=ContractRegistry({}))

    assert payload["learning"] == []


def test_compose_for_unknown_caller(db, registry, offline_client) -> None:
    with pytest.raises(NotFoundError):
        compose_prompt(db, caller_id="missing", client=offline_client, registry=registry)
