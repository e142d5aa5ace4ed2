from __future__ import annotations

import json

import pytest
from pydantic import ValidationError

from callwise_api.config import (
    CompletionConfig,
    SettingsSnapshot,
    known_setting_keys,
    load_settings,
    validate_setting,
)
from callwise_api.models import AnalysisSpec, SystemSetting
from callwise_api.schemas import ComposeSpecConfig, LearnSpecConfig, parse_spec_config
from callwise_api.services.completion import CompletionClient, extract_json, float_01, map_completions
from callwise_api.services.errors import NotFoundError
from callwise_api.services.spec_registry import compile_spec, get_spec_by_slug, load_active_specs


def _store(db, key, value) -> None:
    db.add(SystemSetting(key=key, value=json.dumps(value)))
    db.flush()


def test_snapshot_defaults_without_stored_settings(db) -> None:
    assert load_settings(db) == SettingsSnapshot()


def test_stored_settings_override_defaults(db) -> None:
    _store(db, "adapt.learning_rate", 0.25)
    _store(db, "pipeline.max_retries", 5)
    _store(db, "pipeline.mock_mode", True)

    settings = load_settings(db)

    assert settings.adapt.learning_rate == 0.25
    assert settings.pipeline.max_retries == 5
    assert settings.pipeline.mock_mode is True
    assert settings.memory.confidence_threshold == 0.5


def test_malformed_stored_values_fall_back_to_defaults(db) -> None:
    db.add(SystemSetting(key="memory.confidence_threshold", value="{broken"))
    _store(db, "pipeline.mock_mode", "yes")
    _store(db, "adapt.diff_threshold", 0.3)

    settings = load_settings(db)

    assert settings.memory.confidence_threshold == 0.5
    assert settings.pipeline.mock_mode is False
    assert settings.adapt.diff_threshold == 0.3


def test_snapshot_ignores_later_writes(db) -> None:
    settings = load_settings(db)
    _store(db, "adapt.learning_rate", 0.9)
    assert settings.adapt.learning_rate == 0.1
    assert load_settings(db).adapt.learning_rate == 0.9


def test_validate_setting() -> None:
    assert validate_setting("pipeline.max_retries", 3.0) == 3
    assert validate_setting("trust.weight_l2_expert", 1) == 1.0
    assert "scoring.personality_decay_half_life_days" in known_setting_keys()
    with pytest.raises(ValueError):
        validate_setting("pipeline.mock_mode", "true")
    with pytest.raises(ValueError):
        validate_setting("adapt.learning_rate", True)
    with pytest.raises(KeyError):
        validate_setting("adapt.unknown", 1)


def test_spec_config_merges_over_type_defaults() -> None:
    config = parse_spec_config("COMPOSE", {"thresholds": {"high": 0.7}, "memories_per_category": 2})
    assert isinstance(config, ComposeSpecConfig)
    assert config.thresholds.high == 0.7
    assert config.thresholds.low == 0.35
    assert config.memories_per_category == 2
    assert config.recent_calls_limit == 5

    learn = parse_spec_config("LEARN", None)
    assert isinstance(learn, LearnSpecConfig)
    assert learn.confidence_threshold is None


def test_spec_config_type_comes_from_the_spec() -> None:
    config = parse_spec_config("REWARD", {"output_type": "COMPOSE", "default_target": 0.4})
    assert config.output_type == "REWARD"
    assert config.default_target == 0.4


def test_invalid_spec_config_is_rejected() -> None:
    with pytest.raises(ValidationError):
        parse_spec_config("COMPOSE", {"memories_per_category": 0})
    with pytest.raises(ValidationError):
        parse_spec_config("UNKNOWN", {})


def test_specs_load_in_priority_then_slug_order(db, make_spec) -> None:
    make_spec("zeta", "MEASURE", priority=1)
    make_spec("alpha", "MEASURE", priority=1)
    make_spec("first", "MEASURE", priority=0)
    make_spec("learn-only", "LEARN")

    assert [s.slug for s in load_active_specs(db, "MEASURE")] == ["first", "alpha", "zeta"]


def test_dirty_inactive_and_broken_specs_are_not_loaded(db, make_spec) -> None:
    make_spec("ok", "COMPOSE")
    make_spec("dirty", "COMPOSE").is_dirty = True
    make_spec("off", "COMPOSE").is_active = False
    make_spec("broken", "COMPOSE", config={"memories_limit": -1})
    db.flush()

    assert [s.slug for s in load_active_specs(db, "COMPOSE")] == ["ok"]


def test_compile_reports_unknown_parameters(db, make_spec, make_parameter) -> None:
    spec = make_spec("needs-params", "MEASURE", [{"parameter_id": "NOPE"}])
    spec.is_dirty = True
    spec.status = "DRAFT"

    errors = compile_spec(db, spec)

    assert errors and "unknown parameter NOPE" in errors[0]
    assert spec.is_dirty is True

    make_parameter("NOPE")
    assert compile_spec(db, spec) == []
    assert (spec.is_dirty, spec.status) == (False, "COMPILED")


def test_compile_checks_learn_categories(db, make_spec) -> None:
    spec = make_spec("bad-learn", "LEARN", [{"learn_category": "GOSSIP"}, {"description": "no category"}])
    errors = compile_spec(db, spec)
    assert len(errors) == 2


def test_unknown_spec_slug(db) -> None:
    with pytest.raises(NotFoundError):
        get_spec_by_slug(db, "nothing-here")
    assert db.query(AnalysisSpec).count() == 0


def test_client_falls_back_to_mock_with_reason() -> None:
    def cfg(**overrides) -> CompletionConfig:
        values = {"engine": "gemini", "model": "gemini-2.5-flash", "api_key": "k", "timeout_seconds": 5.0}
        values.update(overrides)
        return CompletionConfig(**values)

    assert CompletionClient.from_config(cfg(api_key=None)).fallback_reason == "missing_api_key"
    assert CompletionClient.from_config(cfg(model="gpt-4o")).fallback_reason == "invalid_model"
    assert CompletionClient.from_config(cfg(engine="openai")).fallback_reason == "unsupported_engine:openai"
    assert CompletionClient.from_config(cfg(), force_mock=True).fallback_reason == "mock_mode"
    plain = CompletionClient.from_config(cfg(engine="mock"))
    assert plain.offline and plain.fallback_reason is None


def test_extract_json_handles_fences_and_prose() -> None:
    assert extract_json('```json\n{"score": 0.4}\n```') == {"score": 0.4}
    assert extract_json('Sure! {"score": 0.7} hope that helps') == {"score": 0.7}
    assert extract_json("[1, 2]") is None
    assert extract_json("no json") is None


def test_float_01_clamps_and_rejects() -> None:
    assert float_01("0.42") == 0.42
    assert float_01(3) == 1.0
    assert float_01(-1) == 0.0
    assert float_01(float("nan")) is None
    assert float_01("high") is None


def test_map_completions_keeps_input_order() -> None:
    assert map_completions(lambda n: n * 2, [3, 1, 2], max_workers=3) == [6, 2, 4]
    assert map_completions(lambda n: n, [], max_workers=3) == []


def test_complete_reraises_last_transport_error(fake_client) -> None:
    client = fake_client(error=ConnectionError("upstream down"), max_retries=1)

    with pytest.raises(ConnectionError, match="upstream down"):
        client.complete(system_prompt="system", user_prompt="user")
    assert len(client.prompts) == 2

    client.max_retries = -1
    with pytest.raises(RuntimeError):
        client.complete(system_prompt="system", user_prompt="user")
    assert len(client.prompts) == 2
