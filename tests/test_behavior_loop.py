from __future__ import annotations

import pytest
from sqlalchemy import select

from callwise_api.config import AdaptSettings, SettingsSnapshot
from callwise_api.models import BehaviorMeasurement, BehaviorTarget, CallScore, RewardScore
from callwise_api.services.adaptation import adjust_targets, run_adapt, track_deltas
from callwise_api.services.errors import PipelineError
from callwise_api.services.measure_agent import agent_text, heuristic_measure, run_measure_agent
from callwise_api.services.reward import compute_reward, run_reward
from callwise_api.services.scoring import upsert_call_score

SETTINGS = SettingsSnapshot()

LONG_TRANSCRIPT = "\n".join(
    [
        "Agent: Thank you for calling, I'm happy to help you today.",
        "Caller: My order arrived broken and I am really frustrated about the whole thing.",
        "Agent: I understand, that sounds difficult. Can you tell me the order number please?",
        "Caller: It is 4471 and I already waited two weeks for this package to arrive here.",
        "Agent: It sounds like the wait made this worse. I will send a replacement today. Anything else?",
        "Caller: No that is all, thanks for sorting it out so quickly for me.",
    ]
)


def _score(db, call, parameter_id, value):
    upsert_call_score(
        db,
        call=call,
        parameter_id=parameter_id,
        score=value,
        confidence=0.8,
        evidence=[],
        reasoning=None,
        spec_id=None,
        scored_by="mock_v1",
    )
    db.flush()


def test_agent_text_keeps_agent_turns_only() -> None:
    text = agent_text("Agent: Hello there.\nCaller: Hi.\nAssistant: How can I help?")
    assert text == "Hello there.\nHow can I help?"
    assert agent_text("no labels at all") == "no labels at all"


def test_heuristics_score_expected_direction() -> None:
    warmth, evidence = heuristic_measure("warmth", "Thank you! Happy to help, please hold.")
    assert warmth == pytest.approx(0.3)
    assert "thank you" in evidence
    questions, _ = heuristic_measure("question_asking", "What happened? When? I see.")
    assert questions == pytest.approx(1.0)
    short, _ = heuristic_measure("directness", "Yes. Done. Sent it.")
    assert short == pytest.approx(0.9)


def test_measure_agent_skips_short_transcripts(db, make_caller, make_call, make_target, offline_client) -> None:
    make_target("BEH-WARMTH", 0.6)
    call = make_call(make_caller(), "Agent: Hi. Caller: Bye.")

    result = run_measure_agent(db, call=call, client=offline_client, settings=SETTINGS)

    assert result["skipped"] == "transcript_too_short"
    assert db.scalars(select(BehaviorMeasurement)).all() == []


def test_measure_agent_caps_confidence_on_short_transcripts(db, make_caller, make_call, make_parameter, make_target, offline_client) -> None:
    make_parameter("BEH-WARMTH", "Warmth")
    make_target("BEH-WARMTH", 0.6)
    words = "Agent: Thank you for calling, happy to help. " + " ".join(["okay"] * 20)
    call = make_call(make_caller(), words)

    result = run_measure_agent(db, call=call, client=offline_client, settings=SETTINGS)

    assert result["confidence_cap"] == pytest.approx(0.3)
    row = db.scalars(select(BehaviorMeasurement)).one()
    assert row.confidence == pytest.approx(0.3)
    assert row.measured_by == "heuristic_v1"


def test_measure_agent_is_idempotent_per_parameter(db, make_caller, make_call, make_parameter, make_spec, offline_client) -> None:
    make_parameter("BEH-EMPATHY", "Empathy")
    make_parameter("BEH-QUESTIONS", "Question asking")
    make_spec(
        "agent-style",
        "MEASURE_AGENT",
        [{"parameter_id": "BEH-EMPATHY"}, {"parameter_id": "BEH-QUESTIONS"}],
    )
    call = make_call(make_caller(), LONG_TRANSCRIPT)

    run_measure_agent(db, call=call, client=offline_client, settings=SETTINGS)
    result = run_measure_agent(db, call=call, client=offline_client, settings=SETTINGS)

    rows = db.scalars(select(BehaviorMeasurement).where(BehaviorMeasurement.call_id == call.id)).all()
    assert sorted(r.parameter_id for r in rows) == ["BEH-EMPATHY", "BEH-QUESTIONS"]
    assert result["confidence_cap"] == 1.0
    empathy = next(r for r in rows if r.parameter_id == "BEH-EMPATHY")
    assert empathy.actual_value == pytest.approx(0.4)


def test_reward_requires_measurements(db, make_caller, make_call) -> None:
    call = make_call(make_caller(), LONG_TRANSCRIPT)
    with pytest.raises(PipelineError):
        run_reward(db, call=call, settings=SETTINGS)


def test_reward_compares_measurements_with_targets(db, make_caller, make_call, make_target) -> None:
    make_target("Q", 0.5)
    call = make_call(make_caller(), LONG_TRANSCRIPT)
    db.add(BehaviorMeasurement(call_id=call.id, parameter_id="Q", actual_value=0.8, confidence=0.7))
    db.add(BehaviorMeasurement(call_id=call.id, parameter_id="UNTARGETED", actual_value=0.5, confidence=0.7))
    db.flush()

    result = run_reward(db, call=call, settings=SETTINGS)

    assert result["overall_score"] == pytest.approx(0.85)
    assert result["defaulted_targets"] == ["UNTARGETED"]
    reward = db.scalars(select(RewardScore).where(RewardScore.call_id == call.id)).one()
    diffs = {d["parameter_id"]: d for d in reward.parameter_diffs}
    assert diffs["Q"]["diff"] == pytest.approx(0.3)
    assert diffs["Q"]["within_tolerance"] is False


def test_compute_reward_is_one_when_on_target() -> None:
    overall, diffs = compute_reward([("A", 0.4), ("B", 0.9)], {"A": 0.4, "B": 0.9})
    assert overall == pytest.approx(1.0)
    assert all(d["within_tolerance"] for d in diffs)


def test_delta_is_stored_only_for_defined_parameters(db, make_caller, make_call, make_parameter) -> None:
    make_parameter("P")
    make_parameter("P-DELTA")
    caller = make_caller()
    first = make_call(caller, days_ago=1)
    second = make_call(caller)
    _score(db, first, "P", 0.4)
    _score(db, second, "P", 0.7)
    _score(db, first, "R", 0.2)
    _score(db, second, "R", 0.9)

    result = track_deltas(db, call=second, settings=SETTINGS)

    assert result["deltas_created"] == 1
    assert result["skipped_undefined"] == ["R-DELTA"]
    delta = db.scalars(select(CallScore).where(CallScore.call_id == second.id, CallScore.parameter_id == "P-DELTA")).one()
    assert delta.score == pytest.approx(0.65)
    assert delta.scored_by == "adapt_v1"


def test_delta_needs_a_previous_call(db, make_caller, make_call) -> None:
    call = make_call(make_caller())
    assert track_deltas(db, call=call, settings=SETTINGS)["deltas_created"] == 0


def _reward(db, call, diff, *, overall=0.8, target=0.5):
    db.add(
        RewardScore(
            call_id=call.id,
            overall_score=overall,
            parameter_diffs=[{"parameter_id": "Q", "target": target, "actual": target + diff, "diff": diff}],
        )
    )
    db.flush()


def test_large_diff_on_good_call_adjusts_target(db, make_caller, make_call, make_target) -> None:
    target = make_target("Q", 0.5)
    call = make_call(make_caller())
    _reward(db, call, 0.3)

    result = adjust_targets(db, call=call, settings=SETTINGS)

    assert result["targets_adjusted"] == 1
    assert target.target_value == pytest.approx(0.53)
    assert target.source == "LEARNED"


def test_small_diff_leaves_target_alone(db, make_caller, make_call, make_target) -> None:
    target = make_target("Q", 0.5)
    call = make_call(make_caller())
    _reward(db, call, 0.1)

    assert adjust_targets(db, call=call, settings=SETTINGS)["targets_adjusted"] == 0
    assert target.target_value == pytest.approx(0.5)


def test_poor_call_leaves_target_alone(db, make_caller, make_call, make_target) -> None:
    target = make_target("Q", 0.5)
    call = make_call(make_caller())
    _reward(db, call, 0.3, overall=0.6)

    assert adjust_targets(db, call=call, settings=SETTINGS)["reason"] == "reward_below_threshold"
    assert target.target_value == pytest.approx(0.5)


def test_adjusted_target_is_clamped(db, make_caller, make_call, make_target) -> None:
    target = make_target("Q", 0.5)
    call = make_call(make_caller())
    _reward(db, call, 0.4)
    settings = SettingsSnapshot(adapt=AdaptSettings(learning_rate=0.5, target_max=0.6))

    result = adjust_targets(db, call=call, settings=settings)

    assert target.target_value == pytest.approx(0.6)
    assert result["adjustments"][0]["clamped"] is True


def test_adapt_runs_both_parts(db, make_caller, make_call, make_target) -> None:
    make_target("Q", 0.5)
    call = make_call(make_caller())
    _reward(db, call, 0.3)

    result = run_adapt(db, call=call, settings=SETTINGS)

    assert result["deltas"]["reason"] == "no_previous_call"
    assert result["targets"]["targets_adjusted"] == 1
    assert db.scalars(select(BehaviorTarget)).one().target_value == pytest.approx(0.53)
