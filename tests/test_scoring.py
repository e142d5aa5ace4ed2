from __future__ import annotations

import pytest
from sqlalchemy import select

from callwise_api.config import PipelineSettings, SettingsSnapshot
from callwise_api.models import CallerPersonality, CallScore
from callwise_api.services.errors import ConfigMissingError
from callwise_api.services.scoring import aggregate_personality, run_measure, upsert_call_score

SETTINGS = SettingsSnapshot()


def _scores(db, call_id):
    return db.scalars(select(CallScore).where(CallScore.call_id == call_id).order_by(CallScore.parameter_id)).all()


def test_measure_without_specs_reports_missing_config(db, make_caller, make_call, offline_client) -> None:
    call = make_call(make_caller(), "hello there")
    with pytest.raises(ConfigMissingError):
        run_measure(db, call=call, client=offline_client, settings=SETTINGS)


def test_rerunning_measure_keeps_one_row_per_parameter(db, make_caller, make_call, make_parameter, make_spec, offline_client) -> None:
    make_parameter("PERS-OPENNESS", "Openness")
    make_parameter("PERS-AGREEABLENESS", "Agreeableness")
    make_spec(
        "caller-traits",
        "MEASURE",
        [{"parameter_id": "PERS-OPENNESS"}, {"parameter_id": "PERS-AGREEABLENESS"}],
    )
    call = make_call(make_caller(), "That is so interesting, tell me more. Thank you, sounds good.")

    first = run_measure(db, call=call, client=offline_client, settings=SETTINGS)
    second = run_measure(db, call=call, client=offline_client, settings=SETTINGS)

    assert first["scores_created"] == 2
    assert second["scores_created"] == 2
    rows = _scores(db, call.id)
    assert [r.parameter_id for r in rows] == ["PERS-AGREEABLENESS", "PERS-OPENNESS"]
    assert all(r.scored_by == "mock_v1" for r in rows)
    openness = next(r for r in rows if r.parameter_id == "PERS-OPENNESS")
    assert openness.score == pytest.approx(0.8)


def test_higher_priority_spec_wins_shared_parameter(db, make_caller, make_call, make_parameter, make_spec, fake_client) -> None:
    make_parameter("P1", "Engagement")
    low = make_spec("engagement-low", "MEASURE", [{"parameter_id": "P1"}], priority=1)
    high = make_spec("engagement-high", "MEASURE", [{"parameter_id": "P1"}], priority=5)
    call = make_call(make_caller(), "Caller: I am engaged.")

    def reply(prompt: str) -> str:
        return '{"score": 0.9, "confidence": 0.8, "evidence": ["engaged"], "reasoning": "clear"}'

    result = run_measure(db, call=call, client=fake_client(reply), settings=SETTINGS)
    assert result["specs_used"] == ["engagement-low", "engagement-high"]
    row = _scores(db, call.id)[0]
    assert row.analysis_spec_id == high.id
    assert row.analysis_spec_id != low.id
    assert row.score == pytest.approx(0.9)
    assert row.scored_by == "llm_v1"


def test_malformed_completion_falls_back_without_blocking_siblings(db, make_caller, make_call, make_parameter, make_spec, fake_client) -> None:
    make_parameter("GOOD", "Good")
    make_parameter("BAD", "Bad")
    make_spec("mixed", "MEASURE", [{"parameter_id": "GOOD"}, {"parameter_id": "BAD"}])
    call = make_call(make_caller(), "Caller: some words here.")

    def reply(prompt: str) -> str:
        if "PARAMETER: Bad" in prompt:
            return "I cannot answer in JSON today"
        return '```json\n{"score": 0.25, "confidence": 0.9}\n```'

    result = run_measure(db, call=call, client=fake_client(reply), settings=SETTINGS)
    assert result["scores_created"] == 2
    assert result["fallbacks"] == 1
    rows = {r.parameter_id: r for r in _scores(db, call.id)}
    assert rows["GOOD"].score == pytest.approx(0.25)
    assert rows["BAD"].score == pytest.approx(0.5)
    assert rows["BAD"].evidence == ["[completion failed: non_json_response]"]


def test_transport_errors_are_retried_then_defaulted(db, make_caller, make_call, make_parameter, make_spec, fake_client) -> None:
    make_parameter("P1", "Patience")
    make_spec("patience", "MEASURE", [{"parameter_id": "P1"}])
    call = make_call(make_caller(), "Caller: hi.")
    client = fake_client(error=TimeoutError("deadline exceeded"), max_retries=1)

    run_measure(db, call=call, client=client, settings=SETTINGS)

    assert len(client.prompts) == 2
    row = _scores(db, call.id)[0]
    assert row.score == pytest.approx(0.5)
    assert row.evidence[0].startswith("[completion failed: request_error:")


def test_measure_prompt_truncates_with_transcript_limit_setting(db, make_caller, make_call, make_parameter, make_spec, fake_client) -> None:
    make_parameter("P1", "Patience")
    make_spec("patience", "MEASURE", [{"parameter_id": "P1"}])
    call = make_call(make_caller(), "Caller: " + "steady and calm " * 30 + "TAIL-MARKER")
    client = fake_client('{"score": 0.6, "confidence": 0.7}')

    run_measure(db, call=call, client=client, settings=SETTINGS)
    run_measure(db, call=call, client=client, settings=SettingsSnapshot(pipeline=PipelineSettings(transcript_limit_chars=200)))

    assert "TAIL-MARKER" in client.prompts[0]
    assert "TAIL-MARKER" not in client.prompts[1]

def test_personality_aggregation_decays_older_calls(db, make_caller, make_call) -> None:
    caller = make_caller()
    old = make_call(caller, days_ago=30)
    recent = make_call(caller, days_ago=0)
    for call, value in ((old, 0.2), (recent, 0.8)):
        upsert_call_score(
            db,
            call=call,
            parameter_id="PERS-OPENNESS",
            score=value,
            confidence=1.0,
            evidence=[],
            reasoning=None,
            spec_id=None,
            scored_by="mock_v1",
        )
    db.flush()

    personality = aggregate_personality(db, caller.id, half_life_days=30)

    assert isinstance(personality, CallerPersonality)
    # The 30-day-old call carries half the weight of today's call.
    assert personality.openness == pytest.approx((0.2 * 0.5 + 0.8 * 1.0) / 1.5, abs=1e-3)
    assert personality.extraversion is None
    assert personality.calls_used == 2
    assert personality.confidence_score == pytest.approx(0.2)


def test_personality_aggregation_without_scores(db, make_caller) -> None:
    assert aggregate_personality(db, make_caller().id, half_life_days=30) is None
