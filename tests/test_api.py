from __future__ import annotations

import pytest
from fastapi.testclient import TestClient
from sqlalchemy import event

from callwise_api.db import SessionLocal, get_db
from callwise_api.main import app
from callwise_api.models import Call
from callwise_api.services.errors import PipelineBusyError
from callwise_api.services.pipeline import PipelineOrchestrator

TRANSCRIPT = "\n".join(
    [
        "Agent: Thank you for calling, I'm happy to help you today. How are things going?",
        "Caller: My name is Alex. I live in Boston and my order arrived broken, which is frustrating.",
        "Agent: I understand, that sounds difficult. Can you tell me the order number please?",
        "Caller: It is 4471. That is interesting, I had never had a problem before with this shop.",
        "Agent: I will send a replacement today and email you the tracking details. Anything else?",
        "Caller: No, that is all. Thank you, sounds good, I appreciate the quick help.",
    ]
)


def _caller(client: TestClient, name: str = "Alex") -> str:
    res = client.post("/v1/callers", json={"name": name})
    assert res.status_code == 201
    return res.json()["id"]


def _completed_call(client: TestClient, caller_id: str, transcript: str = TRANSCRIPT) -> str:
    call = client.post("/v1/calls", json={"caller_id": caller_id})
    assert call.status_code == 201
    done = client.post(f"/v1/calls/{call.json()['id']}/complete", json={"transcript": transcript})
    assert done.status_code == 200
    return call.json()["id"]


def _compiled_spec(client: TestClient, payload: dict) -> dict:
    created = client.post("/v1/specs", json=payload)
    assert created.status_code == 201, created.text
    compiled = client.post(f"/v1/specs/{payload['slug']}/compile")
    assert compiled.status_code == 200, compiled.text
    return compiled.json()


def _configure_pipeline(client: TestClient) -> None:
    for parameter_id, name in (("PERS-OPENNESS", "Openness"), ("BEH-WARMTH", "Warmth")):
        res = client.put(f"/v1/parameters/{parameter_id}", json={"parameter_id": parameter_id, "name": name})
        assert res.status_code == 200
    _compiled_spec(
        client,
        {
            "slug": "caller-traits",
            "name": "Caller traits",
            "output_type": "MEASURE",
            "triggers": [{"given": "a call", "when": "it ends", "then": "score", "actions": [{"parameter_id": "PERS-OPENNESS"}]}],
        },
    )
    _compiled_spec(
        client,
        {
            "slug": "caller-facts",
            "name": "Caller facts",
            "output_type": "LEARN",
            "triggers": [{"actions": [{"description": "Facts", "learn_category": "FACT"}]}],
        },
    )
    assert client.put("/v1/behavior-targets", json={"parameter_id": "BEH-WARMTH", "target_value": 0.5}).status_code == 200


def test_health(client: TestClient) -> None:
    res = client.get("/health")
    assert res.status_code == 200
    assert res.json() == {"ok": True, "service": "callwise-api"}


def test_call_lifecycle_links_calls_in_sequence(client: TestClient) -> None:
    caller_id = _caller(client)

    first = client.post("/v1/calls", json={"caller_id": caller_id})
    assert first.status_code == 201
    assert first.json()["status"] == "IN_PROGRESS"
    assert first.json()["sequence_number"] == 1

    busy = client.post("/v1/calls", json={"caller_id": caller_id})
    assert busy.status_code == 409

    done = client.post(f"/v1/calls/{first.json()['id']}/complete", json={"transcript": "Caller: hi"})
    assert done.status_code == 200
    assert done.json()["call"]["status"] == "COMPLETED"
    assert done.json()["pipeline"] is None
    assert client.post(f"/v1/calls/{first.json()['id']}/complete", json={}).status_code == 409

    second = client.post("/v1/calls", json={"caller_id": caller_id})
    assert second.json()["sequence_number"] == 2
    assert second.json()["previous_call_id"] == first.json()["id"]

    calls = client.get(f"/v1/callers/{caller_id}/calls").json()
    assert [c["sequence_number"] for c in calls] == [1, 2]


def test_unknown_resources_return_404(client: TestClient) -> None:
    assert client.get("/v1/callers/nope").status_code == 404
    assert client.get("/v1/calls/nope").status_code == 404
    assert client.post("/v1/calls", json={"caller_id": "nope"}).status_code == 404
    assert client.get("/v1/specs/nope").status_code == 404

    caller_id = _caller(client)
    assert client.get(f"/v1/callers/{caller_id}/prompts/active").status_code == 404
    assert client.get(f"/v1/callers/{caller_id}/personality").status_code == 404

    res = client.post("/v1/calls/nope/pipeline", json={"caller_id": caller_id})
    assert res.status_code == 404
    assert res.json()["error"] == "NotFoundError"


def test_spec_create_and_compile(client: TestClient) -> None:
    payload = {
        "slug": "needs-param",
        "name": "Needs a parameter",
        "output_type": "MEASURE",
        "triggers": [{"actions": [{"parameter_id": "PERS-OPENNESS"}]}],
    }
    created = client.post("/v1/specs", json=payload)
    assert created.status_code == 201
    assert (created.json()["is_dirty"], created.json()["status"]) == (True, "DRAFT")
    assert client.post("/v1/specs", json=payload).status_code == 409

    failed = client.post("/v1/specs/needs-param/compile")
    assert failed.status_code == 422
    assert "unknown parameter PERS-OPENNESS" in failed.json()["detail"][0]

    client.put("/v1/parameters/PERS-OPENNESS", json={"parameter_id": "PERS-OPENNESS", "name": "Openness"})
    compiled = client.post("/v1/specs/needs-param/compile")
    assert compiled.status_code == 200
    assert (compiled.json()["is_dirty"], compiled.json()["status"]) == (False, "COMPILED")


def test_invalid_spec_config_fails_compile(client: TestClient) -> None:
    client.post("/v1/specs", json={"slug": "bad", "name": "Bad", "output_type": "COMPOSE", "config": {"memories_limit": 0}})
    res = client.post("/v1/specs/bad/compile")
    assert res.status_code == 422
    assert "memories_limit" in res.json()["detail"][0]


def test_full_pipeline_composes_prompt(client: TestClient) -> None:
    _configure_pipeline(client)
    caller_id = _caller(client)
    call_id = _completed_call(client, caller_id)

    res = client.post(f"/v1/calls/{call_id}/pipeline", json={"caller_id": caller_id, "mode": "prompt"})

    assert res.status_code == 200, res.text
    body = res.json()
    assert body["ok"] is True, body["stage_errors"]
    assert body["mode"] == "prompt"
    assert set(body["data"]) == {"measure", "learn", "measure-agent", "aggregate", "reward", "adapt", "supervise", "compose"}
    assert body["prompt"]["model"] == "template_v1"
    assert body["prompt"]["status"] == "active"
    assert "Alex" in body["prompt"]["prompt"]
    assert any(entry["message"].startswith("Pipeline prompt started") for entry in body["logs"])

    active = client.get(f"/v1/callers/{caller_id}/prompts/active").json()
    assert active["id"] == body["prompt"]["id"]
    memories = {m["key"]: m["value"] for m in client.get(f"/v1/callers/{caller_id}/memories").json()}
    assert memories["location"] == "Boston"
    assert client.get(f"/v1/callers/{caller_id}/personality").status_code == 200


def test_prep_mode_skips_composition(client: TestClient) -> None:
    _configure_pipeline(client)
    caller_id = _caller(client)
    call_id = _completed_call(client, caller_id)

    body = client.post(f"/v1/calls/{call_id}/pipeline", json={"caller_id": caller_id}).json()

    assert body["mode"] == "prep"
    assert body["prompt"] is None
    assert "compose" not in body["data"]


def test_failing_stage_does_not_stop_the_rest(client: TestClient) -> None:
    caller_id = _caller(client)
    call_id = _completed_call(client, caller_id, transcript="Caller: my name is Sam. Agent: ok.")

    body = client.post(f"/v1/calls/{call_id}/pipeline", json={"caller_id": caller_id, "mode": "prompt"}).json()

    assert body["ok"] is False
    assert set(body["stage_errors"]) == {"measure", "learn", "reward"}
    assert body["data"]["measure-agent"]["skipped"] == "transcript_too_short"
    assert body["prompt"] is not None


def test_pipeline_rejects_bad_requests(client: TestClient) -> None:
    caller_id = _caller(client)
    call_id = _completed_call(client, caller_id)

    bad_mode = client.post(f"/v1/calls/{call_id}/pipeline", json={"caller_id": caller_id, "mode": "everything"})
    assert bad_mode.status_code == 422
    assert bad_mode.json()["error"] == "InvalidRequestError"

    no_caller = client.post(f"/v1/calls/{call_id}/pipeline", json={})
    assert no_caller.status_code == 422

    other_caller = _caller(client, "Someone else")
    assert client.post(f"/v1/calls/{call_id}/pipeline", json={"caller_id": other_caller}).status_code == 404


def test_complete_can_run_pipeline_in_process(client: TestClient) -> None:
    _configure_pipeline(client)
    caller_id = _caller(client)
    call = client.post("/v1/calls", json={"caller_id": caller_id}).json()

    res = client.post(f"/v1/calls/{call['id']}/complete", json={"transcript": TRANSCRIPT, "run_pipeline": True})

    assert res.status_code == 200
    assert res.json()["call"]["status"] == "COMPLETED"
    assert res.json()["pipeline"]["prompt"]["trigger_call_id"] == call["id"]


def test_single_op_reports_failure_without_raising(client: TestClient) -> None:
    caller_id = _caller(client)
    call_id = _completed_call(client, caller_id)

    reward = client.post(f"/v1/calls/{call_id}/ops/reward", json={"caller_id": caller_id})
    assert reward.status_code == 200
    assert reward.json()["ok"] is False
    assert "No behavior measurements" in reward.json()["error"]

    adapt = client.post(f"/v1/calls/{call_id}/ops/adapt", json={"caller_id": caller_id})
    assert adapt.json()["ok"] is True
    assert adapt.json()["data"]["targets"]["reason"] == "no_reward_score"

    assert client.post(f"/v1/calls/{call_id}/ops/compose", json={"caller_id": caller_id}).status_code == 422


def test_settings_round_trip(client: TestClient) -> None:
    assert client.get("/v1/settings").json()["settings"]["adapt"]["learning_rate"] == 0.1

    res = client.put("/v1/settings/adapt.learning_rate", json={"value": 0.25})
    assert res.status_code == 200
    assert client.get("/v1/settings").json()["settings"]["adapt"]["learning_rate"] == 0.25

    assert client.put("/v1/settings/adapt.nope", json={"value": 1}).status_code == 404
    assert client.put("/v1/settings/pipeline.mock_mode", json={"value": "yes"}).status_code == 422


def test_contracts_are_seeded_and_validated(client: TestClient) -> None:
    ids = [c["contractId"] for c in client.get("/v1/contracts").json()]
    assert ids == ["CONTENT_TRUST_V1", "CURRICULUM_PROGRESS_V1", "EXAM_READINESS_V1"]

    bad = {"contractId": "BAD_V1", "storage": {"keyPattern": "bad:{specSlug}", "keys": {"a": "a"}}}
    assert client.put("/v1/contracts/BAD_V1", json=bad).status_code == 422
    assert client.put("/v1/contracts/OTHER", json=bad).status_code == 400


def test_curriculum_and_exam_endpoints(client: TestClient) -> None:
    client.post(
        "/v1/specs",
        json={
            "slug": "food-safety",
            "name": "Food Safety",
            "output_type": "CONTENT",
            "config": {"modules": [{"id": "m1", "source_refs": [{"trust_level": "REGULATORY_STANDARD"}]}, {"id": "m2", "sort_order": 1}]},
        },
    )
    caller_id = _caller(client)
    base = f"/v1/callers/{caller_id}"

    progress = client.put(f"{base}/curricula/food-safety", json={"current_module_id": "m1", "module_mastery": {"m1": 0.4}})
    assert progress.status_code == 200
    assert progress.json()["module_mastery"] == {"m1": 0.4}

    gate = client.get(f"{base}/exams/food-safety/gate").json()
    assert gate["allowed"] is False

    done = client.post(f"{base}/curricula/food-safety/modules/complete", json={"module_id": "m1", "next_module_id": "m2"})
    assert done.json()["current_module_id"] == "m2"
    assert client.get(f"{base}/exams/food-safety/gate").json()["allowed"] is True

    trust = client.get(f"{base}/curricula/food-safety/trust").json()
    assert trust["certified_mastery"] == 1.0

    result = client.post(f"{base}/exams/food-safety/results", json={"score": 0.9, "total_questions": 10, "correct_answers": 9})
    assert result.json()["passed"] is True
    assert list(client.get(f"{base}/exams").json()) == ["food-safety"]

    assert client.delete(f"{base}/curricula/food-safety").json()["ok"] is True
    assert client.get(f"{base}/exams").json() == {}
    assert client.get(f"{base}/curricula/unknown-course").status_code == 404


def test_concurrent_call_insert_returns_conflict(client: TestClient) -> None:
    caller_id = _caller(client)

    def racing_db():
        db = SessionLocal()
        raced = []

        def _sibling_insert(session, flush_context, instances) -> None:
            if raced or not any(isinstance(obj, Call) for obj in session.new):
                return
            raced.append(True)
            session.add(Call(caller_id=caller_id, sequence_number=1, status="IN_PROGRESS"))

        event.listen(db, "before_flush", _sibling_insert)
        try:
            yield db
        finally:
            db.close()

    app.dependency_overrides[get_db] = racing_db
    try:
        res = client.post("/v1/calls", json={"caller_id": caller_id})
    finally:
        app.dependency_overrides.pop(get_db)

    assert res.status_code == 409
    assert res.json()["error"] == "PipelineBusyError"
    assert client.get(f"/v1/callers/{caller_id}/calls").json() == []


def test_pipeline_lock_is_exclusive_and_released() -> None:
    with PipelineOrchestrator.call_lock("call-a"):
        with pytest.raises(PipelineBusyError):
            with PipelineOrchestrator.call_lock("call-a"):
                pass
        with PipelineOrchestrator.call_lock("call-b"):
            pass
    assert "call-a" not in PipelineOrchestrator._running
    assert "call-b" not in PipelineOrchestrator._running


def test_busy_call_returns_conflict(client: TestClient) -> None:
    caller_id = _caller(client)
    call_id = _completed_call(client, caller_id)

    with PipelineOrchestrator.call_lock(call_id):
        busy = client.post(f"/v1/calls/{call_id}/pipeline", json={"caller_id": caller_id})
    assert busy.status_code == 409

    assert client.post(f"/v1/calls/{call_id}/pipeline", json={"caller_id": caller_id}).status_code == 200
    assert PipelineOrchestrator._running == set()
