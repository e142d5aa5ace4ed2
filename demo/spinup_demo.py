from __future__ import annotations

import json
import os
from pathlib import Path

from fastapi.testclient import TestClient

os.environ.setdefault("DATABASE_URL", "sqlite:////tmp/callwise_demo.db")
os.environ.setdefault("COMPLETION_ENGINE", "mock")

from callwise_api.db import Base, engine
from callwise_api.main import app

CALLS = [
    "\n".join(
        [
            "Agent: Thank you for calling, happy to help. What can I do for you today?",
            "Caller: Hi, my name is Priya. I live in Denver and my internet keeps dropping.",
            "Agent: I understand, that sounds difficult. When did it start?",
            "Caller: Since Monday. I prefer email for updates because I work as a nurse on nights.",
            "Agent: Thank you. I will reset the line now and email you a summary. Anything else?",
            "Caller: No, thanks, that is great. I appreciate it.",
        ]
    ),
    "\n".join(
        [
            "Agent: Welcome back! How has the connection been since the reset?",
            "Caller: Much better, thank you. I'm traveling next week so I wanted to check the bill.",
            "Agent: Of course. Your bill is unchanged. Would you like a reminder before you travel?",
            "Caller: Yes please, that sounds good. Thank you so much for remembering me.",
        ]
    ),
]


def _setup(client: TestClient) -> None:
    for parameter_id, name, group in [
        ("PERS-OPENNESS", "Openness", "personality"),
        ("PERS-AGREEABLENESS", "Agreeableness", "personality"),
        ("BEH-WARMTH", "Warmth", "tone"),
        ("BEH-EMPATHY", "Empathy", "tone"),
        ("BEH-QUESTIONS", "Question asking", "engagement"),
    ]:
        client.put(f"/v1/parameters/{parameter_id}", json={"parameter_id": parameter_id, "name": name, "domain_group": group})

    specs = [
        ("big-five", "MEASURE", [{"parameter_id": "PERS-OPENNESS"}, {"parameter_id": "PERS-AGREEABLENESS"}]),
        ("caller-facts", "LEARN", [{"learn_category": "FACT"}, {"learn_category": "PREFERENCE"}, {"learn_category": "CONTEXT"}]),
        ("agent-style", "MEASURE_AGENT", [{"parameter_id": "BEH-WARMTH"}, {"parameter_id": "BEH-EMPATHY"}, {"parameter_id": "BEH-QUESTIONS"}]),
    ]
    for slug, output_type, actions in specs:
        client.post(
            "/v1/specs",
            json={"slug": slug, "name": slug, "output_type": output_type, "triggers": [{"actions": actions}]},
        )
        client.post(f"/v1/specs/{slug}/compile")

    for parameter_id, value in [("BEH-WARMTH", 0.6), ("BEH-EMPATHY", 0.5), ("BEH-QUESTIONS", 0.4)]:
        client.put("/v1/behavior-targets", json={"parameter_id": parameter_id, "target_value": value})


def run_demo() -> dict:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)

    with TestClient(app) as client:
        _setup(client)
        caller_id = client.post("/v1/callers", json={"name": "Priya"}).json()["id"]

        runs = []
        for transcript in CALLS:
            call = client.post("/v1/calls", json={"caller_id": caller_id}).json()
            done = client.post(
                f"/v1/calls/{call['id']}/complete",
                json={"transcript": transcript, "run_pipeline": True, "mode": "prompt"},
            ).json()
            pipeline = done["pipeline"]
            runs.append(
                {
                    "call_id": call["id"],
                    "sequence_number": call["sequence_number"],
                    "ok": pipeline["ok"],
                    "stage_errors": pipeline["stage_errors"],
                    "reward": pipeline["data"].get("reward", {}).get("overall_score"),
                    "duration_ms": pipeline["duration_ms"],
                }
            )

        prompt = client.get(f"/v1/callers/{caller_id}/prompts/active").json()
        memories = client.get(f"/v1/callers/{caller_id}/memories").json()
        targets = client.get("/v1/behavior-targets").json()

        return {
            "caller_id": caller_id,
            "runs": runs,
            "memories": {m["key"]: m["value"] for m in memories},
            "targets": {t["parameter_id"]: t["target_value"] for t in targets},
            "prompt_model": prompt["model"],
            "prompt": prompt["prompt"],
        }


if __name__ == "__main__":
    result = run_demo()
    out_path = Path("demo/latest_demo_output.json")
    out_path.parent.mkdir(parents=True, exist_ok=True)
    out_path.write_text(json.dumps(result, indent=2), encoding="utf-8")
    print(json.dumps(result, indent=2))
    print(f"\nWrote demo artifact: {out_path}")
