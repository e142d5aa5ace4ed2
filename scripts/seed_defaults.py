from __future__ import annotations

import argparse
import json

from callwise_api.db import Base, SessionLocal, engine
from callwise_api.models import AnalysisAction, AnalysisSpec, AnalysisTrigger, BehaviorTarget, Parameter
from callwise_api.services.spec_registry import compile_spec, seed_default_contracts

PARAMETERS = [
    ("PERS-OPENNESS", "Openness", "Curiosity and willingness to explore new ideas", "personality"),
    ("PERS-CONSCIENTIOUSNESS", "Conscientiousness", "Organization and attention to detail", "personality"),
    ("PERS-EXTRAVERSION", "Extraversion", "Talkativeness and energy in conversation", "personality"),
    ("PERS-AGREEABLENESS", "Agreeableness", "Cooperation and warmth toward the agent", "personality"),
    ("PERS-NEUROTICISM", "Neuroticism", "Expressed worry or stress", "personality"),
    ("BEH-WARMTH", "Warmth", "Friendly, appreciative language from the agent", "tone"),
    ("BEH-EMPATHY", "Empathy", "Acknowledging the caller's feelings", "tone"),
    ("BEH-DIRECTNESS", "Directness", "Short, to-the-point agent turns", "pacing"),
    ("BEH-QUESTIONS", "Question asking", "How often the agent asks questions", "engagement"),
]

TARGETS = {
    "BEH-WARMTH": 0.6,
    "BEH-EMPATHY": 0.5,
    "BEH-DIRECTNESS": 0.5,
    "BEH-QUESTIONS": 0.4,
}

SPECS = [
    ("big-five", "Big Five personality", "MEASURE", [{"parameter_id": p} for p, *_ in PARAMETERS[:5]]),
    (
        "caller-facts",
        "Caller facts and preferences",
        "LEARN",
        [
            {"description": "Personal facts the caller states", "learn_category": "FACT"},
            {"description": "Stated preferences", "learn_category": "PREFERENCE"},
            {"description": "Upcoming events and plans", "learn_category": "EVENT"},
        ],
    ),
    ("agent-style", "Agent style", "MEASURE_AGENT", [{"parameter_id": p} for p in TARGETS]),
    ("reward-default", "Reward", "REWARD", []),
    ("adapt-default", "Adapt", "ADAPT", []),
    ("compose-default", "Compose", "COMPOSE", []),
]


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Seed contracts, parameters, targets and starter specs.")
    parser.add_argument("--skip-specs", action="store_true", help="Only seed contracts, parameters and targets.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    Base.metadata.create_all(bind=engine)

    report = {"contracts": 0, "parameters": 0, "targets": 0, "specs": 0, "spec_errors": {}}
    with SessionLocal() as db:
        report["contracts"] = seed_default_contracts(db)

        for parameter_id, name, definition, group in PARAMETERS:
            if db.get(Parameter, parameter_id) is None:
                db.add(Parameter(parameter_id=parameter_id, name=name, definition=definition, domain_group=group))
                report["parameters"] += 1
        db.flush()

        for parameter_id, value in TARGETS.items():
            exists = (
                db.query(BehaviorTarget)
                .filter_by(scope="SYSTEM", scope_ref="", parameter_id=parameter_id)
                .first()
            )
            if exists is None:
                db.add(BehaviorTarget(scope="SYSTEM", scope_ref="", parameter_id=parameter_id, target_value=value))
                report["targets"] += 1

        if not args.skip_specs:
            for slug, name, output_type, actions in SPECS:
                if db.query(AnalysisSpec).filter_by(slug=slug).first() is not None:
                    continue
                spec = AnalysisSpec(slug=slug, name=name, output_type=output_type, config={})
                trigger = AnalysisTrigger(given="a completed call", when="the pipeline runs", then=name)
                for index, action in enumerate(actions):
                    trigger.actions.append(AnalysisAction(sort_order=index, **action))
                spec.triggers.append(trigger)
                db.add(spec)
                db.flush()
                errors = compile_spec(db, spec)
                if errors:
                    report["spec_errors"][slug] = errors
                report["specs"] += 1
        db.commit()

    print(json.dumps(report, indent=2))
    return 1 if report["spec_errors"] else 0


if __name__ == "__main__":
    raise SystemExit(main())
