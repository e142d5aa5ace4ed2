from __future__ import annotations

import datetime as dt
import json
from pathlib import Path

from sqlalchemy import select

from callwise_api.config import load_settings
from callwise_api.db import Base, SessionLocal, engine
from callwise_api.models import Caller
from callwise_api.services.scoring import aggregate_personality

ROOT = Path(__file__).resolve().parents[1]
REPORT_PATH = ROOT / "reports" / "personality_backfill.json"


def _ensure_schema() -> None:
    # CI can run this script in a fresh workspace with an empty SQLite file.
    Base.metadata.create_all(bind=engine)


def main() -> int:
    _ensure_schema()

    updated = 0
    skipped = 0
    with SessionLocal() as db:
        half_life = load_settings(db).pipeline.personality_decay_half_life_days
        for caller_id in db.scalars(select(Caller.id).order_by(Caller.created_at)).all():
            if aggregate_personality(db, caller_id, half_life_days=half_life) is None:
                skipped += 1
            else:
                updated += 1
        db.commit()

    report = {
        "generated_at": dt.datetime.now(dt.timezone.utc).isoformat(),
        "status": "PASS",
        "half_life_days": half_life,
        "callers_updated": updated,
        "callers_without_scores": skipped,
    }
    REPORT_PATH.parent.mkdir(parents=True, exist_ok=True)
    REPORT_PATH.write_text(json.dumps(report, indent=2), encoding="utf-8")
    print(json.dumps(report, indent=2))
    return 0


if __name__ == "__main__":
    raise SystemExit(main())
