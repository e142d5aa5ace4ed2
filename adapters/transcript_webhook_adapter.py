#!/usr/bin/env python3
from __future__ import annotations

import argparse
import json
from pathlib import Path

import httpx


def parse_args() -> argparse.Namespace:
    parser = argparse.ArgumentParser(description="Reference telephony adapter: push a finished call transcript into Callwise.")
    parser.add_argument("--base-url", default="http://127.0.0.1:8000", help="API base URL.")
    parser.add_argument("--caller-id", help="Existing caller id. A caller is created when omitted.")
    parser.add_argument("--caller-name", default="Telephony Caller", help="Name for a newly created caller.")
    parser.add_argument("--transcript", type=Path, required=True, help="Plain-text transcript with Agent:/Caller: turns.")
    parser.add_argument("--mode", choices=["prep", "prompt"], default="prompt", help="Pipeline mode.")
    parser.add_argument("--engine", choices=["mock", "gemini"], default=None, help="Completion engine override.")
    return parser.parse_args()


def main() -> int:
    args = parse_args()
    transcript = args.transcript.read_text(encoding="utf-8")
    with httpx.Client(timeout=120.0) as client:
        caller_id = args.caller_id
        if caller_id is None:
            caller_resp = client.post(f"{args.base_url}/v1/callers", json={"name": args.caller_name})
            caller_resp.raise_for_status()
            caller_id = caller_resp.json()["id"]

        call_resp = client.post(f"{args.base_url}/v1/calls", json={"caller_id": caller_id})
        call_resp.raise_for_status()
        call_id = call_resp.json()["id"]

        resp = client.post(
            f"{args.base_url}/v1/calls/{call_id}/complete",
            json={
                "transcript": transcript,
                "run_pipeline": True,
                "mode": args.mode,
                "engine": args.engine,
            },
        )

    body = resp.json() if resp.headers.get("content-type", "").startswith("application/json") else {"text": resp.text}
    print(json.dumps(body, indent=2))
    return 0 if resp.status_code < 400 else 1


if __name__ == "__main__":
    raise SystemExit(main())
