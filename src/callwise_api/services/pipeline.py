from __future__ import annotations

import logging
import threading
import time
from collections.abc import Callable, Iterator
from contextlib import contextmanager
from dataclasses import dataclass, field
from typing import Any

from sqlalchemy.orm import Session

from ..config import SettingsSnapshot, load_settings
from ..models import Call, ComposedPrompt
from .adaptation import run_adapt
from .completion import CompletionClient
from .composer import compose_prompt
from .curriculum import get_active_curricula, track_after_call, trust_progress_for
from .errors import InvalidRequestError, NotFoundError, PipelineBusyError, PipelineError
from .measure_agent import run_measure_agent
from .memory_extract import run_learn
from .reward import run_reward
from .scoring import aggregate_personality, run_measure
from .spec_registry import ContractRegistry
from .store import utcnow

logger = logging.getLogger(__name__)

MODES = ("prep", "prompt")

# (stage, order, ops). Ops within a stage run in the listed order; stages run by order.
STAGES: list[tuple[str, int, tuple[str, ...]]] = [
    ("EXTRACT", 10, ("measure", "learn")),
    ("SCORE_AGENT", 20, ("measure-agent",)),
    ("AGGREGATE", 30, ("aggregate",)),
    ("REWARD", 40, ("reward",)),
    ("ADAPT", 50, ("adapt",)),
    ("SUPERVISE", 60, ("supervise",)),
    ("COMPOSE", 100, ("compose",)),
]

SINGLE_OPS = ("measure", "learn", "measure-agent", "reward", "adapt")


class PipelineLogger:
    """Structured per-run log, mirrored to the module logger."""

    def __init__(self) -> None:
        self.entries: list[dict[str, Any]] = []

    def _add(self, level: str, message: str, data: dict[str, Any] | None) -> None:
        self.entries.append(
            {"timestamp": utcnow().isoformat(), "level": level, "message": message, "data": data}
        )
        logger.log(getattr(logging, level.upper()), message)

    def info(self, message: str, data: dict[str, Any] | None = None) -> None:
        self._add("info", message, data)

    def warning(self, message: str, data: dict[str, Any] | None = None) -> None:
        self._add("warning", message, data)

    def error(self, message: str, data: dict[str, Any] | None = None) -> None:
        self._add("error", message, data)


@dataclass
class RunContext:
    db: Session
    call: Call
    client: CompletionClient
    settings: SettingsSnapshot
    registry: ContractRegistry
    log: PipelineLogger


@dataclass
class PipelineResult:
    ok: bool
    mode: str
    message: str
    data: dict[str, Any] = field(default_factory=dict)
    prompt: ComposedPrompt | None = None
    logs: list[dict[str, Any]] = field(default_factory=list)
    stage_errors: dict[str, str] = field(default_factory=dict)
    duration_ms: int = 0


def _supervise(ctx: RunContext) -> dict[str, Any]:
    caller_id = ctx.call.caller_id
    tracked: list[dict[str, Any]] = []
    for slug in get_active_curricula(ctx.db, ctx.registry, caller_id=caller_id):
        outcome = track_after_call(ctx.db, ctx.registry, caller_id=caller_id, spec_slug=slug)
        trust = trust_progress_for(ctx.db, ctx.registry, ctx.settings.trust, caller_id=caller_id, spec_slug=slug)
        outcome["certified_mastery"] = trust.certified_mastery
        outcome["supplementary_mastery"] = trust.supplementary_mastery
        tracked.append(outcome)
    return {"curricula_tracked": len(tracked), "curricula": tracked}


def _aggregate(ctx: RunContext) -> dict[str, Any]:
    personality = aggregate_personality(
        ctx.db,
        ctx.call.caller_id,
        half_life_days=ctx.settings.pipeline.personality_decay_half_life_days,
    )
    if personality is None:
        return {"updated": False, "reason": "no_personality_scores"}
    return {"updated": True, "calls_used": personality.calls_used, "confidence": personality.confidence_score}


def _compose(ctx: RunContext) -> dict[str, Any]:
    prompt = compose_prompt(
        ctx.db,
        caller_id=ctx.call.caller_id,
        client=ctx.client,
        registry=ctx.registry,
        trigger_type="pipeline",
        trigger_call_id=ctx.call.id,
    )
    return {"prompt_id": prompt.id, "model": prompt.model}


OPS: dict[str, Callable[[RunContext], dict[str, Any]]] = {
    "measure": lambda ctx: run_measure(ctx.db, call=ctx.call, client=ctx.client, settings=ctx.settings),
    "learn": lambda ctx: run_learn(ctx.db, call=ctx.call, client=ctx.client, settings=ctx.settings),
    "measure-agent": lambda ctx: run_measure_agent(ctx.db, call=ctx.call, client=ctx.client, settings=ctx.settings),
    "aggregate": _aggregate,
    "reward": lambda ctx: run_reward(ctx.db, call=ctx.call, settings=ctx.settings),
    "adapt": lambda ctx: run_adapt(ctx.db, call=ctx.call, settings=ctx.settings),
    "supervise": _supervise,
    "compose": _compose,
}


class PipelineOrchestrator:
    """
    Runs the post-call stages in order, in process.
    Each op runs inside its own savepoint: a failing op is rolled back and recorded in
    stage_errors while the remaining ops still run. The caller owns the outer commit.
    """

    _running: set[str] = set()
    _running_guard = threading.Lock()

    def __init__(
        self,
        db: Session,
        *,
        client_factory: Callable[..., CompletionClient] = CompletionClient.from_config,
    ):
        self.db = db
        self.client_factory = client_factory

    @classmethod
    @contextmanager
    def call_lock(cls, call_id: str) -> Iterator[None]:
        with cls._running_guard:
            if call_id in cls._running:
                raise PipelineBusyError(f"A pipeline run is already in progress for call {call_id}")
            cls._running.add(call_id)
        try:
            yield
        finally:
            with cls._running_guard:
                cls._running.discard(call_id)

    def _context(self, call_id: str, caller_id: str | None, engine: str | None, log: PipelineLogger) -> RunContext:
        if not caller_id:
            raise InvalidRequestError("caller_id is required")
        call = self.db.get(Call, call_id)
        if call is None or call.caller_id != caller_id:
            raise NotFoundError(f"Call {call_id} not found for caller {caller_id}")
        settings = load_settings(self.db)
        registry = ContractRegistry.load(self.db)
        client = self.client_factory(
            engine=engine,
            max_retries=settings.pipeline.max_retries,
            force_mock=settings.pipeline.mock_mode,
        )
        log.info(
            f"Run context ready for call {call_id}",
            {"engine": client.engine, "model": client.model, "fallback": client.fallback_reason},
        )
        return RunContext(db=self.db, call=call, client=client, settings=settings, registry=registry, log=log)

    def _run_op(self, ctx: RunContext, op: str) -> tuple[dict[str, Any] | None, str | None]:
        savepoint = self.db.begin_nested()
        try:
            result = OPS[op](ctx)
            savepoint.commit()
        except PipelineError as exc:
            savepoint.rollback()
            ctx.log.error(f"{op} failed: {exc}", {"op": op, "error_type": type(exc).__name__})
            return None, str(exc)
        except Exception as exc:  # noqa: BLE001
            savepoint.rollback()
            logger.exception(f"Unexpected failure in {op} for call {ctx.call.id}")
            ctx.log.error(f"{op} failed unexpectedly: {exc}", {"op": op, "error_type": type(exc).__name__})
            return None, f"unexpected error: {exc}"
        ctx.log.info(f"{op} completed", result)
        return result, None

    def run(self, call_id: str, *, caller_id: str | None, mode: str = "prep", engine: str | None = None) -> PipelineResult:
        if mode not in MODES:
            raise InvalidRequestError(f"mode must be one of {', '.join(MODES)}, got {mode!r}")
        started = time.monotonic()
        log = PipelineLogger()
        with self.call_lock(call_id):
            ctx = self._context(call_id, caller_id, engine, log)
            log.info(f"Pipeline {mode} started for call {call_id}")
            data: dict[str, Any] = {}
            errors: dict[str, str] = {}
            prompt: ComposedPrompt | None = None
            for stage, _order, ops in sorted(STAGES, key=lambda s: s[1]):
                if stage == "COMPOSE" and mode != "prompt":
                    continue
                for op in ops:
                    result, error = self._run_op(ctx, op)
                    if error is not None:
                        errors[op] = error
                        continue
                    data[op] = result
                    if op == "compose":
                        prompt = self.db.get(ComposedPrompt, result["prompt_id"])

        duration_ms = int((time.monotonic() - started) * 1000)
        succeeded = len(data)
        message = f"Pipeline {mode} finished: {succeeded} ops succeeded, {len(errors)} failed"
        log.info(message, {"duration_ms": duration_ms})
        return PipelineResult(
            ok=not errors,
            mode=mode,
            message=message,
            data=data,
            prompt=prompt,
            logs=log.entries,
            stage_errors=errors,
            duration_ms=duration_ms,
        )

    def run_op(self, op: str, call_id: str, *, caller_id: str | None, engine: str | None = None) -> dict[str, Any]:
        """Run one stage by itself. Errors propagate to the caller."""
        if op not in SINGLE_OPS:
            raise InvalidRequestError(f"Unknown op {op!r}; expected one of {', '.join(SINGLE_OPS)}")
        log = PipelineLogger()
        with self.call_lock(call_id):
            ctx = self._context(call_id, caller_id, engine, log)
            return OPS[op](ctx)
