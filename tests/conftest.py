from __future__ import annotations

import datetime as dt
import os
from collections.abc import Callable
from pathlib import Path

import pytest
from fastapi.testclient import TestClient

# Ensure the app reads a test database URL before importing package modules.
TEST_DB_PATH = Path("/tmp/callwise_api_test.db")
os.environ["DATABASE_URL"] = f"sqlite:///{TEST_DB_PATH}"
os.environ["COMPLETION_ENGINE"] = "mock"

from callwise_api.db import Base, SessionLocal, engine
from callwise_api.main import app
from callwise_api.models import (
    AnalysisAction,
    AnalysisSpec,
    AnalysisTrigger,
    BehaviorTarget,
    Call,
    Caller,
    Parameter,
)
from callwise_api.services.completion import CompletionClient, CompletionResult
from callwise_api.services.spec_registry import seed_default_contracts


class FakeCompletionClient(CompletionClient):
    """Model-backed client whose transport returns canned replies."""

    def __init__(
        self,
        reply: str | Callable[[str], str] = "",
        *,
        error: Exception | None = None,
        max_retries: int = 0,
    ):
        super().__init__(engine="gemini", model="gemini-test", api_key="test-key", max_retries=max_retries)
        self.reply = reply
        self.error = error
        self.prompts: list[str] = []

    def _request(self, *, system_prompt: str, user_prompt: str, max_tokens: int, temperature: float) -> CompletionResult:
        self.prompts.append(user_prompt)
        if self.error is not None:
            raise self.error
        content = self.reply(user_prompt) if callable(self.reply) else self.reply
        return CompletionResult(content=content, model=self.model, engine=self.engine)


@pytest.fixture(autouse=True)
def reset_db() -> None:
    Base.metadata.drop_all(bind=engine)
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as session:
        seed_default_contracts(session)
        session.commit()
    yield
    Base.metadata.drop_all(bind=engine)


@pytest.fixture
def client() -> TestClient:
    with TestClient(app) as c:
        yield c


@pytest.fixture
def db():
    session = SessionLocal()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture
def offline_client() -> CompletionClient:
    return CompletionClient(engine="mock", model="mock")


@pytest.fixture
def fake_client() -> type[FakeCompletionClient]:
    return FakeCompletionClient


@pytest.fixture
def make_caller(db) -> Callable[..., Caller]:
    def _make(name: str = "Test Caller") -> Caller:
        caller = Caller(name=name)
        db.add(caller)
        db.flush()
        return caller

    return _make


@pytest.fixture
def make_call(db) -> Callable[..., Call]:
    def _make(caller: Caller, transcript: str = "", *, days_ago: float = 0.0, status: str = "COMPLETED") -> Call:
        existing = db.query(Call).filter(Call.caller_id == caller.id).count()
        call = Call(
            caller_id=caller.id,
            sequence_number=existing + 1,
            transcript=transcript,
            status=status,
            created_at=dt.datetime.now(dt.timezone.utc) - dt.timedelta(days=days_ago),
        )
        db.add(call)
        db.flush()
        return call

    return _make


@pytest.fixture
def make_parameter(db) -> Callable[..., Parameter]:
    def _make(parameter_id: str, name: str | None = None, *, domain_group: str | None = None) -> Parameter:
        parameter = Parameter(parameter_id=parameter_id, name=name or parameter_id, domain_group=domain_group)
        db.add(parameter)
        db.flush()
        return parameter

    return _make


@pytest.fixture
def make_spec(db) -> Callable[..., AnalysisSpec]:
    """Create an already-compiled spec with one trigger holding the given actions."""

    def _make(
        slug: str,
        output_type: str,
        actions: list[dict] | None = None,
        *,
        config: dict | None = None,
        priority: int = 0,
        name: str | None = None,
    ) -> AnalysisSpec:
        spec = AnalysisSpec(
            slug=slug,
            name=name or slug,
            output_type=output_type,
            priority=priority,
            is_active=True,
            is_dirty=False,
            status="COMPILED",
            config=config or {},
        )
        trigger = AnalysisTrigger(given="a completed call", when="the transcript is analyzed", then="record results")
        for index, action in enumerate(actions or []):
            trigger.actions.append(AnalysisAction(sort_order=index, **action))
        spec.triggers.append(trigger)
        db.add(spec)
        db.flush()
        return spec

    return _make


@pytest.fixture
def make_target(db) -> Callable[..., BehaviorTarget]:
    def _make(parameter_id: str, value: float, *, confidence: float = 0.5) -> BehaviorTarget:
        target = BehaviorTarget(
            scope="SYSTEM",
            scope_ref="",
            parameter_id=parameter_id,
            target_value=value,
            confidence=confidence,
        )
        db.add(target)
        db.flush()
        return target

    return _make
