from __future__ import annotations

import json
import logging
import time
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Any, TypeVar

from ..config import CompletionConfig, get_completion_config

logger = logging.getLogger(__name__)

SUPPORTED_ENGINES = {"mock", "gemini"}

T = TypeVar("T")
R = TypeVar("R")


def clamp01(value: float | int | None) -> float:
    if value is None:
        return 0.0
    return max(0.0, min(1.0, float(value)))


def float_01(value: Any) -> float | None:
    try:
        numeric = float(value)
    except (TypeError, ValueError):
        return None
    if numeric != numeric:
        return None
    return round(clamp01(numeric), 3)


def extract_json(text: str) -> dict[str, Any] | None:
    candidates: list[str] = [text.strip()]
    if "```" in text:
        stripped = text.strip()
        if stripped.startswith("```"):
            first_nl = stripped.find("\n")
            last_fence = stripped.rfind("```")
            if first_nl != -1 and last_fence != -1 and last_fence > first_nl:
                candidates.append(stripped[first_nl + 1:last_fence].strip())

    start = text.find("{")
    end = text.rfind("}")
    if start != -1 and end != -1 and end > start:
        candidates.append(text[start:end + 1])

    for candidate in candidates:
        if not candidate:
            continue
        try:
            parsed = json.loads(candidate)
        except ValueError:
            continue
        if isinstance(parsed, dict):
            return parsed
    return None


def _validate_model(model: str) -> bool:
    return model.startswith("gemini-")


@dataclass
class CompletionResult:
    content: str
    model: str
    engine: str
    usage: dict[str, int] = field(default_factory=dict)


class CompletionClient:
    """
    Text-completion service wrapper.
    Engine "mock" never leaves the process; stages check `offline` and use their
    deterministic heuristics instead of calling `complete`.
    """

    def __init__(
        self,
        *,
        engine: str = "mock",
        model: str = "mock",
        api_key: str | None = None,
        timeout_seconds: float = 30.0,
        max_retries: int = 2,
        fallback_reason: str | None = None,
    ):
        self.engine = engine
        self.model = model
        self.api_key = api_key
        self.timeout_seconds = timeout_seconds
        self.max_retries = max(0, int(max_retries))
        self.fallback_reason = fallback_reason

    @classmethod
    def from_config(
        cls,
        cfg: CompletionConfig | None = None,
        *,
        engine: str | None = None,
        max_retries: int = 2,
        force_mock: bool = False,
    ) -> CompletionClient:
        cfg = cfg or get_completion_config()
        requested = (engine or cfg.engine or "mock").lower()

        def _mock(reason: str | None) -> CompletionClient:
            if reason:
                logger.warning(f"Completion engine {requested!r} unavailable ({reason}), using mock")
            return cls(engine="mock", model="mock", max_retries=max_retries, fallback_reason=reason)

        if force_mock:
            return _mock("mock_mode" if requested != "mock" else None)
        if requested not in SUPPORTED_ENGINES:
            return _mock(f"unsupported_engine:{requested}")
        if requested == "mock":
            return _mock(None)
        if not cfg.api_key:
            return _mock("missing_api_key")
        if not _validate_model(cfg.model):
            return _mock("invalid_model")
        try:
            from google import genai  # type: ignore  # noqa: F401
        except Exception:
            return _mock("sdk_unavailable")
        return cls(
            engine="gemini",
            model=cfg.model,
            api_key=cfg.api_key,
            timeout_seconds=cfg.timeout_seconds,
            max_retries=max_retries,
        )

    @property
    def offline(self) -> bool:
        return self.engine == "mock"

    def _request(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int,
        temperature: float,
    ) -> CompletionResult:
        from google import genai  # type: ignore
        from google.genai import types  # type: ignore

        client = genai.Client(
            api_key=self.api_key,
            http_options=types.HttpOptions(timeout=int(self.timeout_seconds * 1000)),
        )
        response = client.models.generate_content(
            model=self.model,
            contents=user_prompt,
            config=types.GenerateContentConfig(
                system_instruction=system_prompt,
                max_output_tokens=max_tokens,
                temperature=temperature,
            ),
        )
        usage: dict[str, int] = {}
        meta = getattr(response, "usage_metadata", None)
        if meta is not None:
            usage = {
                "input_tokens": int(getattr(meta, "prompt_token_count", 0) or 0),
                "output_tokens": int(getattr(meta, "candidates_token_count", 0) or 0),
            }
        return CompletionResult(
            content=(response.text or "").strip(),
            model=self.model,
            engine=self.engine,
            usage=usage,
        )

    def complete(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 512,
        temperature: float = 0.3,
    ) -> CompletionResult:
        if self.offline:
            return CompletionResult(content="", model="mock", engine="mock")

        for attempt in range(self.max_retries + 1):
            try:
                return self._request(
                    system_prompt=system_prompt,
                    user_prompt=user_prompt,
                    max_tokens=max_tokens,
                    temperature=temperature,
                )
            except Exception as exc:  # noqa: BLE001
                logger.warning(f"Completion attempt {attempt + 1}/{self.max_retries + 1} failed: {exc}")
                if attempt >= self.max_retries:
                    raise
                time.sleep(min(2.0, 0.25 * (2 ** attempt)))
        raise RuntimeError(f"No completion attempt was made (max_retries={self.max_retries})")

    def complete_json(
        self,
        *,
        system_prompt: str,
        user_prompt: str,
        max_tokens: int = 512,
        temperature: float = 0.3,
    ) -> tuple[dict[str, Any] | None, dict[str, Any]]:
        """
        Returns (payload, metadata). payload is None when the caller should fall back
        to its default value; metadata["reason"] says why.
        """
        meta: dict[str, Any] = {"attempted": False, "model": None, "reason": "disabled"}
        if self.offline:
            return None, meta

        meta = {"attempted": True, "model": self.model, "reason": "request_failed"}
        try:
            result = self.complete(
                system_prompt=system_prompt,
                user_prompt=user_prompt,
                max_tokens=max_tokens,
                temperature=temperature,
            )
        except Exception as exc:  # noqa: BLE001
            return None, {**meta, "reason": f"request_error:{str(exc)[:160]}"}

        if not result.content:
            return None, {**meta, "reason": "empty_response"}
        parsed = extract_json(result.content)
        if parsed is None:
            return None, {**meta, "reason": "non_json_response"}
        return parsed, {**meta, "reason": "ok", "usage": result.usage}


def map_completions(fn: Callable[[T], R], items: list[T], *, max_workers: int = 4) -> list[R]:
    """
    Apply `fn` to every item, running completion-bound work on a thread pool.
    Results keep input order; `fn` must not touch the database session.
    """
    if len(items) <= 1 or max_workers <= 1:
        return [fn(item) for item in items]
    with ThreadPoolExecutor(max_workers=min(max_workers, len(items))) as pool:
        return list(pool.map(fn, items))
