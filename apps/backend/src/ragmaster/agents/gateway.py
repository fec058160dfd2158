"""
Model Gateway.

The single point of contact with Gemini.  Every stage that needs a completion
goes through `ModelGateway.invoke`, which records model id, latency and token
usage for each call.  Errors from the SDK propagate unchanged; retry policy
belongs to the callers.
"""

import asyncio
import logging
import time
from collections import Counter, deque
from typing import Any

from google import generativeai as genai
from google.generativeai import GenerativeModel
from pydantic import BaseModel, Field

from ragmaster.models.items import utc_now

log = logging.getLogger(__name__)

Message = dict[str, str]


class AgentError(Exception):
    """Raised when an LLM-backed stage cannot produce a valid structured output."""

    def __init__(self, agent_name: str, reason: str, raw_output: str = "") -> None:
        self.agent_name = agent_name
        self.reason = reason
        self.raw_output = raw_output
        super().__init__(f"[{agent_name}] {reason}")


class CallRecord(BaseModel):
    """Observability record for one outbound completion call."""

    model_id: str
    started_at: str
    latency_ms: float = Field(..., ge=0.0)
    ok: bool
    error: str | None = None
    prompt_tokens: int | None = None
    output_tokens: int | None = None
    total_tokens: int | None = None


def render_prompt(messages: list[Message]) -> str:
    """Flatten chat-style messages into the single prompt Gemini receives."""
    return "\n\n".join(m["content"].strip() for m in messages if m.get("content"))


class ModelGateway:
    """
    Thin async wrapper around Gemini `generate_content`.

    Keeps the last `history_size` call records and a per-model call counter.
    Safe for concurrent use from a single event loop: bookkeeping happens on
    the loop thread after each executor call returns.
    """

    def __init__(self, api_key: str | None = None, history_size: int = 100) -> None:
        self._api_key = api_key
        self._configured = False
        self._models: dict[str, GenerativeModel] = {}
        self._history: deque[CallRecord] = deque(maxlen=history_size)
        self._call_counts: Counter[str] = Counter()

    # ── Observability ─────────────────────────────────────────────────────────

    @property
    def call_counts(self) -> dict[str, int]:
        return dict(self._call_counts)

    def recent_calls(self, limit: int | None = None) -> list[CallRecord]:
        records = list(self._history)
        return records[-limit:] if limit else records

    # ── Transport ─────────────────────────────────────────────────────────────

    def _get_model(self, model_id: str) -> GenerativeModel:
        if not self._configured:
            genai.configure(api_key=self._api_key)
            self._configured = True
        model = self._models.get(model_id)
        if model is None:
            model = GenerativeModel(model_id)
            self._models[model_id] = model
        return model

    def _call_model(
        self, model_id: str, messages: list[Message], options: dict[str, Any]
    ) -> tuple[str, dict[str, int]]:
        """Synchronous Gemini call. Runs in executor for async use."""
        config: dict[str, Any] = {"temperature": options.get("temperature", 0)}
        if options.get("json"):
            config["response_mime_type"] = "application/json"
        if options.get("max_output_tokens"):
            config["max_output_tokens"] = options["max_output_tokens"]

        response = self._get_model(model_id).generate_content(
            render_prompt(messages),
            generation_config=genai.GenerationConfig(**config),
        )

        usage: dict[str, int] = {}
        metadata = getattr(response, "usage_metadata", None)
        if metadata is not None:
            usage = {
                "prompt_tokens": metadata.prompt_token_count,
                "output_tokens": metadata.candidates_token_count,
                "total_tokens": metadata.total_token_count,
            }
        return response.text.strip(), usage

    async def invoke(
        self,
        model_id: str,
        messages: list[Message],
        options: dict[str, Any] | None = None,
    ) -> str:
        """
        Send `messages` to `model_id` and return the completion text.

        Parameters
        ----------
        model_id:
            Gemini model to call.
        messages:
            Chat-style ``{"role", "content"}`` dicts, system first.
        options:
            ``temperature`` (default 0), ``json`` (request JSON mode),
            ``max_output_tokens``.

        Raises
        ------
        Exception
            Whatever the SDK raised; the call is recorded as failed first.
        """
        loop = asyncio.get_running_loop()
        started_at = utc_now()
        t0 = time.perf_counter()
        usage: dict[str, int] = {}
        error: str | None = None
        try:
            text, usage = await loop.run_in_executor(
                None, self._call_model, model_id, messages, dict(options or {})
            )
            return text
        except BaseException as exc:
            # Cancellation is recorded as a failed call too.
            error = f"{type(exc).__name__}: {exc}"
            raise
        finally:
            latency_ms = (time.perf_counter() - t0) * 1000
            self._call_counts[model_id] += 1
            self._history.append(
                CallRecord(
                    model_id=model_id,
                    started_at=started_at,
                    latency_ms=round(latency_ms, 2),
                    ok=error is None,
                    error=error,
                    **usage,
                )
            )
            log.debug(
                "Gateway %s — %.0fms ok=%s tokens=%s",
                model_id, latency_ms, error is None, usage.get("total_tokens"),
            )


# ── Module-level singleton ─────────────────────────────────────────────────────

_gateway: ModelGateway | None = None


def get_gateway() -> ModelGateway:
    """Return the process-level ModelGateway singleton."""
    global _gateway
    if _gateway is None:
        from ragmaster.config.settings import get_settings

        settings = get_settings()
        _gateway = ModelGateway(
            api_key=settings.google_api_key, history_size=settings.call_history_size
        )
    return _gateway
