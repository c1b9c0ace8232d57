"""OpenAI-backed text generation with model fallback."""
from __future__ import annotations

import json
import logging
import os
from functools import lru_cache
from time import perf_counter
from typing import Any, Dict, List, Optional

import openai

from habitpilot.core.config import settings
from habitpilot.core.errors import LLMUnavailable
from habitpilot.observability.metrics import log_metric
from habitpilot.observability.tracing import annotate, trace

logger = logging.getLogger(__name__)


class LLMClient:
    """Thin wrapper over chat completions.

    ``generate`` tries the primary model then each fallback in order and
    raises LLMUnavailable when none of them answers.
    """

    def __init__(
        self,
        *,
        api_key: Optional[str] = None,
        models: Optional[List[str]] = None,
        timeout_seconds: Optional[float] = None,
    ) -> None:
        self.api_key = api_key or settings.openai_api_key or os.environ.get("OPENAI_API_KEY")
        self.models = models or [settings.llm_model, *settings.llm_fallback_models]
        self.timeout_seconds = timeout_seconds or settings.llm_timeout_seconds
        self._client: Optional[openai.OpenAI] = None

    @property
    def configured(self) -> bool:
        return bool(self.api_key)

    def _get_client(self) -> openai.OpenAI:
        if self._client is None:
            self._client = openai.OpenAI(api_key=self.api_key, timeout=self.timeout_seconds, max_retries=1)
        return self._client

    def generate(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float = 0.4,
        json_mode: bool = False,
        operation: str = "llm.generate",
    ) -> str:
        if not self.configured:
            raise LLMUnavailable("OPENAI_API_KEY is not configured")

        client = self._get_client()
        last_error: Optional[Exception] = None
        metadata = {
            "llm_input_text": user_prompt[:500],
            "json_mode": json_mode,
            "temperature": temperature,
        }
        with trace(operation, metadata=metadata) as span:
            for model in dict.fromkeys(self.models):
                start = perf_counter()
                request: Dict[str, Any] = {
                    "model": model,
                    "temperature": temperature,
                    "messages": [
                        {"role": "system", "content": system_prompt},
                        {"role": "user", "content": user_prompt},
                    ],
                }
                if json_mode:
                    request["response_format"] = {"type": "json_object"}
                try:
                    response = client.chat.completions.create(**request)
                    content = (response.choices[0].message.content or "").strip()
                except openai.OpenAIError as exc:
                    last_error = exc
                    logger.warning("Model %s failed for %s: %s", model, operation, exc)
                    log_metric("llm.model_failure", 1, metadata={"model": model, "operation": operation})
                    continue
                if not content:
                    last_error = LLMUnavailable(f"{model} returned an empty completion")
                    continue
                log_metric(
                    "llm.latency_ms",
                    (perf_counter() - start) * 1000,
                    metadata={"model": model, "operation": operation},
                )
                annotate(span, model=model, llm_output_text=content[:500])
                return content

        raise LLMUnavailable(f"all models failed for {operation}: {last_error}")

    def generate_json(
        self,
        system_prompt: str,
        user_prompt: str,
        *,
        temperature: float = 0.2,
        operation: str = "llm.generate_json",
    ) -> Dict[str, Any]:
        """Generate in JSON mode and decode the result into a dict."""
        raw = self.generate(system_prompt, user_prompt, temperature=temperature, json_mode=True, operation=operation)
        payload = json.loads(raw)
        if not isinstance(payload, dict):
            raise ValueError(f"{operation} returned {type(payload).__name__}, expected an object")
        return payload


@lru_cache
def get_llm_client() -> LLMClient:
    return LLMClient()
