"""Provider-agnostic LLM client and the analysis backend interface."""

from __future__ import annotations

import json
import logging
import os
import random
import threading
import time
from dataclasses import dataclass
from datetime import datetime
from typing import Any, Protocol

log = logging.getLogger(__name__)


class LLMServiceError(RuntimeError):
    """Raised when an LLM call fails after retries."""


class AnalysisBackend(Protocol):
    """Anything that turns (system instructions, user payload) into text."""

    def analyze(self, system_prompt: str, user_prompt: str) -> str: ...


@dataclass(frozen=True)
class LLMResponse:
    text: str
    input_tokens: int
    output_tokens: int


def strip_code_fences(text: str) -> str:
    cleaned = text.strip()
    if cleaned.startswith("```json"):
        cleaned = cleaned[len("```json"):]
    elif cleaned.startswith("```"):
        cleaned = cleaned[3:]
    if cleaned.endswith("```"):
        cleaned = cleaned[:-3]
    return cleaned.strip()


class LLMClient:
    """Abstract base class for LLM providers."""

    provider: str = "base"

    def __init__(self) -> None:
        self._last_call_ts = 0.0
        self._throttle_lock = threading.Lock()

    def _throttle(self) -> None:
        from caseqa.config import LLM_MIN_CALL_INTERVAL_S

        if LLM_MIN_CALL_INTERVAL_S <= 0:
            return
        with self._throttle_lock:
            now = time.time()
            wait = max(0.0, self._last_call_ts + LLM_MIN_CALL_INTERVAL_S - now)
            # Reserve the slot so callers on other threads queue behind it.
            self._last_call_ts = now + wait
        if wait > 0:
            time.sleep(wait)

    def _sleep_backoff(self, attempt: int) -> None:
        from caseqa.config import LLM_BACKOFF_BASE_S, LLM_BACKOFF_MAX_S

        base = max(0.1, LLM_BACKOFF_BASE_S)
        max_wait = max(base, LLM_BACKOFF_MAX_S)
        wait = min(max_wait, base * (2**attempt))
        jitter = random.uniform(0.0, base)  # nosec B311
        time.sleep(wait + jitter)

    def _is_retryable_error(self, exc: Exception) -> tuple[bool, str]:
        name = exc.__class__.__name__
        status_code = getattr(exc, "status_code", None)
        body = str(exc).lower()
        retryable_status = {408, 409, 429, 500, 502, 503, 504}
        retryable_name_markers = (
            "RateLimitError",
            "APITimeoutError",
            "APIConnectionError",
            "InternalServerError",
        )

        if status_code in retryable_status:
            return True, f"status={status_code}"
        if any(marker in name for marker in retryable_name_markers):
            return True, name
        if "rate limit" in body or "too many requests" in body or "timeout" in body:
            return True, name
        return False, name

    def _chat_completion_with_retry(self, client, kwargs: dict):
        from caseqa.config import LLM_MAX_RETRIES

        attempts = max(1, LLM_MAX_RETRIES + 1)
        for attempt in range(attempts):
            try:
                self._throttle()
                return client.chat.completions.create(**kwargs)
            except Exception as exc:
                retryable, reason = self._is_retryable_error(exc)
                is_last = attempt == attempts - 1
                if not retryable or is_last:
                    msg = (
                        f"{self.__class__.__name__} failed after "
                        f"{attempt + 1}/{attempts} attempts: {exc}"
                    )
                    raise LLMServiceError(msg) from exc
                log.warning(
                    "%s transient error (attempt %d/%d, reason=%s). Retrying...",
                    self.__class__.__name__,
                    attempt + 1,
                    attempts,
                    reason,
                )
                self._sleep_backoff(attempt)

        raise LLMServiceError(f"{self.__class__.__name__} failed unexpectedly.")

    def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        raise NotImplementedError

    def analyze(self, system_prompt: str, user_prompt: str) -> str:
        from caseqa.config import ANALYSIS_MAX_TOKENS

        response = self.generate(
            prompt=user_prompt,
            system=system_prompt,
            max_tokens=ANALYSIS_MAX_TOKENS,
        )
        log.debug(
            "%s analysis call: %d input tokens, %d output tokens",
            self.provider,
            response.input_tokens,
            response.output_tokens,
        )
        return response.text


class _OpenAIChatClient(LLMClient):
    """Shared request/response handling for OpenAI-compatible chat endpoints."""

    _client: Any

    def _default_model(self) -> str:
        raise NotImplementedError

    def _sampling_kwargs(
        self, model: str, temperature: float | None, max_tokens: int | None
    ) -> dict:
        from caseqa.config import GENERATION_TEMPERATURE

        kwargs: dict = {
            "temperature": temperature if temperature is not None else GENERATION_TEMPERATURE,
        }
        if max_tokens is not None:
            kwargs["max_tokens"] = max_tokens
        return kwargs

    def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        deploy = model or self._default_model()
        messages: list[dict[str, str]] = []
        if system:
            messages.append({"role": "system", "content": system})
        messages.append({"role": "user", "content": prompt})

        kwargs: dict = {"model": deploy, "messages": messages}
        kwargs.update(self._sampling_kwargs(deploy, temperature, max_tokens))

        resp = self._chat_completion_with_retry(self._client, kwargs)
        usage = resp.usage
        return LLMResponse(
            text=resp.choices[0].message.content or "",
            input_tokens=getattr(usage, "prompt_tokens", 0) if usage else 0,
            output_tokens=getattr(usage, "completion_tokens", 0) if usage else 0,
        )


class GrokClient(_OpenAIChatClient):
    provider = "grok"

    def __init__(self) -> None:
        from openai import OpenAI

        from caseqa.config import GROK_API_KEY, GROK_ENDPOINT

        super().__init__()
        if not GROK_API_KEY:
            raise ValueError("GROK_API_KEY is required when LLM_PROVIDER=grok.")
        self._client = OpenAI(base_url=GROK_ENDPOINT, api_key=GROK_API_KEY)

    def _default_model(self) -> str:
        from caseqa.config import GROK_MODEL

        return GROK_MODEL


class AzureOpenAIClient(_OpenAIChatClient):
    provider = "azure_openai"

    def __init__(self) -> None:
        from openai import AzureOpenAI

        from caseqa.config import AZURE_API_KEY, AZURE_API_VERSION, AZURE_ENDPOINT

        super().__init__()
        if not AZURE_API_KEY:
            raise ValueError("AZURE_API_KEY is required when LLM_PROVIDER=azure_openai.")
        if not AZURE_ENDPOINT:
            raise ValueError("AZURE_ENDPOINT is required when LLM_PROVIDER=azure_openai.")

        self._client = AzureOpenAI(
            api_version=AZURE_API_VERSION,
            azure_endpoint=AZURE_ENDPOINT,
            api_key=AZURE_API_KEY,
        )

    def _default_model(self) -> str:
        from caseqa.config import AZURE_MODEL

        return AZURE_MODEL

    def _sampling_kwargs(
        self, model: str, temperature: float | None, max_tokens: int | None
    ) -> dict:
        # Reasoning deployments reject temperature and use max_completion_tokens.
        if model.startswith("o"):
            return {} if max_tokens is None else {"max_completion_tokens": max_tokens}
        return super()._sampling_kwargs(model, temperature, max_tokens)


def _parse_ts(value: Any) -> datetime | None:
    if not isinstance(value, str):
        return None
    try:
        return datetime.fromisoformat(value.replace("Z", "+00:00"))
    except ValueError:
        return None


class MockOfflineClient(LLMClient):
    """Deterministic backend for offline runs; flags documents modified before creation."""

    provider = "mock"

    def _extract_json_section(self, prompt: str, label: str) -> Any:
        start = prompt.find(f"{label}:")
        if start < 0:
            return None
        body = prompt[start + len(label) + 1:]
        end = body.find("\nJSON_SCHEMA:")
        if end >= 0:
            body = body[:end]
        try:
            return json.loads(body)
        except json.JSONDecodeError:
            return None

    def _chunk_payload(self, scope: dict) -> dict:
        issues: list[dict] = []
        for doc in scope.get("documents") or []:
            if not isinstance(doc, dict):
                continue
            created = _parse_ts(doc.get("createdAt"))
            modified = _parse_ts(doc.get("modifiedAt"))
            if created is None or modified is None or modified >= created:
                continue
            issues.append(
                {
                    "Priority": "High",
                    "Type": "TimestampConflict",
                    "Problem": "Document was modified before it was created.",
                    "Location": {
                        "DocId": doc.get("docId", ""),
                        "Field": "modifiedAt",
                        "CurrentValue": doc["modifiedAt"],
                    },
                    "Fix": {
                        "Action": "UpdateTimestamp",
                        "NewValue": doc["createdAt"],
                        "Reason": "modifiedAt must not precede createdAt.",
                    },
                }
            )
        return {
            "Issues": issues,
            "Summary": f"Offline deterministic review found {len(issues)} timestamp conflicts.",
            "HighPriorityCount": len(issues),
            "MediumPriorityCount": 0,
            "LowPriorityCount": 0,
        }

    def _global_payload(self) -> dict:
        return {
            "MacroIssues": [],
            "CriticalDocuments": [],
            "FocusAreas": [],
            "OverallAssessment": "Offline deterministic assessment; no macro review performed.",
            "RequiresDetailedAnalysis": False,
        }

    def generate(
        self,
        prompt: str,
        *,
        system: str = "",
        model: str | None = None,
        temperature: float | None = None,
        max_tokens: int | None = None,
    ) -> LLMResponse:
        del system, model, temperature, max_tokens
        scope = self._extract_json_section(prompt, "CHUNK_SCOPE_JSON")
        if isinstance(scope, dict):
            payload = self._chunk_payload(scope)
        else:
            payload = self._global_payload()
        return LLMResponse(text=json.dumps(payload), input_tokens=0, output_tokens=0)


def get_llm_client() -> LLMClient:
    from caseqa.config import LLM_PROVIDER, OFFLINE_MODE

    provider = os.getenv("LLM_PROVIDER", LLM_PROVIDER).strip().lower()
    offline = os.getenv("OFFLINE_MODE", "1" if OFFLINE_MODE else "0").strip().lower() in {
        "1",
        "true",
        "yes",
    }
    if offline:
        return MockOfflineClient()

    if provider == "grok":
        from caseqa.config import GROK_API_KEY

        if not GROK_API_KEY:
            raise ValueError("GROK_API_KEY is required when LLM_PROVIDER=grok.")
        return GrokClient()
    if provider == "azure_openai":
        return AzureOpenAIClient()
    if provider == "mock":
        return MockOfflineClient()
    raise ValueError(f"Unknown LLM_PROVIDER={provider!r}")
