import logging
import time
from dataclasses import dataclass, field
from typing import Any, Dict, List, Optional, Sequence

import requests

from pantry_pilot.config import (
    DEFAULT_LLM_BASE_URL,
    DEFAULT_LLM_FALLBACK_MODELS,
    DEFAULT_LLM_MODEL,
    load_config,
    normalize_api_key,
)
from services import metrics
from services.retry import retry_with_backoff

logger = logging.getLogger(__name__)

DEFAULT_MAX_ATTEMPTS_PER_MODEL = 2
FALLBACK_MESSAGE_MARKERS = ("no endpoints found", "model_not_supported", "model not supported", "not found")


class LlmConfigurationError(RuntimeError):
    pass


class LlmRequestError(Exception):
    """A provider call failed. ``status`` is the HTTP status when there was one."""

    def __init__(self, message: str, status: Optional[int] = None, model: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.status = status
        self.model = model

    def __str__(self) -> str:
        if self.status is not None:
            return f"{self.status}: {self.message}"
        return self.message


@dataclass
class LlmSettings:
    api_key: str = ""
    base_url: str = DEFAULT_LLM_BASE_URL
    model: str = DEFAULT_LLM_MODEL
    fallback_models: List[str] = field(default_factory=lambda: list(DEFAULT_LLM_FALLBACK_MODELS))
    http_referer: str = ""
    x_title: str = ""
    timeout_seconds: float = 120.0
    max_attempts_per_model: int = DEFAULT_MAX_ATTEMPTS_PER_MODEL

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "LlmSettings":
        cfg = config or load_config()
        llm_cfg = cfg.get("llm", {}) if isinstance(cfg.get("llm"), dict) else {}
        fallbacks = llm_cfg.get("fallback_models") or list(DEFAULT_LLM_FALLBACK_MODELS)
        if isinstance(fallbacks, str):
            fallbacks = [token.strip() for token in fallbacks.split(",") if token.strip()]
        return cls(
            api_key=normalize_api_key(llm_cfg.get("api_key")),
            base_url=str(llm_cfg.get("base_url") or DEFAULT_LLM_BASE_URL).strip().rstrip("/"),
            model=str(llm_cfg.get("model") or DEFAULT_LLM_MODEL).strip(),
            fallback_models=[str(m).strip() for m in fallbacks if str(m).strip()],
            http_referer=str(llm_cfg.get("http_referer") or "").strip(),
            x_title=str(llm_cfg.get("x_title") or "").strip(),
            timeout_seconds=float(llm_cfg.get("timeout_seconds", 120)),
            max_attempts_per_model=int(llm_cfg.get("max_attempts_per_model", DEFAULT_MAX_ATTEMPTS_PER_MODEL)),
        )

    @property
    def has_api_key(self) -> bool:
        return bool(self.api_key)

    def models_in_order(self) -> List[str]:
        """Primary model first, then fallbacks without duplicates or the primary."""
        ordered = [self.model]
        for model in self.fallback_models:
            if model and model not in ordered:
                ordered.append(model)
        return ordered


@dataclass
class ChatCompletion:
    content: str
    model: str


def _error_message_from_body(response: requests.Response) -> str:
    try:
        body = response.json()
    except ValueError:
        return (response.text or "").strip() or response.reason or "LLM request failed"

    if not isinstance(body, dict):
        return str(body)
    error = body.get("error")
    if isinstance(error, dict):
        raw = ""
        metadata = error.get("metadata")
        if isinstance(metadata, dict) and isinstance(metadata.get("raw"), str):
            raw = metadata["raw"]
        parts = [raw, str(error.get("message") or "")]
        return " | ".join(part for part in parts if part) or "LLM request failed"
    if isinstance(error, str):
        return error
    return str(body.get("message") or "LLM request failed")


def _content_text(content: Any) -> str:
    if not content:
        return ""
    if isinstance(content, str):
        return content
    if isinstance(content, list):
        parts = [
            str(part.get("text") or "")
            for part in content
            if isinstance(part, dict) and isinstance(part.get("text"), str)
        ]
        return "\n".join(parts).strip()
    return ""


class LlmClient:
    """OpenAI-compatible chat-completions transport.

    One instance is built from settings and handed to whatever needs to talk
    to the model; nothing is cached at module level.
    """

    def __init__(self, settings: LlmSettings, session: Optional[requests.Session] = None):
        self.settings = settings
        self.session = session or requests.Session()

    @classmethod
    def from_config(cls, config: Optional[Dict[str, Any]] = None) -> "LlmClient":
        settings = LlmSettings.from_config(config)
        if not settings.has_api_key:
            raise LlmConfigurationError("LLM_API_KEY is required")
        return cls(settings)

    def _headers(self) -> Dict[str, str]:
        headers = {
            "Authorization": f"Bearer {self.settings.api_key}",
            "Content-Type": "application/json",
        }
        if self.settings.http_referer:
            headers["HTTP-Referer"] = self.settings.http_referer
        if self.settings.x_title:
            headers["X-Title"] = self.settings.x_title
        return headers

    def chat_complete(
        self,
        model: str,
        messages: Sequence[Dict[str, str]],
        temperature: float = 0.2,
    ) -> str:
        payload = {
            "model": model,
            "messages": list(messages),
            "temperature": temperature,
        }
        try:
            response = self.session.post(
                f"{self.settings.base_url}/chat/completions",
                json=payload,
                headers=self._headers(),
                timeout=self.settings.timeout_seconds,
            )
        except requests.exceptions.RequestException as exc:
            raise LlmRequestError(f"LLM transport error: {exc}", model=model) from exc

        if response.status_code >= 400:
            raise LlmRequestError(
                _error_message_from_body(response),
                status=response.status_code,
                model=model,
            )

        try:
            data = response.json()
        except ValueError as exc:
            raise LlmRequestError("LLM response was not JSON", status=response.status_code, model=model) from exc

        choices = data.get("choices") if isinstance(data, dict) else None
        if not choices:
            return ""
        message = (choices[0] or {}).get("message") or {}
        return _content_text(message.get("content"))

    def smoke_check_auth(self) -> Optional[int]:
        """Return the HTTP status of the provider's model listing, or None if unreachable."""
        try:
            response = self.session.get(
                f"{self.settings.base_url}/models",
                headers=self._headers(),
                timeout=self.settings.timeout_seconds,
            )
            return response.status_code
        except requests.exceptions.RequestException:
            return None


def should_retry_same_model(error: Exception) -> bool:
    status = getattr(error, "status", None)
    return isinstance(status, int) and (status == 429 or status >= 500)


def should_try_fallback_model(error: Exception) -> bool:
    if should_retry_same_model(error):
        return True
    status = getattr(error, "status", None)
    text = str(getattr(error, "message", "") or error).lower()
    return status in (400, 404) and any(marker in text for marker in FALLBACK_MESSAGE_MARKERS)


def create_chat_completion_with_fallback(
    client: LlmClient,
    messages: Sequence[Dict[str, str]],
    *,
    temperature: float = 0.2,
    max_attempts_per_model: Optional[int] = None,
) -> ChatCompletion:
    """Run one chat completion across the primary and fallback models.

    Rate limits and 5xx responses are retried on the same model with a
    linear delay (attempt number in seconds). Once a model is exhausted, or
    reports that it is unavailable, the next model is tried. The error from
    the last model propagates.
    """
    attempts = max(1, max_attempts_per_model or client.settings.max_attempts_per_model)
    models = client.settings.models_in_order()

    for index, model in enumerate(models):

        @retry_with_backoff(
            max_retries=attempts - 1,
            base_delay=1.0,
            max_delay=float(attempts),
            jitter=False,
            backoff="linear",
            retry_on=(LlmRequestError,),
            retry_if=should_retry_same_model,
        )
        def _call_model() -> str:
            start_ts = time.time()
            success = False
            try:
                logger.debug("Calling LLM model=%s", model)
                content = client.chat_complete(model, messages, temperature)
                success = True
                return content
            finally:
                duration_ms = (time.time() - start_ts) * 1000
                metrics.record_llm_call(model=model, duration_ms=duration_ms, success=success)

        try:
            content = _call_model()
            return ChatCompletion(content=content, model=model)
        except LlmRequestError as exc:
            is_last = index == len(models) - 1
            if not is_last and should_try_fallback_model(exc):
                logger.warning(
                    "LLM model %s failed (%s); falling back to %s",
                    model,
                    exc,
                    models[index + 1],
                )
                continue
            logger.error("LLM request failed on model %s: %s", model, exc)
            raise

    raise LlmRequestError("LLM request failed")
