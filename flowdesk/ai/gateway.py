"""
Flowdesk Workflow Coordinator
Model gateway: single entry point for generative-model calls.

    - Provider abstraction (Google Gemini, local stub for dev/test)
    - Retry with exponential backoff + jitter (see ``flowdesk.ai.retry``)
    - Failure classification into the upstream error taxonomy

Usage:
    from flowdesk.ai.gateway import get_model_gateway
    text = get_model_gateway().generate(system_prompt, user_prompt)
"""

import json
import logging
import time
from abc import ABC, abstractmethod

import httpx
from flask import current_app

from flowdesk.ai.retry import RetryPolicy
from flowdesk.core.exceptions import (
    ConfigurationError,
    PermanentError,
    RateLimitError,
    TransientError,
    UnknownError,
    UpstreamError,
    UpstreamValidationError,
)

logger = logging.getLogger(__name__)

EXTENSION_KEY = "flowdesk.model_gateway"


class ProviderCallError(Exception):
    """A provider call failed at the HTTP or network level.

    Attributes:
        status_code: HTTP status returned by the model API, None for network failures.
        network: True when no response was received at all.
    """

    def __init__(self, message: str, status_code: int | None = None, network: bool = False) -> None:
        self.status_code = status_code
        self.network = network
        super().__init__(message)

    @property
    def retryable(self) -> bool:
        return RetryPolicy.should_retry(self.status_code, self.network)


# ── Provider Abstract Base ────────────────────────────────────────────────────

class ModelProvider(ABC):
    """Abstract interface for model providers."""

    name = "abstract"

    @abstractmethod
    def generate(self, system_prompt: str, user_prompt: str, **kwargs) -> str:
        """
        Run one completion and return the raw response text.

        Raises:
            ProviderCallError: HTTP / network failure (classified by the gateway).
            ConfigurationError: provider credentials missing.
        """
        ...


# ── Google Gemini Provider ────────────────────────────────────────────────────

class GeminiProvider(ModelProvider):
    """
    Google Gemini API provider.

    Environment:
        GEMINI_API_KEY, GEMINI_MODEL (default gemini-2.0-flash)
    """

    name = "gemini"

    def __init__(self, api_key: str, model: str = "gemini-2.0-flash"):
        self.api_key = api_key
        self.model = model
        self._client = None

    def _get_client(self):
        if not self.api_key:
            raise ConfigurationError(details="GEMINI_API_KEY not configured")
        if self._client is None:
            try:
                from google import genai
                self._client = genai.Client(api_key=self.api_key)
            except ImportError:
                raise ConfigurationError(
                    details="google-genai package not installed. Run: pip install google-genai"
                )
        return self._client

    def generate(self, system_prompt: str, user_prompt: str, **kwargs) -> str:
        client = self._get_client()
        from google.genai import errors as genai_errors
        from google.genai import types

        config = types.GenerateContentConfig(
            system_instruction=system_prompt,
            temperature=kwargs.get("temperature", 0.7),
            max_output_tokens=kwargs.get("max_tokens", 4096),
            response_mime_type="application/json",
        )
        try:
            response = client.models.generate_content(
                model=self.model,
                contents=[types.Content(role="user", parts=[types.Part(text=user_prompt)])],
                config=config,
            )
        except genai_errors.APIError as exc:
            raise ProviderCallError(
                f"Gemini API error: {exc.code} - {exc.message}", status_code=exc.code,
            ) from exc
        except httpx.TransportError as exc:
            raise ProviderCallError(f"Gemini network error: {exc}", network=True) from exc

        return response.text or ""


# ── Local Stub Provider (for dev/test without API keys) ──────────────────────

class LocalStubProvider(ModelProvider):
    """
    Deterministic stub; echoes the step it was asked to run. No API key required.
    """

    name = "local"

    def generate(self, system_prompt: str, user_prompt: str, **kwargs) -> str:
        first_line = system_prompt.splitlines()[0] if system_prompt else ""
        return json.dumps({
            "result": {"summary": f"Stub result for: {first_line}"},
            "actions": ["processed"],
            "message": "Action completed by local stub",
            "needsGuidance": False,
        })


# ── Failure classification ───────────────────────────────────────────────────

_TRANSIENT_MARKERS = ("500", "502", "503", "504", "network", "ECONNREFUSED", "timed out")


def classify_error(exc: Exception, context: str | None = None) -> UpstreamError:
    """Map any failure of a model call onto the upstream error taxonomy."""
    if isinstance(exc, UpstreamError):
        if context and not exc.details:
            exc.details = context
        return exc

    if isinstance(exc, ProviderCallError):
        status = exc.status_code
        if exc.network or (status is not None and status >= 500):
            return TransientError(details=context)
        if status == 429:
            return RateLimitError(details=context)
        if status is not None and 400 <= status < 500:
            return UpstreamValidationError(details=context)
        return UnknownError(details=str(exc))

    message = str(exc)
    lowered = message.lower()
    if "API_KEY" in message or "not configured" in lowered:
        return ConfigurationError(details=context)
    if "429" in message or "rate limit" in lowered:
        return RateLimitError(details=context)
    if any(marker in message for marker in _TRANSIENT_MARKERS):
        return TransientError(details=context)
    if "400" in message or "invalid" in lowered:
        return UpstreamValidationError(details=context)
    return UnknownError(details=message)


# ── Model Gateway (Main Interface) ───────────────────────────────────────────

class ModelGateway:
    """
    Central gateway for all model calls.

    Usage:
        gw = ModelGateway(provider=GeminiProvider(key), policy=RetryPolicy())
        text = gw.generate(system_prompt, user_prompt)
    """

    def __init__(self, provider: ModelProvider, policy: RetryPolicy | None = None):
        self.provider = provider
        self.policy = policy or RetryPolicy()

    @classmethod
    def from_config(cls, config) -> "ModelGateway":
        if config.get("AI_PROVIDER") == "local":
            provider = LocalStubProvider()
        else:
            provider = GeminiProvider(
                api_key=config.get("GEMINI_API_KEY", ""),
                model=config.get("GEMINI_MODEL", "gemini-2.0-flash"),
            )
        return cls(provider=provider, policy=RetryPolicy.from_config(config))

    def generate(self, system_prompt: str, user_prompt: str, **kwargs) -> str:
        """
        Call the provider, retrying retryable failures with backoff.

        Returns:
            Raw response text (non-empty).

        Raises:
            UpstreamError: classified failure once retries are exhausted or
                the failure is not retryable.
        """
        max_retries = self.policy.max_retries
        for attempt in range(max_retries + 1):
            start = time.perf_counter()
            try:
                text = self.provider.generate(system_prompt, user_prompt, **kwargs)
            except ProviderCallError as exc:
                if exc.retryable and attempt < max_retries:
                    delay_ms = self.policy.compute_delay(attempt)
                    logger.warning(
                        "Model call failed (attempt %d/%d), retrying in %dms: %s",
                        attempt + 1, max_retries + 1, delay_ms, exc,
                    )
                    self.policy.sleep(delay_ms / 1000.0)
                    continue
                raise

            latency_ms = int((time.perf_counter() - start) * 1000)
            if not text:
                raise PermanentError(details="Model returned no content")
            logger.debug("Model call ok provider=%s attempt=%d latency=%dms",
                         self.provider.name, attempt + 1, latency_ms)
            return text

        # Unreachable: the last attempt either returns or raises
        raise UnknownError(details="Model request failed after all retries")


def init_model_gateway(app) -> ModelGateway:
    gateway = ModelGateway.from_config(app.config)
    app.extensions[EXTENSION_KEY] = gateway
    return gateway


def get_model_gateway() -> ModelGateway:
    return current_app.extensions[EXTENSION_KEY]
