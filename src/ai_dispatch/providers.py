"""
providers.py — Backend adapters.

Every Backend variant is served through the one ``ProviderAdapter`` interface:

  stream(messages, options, token)  → async iterator of text chunks
  list_models()                     → model ids the backend reports
  test_connection()                 → ConnectionTestResult {ok, message, models}

``LiteLLMAdapter`` implements it for all four backends: completions go through
litellm's ``acompletion(stream=True)``; model listing hits each backend's REST
endpoint with httpx and a per-backend parser.  Adding a backend means adding a
Backend variant, a BACKEND_CATALOGUE entry and (if its model list has a new
shape) a parser.

Failures are normalised into ``BackendError`` by ``classify_error`` so the
retry layer can decide what is transient.

Dependencies: litellm, httpx
"""

from __future__ import annotations

import asyncio
import logging
import os
from abc import ABC, abstractmethod
from collections.abc import AsyncIterator
from dataclasses import dataclass
from typing import Any, Callable, Dict, List, Mapping, Optional

import httpx
import litellm
from litellm import acompletion

from .config import BACKEND_CATALOGUE, Settings, backend_base_url, get_api_key, has_api_key
from .errors import BackendError
from .models import Backend, ConnectionTestResult
from .streams import CancellationToken

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class StreamOptions:
    model: str
    temperature: float | None = None
    max_tokens: int | None = None


# ══════════════════════════════════════════════════════════════════════════════
# Error classification
# ══════════════════════════════════════════════════════════════════════════════

# Message fragments that mark a failure as transient
_RETRYABLE_PATTERNS: tuple[str, ...] = (
    "econnreset",
    "etimedout",
    "enotfound",
    "eai_again",
    "rate_limit_exceeded",
    "rate limit",
    "too many requests",
    "connection reset",
    "connection aborted",
    "timed out",
    "timeout",
    "name or service not known",
    "temporary failure in name resolution",
    "nodename nor servname",
    "getaddrinfo",
    "bad gateway",
    "service unavailable",
    "gateway timeout",
)

_RETRYABLE_STATUS = {429, 502, 503, 504}

_RETRYABLE_EXCEPTIONS: tuple[type[BaseException], ...] = (
    litellm.RateLimitError,
    litellm.Timeout,
    litellm.APIConnectionError,
    litellm.ServiceUnavailableError,
    httpx.TimeoutException,
    httpx.NetworkError,
    ConnectionError,
)


def _status_of(exc: BaseException) -> int | None:
    if isinstance(exc, httpx.HTTPStatusError):
        return exc.response.status_code
    for attr in ("status_code", "status"):
        val = getattr(exc, attr, None)
        if isinstance(val, int):
            return val
    return None


def _kind_for(status: int | None, exc: BaseException) -> str:
    if status in (401, 403):
        return "invalid_api_key"
    if status == 429:
        return "rate_limit"
    if status == 400:
        return "invalid_request"
    if status is not None and status >= 500:
        return "server_error"
    if isinstance(exc, (httpx.TimeoutException, litellm.Timeout, asyncio.TimeoutError)):
        return "timeout"
    if isinstance(exc, (httpx.TransportError, litellm.APIConnectionError, ConnectionError)):
        return "network_error"
    return "unknown"


def classify_error(exc: BaseException, backend: Backend) -> BackendError:
    """Wrap any adapter failure in a BackendError with ``retryable`` decided."""
    if isinstance(exc, BackendError):
        return exc
    status = _status_of(exc)
    msg = str(exc) or type(exc).__name__
    lowered = msg.lower()
    retryable = (
        status in _RETRYABLE_STATUS
        or isinstance(exc, _RETRYABLE_EXCEPTIONS)
        or any(p in lowered for p in _RETRYABLE_PATTERNS)
    )
    # Explicit client errors are never transient, whatever the message says
    if status in (400, 401, 403, 404):
        retryable = False
    return BackendError(backend, msg, retryable=retryable, status=status, kind=_kind_for(status, exc))


def describe_error(error: BackendError) -> str:
    """Short, user-facing message for connection test results."""
    if error.kind == "invalid_api_key" and error.status is not None:
        return "Invalid API key. Please check your credentials."
    if error.kind == "rate_limit":
        return "Rate limit exceeded. Please try again later."
    if error.kind in ("network_error", "timeout"):
        return "Network error. Please check your internet connection."
    if error.kind == "server_error":
        return f"Server error occurred (status {error.status})."
    return str(error)


# ══════════════════════════════════════════════════════════════════════════════
# Model-list parsers  (one per response shape)
# ══════════════════════════════════════════════════════════════════════════════


def _parse_openai_style(data: Dict[str, Any]) -> List[str]:
    return [m["id"] for m in data.get("data", []) if isinstance(m, dict) and m.get("id")]


def _parse_gemini_models(data: Dict[str, Any]) -> List[str]:
    out: List[str] = []
    for m in data.get("models", []):
        name = m.get("name", "")
        methods = m.get("supportedGenerationMethods")
        if methods is not None and "generateContent" not in methods:
            continue
        if name:
            out.append(name.removeprefix("models/"))
    return out


def _parse_ollama_tags(data: Dict[str, Any]) -> List[str]:
    return [m["name"] for m in data.get("models", []) if isinstance(m, dict) and m.get("name")]


_MODEL_PARSERS: Dict[Backend, Callable[[Dict[str, Any]], List[str]]] = {
    Backend.OPENAI: _parse_openai_style,
    Backend.ANTHROPIC: _parse_openai_style,
    Backend.GEMINI: _parse_gemini_models,
    Backend.OLLAMA: _parse_ollama_tags,
}


# ══════════════════════════════════════════════════════════════════════════════
# Adapter interface
# ══════════════════════════════════════════════════════════════════════════════


class ProviderAdapter(ABC):
    backend: Backend

    @abstractmethod
    def stream(
        self,
        messages: List[Dict[str, str]],
        options: StreamOptions,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[str]:
        """Yield response text chunks.  Must stop early once ``token`` is cancelled."""

    @abstractmethod
    async def list_models(self) -> List[str]:
        ...

    async def test_connection(self) -> ConnectionTestResult:
        try:
            models = await self.list_models()
        except Exception as exc:
            error = classify_error(exc, self.backend)
            logger.warning("Connection test failed for %s: %s", self.backend.value, error)
            return ConnectionTestResult(ok=False, message=describe_error(error))
        return ConnectionTestResult(
            ok=True,
            message=f"Successfully connected to {self.backend.value} ({len(models)} models available)",
            models=models,
        )


# ══════════════════════════════════════════════════════════════════════════════
# LiteLLM-backed adapter
# ══════════════════════════════════════════════════════════════════════════════


class LiteLLMAdapter(ProviderAdapter):
    def __init__(
        self,
        backend: Backend,
        *,
        timeout: float = 120.0,
        discovery_timeout: float = 10.0,
        transport: httpx.AsyncBaseTransport | None = None,
    ) -> None:
        self.backend = backend
        self.timeout = timeout
        self.discovery_timeout = discovery_timeout
        self._transport = transport
        self._cfg: Mapping[str, Any] = BACKEND_CATALOGUE[backend]

    def litellm_model(self, model: str) -> str:
        prefix = self._cfg["litellm_prefix"]
        return model if model.startswith(f"{prefix}/") else f"{prefix}/{model}"

    def _call_params(self, options: StreamOptions) -> Dict[str, Any]:
        params: Dict[str, Any] = {}
        if options.temperature is not None:
            params["temperature"] = options.temperature
        if options.max_tokens is not None:
            params["max_tokens"] = options.max_tokens
        api_key = get_api_key(self.backend)
        if api_key:
            params["api_key"] = api_key
        env_name = self._cfg.get("base_url_env")
        if self.backend is Backend.OLLAMA or (env_name and os.getenv(env_name)):
            params["api_base"] = backend_base_url(self.backend)
        return params

    async def stream(
        self,
        messages: List[Dict[str, str]],
        options: StreamOptions,
        token: CancellationToken | None = None,
    ) -> AsyncIterator[str]:
        response = await acompletion(
            model=self.litellm_model(options.model),
            messages=messages,
            stream=True,
            timeout=self.timeout,
            **self._call_params(options),
        )
        try:
            async for chunk in response:
                if token is not None and token.cancelled:
                    break
                text = _delta_text(chunk)
                if text:
                    yield text
        finally:
            close = getattr(response, "aclose", None)
            if close is not None:
                await close()

    # ── Model listing ─────────────────────────────────────────────────────────

    async def list_models(self) -> List[str]:
        if not has_api_key(self.backend):
            raise BackendError(
                self.backend,
                f"API key not configured ({self._cfg['api_key_env']})",
                kind="invalid_api_key",
            )
        url = backend_base_url(self.backend) + self._cfg["models_path"]
        data = await self._fetch_json(url)
        models = _MODEL_PARSERS[self.backend](data)
        logger.debug("%s: %d models listed", self.backend.value, len(models))
        return models

    async def _fetch_json(self, url: str) -> Dict[str, Any]:
        params: Dict[str, str] = {}
        api_key = get_api_key(self.backend)
        if self.backend is Backend.GEMINI and api_key:
            params["key"] = api_key
        async with httpx.AsyncClient(timeout=self.discovery_timeout, transport=self._transport) as client:
            resp = await client.get(url, headers=self._build_headers(api_key), params=params)
            resp.raise_for_status()
            return resp.json()

    def _build_headers(self, api_key: Optional[str]) -> Dict[str, str]:
        if self.backend is Backend.GEMINI:
            return {}
        if self.backend is Backend.ANTHROPIC:
            return {"x-api-key": api_key or "", "anthropic-version": "2023-06-01"}
        if api_key:
            return {"Authorization": f"Bearer {api_key}"}
        return {}


def _delta_text(chunk: Any) -> str:
    """Pull the text delta out of a litellm stream chunk (object or dict)."""
    choices = chunk.get("choices") if isinstance(chunk, dict) else getattr(chunk, "choices", None)
    if not choices:
        return ""
    choice = choices[0]
    delta = choice.get("delta") if isinstance(choice, dict) else getattr(choice, "delta", None)
    if delta is None:
        return ""
    content = delta.get("content") if isinstance(delta, dict) else getattr(delta, "content", None)
    return content or ""


def create_adapter(backend: Backend, settings: Settings) -> ProviderAdapter:
    return LiteLLMAdapter(
        backend,
        timeout=settings.request_timeout,
        discovery_timeout=settings.discovery_timeout,
    )


def build_adapters(settings: Settings) -> Dict[Backend, ProviderAdapter]:
    return {b: create_adapter(b, settings) for b in Backend}


def configure_litellm(settings: Settings) -> None:
    """Quiet litellm unless verbose logging was asked for."""
    os.environ.setdefault("LITELLM_LOG", "DEBUG" if settings.verbose_litellm else "ERROR")
    litellm.suppress_debug_info = not settings.verbose_litellm
