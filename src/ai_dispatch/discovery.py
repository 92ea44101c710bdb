"""
discovery.py — Model discovery and model selection.

Responsibilities:
  • Fetch model lists from each backend adapter on demand
  • Cache them per backend (TTL 15 min) and as one unified
    ``backend:model`` list (TTL 30 min)
  • Per-backend refresh locks so concurrent callers share one fetch
  • Track the globally selected model and answer "which model does a request
    for backend X use"

Dependencies: cachetools (TTL cache)
"""

from __future__ import annotations

import asyncio
import logging
import time
from typing import Callable, Dict, List, Mapping

from cachetools import TTLCache

from .config import BACKEND_CATALOGUE, has_api_key
from .fingerprint import parse_unified_model
from .models import Backend
from .providers import ProviderAdapter, classify_error

logger = logging.getLogger(__name__)

_UNIFIED_KEY = "unified"


class ModelDiscovery:
    """
    Usage::

        discovery = ModelDiscovery(adapters)
        models = await discovery.refresh_models(Backend.OPENAI)
        everything = await discovery.refresh_all_models()
        discovery.set_selected_model("anthropic:claude-3-5-haiku-20241022")
        discovery.model_for(Backend.ANTHROPIC)   # → "claude-3-5-haiku-20241022"
    """

    def __init__(
        self,
        adapters: Mapping[Backend, ProviderAdapter],
        *,
        default_backend: Backend = Backend.OPENAI,
        selected_model: str | None = None,
        model_ttl: float = 900.0,
        unified_ttl: float = 1800.0,
        timer: Callable[[], float] = time.monotonic,
    ) -> None:
        self._adapters = adapters
        self.default_backend = default_backend
        self._models: TTLCache = TTLCache(maxsize=len(Backend) * 2, ttl=model_ttl, timer=timer)
        self._unified: TTLCache = TTLCache(maxsize=1, ttl=unified_ttl, timer=timer)
        self._locks: Dict[Backend, asyncio.Lock] = {b: asyncio.Lock() for b in Backend}
        self._selected: str | None = None
        if selected_model:
            self.set_selected_model(selected_model)

    # ── Refresh ─────────────────────────────────────────────────────────────

    async def refresh_models(self, backend: Backend) -> List[str]:
        """Fetch ``backend``'s model list, bypassing the cache.  Errors propagate as BackendError."""
        async with self._locks[backend]:
            try:
                models = await self._adapters[backend].list_models()
            except Exception as exc:
                raise classify_error(exc, backend) from exc
            self._models[f"models:{backend.value}"] = models
            self._unified.pop(_UNIFIED_KEY, None)
            logger.info("Refreshed %s: %d models", backend.value, len(models))
            return models

    async def refresh_all_models(self) -> Dict[Backend, List[str]]:
        """Refresh every configured backend concurrently; a failed backend maps to []."""
        backends = self.configured_backends()
        results = await asyncio.gather(
            *(self.refresh_models(b) for b in backends), return_exceptions=True
        )
        out: Dict[Backend, List[str]] = {b: [] for b in Backend}
        for backend, result in zip(backends, results):
            if isinstance(result, BaseException):
                if not isinstance(result, Exception):
                    raise result
                logger.warning("Model refresh failed for %s: %s", backend.value, result)
                continue
            out[backend] = result
        self._unified[_UNIFIED_KEY] = [f"{b.value}:{m}" for b, ms in out.items() for m in ms]
        return out

    # ── Reads ───────────────────────────────────────────────────────────────

    def cached_models(self, backend: Backend) -> List[str] | None:
        return self._models.get(f"models:{backend.value}")

    async def get_models(self, backend: Backend) -> List[str]:
        cached = self.cached_models(backend)
        if cached is not None:
            return cached
        return await self.refresh_models(backend)

    async def get_unified_models(self) -> List[str]:
        cached = self._unified.get(_UNIFIED_KEY)
        if cached is not None:
            return cached
        await self.refresh_all_models()
        return self._unified.get(_UNIFIED_KEY, [])

    def clear(self) -> None:
        self._models.clear()
        self._unified.clear()

    # ── Selection ───────────────────────────────────────────────────────────

    def set_selected_model(self, unified_id: str | None) -> None:
        """Select ``backend:model`` globally (None clears the selection)."""
        if unified_id:
            parse_unified_model(unified_id)
        self._selected = unified_id or None
        logger.info("Selected model: %s", self._selected or "(default)")

    @property
    def selected_model(self) -> str | None:
        return self._selected

    def get_current_model(self) -> str:
        if self._selected:
            return self._selected
        backend = self.default_backend
        return f"{backend.value}:{BACKEND_CATALOGUE[backend]['default_model']}"

    def model_for(self, backend: Backend) -> str:
        if self._selected:
            selected_backend, model = parse_unified_model(self._selected)
            if selected_backend is backend:
                return model
        return BACKEND_CATALOGUE[backend]["default_model"]

    # ── Configuration ───────────────────────────────────────────────────────

    @staticmethod
    def is_backend_configured(backend: Backend) -> bool:
        return has_api_key(backend)

    def configured_backends(self) -> List[Backend]:
        return [b for b in Backend if b in self._adapters and self.is_backend_configured(b)]
