"""
fingerprint.py — Deterministic request keys for caching and deduplication.

A fingerprint covers (messages, temperature, resolved backend).  Backend
resolution happens first, so a request that names ``openai`` explicitly and one
that reaches ``openai`` through the selected model share a key.
"""

from __future__ import annotations

import json
import logging

import xxhash

from .models import Backend, CompletionRequest

logger = logging.getLogger(__name__)


def parse_unified_model(unified_id: str) -> tuple[Backend, str]:
    """Split ``"backend:model"`` into its parts.  Model names may contain ':'."""
    prefix, sep, model = unified_id.partition(":")
    if not sep or not model:
        raise ValueError(f"Unified model id must look like 'backend:model', got {unified_id!r}")
    return Backend.parse(prefix), model


def resolve_backend(
    request: CompletionRequest,
    selected_model: str | None,
    default_backend: Backend,
) -> Backend:
    """Explicit override, else the selected model's backend, else the default."""
    if request.backend is not None:
        return request.backend
    if selected_model:
        try:
            return parse_unified_model(selected_model)[0]
        except ValueError as exc:
            logger.warning("Ignoring selected model: %s", exc)
    return default_backend


def fingerprint(request: CompletionRequest, backend: Backend) -> str:
    payload = json.dumps(
        {
            "m": [[m.role.value, m.content] for m in request.messages],
            "t": request.temperature,
            "b": backend.value,
        },
        ensure_ascii=False,
        separators=(",", ":"),
    )
    return "req:" + xxhash.xxh3_128_hexdigest(payload.encode("utf-8"))
