"""
config.py — Centralised configuration for the AI request dispatcher.

Every backend endpoint, quota, threshold and tunable knob lives here.  Nothing
deeper in the stack hard-codes a backend name; anything that needs backend
details looks it up in BACKEND_CATALOGUE by its ``Backend`` variant.
"""

from __future__ import annotations

import os
from typing import Any

from .models import Backend


def _env_bool(key: str, default: bool) -> bool:
    val = os.getenv(key, "").lower()
    if val in ("1", "true", "yes"):
        return True
    if val in ("0", "false", "no"):
        return False
    return default


def _env_float(key: str, default: float) -> float:
    raw = os.getenv(key)
    return float(raw) if raw else default


def _env_int(key: str, default: int) -> int:
    raw = os.getenv(key)
    return int(raw) if raw else default


class Settings:
    """
    Settings object populated from environment variables.

    Values are read when the instance is created, so a composition root can
    build a fresh ``Settings()`` after loading a ``.env`` file, and tests can
    override attributes on their own instance without touching the process
    environment::

        settings = Settings()
        settings.queue_tick_seconds = 0.01
    """

    def __init__(self) -> None:
        # Server
        self.host: str = os.getenv("DISPATCH_HOST", "0.0.0.0")
        self.port: int = _env_int("DISPATCH_PORT", 7545)
        self.log_level: str = os.getenv("LOG_LEVEL", "INFO")
        self.debug: bool = _env_bool("DEBUG", False)
        self.http_rate_limit: str = os.getenv("DISPATCH_HTTP_RATE_LIMIT", "120/minute")
        self.http_rate_limit_enabled: bool = _env_bool("DISPATCH_HTTP_RATE_LIMIT_ENABLED", True)
        self.admin_token: str | None = os.getenv("DISPATCH_ADMIN_TOKEN") or None

        # Backend selection
        self.default_backend: Backend = Backend.parse(os.getenv("DISPATCH_DEFAULT_BACKEND", "openai"))
        self.selected_model: str | None = os.getenv("DISPATCH_SELECTED_MODEL") or None

        # Validation
        self.max_message_chars: int = _env_int("DISPATCH_MAX_MESSAGE_CHARS", 10_000)
        self.max_total_chars: int = _env_int("DISPATCH_MAX_TOTAL_CHARS", 50_000)

        # Response cache
        self.cache_enabled: bool = _env_bool("DISPATCH_CACHE_ENABLED", True)
        self.cache_backend: str = os.getenv("DISPATCH_CACHE_BACKEND", "memory")
        self.cache_dir: str = os.getenv("DISPATCH_CACHE_DIR", "/tmp/ai_dispatch_cache")
        self.cache_ttl: float = _env_float("DISPATCH_CACHE_TTL", 300.0)
        self.cache_max_entries: int = _env_int("DISPATCH_CACHE_MAX_ENTRIES", 200)
        self.cache_max_size_mb: int = _env_int("DISPATCH_CACHE_MAX_SIZE_MB", 64)

        # Circuit breaker
        self.circuit_threshold: int = _env_int("DISPATCH_CIRCUIT_THRESHOLD", 5)
        self.circuit_cooldown: float = _env_float("DISPATCH_CIRCUIT_COOLDOWN", 30.0)

        # Rate limiting + queue
        self.rate_window_seconds: int = _env_int("DISPATCH_RATE_WINDOW", 60)
        self.queue_max_size: int = _env_int("DISPATCH_QUEUE_MAX", 100)
        self.queue_tick_seconds: float = _env_float("DISPATCH_QUEUE_TICK", 1.0)
        self.queue_policy: str = os.getenv("DISPATCH_QUEUE_POLICY", "skip_blocked")

        # Retry + timeouts
        self.max_retries: int = _env_int("DISPATCH_MAX_RETRIES", 3)
        self.retry_base_delay: float = _env_float("DISPATCH_RETRY_BASE_DELAY", 1.0)
        self.request_timeout: float = _env_float("DISPATCH_REQUEST_TIMEOUT", 120.0)
        self.discovery_timeout: float = _env_float("DISPATCH_DISCOVERY_TIMEOUT", 10.0)

        # Model discovery caches
        self.model_cache_ttl: float = _env_float("DISPATCH_MODEL_CACHE_TTL", 900.0)
        self.unified_model_cache_ttl: float = _env_float("DISPATCH_UNIFIED_MODEL_CACHE_TTL", 1800.0)

        # Audit log
        self.audit_enabled: bool = _env_bool("DISPATCH_AUDIT_ENABLED", False)
        self.audit_dir: str = os.getenv("DISPATCH_AUDIT_DIR", "ai-calls")

        # litellm
        self.verbose_litellm: bool = _env_bool("VERBOSE_LITELLM", False)

        # CORS
        self.cors_allowed_origins: str = os.getenv("CORS_ALLOWED_ORIGINS", "")
        self.cors_allow_all: bool = _env_bool("CORS_ALLOW_ALL", True)

    @property
    def cors_origins(self) -> list:
        """Return a list of allowed CORS origins. Empty list means none."""
        if self.cors_allow_all:
            return ["*"]
        raw = (self.cors_allowed_origins or "").strip()
        if not raw:
            return []
        return [o.strip() for o in raw.split(",") if o.strip()]


# ══════════════════════════════════════════════════════════════════════════════
# Backend catalogue  — single source of truth
# ══════════════════════════════════════════════════════════════════════════════

# Every backend definition:
#   api_key_env     — env var that holds the credential (None = keyless)
#   base_url_env    — env var that overrides base_url
#   base_url        — API root used for model listing and passed to litellm
#   models_path     — path (relative to base_url) returning the model list
#   litellm_prefix  — provider prefix litellm expects in the model id
#   default_model   — model used when no matching model is selected
#   quota           — requests admitted per rate-limit window

BACKEND_CATALOGUE: dict[Backend, dict[str, Any]] = {
    Backend.OPENAI: {
        "api_key_env": "OPENAI_API_KEY",
        "base_url_env": "OPENAI_API_BASE",
        "base_url": "https://api.openai.com/v1",
        "models_path": "/models",
        "litellm_prefix": "openai",
        "default_model": "gpt-4o-mini",
        "quota": 60,
    },
    Backend.ANTHROPIC: {
        "api_key_env": "ANTHROPIC_API_KEY",
        "base_url_env": "ANTHROPIC_API_BASE",
        "base_url": "https://api.anthropic.com/v1",
        "models_path": "/models",
        "litellm_prefix": "anthropic",
        "default_model": "claude-3-5-haiku-20241022",
        "quota": 50,
    },
    Backend.GEMINI: {
        "api_key_env": "GEMINI_API_KEY",
        "base_url_env": "GEMINI_API_BASE",
        "base_url": "https://generativelanguage.googleapis.com/v1beta",
        "models_path": "/models",
        "litellm_prefix": "gemini",
        "default_model": "gemini-1.5-flash",
        "quota": 60,
    },
    # Local backend: far higher quota, no key
    Backend.OLLAMA: {
        "api_key_env": None,
        "base_url_env": "OLLAMA_API_BASE",
        "base_url": "http://localhost:11434",
        "models_path": "/api/tags",
        "litellm_prefix": "ollama",
        "default_model": "llama3.2:latest",
        "quota": 100,
    },
}

DEFAULT_QUOTA = 60


def backend_quota(backend: Backend) -> int:
    """Requests per window for ``backend``; DISPATCH_QUOTA_<BACKEND> overrides the catalogue."""
    override = os.getenv(f"DISPATCH_QUOTA_{backend.name}")
    if override:
        return int(override)
    return int(BACKEND_CATALOGUE.get(backend, {}).get("quota", DEFAULT_QUOTA))


def backend_base_url(backend: Backend) -> str:
    cfg = BACKEND_CATALOGUE[backend]
    env_name = cfg.get("base_url_env")
    override = os.getenv(env_name) if env_name else None
    return (override or cfg["base_url"]).rstrip("/")


def get_api_key(backend: Backend) -> str | None:
    env_name = BACKEND_CATALOGUE[backend].get("api_key_env")
    return os.getenv(env_name) if env_name else None


def has_api_key(backend: Backend) -> bool:
    """Return True if ``backend`` can be called with the current environment.

    Keyless backends (Ollama) are always considered configured.
    """
    cfg = BACKEND_CATALOGUE.get(backend)
    if not cfg:
        return False
    if not cfg.get("api_key_env"):
        return True
    return bool(get_api_key(backend))


def initialize_provider_env_vars(env_path: str | None = None) -> None:
    """Load a local .env file into the process environment.

    Existing variables are never overwritten.  Call this once at process start
    (the server entry point does) rather than at import time.
    """
    from dotenv import load_dotenv

    load_dotenv(env_path, override=False)
    os.environ.setdefault("LITELLM_LOG", "ERROR")
