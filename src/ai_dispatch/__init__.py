"""Public package surface for ai_dispatch.

Expose the primary entry points used by consumers of the package.
"""

__version__ = "0.1.0"

from ai_dispatch.config import BACKEND_CATALOGUE, Settings
from ai_dispatch.dispatcher import Dispatcher, build_dispatcher
from ai_dispatch.errors import (
    BackendError,
    CircuitOpenError,
    DispatchError,
    DispatcherClosedError,
    DispatchTimeoutError,
    QueueFullError,
    RequestCancelledError,
    ValidationError,
)
from ai_dispatch.events import EventBus
from ai_dispatch.models import Backend, CompletionResult, Role
from ai_dispatch.providers import LiteLLMAdapter, ProviderAdapter, StreamOptions

__all__ = [
    "BACKEND_CATALOGUE",
    "Backend",
    "BackendError",
    "CircuitOpenError",
    "CompletionResult",
    "DispatchError",
    "DispatchTimeoutError",
    "Dispatcher",
    "DispatcherClosedError",
    "EventBus",
    "LiteLLMAdapter",
    "ProviderAdapter",
    "QueueFullError",
    "RequestCancelledError",
    "Role",
    "Settings",
    "StreamOptions",
    "ValidationError",
    "__version__",
    "build_dispatcher",
]
