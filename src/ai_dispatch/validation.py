"""
validation.py — Request validation and content sanitization.

Runs synchronously before any I/O.  A request either comes out as an
immutable ``CompletionRequest`` with sanitized message content, or a
``ValidationError`` naming the offending field is raised.
"""

from __future__ import annotations

import math
import re
from collections.abc import Mapping, Sequence
from typing import Any

from .errors import ValidationError
from .models import Backend, CompletionRequest, Message, Role

# C0 controls except tab / newline / carriage return, plus DEL
_CONTROL_CHARS = re.compile(r"[\x00-\x08\x0b\x0c\x0e-\x1f\x7f]")
# Zero-width and bidi override characters used to hide text from readers
_INVISIBLE_CHARS = re.compile("[\\u200b-\\u200f\\u202a-\\u202e\\u2066-\\u2069\\ufeff]")
_EXCESS_BLANK_LINES = re.compile(r"\n{3,}")

_VALID_ROLES = {r.value for r in Role}


def sanitize_content(text: str) -> str:
    """Strip control and invisible characters, normalise newlines, collapse blank runs, trim."""
    text = text.replace("\r\n", "\n").replace("\r", "\n")
    text = _CONTROL_CHARS.sub("", text)
    text = _INVISIBLE_CHARS.sub("", text)
    text = _EXCESS_BLANK_LINES.sub("\n\n", text)
    return text.strip()


class Validator:
    def __init__(self, max_message_chars: int = 10_000, max_total_chars: int = 50_000) -> None:
        self.max_message_chars = max_message_chars
        self.max_total_chars = max_total_chars

    def validate(
        self,
        messages: Any,
        *,
        temperature: Any = None,
        max_tokens: Any = None,
        priority: Any = 0,
        backend: Any = None,
        on_chunk: Any = None,
    ) -> CompletionRequest:
        if on_chunk is not None and not callable(on_chunk):
            raise ValidationError("on_chunk", "stream callback must be callable")
        if isinstance(messages, (str, bytes)) or not isinstance(messages, Sequence):
            raise ValidationError("messages", "must be a list of messages")
        if not messages:
            raise ValidationError("messages", "must contain at least one message")

        cleaned: list[Message] = []
        total = 0
        for i, raw in enumerate(messages):
            message = self._validate_message(i, raw)
            total += len(message.content)
            cleaned.append(message)
        if total > self.max_total_chars:
            raise ValidationError(
                "messages", f"total content length {total} exceeds {self.max_total_chars} characters"
            )

        return CompletionRequest(
            messages=tuple(cleaned),
            temperature=self._validate_temperature(temperature),
            max_tokens=self._validate_max_tokens(max_tokens),
            priority=self._validate_priority(priority),
            backend=self._validate_backend(backend),
        )

    # ── Field checks ───────────────────────────────────────────────────────────

    def _validate_message(self, index: int, raw: Any) -> Message:
        field = f"messages[{index}]"
        if isinstance(raw, Message):
            role, content = raw.role.value, raw.content
        elif isinstance(raw, Mapping):
            role, content = raw.get("role"), raw.get("content")
        else:
            raise ValidationError(field, "must be an object with 'role' and 'content'")

        if isinstance(role, Role):
            role = role.value
        if role not in _VALID_ROLES:
            raise ValidationError(
                f"{field}.role", f"invalid role {role!r} (expected system, user or assistant)"
            )
        if not isinstance(content, str):
            raise ValidationError(f"{field}.content", "must be a string")
        if len(content) > self.max_message_chars:
            raise ValidationError(
                f"{field}.content",
                f"length {len(content)} exceeds {self.max_message_chars} characters",
            )
        content = sanitize_content(content)
        if not content:
            raise ValidationError(f"{field}.content", "must not be empty")
        return Message(role=Role(role), content=content)

    @staticmethod
    def _validate_temperature(value: Any) -> float | None:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, (int, float)):
            raise ValidationError("temperature", "must be a number")
        if not math.isfinite(value) or not 0.0 <= value <= 2.0:
            raise ValidationError("temperature", "must be a finite number between 0 and 2")
        return float(value)

    @staticmethod
    def _validate_max_tokens(value: Any) -> int | None:
        if value is None:
            return None
        if isinstance(value, bool) or not isinstance(value, int) or value <= 0:
            raise ValidationError("max_tokens", "must be a positive integer")
        return value

    @staticmethod
    def _validate_priority(value: Any) -> int:
        if isinstance(value, bool) or not isinstance(value, int):
            raise ValidationError("priority", "must be an integer")
        return value

    @staticmethod
    def _validate_backend(value: Any) -> Backend | None:
        if value is None or value == "":
            return None
        try:
            return Backend.parse(value)
        except ValueError as exc:
            raise ValidationError("backend", str(exc)) from None

