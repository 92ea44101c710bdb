"""Request validation and content sanitization."""

from __future__ import annotations

import math
import unittest

from ai_dispatch.errors import ValidationError
from ai_dispatch.models import Backend, Role
from ai_dispatch.validation import Validator, sanitize_content


class TestSanitize(unittest.TestCase):
    def test_strips_control_characters(self):
        self.assertEqual(sanitize_content("he\x00ll\x07o\x7f"), "hello")

    def test_keeps_tabs_and_newlines(self):
        self.assertEqual(sanitize_content("a\tb\nc"), "a\tb\nc")

    def test_normalises_crlf(self):
        self.assertEqual(sanitize_content("a\r\nb\rc"), "a\nb\nc")

    def test_strips_zero_width_and_bidi_characters(self):
        self.assertEqual(sanitize_content("pa\u200bss\u202eword\ufeff"), "password")

    def test_collapses_blank_line_runs(self):
        self.assertEqual(sanitize_content("a\n\n\n\n\nb"), "a\n\nb")

    def test_trims(self):
        self.assertEqual(sanitize_content("  \n hi \n "), "hi")

    def test_does_not_escape_markup(self):
        self.assertEqual(sanitize_content("<b>x</b> & y"), "<b>x</b> & y")


class TestValidator(unittest.TestCase):
    def setUp(self):
        self.v = Validator(max_message_chars=20, max_total_chars=30)

    def assertFieldError(self, field, **kwargs):
        messages = kwargs.pop("messages", [{"role": "user", "content": "hi"}])
        with self.assertRaises(ValidationError) as ctx:
            self.v.validate(messages, **kwargs)
        self.assertEqual(ctx.exception.field, field)
        return ctx.exception

    def test_valid_request(self):
        req = self.v.validate(
            [{"role": "system", "content": "be terse"}, {"role": "user", "content": " hi "}],
            temperature=0.5,
            max_tokens=10,
            priority=3,
            backend="anthropic",
        )
        self.assertEqual([m.role for m in req.messages], [Role.SYSTEM, Role.USER])
        self.assertEqual(req.messages[1].content, "hi")
        self.assertEqual(req.temperature, 0.5)
        self.assertEqual(req.max_tokens, 10)
        self.assertEqual(req.priority, 3)
        self.assertIs(req.backend, Backend.ANTHROPIC)

    def test_defaults(self):
        req = self.v.validate([{"role": "user", "content": "hi"}])
        self.assertIsNone(req.temperature)
        self.assertIsNone(req.max_tokens)
        self.assertEqual(req.priority, 0)
        self.assertIsNone(req.backend)

    def test_messages_must_be_a_list(self):
        self.assertFieldError("messages", messages="hi")
        self.assertFieldError("messages", messages=None)

    def test_messages_must_not_be_empty(self):
        self.assertFieldError("messages", messages=[])

    def test_message_must_be_object(self):
        self.assertFieldError("messages[0]", messages=["hi"])

    def test_invalid_role(self):
        self.assertFieldError("messages[1].role", messages=[
            {"role": "user", "content": "a"}, {"role": "tool", "content": "b"},
        ])

    def test_content_must_be_string(self):
        self.assertFieldError("messages[0].content", messages=[{"role": "user", "content": 3}])

    def test_content_empty_after_sanitizing(self):
        self.assertFieldError("messages[0].content", messages=[{"role": "user", "content": " \u200b\x00 "}])

    def test_message_too_long(self):
        self.assertFieldError("messages[0].content", messages=[{"role": "user", "content": "x" * 21}])

    def test_total_too_long(self):
        msgs = [{"role": "user", "content": "x" * 20}, {"role": "assistant", "content": "y" * 15}]
        self.assertFieldError("messages", messages=msgs)

    def test_temperature_bounds(self):
        self.v.validate([{"role": "user", "content": "hi"}], temperature=0)
        self.v.validate([{"role": "user", "content": "hi"}], temperature=2)
        self.assertFieldError("temperature", temperature=2.5)
        self.assertFieldError("temperature", temperature=-0.1)
        self.assertFieldError("temperature", temperature=math.nan)
        self.assertFieldError("temperature", temperature="hot")
        self.assertFieldError("temperature", temperature=True)

    def test_max_tokens_positive_integer(self):
        self.assertFieldError("max_tokens", max_tokens=0)
        self.assertFieldError("max_tokens", max_tokens=1.5)

    def test_priority_integer(self):
        self.assertFieldError("priority", priority="high")

    def test_unknown_backend(self):
        err = self.assertFieldError("backend", backend="bard")
        self.assertIn("openai", str(err))

    def test_callback_must_be_callable(self):
        self.assertFieldError("on_chunk", on_chunk="not callable")

    def test_validation_error_maps_to_400(self):
        err = self.assertFieldError("priority", priority=None)
        self.assertEqual(err.status_code, 400)
        self.assertEqual(err.to_dict()["field"], "priority")
