"""Typed event bus."""

from __future__ import annotations

import pytest

from ai_dispatch.events import CacheHit, CacheMiss, DispatchEvent, EventBus


def test_subscribers_receive_only_their_type():
    bus = EventBus()
    hits, misses = [], []
    bus.subscribe(CacheHit, hits.append)
    bus.subscribe(CacheMiss, misses.append)
    bus.publish(CacheHit("req:a"))
    assert hits == [CacheHit("req:a")]
    assert misses == []


def test_wildcard_subscription():
    bus = EventBus()
    everything = []
    bus.subscribe(DispatchEvent, everything.append)
    bus.publish(CacheHit("req:a"))
    bus.publish(CacheMiss("req:b"))
    assert everything == [CacheHit("req:a"), CacheMiss("req:b")]


def test_unsubscribe():
    bus = EventBus()
    hits = []
    unsubscribe = bus.subscribe(CacheHit, hits.append)
    unsubscribe()
    unsubscribe()
    bus.publish(CacheHit("req:a"))
    assert hits == []


def test_failing_handler_does_not_break_others(caplog):
    bus = EventBus()
    hits = []

    def broken(_event):
        raise RuntimeError("handler bug")

    bus.subscribe(CacheHit, broken)
    bus.subscribe(CacheHit, hits.append)
    bus.publish(CacheHit("req:a"))
    assert hits == [CacheHit("req:a")]
    assert "handler bug" in caplog.text


def test_unknown_types_rejected():
    bus = EventBus()
    with pytest.raises(TypeError):
        bus.subscribe(dict, print)
    with pytest.raises(TypeError):
        bus.publish({"type": "cache_hit"})


def test_events_are_immutable():
    event = CacheHit("req:a")
    with pytest.raises(AttributeError):
        event.fingerprint = "req:b"
