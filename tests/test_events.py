"""
Tests for docmemory.events — subscribe, wildcard, listener isolation.
"""

import logging

from docmemory.events import EventBus


class TestEventBus:
    def test_emit_to_subscriber(self):
        bus = EventBus()
        seen = []
        bus.subscribe("entry_removed", seen.append)
        event = bus.emit("entry_removed", {"id": "abc"})
        assert len(seen) == 1
        assert seen[0] is event
        assert event.payload == {"id": "abc"}
        assert event.emitted_at

    def test_other_events_not_delivered(self):
        bus = EventBus()
        seen = []
        bus.subscribe("a", seen.append)
        bus.emit("b")
        assert seen == []

    def test_wildcard(self):
        bus = EventBus()
        names = []
        bus.subscribe("*", lambda e: names.append(e.name))
        bus.emit("pruning_started")
        bus.emit("pruning_completed")
        assert names == ["pruning_started", "pruning_completed"]

    def test_unsubscribe_handle(self):
        bus = EventBus()
        seen = []
        off = bus.subscribe("x", seen.append)
        assert bus.subscriber_count("x") == 1
        off()
        bus.emit("x")
        assert seen == []
        assert bus.subscriber_count() == 0

    def test_unsubscribe_unknown(self):
        assert not EventBus().unsubscribe("x", print)

    def test_failing_listener_isolated(self, caplog):
        bus = EventBus()
        seen = []

        def boom(event):
            raise RuntimeError("listener failed")

        bus.subscribe("x", boom)
        bus.subscribe("x", seen.append)
        with caplog.at_level(logging.ERROR, logger="docmemory.events"):
            bus.emit("x")
        assert len(seen) == 1
        assert "listener failed" in caplog.text

    def test_payload_copied(self):
        bus = EventBus()
        payload = {"k": 1}
        event = bus.emit("x", payload)
        payload["k"] = 2
        assert event.payload == {"k": 1}
