"""Tests for the bounded-time event dispatcher."""

from __future__ import annotations

import threading
from datetime import UTC, datetime

import pytest

from idlc.events import Event, EventDispatcher, ExternalEvent, TransitionApplied


def _transition() -> TransitionApplied:
    return TransitionApplied(
        item_id="idea-1",
        team_id="default",
        config_version=1,
        from_status="triage",
        to_status="backlog",
        from_stage="triage",
        to_stage="backlog",
        actor="alice",
        occurred_at=datetime(2026, 3, 2, 9, 0, tzinfo=UTC),
    )


class TestEvents:
    def test_transition_type(self) -> None:
        assert _transition().type == "transition"
        assert _transition().depth == 0

    def test_external_event_payload_is_read_only(self) -> None:
        event = ExternalEvent("alert_fired", item_id="idea-1")
        assert dict(event.payload) == {}
        with pytest.raises(TypeError):
            event.payload["x"] = 1  # type: ignore[index]


class TestDispatcher:
    def test_delivers_to_every_subscriber(self) -> None:
        dispatcher = EventDispatcher(timeout=2.0)
        first: list[Event] = []
        second: list[Event] = []
        dispatcher.subscribe(first.append)
        dispatcher.subscribe(second.append)
        try:
            event = _transition()
            dispatcher.publish(event)
        finally:
            dispatcher.close()
        assert first == [event]
        assert second == [event]

    def test_failing_subscriber_is_logged(self, caplog: pytest.LogCaptureFixture) -> None:
        dispatcher = EventDispatcher(timeout=2.0)
        received: list[Event] = []

        def broken(event: Event) -> None:
            raise RuntimeError("subscriber bug")

        dispatcher.subscribe(broken, name="broken")
        dispatcher.subscribe(received.append)
        try:
            with caplog.at_level("WARNING"):
                dispatcher.publish(ExternalEvent("pr_merged"))
        finally:
            dispatcher.close()
        assert len(received) == 1
        assert "Subscriber broken failed on pr_merged event" in caplog.text

    def test_slow_subscriber_is_abandoned(self, caplog: pytest.LogCaptureFixture) -> None:
        dispatcher = EventDispatcher(timeout=0.05)
        release = threading.Event()

        def slow(event: Event) -> None:
            release.wait(timeout=5)

        dispatcher.subscribe(slow, name="slow")
        try:
            with caplog.at_level("WARNING"):
                dispatcher.publish(ExternalEvent("alert_fired"))
        finally:
            release.set()
            dispatcher.close()
        assert "Subscriber slow exceeded 0.05s budget on alert_fired event" in caplog.text

    def test_unsubscribe(self) -> None:
        dispatcher = EventDispatcher(timeout=2.0)
        received: list[Event] = []
        dispatcher.subscribe(received.append)
        dispatcher.unsubscribe(received.append)
        try:
            dispatcher.publish(ExternalEvent("pr_merged"))
        finally:
            dispatcher.close()
        assert received == []

    def test_publish_after_close_is_dropped(self) -> None:
        dispatcher = EventDispatcher(timeout=2.0)
        received: list[Event] = []
        dispatcher.subscribe(received.append)
        dispatcher.close()
        dispatcher.publish(ExternalEvent("pr_merged"))
        assert received == []

    def test_automation_events_are_delivered_inline(self, caplog: pytest.LogCaptureFixture) -> None:
        dispatcher = EventDispatcher(timeout=2.0, max_workers=1)
        threads: list[threading.Thread] = []

        def broken(event: Event) -> None:
            raise RuntimeError("subscriber bug")

        dispatcher.subscribe(lambda event: threads.append(threading.current_thread()), name="record")
        dispatcher.subscribe(broken, name="broken")
        try:
            with caplog.at_level("WARNING"):
                dispatcher.publish(ExternalEvent("pr_merged", depth=1))
                dispatcher.publish(ExternalEvent("pr_merged"))
        finally:
            dispatcher.close()
        assert threads[0] is threading.current_thread()
        assert threads[1] is not threading.current_thread()
        assert caplog.text.count("Subscriber broken failed on pr_merged event") == 2
