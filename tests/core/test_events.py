"""Tests for event bus."""

from splatrig.core.events import EventBus, EventType


def test_subscribe_publish():
    bus = EventBus()
    received = []
    bus.subscribe(EventType.PIPELINE_PROGRESS, lambda **kw: received.append(kw))
    bus.publish(EventType.PIPELINE_PROGRESS, phase="classify_splats", progress=0.5)
    assert len(received) == 1
    assert received[0] == {"phase": "classify_splats", "progress": 0.5}


def test_unsubscribe():
    bus = EventBus()
    received = []
    handler = lambda **kw: received.append(kw)
    bus.subscribe(EventType.PIPELINE_PHASE, handler)
    bus.unsubscribe(EventType.PIPELINE_PHASE, handler)
    bus.publish(EventType.PIPELINE_PHASE, phase="Saving...")
    assert len(received) == 0


def test_unsubscribe_unknown_handler_is_noop():
    bus = EventBus()
    bus.unsubscribe(EventType.PIPELINE_PHASE, lambda **kw: None)


def test_multiple_subscribers():
    bus = EventBus()
    a, b = [], []
    bus.subscribe(EventType.PIPELINE_COMPLETE, lambda **kw: a.append(1))
    bus.subscribe(EventType.PIPELINE_COMPLETE, lambda **kw: b.append(1))
    bus.publish(EventType.PIPELINE_COMPLETE, output="out.gvrm")
    assert len(a) == 1
    assert len(b) == 1


def test_different_events_independent():
    bus = EventBus()
    received = []
    bus.subscribe(EventType.PIPELINE_FAILED, lambda **kw: received.append("failed"))
    bus.publish(EventType.PIPELINE_COMPLETE, output="out.gvrm")
    assert len(received) == 0


def test_handler_may_unsubscribe_during_publish():
    bus = EventBus()
    calls = []

    def once(**kw):
        calls.append(kw)
        bus.unsubscribe(EventType.PIPELINE_RETRY, once)

    bus.subscribe(EventType.PIPELINE_RETRY, once)
    bus.publish(EventType.PIPELINE_RETRY, hints=None, error="x")
    bus.publish(EventType.PIPELINE_RETRY, hints=None, error="y")
    assert len(calls) == 1
