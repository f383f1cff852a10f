from __future__ import annotations

from alertgov.events import EventBus


def test_handlers_run_in_order():
    bus = EventBus()
    seen = []
    bus.subscribe("t", lambda _t, p: seen.append(("a", p)))
    bus.subscribe("t", lambda _t, p: seen.append(("b", p)))
    assert bus.publish("t", 1) == 2
    assert seen == [("a", 1), ("b", 1)]


def test_failing_handler_does_not_stop_others():
    bus = EventBus()
    seen = []

    def boom(_t, _p):
        raise RuntimeError("handler bug")

    bus.subscribe("t", boom)
    bus.subscribe("t", lambda _t, p: seen.append(p))
    assert bus.publish("t", "x") == 1
    assert seen == ["x"]


def test_unsubscribe():
    bus = EventBus()
    seen = []
    unsubscribe = bus.subscribe("t", lambda _t, p: seen.append(p))
    unsubscribe()
    unsubscribe()
    assert bus.publish("t", 1) == 0
    assert bus.handler_count("t") == 0
    assert seen == []


def test_publish_without_subscribers():
    assert EventBus().publish("nobody", None) == 0
