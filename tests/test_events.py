from budgetsync.events import NOTIFY, RENDER, TAG_ERROR, EventBus


def test_publish_reaches_subscribers_in_order():
    bus = EventBus()
    seen = []
    bus.subscribe("X", lambda e, p: seen.append(("first", p["n"])))
    bus.subscribe("X", lambda e, p: seen.append(("second", p["n"])))

    bus.publish("X", {"n": 1})

    assert seen == [("first", 1), ("second", 1)]


def test_publish_without_subscribers_is_noop():
    assert EventBus().publish("nobody") == []


def test_failing_listener_does_not_stop_others():
    bus = EventBus()
    seen = []

    def broken(event, payload):
        raise RuntimeError("boom")

    bus.subscribe(RENDER, broken)
    bus.subscribe(RENDER, lambda e, p: seen.append(e.name))

    bus.render()

    assert seen == [RENDER]


def test_unsubscribe_returned_callable():
    bus = EventBus()
    seen = []
    off = bus.subscribe(NOTIFY, lambda e, p: seen.append(p))

    bus.notify("hello", TAG_ERROR)
    off()
    bus.notify("again")

    assert seen == [{"message": "hello", "tag": TAG_ERROR}]
