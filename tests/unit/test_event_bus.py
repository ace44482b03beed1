import threading
from mbc.infrastructure.event_bus import EventBus
from mbc.domain.events import Event, OverallProgress, PhaseStarted

class MockEvent(Event):
    message: str

def test_event_bus_subscribe_publish():
    bus = EventBus()
    received_events = []

    def callback(event: MockEvent):
        received_events.append(event)

    bus.subscribe(MockEvent, callback)

    event = MockEvent(message="hello")
    bus.publish(event)

    assert len(received_events) == 1
    assert received_events[0].message == "hello"

def test_event_bus_multiple_subscribers():
    bus = EventBus()
    results = {"a": False, "b": False}

    bus.subscribe(MockEvent, lambda e: results.update({"a": True}))
    bus.subscribe(MockEvent, lambda e: results.update({"b": True}))

    bus.publish(MockEvent(message="test"))

    assert results["a"] is True
    assert results["b"] is True

def test_event_bus_decorator_subscribe():
    bus = EventBus()
    received = []

    @bus.subscribe(MockEvent)
    def on_event(event: MockEvent):
        received.append(event)

    bus.publish(MockEvent(message="decorator"))
    assert len(received) == 1
    assert received[0].message == "decorator"

def test_event_bus_dispatches_by_exact_type():
    bus = EventBus()
    received = []
    bus.subscribe(PhaseStarted, received.append)

    bus.publish(OverallProgress(processed=1, total=2))
    bus.publish(PhaseStarted(kind="image", count=3, concurrency=2))

    assert len(received) == 1
    assert received[0].kind == "image"

def test_event_bus_publish_from_threads():
    bus = EventBus()
    received = []
    lock = threading.Lock()

    def on_progress(event):
        with lock:
            received.append(event.processed)

    bus.subscribe(OverallProgress, on_progress)
    threads = [threading.Thread(target=bus.publish, args=(OverallProgress(processed=i, total=20),)) for i in range(20)]
    for t in threads:
        t.start()
    for t in threads:
        t.join()

    assert sorted(received) == list(range(20))

def test_overall_progress_percent():
    assert OverallProgress(processed=1, total=4).percent == 25.0
    assert OverallProgress(processed=0, total=0).percent == 100.0
