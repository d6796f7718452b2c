import pytest

from segrelay.session_events import SEGMENT_FINALIZED, SESSION_STARTED, SessionEventBus


def test_publish_records_history_and_notifies():
    bus = SessionEventBus()
    seen = []
    bus.subscribe(seen.append)

    payload = {"filename": "a.wav"}
    bus.publish(SEGMENT_FINALIZED, payload)
    payload["filename"] = "mutated"

    assert [event["type"] for event in seen] == [SEGMENT_FINALIZED]
    assert bus.history_snapshot()[0]["payload"] == {"filename": "a.wav"}
    assert seen[0]["seq"] == 1


def test_history_is_bounded_and_filterable():
    bus = SessionEventBus(history_limit=3)
    for index in range(5):
        bus.publish(SEGMENT_FINALIZED, {"sequence": index})
    bus.publish(SESSION_STARTED, {})

    history = bus.history_snapshot()
    assert len(history) == 3
    assert [e["payload"]["sequence"] for e in bus.history_snapshot(SEGMENT_FINALIZED)] == [3, 4]


def test_unsubscribe_and_failing_subscriber(caplog):
    bus = SessionEventBus()
    seen = []

    def broken(event):
        raise RuntimeError("subscriber bug")

    bus.subscribe(broken)
    unsubscribe = bus.subscribe(seen.append)
    bus.publish(SESSION_STARTED, {})
    unsubscribe()
    bus.publish(SESSION_STARTED, {})

    assert len(seen) == 1
    assert "event subscriber failed" in caplog.text


def test_rejects_empty_event_type():
    with pytest.raises(ValueError):
        SessionEventBus().publish("", {})
