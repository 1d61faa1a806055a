import queue

from events import CLOSED, Broadcaster


def test_notify_without_observer_is_a_no_op():
    Broadcaster().notify({"type": "call_progress"})


def test_single_observer_receives_events(broadcaster):
    q = broadcaster.subscribe()
    broadcaster.notify({"type": "call_progress", "call": {"id": "CA1"}})
    assert q.get_nowait()["call"]["id"] == "CA1"


def test_new_observer_replaces_and_closes_the_old_one(broadcaster):
    old = broadcaster.subscribe()
    new = broadcaster.subscribe()
    assert broadcaster.observer is new
    assert old.get_nowait() is CLOSED

    broadcaster.notify({"type": "x"})
    assert new.get_nowait() == {"type": "x"}
    assert old.empty()


def test_stale_observer_cannot_clear_the_slot(broadcaster):
    old = broadcaster.subscribe()
    new = broadcaster.subscribe()
    assert not broadcaster.detach(old)
    assert broadcaster.observer is new
    broadcaster.unsubscribe(new)
    assert broadcaster.observer is None


def test_full_observer_drops_events():
    broadcaster = Broadcaster(max_pending=1)
    q = broadcaster.subscribe()
    broadcaster.notify({"n": 1})
    broadcaster.notify({"n": 2})
    assert q.get_nowait() == {"n": 1}
    assert q.empty()


def test_any_put_nowait_observer_works(broadcaster):
    q = queue.SimpleQueue()
    assert broadcaster.attach(q) is None
    broadcaster.notify({"n": 1})
    assert q.get_nowait() == {"n": 1}
