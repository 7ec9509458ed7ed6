import pytest

from errors import ReconnectTimedOut
from reconnect import ReconnectPolicy
from fakes import ManualScheduler


def make_policy(max_attempts=5):
    scheduler = ManualScheduler()
    calls = {"retry": 0, "gave_up": []}

    def retry():
        calls["retry"] += 1

    policy = ReconnectPolicy(retry, calls["gave_up"].append, max_attempts, call_later=scheduler)
    return policy, scheduler, calls


def test_delays_grow_linearly_then_give_up():
    policy, scheduler, calls = make_policy()

    delays = [policy.failed() for _ in range(5)]
    assert delays == pytest.approx([0.15, 1.15, 2.15, 3.15, 4.15])
    assert calls["gave_up"] == []

    assert policy.failed() is None
    assert len(calls["gave_up"]) == 1
    assert isinstance(calls["gave_up"][0], ReconnectTimedOut)
    assert calls["gave_up"][0].attempts == 5
    assert str(calls["gave_up"][0]) == "Reconnect timed out"
    assert policy.attempt == 0
    assert not policy.pending


def test_only_one_timer_is_pending():
    policy, scheduler, _ = make_policy()
    policy.failed()
    policy.failed()
    assert [h.cancelled for h in scheduler.scheduled] == [True, False]
    assert policy.pending


def test_firing_the_timer_calls_retry():
    policy, scheduler, calls = make_policy()
    policy.failed()
    scheduler.fire_last()
    assert calls["retry"] == 1
    assert not policy.pending


def test_success_resets_counter():
    policy, scheduler, calls = make_policy()
    for _ in range(3):
        policy.failed()
        scheduler.fire_last()
    policy.succeeded()

    assert policy.attempt == 0
    assert policy.failed() == pytest.approx(0.15)
    assert calls["gave_up"] == []


def test_cancel_drops_pending_timer():
    policy, scheduler, _ = make_policy()
    policy.failed()
    policy.cancel()
    assert scheduler.scheduled[-1].cancelled
    assert policy.attempt == 0
