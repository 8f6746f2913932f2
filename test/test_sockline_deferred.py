# test/test_sockline_deferred.py
#
# DeferredQueue flush semantics, overflow policies and Action encoding.

from __future__ import annotations

import json

import pytest

from sockline.deferred import Action, ActionKind, DeferredQueue, OverflowPolicy
from sockline.errors import DeferredQueueFull
from sockline.selector import Selector


def _sel(name: str) -> Selector:
    return Selector.relative(name, "-5m", granularity="15s")


def _actions(*names: str) -> list[Action]:
    return [Action(ActionKind.SUBSCRIBE, _sel(n)) for n in names]


def test_action_encodes_compact_json_with_list_body():
    action = Action(ActionKind.GET, _sel("cpu.load"))
    assert action.to_message() == {
        "get": [{"identifier": "cpu.load", "from": "-5m", "until": "now", "granularity": "15s"}]
    }
    text = action.encode()
    assert " " not in text
    assert json.loads(text) == action.to_message()


@pytest.mark.parametrize("kind", list(ActionKind))
def test_action_message_key_is_kind(kind):
    assert list(Action(kind, _sel("x")).to_message()) == [kind.value]


def test_flush_attempts_each_action_once_in_order():
    q = DeferredQueue()
    for a in _actions("a", "b", "c"):
        q.push(a)

    seen = []
    result = q.flush(lambda a: seen.append(a.selector.identifier) or True)

    assert seen == ["a", "b", "c"]
    assert (result.attempted, result.sent, result.remaining) == (3, 3, 0)
    assert len(q) == 0


def test_flush_keeps_unsent_actions_in_relative_order():
    q = DeferredQueue()
    for a in _actions("a", "b", "c", "d"):
        q.push(a)

    result = q.flush(lambda a: a.selector.identifier in ("b", "d"))

    assert (result.attempted, result.sent, result.remaining) == (4, 2, 2)
    assert [a.selector.identifier for a in q] == ["a", "c"]


def test_actions_queued_during_flush_go_after_kept_ones_and_wait():
    q = DeferredQueue()
    for a in _actions("a", "b"):
        q.push(a)

    seen = []

    def sender(action):
        seen.append(action.selector.identifier)
        if action.selector.identifier == "a":
            q.push(_actions("late")[0])
        return False

    q.flush(sender)

    assert seen == ["a", "b"]
    assert [a.selector.identifier for a in q] == ["a", "b", "late"]


def test_sender_exception_keeps_unattempted_actions():
    q = DeferredQueue()
    for a in _actions("a", "b", "c"):
        q.push(a)

    def sender(action):
        if action.selector.identifier == "b":
            raise RuntimeError("transport bug")
        return True

    with pytest.raises(RuntimeError):
        q.flush(sender)

    assert [a.selector.identifier for a in q] == ["b", "c"]


def test_unbounded_by_default():
    q = DeferredQueue(max_len=0)
    for i in range(5000):
        assert q.push(Action(ActionKind.GET, _sel(f"s{i}"))) is None
    assert len(q) == 5000


def test_drop_oldest_policy():
    q = DeferredQueue(max_len=2, policy=OverflowPolicy.DROP_OLDEST)
    a, b, c = _actions("a", "b", "c")
    q.push(a)
    q.push(b)

    assert q.push(c) is a
    assert [x.selector.identifier for x in q] == ["b", "c"]


def test_drop_newest_policy():
    q = DeferredQueue(max_len=2, policy=OverflowPolicy.DROP_NEWEST)
    a, b, c = _actions("a", "b", "c")
    q.push(a)
    q.push(b)

    assert q.push(c) is c
    assert [x.selector.identifier for x in q] == ["a", "b"]


def test_raise_policy():
    q = DeferredQueue(max_len=1, policy=OverflowPolicy.RAISE)
    a, b = _actions("a", "b")
    q.push(a)

    with pytest.raises(DeferredQueueFull):
        q.push(b)
    assert [x.selector.identifier for x in q] == ["a"]


def test_negative_max_len_rejected():
    with pytest.raises(ValueError):
        DeferredQueue(max_len=-1)


def test_snapshot_lists_messages():
    q = DeferredQueue()
    q.push(Action(ActionKind.UNSUBSCRIBE, _sel("cpu.load")))
    assert q.snapshot() == [{"unsubscribe": [_sel("cpu.load").to_json()]}]
