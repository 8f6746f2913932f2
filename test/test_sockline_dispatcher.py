# test/test_sockline_dispatcher.py
#
# Envelope routing: one-shot "get" vs persistent "subscription", plus the
# error records produced for bad envelopes and items.

from __future__ import annotations

import pytest

from test.helpers.fakes import Recorder

from sockline.dispatcher import (
    ERR_DISPATCH_MISS,
    ERR_INVALID_ITEM,
    ERR_MALFORMED_MESSAGE,
    ERR_UNKNOWN_RESULT,
    DispatchSeverity,
    Dispatcher,
)
from sockline.registry import CallbackRegistry


S = {"identifier": "cpu.load", "from": "-5m", "until": "now", "granularity": "15s"}
S_REORDERED = {"until": "now", "granularity": "15s", "identifier": "cpu.load", "from": "-5m"}
OTHER = {"identifier": "mem.used", "from": "-1h", "until": "now", "granularity": "1m"}


def _item(selector, result="success", data=None, *, key="graphSelector"):
    return {key: selector, "result": result, "data": data}


@pytest.fixture
def registries():
    return CallbackRegistry("get"), CallbackRegistry("subscription")


@pytest.fixture
def dispatcher(registries):
    gets, subs = registries
    return Dispatcher(gets, subs)


@pytest.fixture
def reported(dispatcher):
    errors = []
    dispatcher.register_error_handler(errors.append)
    return errors


def test_get_item_is_delivered_once(dispatcher, registries, reported):
    gets, _ = registries
    s, e = Recorder(), Recorder()
    gets.register(S, s, e)

    res = dispatcher.dispatch({"get": [_item(S_REORDERED, data=[[1, 0.5]])]})
    assert (res.items, res.delivered, res.invoked) == (1, 1, 1)
    assert res.handled is True
    assert s.calls == [[[1, 0.5]]]

    res = dispatcher.dispatch({"get": [_item(S, data=[[2, 0.7]])]})
    assert res.handled is False
    assert [err.code for err in res.errors] == [ERR_DISPATCH_MISS]
    assert s.calls == [[[1, 0.5]]]


def test_subscription_item_is_delivered_persistently(dispatcher, registries):
    _, subs = registries
    order = []
    subs.register(S, Recorder("s1", order), Recorder("e1", order))
    subs.register(S, Recorder("s2", order), Recorder("e2", order))

    dispatcher.dispatch({"subscription": [_item(S, data=1)]})
    dispatcher.dispatch({"subscription": [_item(S, data=2)]})

    assert order == [("s1", 1), ("s2", 1), ("s1", 2), ("s2", 2)]
    assert S in subs


def test_error_result_goes_to_error_handlers_with_item_payload(dispatcher, registries):
    _, subs = registries
    s, e = Recorder(), Recorder()
    subs.register(S, s, e)

    res = dispatcher.dispatch({"subscription": [_item(S, "error", "series gone")]})

    assert res.errors == []
    assert s.calls == []
    assert e.calls == ["series gone"]


def test_get_and_subscription_sections_do_not_cross(dispatcher, registries, reported):
    gets, subs = registries
    get_s, sub_s = Recorder(), Recorder()
    gets.register(S, get_s, Recorder())
    subs.register(S, sub_s, Recorder())

    dispatcher.dispatch({"subscription": [_item(S, data="stream")]})
    assert get_s.calls == []
    assert sub_s.calls == ["stream"]

    dispatcher.dispatch({"get": [_item(S, data="snap")]})
    assert get_s.calls == ["snap"]
    assert sub_s.calls == ["stream"]


def test_both_sections_in_one_envelope_get_first(dispatcher, registries):
    gets, subs = registries
    order = []
    gets.register(S, Recorder("get", order), Recorder())
    subs.register(S, Recorder("sub", order), Recorder())

    res = dispatcher.dispatch({
        "subscription": [_item(S, data="b")],
        "get": [_item(S, data="a")],
    })

    assert order == [("get", "a"), ("sub", "b")]
    assert res.items == 2 and res.delivered == 2


def test_multiple_items_dispatched_in_order(dispatcher, registries):
    _, subs = registries
    order = []
    subs.register(S, Recorder("cpu", order), Recorder())
    subs.register(OTHER, Recorder("mem", order), Recorder())

    dispatcher.dispatch({"subscription": [_item(OTHER, data=1), _item(S, data=2), _item(OTHER, data=3)]})

    assert order == [("mem", 1), ("cpu", 2), ("mem", 3)]


def test_selector_alias_is_accepted(dispatcher, registries):
    _, subs = registries
    s = Recorder()
    subs.register(S, s, Recorder())

    dispatcher.dispatch({"subscription": [_item(S, data=9, key="selector")]})
    assert s.calls == [9]


def test_envelope_without_sections_is_malformed(dispatcher, reported):
    res = dispatcher.dispatch({"hello": "world"})

    assert res.items == 0
    assert len(reported) == 1
    err = reported[0]
    assert err.code == ERR_MALFORMED_MESSAGE
    assert err.severity is DispatchSeverity.ERROR
    assert err.keys == ("hello",)


def test_empty_envelope_is_malformed(dispatcher, reported):
    dispatcher.dispatch({})
    assert [e.code for e in reported] == [ERR_MALFORMED_MESSAGE]


def test_non_mapping_envelope_raises(dispatcher):
    with pytest.raises(TypeError):
        dispatcher.dispatch(["get"])


def test_section_that_is_not_a_list(dispatcher, registries, reported):
    _, subs = registries
    s = Recorder()
    subs.register(S, s, Recorder())

    dispatcher.dispatch({"get": {"oops": True}, "subscription": [_item(S, data=1)]})

    assert [e.code for e in reported] == [ERR_INVALID_ITEM]
    assert reported[0].section == "get"
    # The well-formed section still goes through.
    assert s.calls == [1]


@pytest.mark.parametrize(
    "item",
    [
        "not an object",
        {"result": "success", "data": 1},
        {"graphSelector": {"identifier": "cpu.load"}, "result": "success"},
        {"graphSelector": dict(S, granularity="soon"), "result": "success"},
    ],
)
def test_invalid_items_are_reported_and_skipped(dispatcher, registries, reported, item):
    _, subs = registries
    s = Recorder()
    subs.register(S, s, Recorder())

    res = dispatcher.dispatch({"subscription": [item, _item(S, data="ok")]})

    assert [e.code for e in reported] == [ERR_INVALID_ITEM]
    assert s.calls == ["ok"]
    assert res.items == 2 and res.delivered == 1


@pytest.mark.parametrize("result", ["partial", None, "SUCCESS"])
def test_unknown_result_invokes_nothing(dispatcher, registries, reported, result):
    _, subs = registries
    s, e = Recorder(), Recorder()
    subs.register(S, s, e)

    dispatcher.dispatch({"subscription": [_item(S, result, "x")]})

    assert s.calls == [] and e.calls == []
    assert len(reported) == 1
    assert reported[0].code == ERR_UNKNOWN_RESULT
    assert reported[0].identifier == "cpu.load"


def test_miss_is_reported_at_debug_severity(dispatcher, reported):
    dispatcher.dispatch({"subscription": [_item(OTHER, data=1)]})

    assert len(reported) == 1
    assert reported[0].code == ERR_DISPATCH_MISS
    assert reported[0].severity is DispatchSeverity.DEBUG
    assert reported[0].identifier == "mem.used"


def test_error_handler_exceptions_are_contained(dispatcher, reported):
    def boom(err):
        raise RuntimeError("handler bug")

    dispatcher.register_error_handler(boom)
    late = []
    dispatcher.register_error_handler(late.append)

    dispatcher.dispatch({"nothing": 1})

    assert len(reported) == 1
    assert len(late) == 1


def test_unregister_error_handler(dispatcher, reported):
    dispatcher.unregister_error_handler(reported.append)
    dispatcher.dispatch({"nothing": 1})
    assert reported == []
    # Unknown handler is a no-op.
    dispatcher.unregister_error_handler(reported.append)
