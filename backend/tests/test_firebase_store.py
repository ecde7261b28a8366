from unittest.mock import MagicMock

import pytest
import requests

from smarthome.core.errors import StoreTimeout, StoreUnavailable
from smarthome.services.firebase_store import FirebaseRestStore, apply_event, iter_events

from conftest import ROOT, wait_for


def make_store():
    store = FirebaseRestStore("https://example-rtdb.firebaseio.com/", auth_token="secret", timeout=3)
    store.session = MagicMock()
    return store


def test_iter_events_parses_stream():
    lines = [
        "event: put",
        'data: {"path": "/", "data": {"led1": true}}',
        "",
        ": comment",
        "event: keep-alive",
        "data: null",
        "",
        "event: patch",
        'data: {"path": "/", "data": {"led2": true}}',
    ]

    assert list(iter_events(lines)) == [
        ("put", {"path": "/", "data": {"led1": True}}),
        ("keep-alive", None),
        ("patch", {"path": "/", "data": {"led2": True}}),
    ]


def test_apply_event_folds_puts_and_patches():
    cache = apply_event(None, "put", {"path": "/", "data": {"led1": True, "mode": "normal"}})
    cache = apply_event(cache, "patch", {"path": "/", "data": {"led2": True, "led1": None}})
    cache = apply_event(cache, "put", {"path": "/timer", "data": {"id": "t1", "active": True}})
    cache = apply_event(cache, "put", {"path": "/timer/active", "data": False})

    assert cache == {"mode": "normal", "led2": True, "timer": {"id": "t1", "active": False}}
    assert apply_event(cache, "put", {"path": "/timer", "data": None}) == {"mode": "normal", "led2": True}


def test_requests_use_json_paths_and_auth():
    store = make_store()
    response = MagicMock(content=b'{"led1": true}')
    response.json.return_value = {"led1": True}
    store.session.request.return_value = response

    assert store.read(ROOT) == {"led1": True}
    store.merge(ROOT, {"led2": True})
    store.write(f"{ROOT}/timer", None)

    calls = store.session.request.call_args_list
    assert calls[0].args == ("GET", f"https://example-rtdb.firebaseio.com/{ROOT}.json")
    assert calls[0].kwargs["params"] == {"auth": "secret"}
    assert calls[1].args[0] == "PATCH"
    assert calls[1].kwargs["data"] == '{"led2": true}'
    assert calls[2].args == ("DELETE", f"https://example-rtdb.firebaseio.com/{ROOT}/timer.json")


@pytest.mark.parametrize(
    "error, expected",
    [
        (requests.Timeout("slow"), StoreTimeout),
        (requests.ConnectionError("refused"), StoreUnavailable),
    ],
)
def test_transport_errors_become_store_errors(error, expected):
    store = make_store()
    store.session.request.side_effect = error

    with pytest.raises(expected):
        store.read(ROOT)


def test_stream_delivers_cached_subtree_and_reports_close():
    store = make_store()
    response = MagicMock()
    response.__enter__.return_value = response
    response.iter_lines.return_value = iter(
        [
            "event: put",
            'data: {"path": "/", "data": {"led1": false}}',
            "",
            "event: patch",
            'data: {"path": "/", "data": {"led1": true}}',
            "",
        ]
    )
    store.session.get.return_value = response
    received = []
    errors = []

    store.subscribe(ROOT, received.append, errors.append)

    assert wait_for(lambda: len(errors) == 1)
    assert received == [{"led1": False}, {"led1": True}]
    assert isinstance(errors[0], StoreUnavailable)


@pytest.mark.parametrize(
    "payload",
    [
        "data: {not json",
        'data: {"data": {"led1": true}}',
        'data: ["path", "data"]',
    ],
)
def test_malformed_stream_event_is_reported(payload):
    store = make_store()
    response = MagicMock()
    response.__enter__.return_value = response
    response.iter_lines.return_value = iter(["event: put", payload, ""])
    store.session.get.return_value = response
    received = []
    errors = []

    store.subscribe(ROOT, received.append, errors.append)

    assert wait_for(lambda: len(errors) == 1)
    assert received == []
    assert isinstance(errors[0], StoreUnavailable)


def test_stream_timeout_is_reported_as_store_timeout():
    store = make_store()
    store.session.get.side_effect = requests.ReadTimeout("no keep-alive")
    errors = []

    store.subscribe(ROOT, lambda value: None, errors.append)

    assert wait_for(lambda: len(errors) == 1)
    assert isinstance(errors[0], StoreTimeout)


def test_missing_url_is_rejected():
    with pytest.raises(ValueError):
        FirebaseRestStore("")
