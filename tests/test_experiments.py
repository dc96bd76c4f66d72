"""Tests for experiments.py: saving a finished session on the backend."""
import pytest
import requests

from conftest import FakeHttpSession, FakeResponse
from solver_stream.errors import ConfigError, NegotiationError
from solver_stream.experiments import save_experiment


def test_save_posts_name_and_flags(endpoints):
    http = FakeHttpSession(FakeResponse(200, {"experiment_id": 12}))
    result = save_experiment(endpoints, "abc123", "  My foil  ", user_id="u-1",
                             is_optimized=True, session=http)

    assert result == {"experiment_id": 12}
    call = http.calls[0]
    assert call["url"] == "http://solver.test/save_experiment/abc123"
    assert call["json"] == {"name": "My foil", "user_id": "u-1", "is_optimized": True}


def test_reply_without_json(endpoints):
    http = FakeHttpSession(FakeResponse(204))
    assert save_experiment(endpoints, "abc123", "x", session=http) == {}


def test_non_object_reply_wrapped(endpoints):
    http = FakeHttpSession(FakeResponse(200, ["ok"]))
    assert save_experiment(endpoints, "abc123", "x", session=http) == {"result": ["ok"]}


@pytest.mark.parametrize("session_id, name", [("", "name"), ("abc", ""), ("abc", "   ")])
def test_missing_inputs(endpoints, session_id, name):
    http = FakeHttpSession()
    with pytest.raises(ConfigError):
        save_experiment(endpoints, session_id, name, session=http)
    assert http.calls == []


def test_backend_rejection(endpoints):
    http = FakeHttpSession(FakeResponse(404, {"detail": "Session not found"}))
    with pytest.raises(NegotiationError) as info:
        save_experiment(endpoints, "gone", "x", session=http)
    assert info.value.status == 404
    assert info.value.message == "Session not found"


def test_unreachable_backend(endpoints):
    http = FakeHttpSession(requests.Timeout("timed out"))
    with pytest.raises(NegotiationError) as info:
        save_experiment(endpoints, "abc123", "x", session=http)
    assert info.value.status is None
