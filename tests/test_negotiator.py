"""Tests for negotiator.py: session creation over HTTP."""
import pytest
import requests

from conftest import FakeHttpSession, FakeResponse
from solver_stream.config import normalize_request
from solver_stream.contracts import Mode
from solver_stream.errors import NegotiationError, ProtocolError
from solver_stream.negotiator import SessionNegotiator, error_message


@pytest.fixture
def request_opt(optimization_config):
    return normalize_request(optimization_config, Mode.OPTIMIZATION)


@pytest.fixture
def request_sim(optimization_config):
    return normalize_request(optimization_config, Mode.SIMULATION)


class TestNegotiate:
    def test_optimization_success(self, endpoints, request_opt):
        http = FakeHttpSession(FakeResponse(200, {"session_id": "abc123",
                                                  "config": {"fidelity": "medium"}}))
        handle = SessionNegotiator(endpoints, session=http).negotiate(request_opt)

        assert handle.session_id == "abc123"
        assert handle.config == {"fidelity": "medium"}
        call = http.calls[0]
        assert call["url"] == "http://solver.test/optimize/sessions"
        assert call["json"]["num_iterations"] == 3
        assert call["json"]["cst_lower"] == [-0.1, -0.08, -0.06]

    def test_simulation_uses_sessions_path(self, endpoints, request_sim):
        http = FakeHttpSession(FakeResponse(201, {"session_id": "sim-1"}))
        handle = SessionNegotiator(endpoints, session=http).negotiate(request_sim)
        assert handle.session_id == "sim-1"
        assert handle.config == {}
        assert http.calls[0]["url"] == "http://solver.test/sessions"

    def test_missing_session_id_is_protocol_error(self, endpoints, request_opt):
        for body in ({"config": {}}, {"session_id": ""}, {"session_id": 42}, ["abc"]):
            http = FakeHttpSession(FakeResponse(200, body))
            with pytest.raises(ProtocolError):
                SessionNegotiator(endpoints, session=http).negotiate(request_opt)

    def test_non_json_success_is_protocol_error(self, endpoints, request_opt):
        http = FakeHttpSession(FakeResponse(200, text="<html>ok</html>"))
        with pytest.raises(ProtocolError):
            SessionNegotiator(endpoints, session=http).negotiate(request_opt)

    def test_http_failure_carries_status_and_detail(self, endpoints, request_opt):
        http = FakeHttpSession(FakeResponse(422, {"detail": "cst_upper too short"}))
        with pytest.raises(NegotiationError) as info:
            SessionNegotiator(endpoints, session=http).negotiate(request_opt)
        assert info.value.status == 422
        assert info.value.message == "cst_upper too short"
        assert "422" in str(info.value)

    def test_transport_failure(self, endpoints, request_opt):
        http = FakeHttpSession(requests.ConnectionError("refused"))
        with pytest.raises(NegotiationError) as info:
            SessionNegotiator(endpoints, session=http).negotiate(request_opt)
        assert info.value.status is None
        assert "refused" in info.value.message

    def test_no_retry(self, endpoints, request_opt):
        http = FakeHttpSession(FakeResponse(503, text="down"),
                               FakeResponse(200, {"session_id": "late"}))
        with pytest.raises(NegotiationError):
            SessionNegotiator(endpoints, session=http).negotiate(request_opt)
        assert len(http.calls) == 1


class TestErrorMessage:
    def test_detail_preferred(self):
        assert error_message(FakeResponse(400, {"detail": "bad", "message": "m"})) == "bad"

    def test_message_field(self):
        assert error_message(FakeResponse(400, {"message": "nope"})) == "nope"

    def test_structured_detail_stringified(self):
        msg = error_message(FakeResponse(422, {"detail": [{"loc": ["body"], "msg": "x"}]}))
        assert "body" in msg

    def test_raw_text_fallback(self):
        assert error_message(FakeResponse(500, text="Internal Server Error")) == \
            "Internal Server Error"

    def test_generic_fallback(self):
        msg = error_message(FakeResponse(502))
        assert msg == "Session creation failed (HTTP 502)"
