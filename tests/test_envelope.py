import json

import pytest

from polyspi.envelope import (
    JsonRpcEnvelopeError,
    JsonRpcError,
    JsonRpcRequest,
    JsonRpcResponse,
)
from polyspi.limits import SpiError


def test_request_wire_field_order():
    request = JsonRpcRequest("check", "req-1", {})
    assert list(request.to_dict()) == ["jsonrpc", "method", "id", "params"]
    assert (
        json.dumps(request.to_dict(), separators=(",", ":"))
        == '{"jsonrpc":"2.0","method":"check","id":"req-1","params":{}}'
    )


def test_request_round_trip():
    request = JsonRpcRequest("extract", 7, {"a": [1, 2]})
    assert JsonRpcRequest.from_dict(request.to_dict()) == request


def test_request_missing_id_is_rejected():
    with pytest.raises(ValueError, match="id"):
        JsonRpcRequest.from_dict({"jsonrpc": "2.0", "method": "check", "params": {}})


def test_request_non_string_method_is_rejected():
    with pytest.raises(ValueError, match="method"):
        JsonRpcRequest.from_dict({"jsonrpc": "2.0", "method": 1, "id": "x", "params": {}})


def test_request_not_an_object_is_rejected():
    with pytest.raises(ValueError):
        JsonRpcRequest.from_dict(["jsonrpc"])


def test_response_omits_absent_fields():
    response = JsonRpcResponse("req-1", result={"ok": True})
    assert response.to_dict() == {"jsonrpc": "2.0", "id": "req-1", "result": {"ok": True}}
    assert "error" not in response.to_dict()


def test_response_round_trip_with_error():
    response = JsonRpcResponse("req-1", error=JsonRpcError(-1, "bad", {"x": 1}))
    decoded = JsonRpcResponse.from_dict(response.to_dict())
    assert decoded == response
    assert decoded.result is None
    assert decoded.error.code == -1


def test_response_null_result_reads_as_absent():
    decoded = JsonRpcResponse.from_dict({"jsonrpc": "2.0", "id": "r", "result": None})
    assert decoded.result is None
    assert decoded.error is None


def test_response_missing_id_is_rejected():
    with pytest.raises(ValueError, match="id"):
        JsonRpcResponse.from_dict({"jsonrpc": "2.0", "result": {}})


def test_error_without_data_omits_it():
    assert JsonRpcError(-1, "bad").to_dict() == {"code": -1, "message": "bad"}


@pytest.mark.parametrize("code", [True, "1", 2**31, -(2**31) - 1])
def test_error_rejects_bad_code(code):
    with pytest.raises(ValueError):
        JsonRpcError.from_dict({"code": code, "message": "m"})


def test_envelope_error_messages():
    err = JsonRpcEnvelopeError("bad_version")
    assert str(err) == "invalid jsonrpc version"
    assert isinstance(err, SpiError)
    assert str(JsonRpcEnvelopeError("not_an_object")) == "body must be a JSON object"


def test_envelope_error_rejects_unknown_kind():
    with pytest.raises(ValueError):
        JsonRpcEnvelopeError("whatever")