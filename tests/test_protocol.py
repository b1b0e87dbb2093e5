"""
Tests for JSON-RPC request parsing and response building.
"""

import pytest

from mcp_shim.protocol import (
    INVALID_REQUEST,
    PARSE_ERROR,
    Request,
    RequestParseError,
    is_error_response,
    make_error_response,
    serialize,
)


def test_error_codes():
    assert PARSE_ERROR == -32700
    assert INVALID_REQUEST == -32600


def test_make_error_response_shape():
    assert serialize(make_error_response(None, PARSE_ERROR, "Parse error: x")) == (
        '{"jsonrpc":"2.0","id":null,"error":{"code":-32700,"message":"Parse error: x"}}'
    )


def test_serialize_keeps_non_ascii():
    assert serialize({"text": "héllo"}) == '{"text":"héllo"}'


@pytest.mark.parametrize("request_id", [1, "abc", None, 2.5])
def test_request_id_echoed(request_id):
    request = Request.from_payload({"jsonrpc": "2.0", "id": request_id, "method": "ping"})
    assert request.id == request_id


def test_request_round_trips_unknown_members():
    request = Request.from_json('{"jsonrpc":"2.0","id":1,"method":"ping","_meta":{"x":1}}')
    assert request.to_json() == '{"jsonrpc":"2.0","id":1,"method":"ping","_meta":{"x":1}}'


def test_missing_jsonrpc_member_accepted():
    assert Request.from_json('{"id":1,"method":"ping"}').method == "ping"


@pytest.mark.parametrize(
    "line",
    ["{", "null", "[]", '{"id":1}', '{"method":5}', '{"method":"x","id":true}', '{"jsonrpc":"1.0","method":"x"}'],
)
def test_invalid_requests(line):
    with pytest.raises(RequestParseError):
        Request.from_json(line)


def test_tool_name():
    call = Request.from_payload({"method": "tools/call", "params": {"name": "read_file"}})
    other = Request.from_payload({"method": "prompts/get", "params": {"name": "read_file"}})
    assert call.tool_name == "read_file"
    assert other.tool_name is None


def test_is_error_response():
    assert is_error_response({"error": {"code": 1, "message": "x"}})
    assert not is_error_response({"result": {}})
    assert not is_error_response({"result": {}, "error": None})


def test_deeply_nested_json_is_parse_error():
    with pytest.raises(RequestParseError):
        Request.from_json("[" * 100000)
