"""
JSON-RPC 2.0 message handling for the shim.

Requests keep the exact JSON object read from stdin so that forwarding is
lossless; responses are plain dicts so proxy replies pass through untouched.
"""

import json
from dataclasses import dataclass, field
from typing import Any, Dict, Optional, Union

from mcp.types import INTERNAL_ERROR, INVALID_REQUEST, PARSE_ERROR, ErrorData

JSONRPC_VERSION = "2.0"

# Shim-specific error codes (server error range)
REQUEST_TIMEOUT = -32000
PROXY_UNREACHABLE = -32003
RATE_LIMIT_EXCEEDED = -32029

__all__ = [
    "INTERNAL_ERROR",
    "INVALID_REQUEST",
    "PARSE_ERROR",
    "PROXY_UNREACHABLE",
    "RATE_LIMIT_EXCEEDED",
    "REQUEST_TIMEOUT",
    "Request",
    "RequestParseError",
    "is_error_response",
    "make_error_response",
    "serialize",
]

RequestId = Union[int, float, str, None]
Response = Dict[str, Any]


class RequestParseError(ValueError):
    """Raised when an input line is not a JSON-RPC request object."""


def serialize(message: Any) -> str:
    """Compact single-line JSON, non-ASCII kept verbatim."""
    return json.dumps(message, separators=(",", ":"), ensure_ascii=False)


@dataclass
class Request:
    """
    A JSON-RPC request as received on stdin.

    Attributes:
        payload: The decoded JSON object, forwarded to the proxy as-is
        security_violation: Reason the request must not be forwarded, if any
    """

    payload: Dict[str, Any]
    security_violation: Optional[str] = field(default=None, compare=False)

    @classmethod
    def from_json(cls, line: str) -> "Request":
        """
        Parse one input line.

        Raises:
            RequestParseError: If the line is not valid JSON or not a request object
        """
        try:
            payload = json.loads(line)
        except (ValueError, RecursionError) as e:
            # JSONDecodeError, over-long integers, pathological nesting
            raise RequestParseError(str(e)) from e
        return cls.from_payload(payload)

    @classmethod
    def from_payload(cls, payload: Any) -> "Request":
        if not isinstance(payload, dict):
            raise RequestParseError(
                f"Expected a JSON-RPC object, got {type(payload).__name__}"
            )

        version = payload.get("jsonrpc", JSONRPC_VERSION)
        if version != JSONRPC_VERSION:
            raise RequestParseError(f"Unsupported JSON-RPC version: {version!r}")

        if not isinstance(payload.get("method"), str):
            raise RequestParseError("Request is missing a string 'method'")

        request_id = payload.get("id")
        if isinstance(request_id, bool) or not isinstance(request_id, (int, float, str, type(None))):
            raise RequestParseError("Request 'id' must be a string, number or null")

        return cls(payload=payload)

    @property
    def id(self) -> RequestId:
        return self.payload.get("id")

    @property
    def method(self) -> str:
        return self.payload["method"]

    @property
    def params(self) -> Any:
        return self.payload.get("params")

    @property
    def tool_name(self) -> Optional[str]:
        """Tool name of a ``tools/call`` request, else None."""
        params = self.params
        if self.method == "tools/call" and isinstance(params, dict):
            name = params.get("name")
            if isinstance(name, str):
                return name
        return None

    def mark_violation(self, reason: str) -> "Request":
        self.security_violation = reason
        return self

    def to_json(self) -> str:
        return serialize(self.payload)


def make_error_response(request_id: RequestId, code: int, message: str) -> Response:
    """
    Build a JSON-RPC error response.

    Args:
        request_id: Id of the originating request (None when unknown)
        code: JSON-RPC error code
        message: Human-readable error message

    Returns:
        Response dict with ``jsonrpc``, ``id`` and ``error`` members
    """
    error = ErrorData(code=code, message=message)
    return {
        "jsonrpc": JSONRPC_VERSION,
        "id": request_id,
        "error": error.model_dump(exclude_none=True),
    }


def is_error_response(response: Any) -> bool:
    return isinstance(response, dict) and "error" in response and response["error"] is not None
