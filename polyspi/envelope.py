"""JSON-RPC 2.0 envelope types exchanged with plugins, one object per line."""

from __future__ import annotations

from collections.abc import Mapping
from dataclasses import dataclass, field
from typing import Any

from polyspi.limits import SpiError

JSONRPC_VERSION = "2.0"
_I32_MIN = -(2**31)
_I32_MAX = 2**31 - 1


class JsonRpcEnvelopeError(SpiError):
    """An envelope failed structural validation.

    ``kind`` is one of ``bad_version``, ``no_id``, ``unknown_method``,
    ``oversize`` or ``not_an_object``.
    """

    _MESSAGES = {
        "bad_version": "invalid jsonrpc version",
        "no_id": "request lacks id",
        "unknown_method": "unknown method",
        "oversize": "oversize payload",
        "not_an_object": "body must be a JSON object",
    }

    def __init__(self, kind: str) -> None:
        if kind not in self._MESSAGES:
            raise ValueError(f"unknown envelope error kind: {kind!r}")
        self.kind = kind
        super().__init__(self._MESSAGES[kind])


def _require_mapping(data: Any, what: str) -> Mapping:
    if not isinstance(data, Mapping):
        raise ValueError(f"{what} must be a JSON object")
    return data


def _field(data: Mapping, name: str) -> Any:
    try:
        return data[name]
    except KeyError:
        raise ValueError(f"missing field `{name}`") from None


def _str_field(data: Mapping, name: str) -> str:
    value = _field(data, name)
    if not isinstance(value, str):
        raise ValueError(f"field `{name}` must be a string")
    return value


@dataclass
class JsonRpcError:
    """JSON-RPC 2.0 error object."""

    code: int
    message: str
    data: Any = None

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"code": self.code, "message": self.message}
        if self.data is not None:
            out["data"] = self.data
        return out

    @classmethod
    def from_dict(cls, data: Any) -> JsonRpcError:
        obj = _require_mapping(data, "error")
        code = _field(obj, "code")
        if isinstance(code, bool) or not isinstance(code, int):
            raise ValueError("field `code` must be an integer")
        if not _I32_MIN <= code <= _I32_MAX:
            raise ValueError("field `code` is out of range")
        return cls(code=code, message=_str_field(obj, "message"), data=obj.get("data"))


@dataclass
class JsonRpcRequest:
    """JSON-RPC 2.0 request envelope."""

    method: str
    id: Any
    params: Any
    jsonrpc: str = field(default=JSONRPC_VERSION, kw_only=True)

    def to_dict(self) -> dict[str, Any]:
        return {
            "jsonrpc": self.jsonrpc,
            "method": self.method,
            "id": self.id,
            "params": self.params,
        }

    @classmethod
    def from_dict(cls, data: Any) -> JsonRpcRequest:
        obj = _require_mapping(data, "request")
        return cls(
            method=_str_field(obj, "method"),
            id=_field(obj, "id"),
            params=_field(obj, "params"),
            jsonrpc=_str_field(obj, "jsonrpc"),
        )


@dataclass
class JsonRpcResponse:
    """JSON-RPC 2.0 response envelope; ``result`` and ``error`` are exclusive."""

    id: Any
    result: Any = None
    error: JsonRpcError | None = None
    jsonrpc: str = field(default=JSONRPC_VERSION, kw_only=True)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"jsonrpc": self.jsonrpc, "id": self.id}
        if self.result is not None:
            out["result"] = self.result
        if self.error is not None:
            out["error"] = self.error.to_dict()
        return out

    @classmethod
    def from_dict(cls, data: Any) -> JsonRpcResponse:
        obj = _require_mapping(data, "response")
        raw_error = obj.get("error")
        return cls(
            id=_field(obj, "id"),
            result=obj.get("result"),
            error=None if raw_error is None else JsonRpcError.from_dict(raw_error),
            jsonrpc=_str_field(obj, "jsonrpc"),
        )