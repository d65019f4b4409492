"""One-line JSON-RPC framing, plugin identities and host protocol errors."""

from __future__ import annotations

import json
import os
from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Any

from polyspi.cgroup import IsolationError
from polyspi.envelope import JSONRPC_VERSION, JsonRpcRequest, JsonRpcResponse
from polyspi.limits import Limits, SpiError


class UnknownReason(Enum):
    """Fail-closed reason a host failure maps to."""

    CHECKER_TIMEOUT = "checker_timeout"
    PLUGIN_FAILURE = "plugin_failure"


class PluginMethod(Enum):
    """JSON-RPC methods supported by the plugin SPI."""

    EXTRACT = "extract"
    DESCRIBE = "describe"
    CHECK = "check"

    @classmethod
    def parse(cls, text: str) -> PluginMethod:
        """Parse a method name, raising UnsupportedMethodError for others."""
        try:
            return cls(text)
        except ValueError:
            raise UnsupportedMethodError(text) from None


class PluginHostError(SpiError):
    """Base class for protocol-layer host errors."""

    def unknown_reason(self) -> UnknownReason:
        """The fail-closed reason this failure maps to."""
        return UnknownReason.PLUGIN_FAILURE


class PayloadTooLargeError(PluginHostError):
    """A payload exceeded the configured byte cap."""

    def __init__(self, limit: int, actual: int) -> None:
        self.limit = limit
        self.actual = actual
        super().__init__(f"plugin payload exceeds {limit} bytes: {actual}")


class ProtocolJsonError(PluginHostError):
    """JSON parsing or serialization failed."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"plugin protocol json error: {detail}")


class MalformedResponseError(PluginHostError):
    """A response was structurally invalid."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"malformed plugin response: {detail}")


class UnexpectedIdError(PluginHostError):
    """A response id did not match the request id."""

    def __init__(self, expected: str, actual: str) -> None:
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"unexpected plugin response id: expected {expected}, actual {actual}"
        )


class UnsupportedMethodError(PluginHostError):
    """A method is not in the SPI method set."""

    def __init__(self, method: str) -> None:
        self.method = method
        super().__init__(f"unsupported plugin method: {method}")


class InvalidRequestIdError(PluginHostError):
    """A request id is empty or too large."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"invalid plugin request id: {detail}")


class InvalidPluginBinaryError(PluginHostError):
    """A plugin binary identity is invalid."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"invalid plugin binary: {detail}")


class InvalidMemoKeyError(PluginHostError):
    """A plugin memo key is invalid."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"invalid plugin memo key: {detail}")


class InvalidPoolConfigError(PluginHostError):
    """A plugin pool configuration is invalid."""

    def __init__(self, detail: str) -> None:
        self.detail = detail
        super().__init__(f"invalid plugin pool config: {detail}")


class PluginIsolationError(PluginHostError):
    """A plugin isolation profile is invalid."""

    def __init__(self, error: IsolationError) -> None:
        self.error = error
        super().__init__(f"invalid plugin isolation: {error}")


class BackpressureError(PluginHostError):
    """A plugin pool has no free process and its wait queue is full."""

    def __init__(self, kind: Any, active: int, waiting: int, queue_bound: int) -> None:
        self.kind = kind
        self.active = active
        self.waiting = waiting
        self.queue_bound = queue_bound
        super().__init__(
            f"plugin pool backpressure for {kind}: active={active}, "
            f"waiting={waiting}, queue_bound={queue_bound}"
        )


class PluginIoError(PluginHostError):
    """Plugin executable or process I/O failed."""

    def __init__(self, detail: object) -> None:
        self.detail = detail
        super().__init__(f"plugin process io error: {detail}")


class PluginTimeoutError(PluginHostError):
    """A plugin did not finish before its deadline."""

    def __init__(self, timeout_ms: int) -> None:
        self.timeout_ms = timeout_ms
        super().__init__(f"plugin timed out after {timeout_ms} ms")

    def unknown_reason(self) -> UnknownReason:
        return UnknownReason.CHECKER_TIMEOUT


class NonZeroExitError(PluginHostError):
    """A plugin exited with a failing status."""

    def __init__(self, code: int | None, stderr_bytes: int) -> None:
        self.code = code
        self.stderr_bytes = stderr_bytes
        super().__init__(
            f"plugin exited non-zero: code={code}, stderr_bytes={stderr_bytes}"
        )


class PluginRequestId:
    """Non-empty, size-capped JSON-RPC request id."""

    __slots__ = ("_value",)

    def __init__(self, value: str, limits: Limits | None = None) -> None:
        if not isinstance(value, str):
            raise TypeError("request id must be a string")
        limits = limits if limits is not None else Limits()
        if not value:
            raise InvalidRequestIdError("empty")
        if len(value.encode("utf-8", "surrogatepass")) > limits.max_id_bytes:
            raise InvalidRequestIdError("too long")
        self._value = value

    @property
    def value(self) -> str:
        return self._value

    def __eq__(self, other: object) -> bool:
        if isinstance(other, PluginRequestId):
            return self._value == other._value
        return NotImplemented

    def __hash__(self) -> int:
        return hash(self._value)

    def __str__(self) -> str:
        return self._value

    def __repr__(self) -> str:
        return f"PluginRequestId({self._value!r})"


@dataclass(frozen=True)
class PluginBinary:
    """Plugin executable identity: its path and a digest of its content."""

    path: Path
    digest: str

    def __post_init__(self) -> None:
        raw = os.fspath(self.path)
        if isinstance(raw, bytes):
            try:
                raw = raw.decode("utf-8")
            except UnicodeDecodeError:
                raise InvalidPluginBinaryError("non-utf8 path") from None
        if not raw:
            raise InvalidPluginBinaryError("empty path")
        try:
            raw.encode("utf-8")
        except UnicodeEncodeError:
            raise InvalidPluginBinaryError("non-utf8 path") from None
        if not isinstance(self.digest, str) or not self.digest:
            raise InvalidPluginBinaryError("empty plugin digest")
        object.__setattr__(self, "path", Path(raw))


def _dumps(value: Any) -> str:
    return json.dumps(
        value, separators=(",", ":"), ensure_ascii=False, sort_keys=True, allow_nan=False
    )


def _enforce_payload_limit(actual: int, limit: int) -> None:
    if actual > limit:
        raise PayloadTooLargeError(limit, actual)


def encode_request_payload(
    method: PluginMethod,
    request_id: PluginRequestId,
    params: Any,
    limits: Limits | None = None,
) -> bytes:
    """Canonical request bytes without the transport newline."""
    limits = limits if limits is not None else Limits()
    request = JsonRpcRequest(method=method.value, id=request_id.value, params=params)
    try:
        body = "{" + ",".join(
            f"{_dumps(key)}:{_dumps(value)}" for key, value in request.to_dict().items()
        ) + "}"
        payload = body.encode("utf-8")
    except (TypeError, ValueError) as exc:
        raise ProtocolJsonError(str(exc)) from exc
    _enforce_payload_limit(len(payload), limits.max_payload_bytes)
    return payload


def encode_request_line(
    method: PluginMethod,
    request_id: PluginRequestId,
    params: Any,
    limits: Limits | None = None,
) -> bytes:
    """Canonical request bytes with exactly one trailing newline."""
    return encode_request_payload(method, request_id, params, limits) + b"\n"


def _trim_one_line_ending(line: bytes) -> bytes:
    payload = line
    if payload.endswith(b"\n"):
        payload = payload[:-1]
        if payload.endswith(b"\r"):
            payload = payload[:-1]
    if b"\n" in payload or b"\r" in payload:
        raise MalformedResponseError("response must be a single JSON line")
    if not payload:
        raise MalformedResponseError("empty response")
    return payload


def _reject_constant(name: str) -> Any:
    raise ValueError(f"invalid number {name}")


def _validate_response(response: JsonRpcResponse, expected_id: PluginRequestId) -> None:
    if response.jsonrpc != JSONRPC_VERSION:
        raise MalformedResponseError("invalid jsonrpc version")
    if not (isinstance(response.id, str) and response.id == expected_id.value):
        raise UnexpectedIdError(expected_id.value, _dumps(response.id))
    has_result = response.result is not None
    has_error = response.error is not None
    if has_result and has_error:
        raise MalformedResponseError("response contains both result and error")
    if not has_result and not has_error:
        raise MalformedResponseError("response contains neither result nor error")


def decode_response_line(
    line: bytes,
    expected_id: PluginRequestId,
    limits: Limits | None = None,
) -> JsonRpcResponse:
    """Decode and validate one response line from a plugin."""
    limits = limits if limits is not None else Limits()
    line = bytes(line)
    if line.startswith(b"Content-Length:") or line.startswith(b"content-length:"):
        raise MalformedResponseError("LSP-style framing is not supported")
    payload = _trim_one_line_ending(line)
    _enforce_payload_limit(len(payload), limits.max_payload_bytes)
    try:
        data = json.loads(payload.decode("utf-8"), parse_constant=_reject_constant)
        response = JsonRpcResponse.from_dict(data)
    except (ValueError, RecursionError) as exc:
        raise ProtocolJsonError(str(exc)) from exc
    _validate_response(response, expected_id)
    return response