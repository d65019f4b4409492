"""Deterministic memoization of exact plugin response bytes."""

from __future__ import annotations

import hashlib
from dataclasses import dataclass

from polyspi.limits import Limits
from polyspi.protocol import (
    InvalidMemoKeyError,
    PayloadTooLargeError,
    PluginBinary,
    PluginMethod,
)

_MEMO_DOMAIN = b"polyspi-plugin-memo-v1\0"
_HEX_DIGITS = frozenset("0123456789abcdef")


@dataclass(frozen=True, order=True)
class PluginMemoKey:
    """Lowercase hex SHA-256 key for memoized plugin responses."""

    hex: str

    def __post_init__(self) -> None:
        if (
            not isinstance(self.hex, str)
            or len(self.hex) != 64
            or not set(self.hex) <= _HEX_DIGITS
        ):
            raise InvalidMemoKeyError("expected 64 hex characters")

    @classmethod
    def for_request(
        cls,
        method: PluginMethod,
        request_bytes: bytes,
        binary: PluginBinary,
        protocol_version: str,
    ) -> PluginMemoKey:
        """Key derived from canonical request bytes and plugin identity."""
        hasher = hashlib.sha256(_MEMO_DOMAIN)
        hasher.update(protocol_version.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(method.value.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(binary.digest.encode("utf-8"))
        hasher.update(b"\0")
        hasher.update(bytes(request_bytes))
        return cls(hasher.hexdigest())

    @classmethod
    def from_hex(cls, text: str) -> PluginMemoKey:
        """Parse a 64-character lowercase hex digest."""
        return cls(text)

    def __str__(self) -> str:
        return self.hex


class PluginMemoStore:
    """In-memory store of exact response bytes, capped per response."""

    def __init__(self, response_limit_bytes: int | None = None) -> None:
        if response_limit_bytes is None:
            response_limit_bytes = Limits().max_payload_bytes
        self.response_limit_bytes = response_limit_bytes
        self._responses: dict[PluginMemoKey, bytes] = {}

    def get(self, key: PluginMemoKey) -> bytes | None:
        """Exact cached response bytes, or None."""
        return self._responses.get(key)

    def insert(self, key: PluginMemoKey, response: bytes) -> None:
        """Store exact response bytes, raising PayloadTooLargeError over the cap."""
        data = bytes(response)
        if len(data) > self.response_limit_bytes:
            raise PayloadTooLargeError(self.response_limit_bytes, len(data))
        self._responses[key] = data

    def __contains__(self, key: object) -> bool:
        return key in self._responses

    def __len__(self) -> int:
        return len(self._responses)