"""Hard caps for plugin payloads and the sandbox-relative SafePath type."""

from __future__ import annotations

from dataclasses import dataclass

SAFE_PATH_MAX_BYTES = 4 * 1024


class SpiError(Exception):
    """Base class for errors at the plugin SPI envelope or limit level."""


@dataclass(frozen=True)
class Limits:
    """Hard caps for plugin SPI payloads."""

    max_payload_bytes: int = 16 * 1024 * 1024
    max_json_depth: int = 64
    max_id_bytes: int = 16 * 1024
    max_path_bytes: int = 4 * 1024
    max_deadline_ms: int = 600_000


class LimitsError(SpiError):
    """A configured limit was exceeded.

    ``kind`` is one of ``payload``, ``depth`` or ``deadline``.
    """

    _MESSAGES = {
        "payload": "payload exceeds {} bytes",
        "depth": "payload exceeds depth {}",
        "deadline": "deadline exceeds {} ms",
    }

    def __init__(self, kind: str, limit: int) -> None:
        if kind not in self._MESSAGES:
            raise ValueError(f"unknown limit kind: {kind!r}")
        self.kind = kind
        self.limit = limit
        super().__init__(self._MESSAGES[kind].format(limit))


class SafePathError(SpiError):
    """A path failed SafePath validation.

    ``kind`` is one of ``empty``, ``too_long``, ``absolute``,
    ``parent_traversal``, ``nul``, ``disallowed`` or ``syntax``.
    """

    _MESSAGES = {
        "empty": "empty path",
        "too_long": "path too long",
        "absolute": "absolute paths are not allowed",
        "parent_traversal": "parent-traversal segments are not allowed",
        "nul": "path contains NUL",
        "disallowed": "path contains disallowed control or unicode codepoint",
        "syntax": "path syntax: {}",
    }

    def __init__(self, kind: str, detail: str = "") -> None:
        if kind not in self._MESSAGES:
            raise ValueError(f"unknown safe path error kind: {kind!r}")
        self.kind = kind
        self.detail = detail
        super().__init__(self._MESSAGES[kind].format(detail))


def _is_disallowed(code: int) -> bool:
    if code <= 0x1F or 0x7F <= code <= 0x9F:
        return True
    if 0x202A <= code <= 0x202E or 0x2066 <= code <= 0x2069:
        return True
    return 0x200B <= code <= 0x200D or code in (0xFEFF, 0x2060)


def _check_safe_path(text: str) -> None:
    if not isinstance(text, str):
        raise TypeError("SafePath requires a string")
    if not text:
        raise SafePathError("empty")
    if len(text.encode("utf-8", "surrogatepass")) > SAFE_PATH_MAX_BYTES:
        raise SafePathError("too_long")
    if text.startswith("/"):
        raise SafePathError("absolute")
    for ch in text:
        if ch == "\0":
            raise SafePathError("nul")
        if _is_disallowed(ord(ch)):
            raise SafePathError("disallowed")
    if ".." in text.split("/"):
        raise SafePathError("parent_traversal")


@dataclass(frozen=True)
class SafePath:
    """A path that is always relative to a sandbox or run root."""

    value: str

    def __post_init__(self) -> None:
        _check_safe_path(self.value)

    @classmethod
    def parse(cls, text: str) -> SafePath:
        """Validate ``text`` and wrap it, raising SafePathError when unsafe."""
        return cls(text)

    def __str__(self) -> str:
        return self.value