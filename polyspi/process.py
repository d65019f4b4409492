"""Plugin launch configuration and supervised single-call plugin execution."""

from __future__ import annotations

import copy
import dataclasses
import errno
import os
import signal
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import timedelta
from pathlib import Path
from typing import IO, Any, Iterable

from polyspi.cgroup import IsolationBackend, IsolationError, PluginIsolationProfile
from polyspi.envelope import JsonRpcResponse
from polyspi.limits import Limits
from polyspi.protocol import (
    NonZeroExitError,
    PayloadTooLargeError,
    PluginBinary,
    PluginIoError,
    PluginIsolationError,
    PluginMethod,
    PluginRequestId,
    PluginTimeoutError,
    decode_response_line,
    encode_request_line,
)

DEFAULT_STDERR_CAP_BYTES = 8 * 1024

_POSIX = os.name == "posix"
_ETXTBSY = getattr(errno, "ETXTBSY", None)
_MAX_SPAWN_ATTEMPTS = 6
_SPAWN_RETRY_DELAY = 0.01
_READ_CHUNK = 8192
_JOIN_GRACE = 1.0


@dataclass(frozen=True)
class PluginLaunchConfig:
    """How to launch one plugin process: binary, directory, environment, limits."""

    binary: PluginBinary
    cwd: Path | None = None
    env: tuple[tuple[str, str], ...] = ()
    limits: Limits = field(default_factory=Limits)
    stderr_cap_bytes: int = DEFAULT_STDERR_CAP_BYTES
    isolation: tuple[IsolationBackend, PluginIsolationProfile] | None = None

    def with_cwd(self, cwd: str | os.PathLike[str]) -> PluginLaunchConfig:
        """Copy of this config with the plugin working directory set."""
        return dataclasses.replace(self, cwd=Path(cwd))

    def with_env(self, key: str, value: str) -> PluginLaunchConfig:
        """Copy of this config with one more explicit environment variable."""
        return dataclasses.replace(self, env=self.env + ((str(key), str(value)),))

    def with_limits(self, limits: Limits) -> PluginLaunchConfig:
        """Copy of this config with different limits."""
        return dataclasses.replace(self, limits=limits)

    def with_isolation_backend(
        self, backend: IsolationBackend, profile: PluginIsolationProfile
    ) -> PluginLaunchConfig:
        """Copy of this config that runs the plugin under ``backend``."""
        try:
            profile.validate()
        except IsolationError as exc:
            raise PluginIsolationError(exc) from exc
        return dataclasses.replace(self, isolation=(backend, copy.deepcopy(profile)))

    def command_spec(self) -> tuple[str, list[str]]:
        """Program and arguments used to launch the plugin."""
        plugin_path = str(self.binary.path)
        if self.isolation is None:
            return plugin_path, []
        backend, profile = self.isolation
        try:
            return profile.backend_command(backend, plugin_path)
        except IsolationError as exc:
            raise PluginIsolationError(exc) from exc

    def __repr__(self) -> str:
        env_keys = [key for key, _ in self.env]
        return (
            f"PluginLaunchConfig(binary={self.binary!r}, cwd={self.cwd!r}, "
            f"env_keys={env_keys!r}, limits=Limits(..), "
            f"stderr_cap_bytes={self.stderr_cap_bytes!r}, isolation={self.isolation!r})"
        )


def _timeout_seconds(timeout: float | timedelta) -> float:
    seconds = timeout.total_seconds() if isinstance(timeout, timedelta) else float(timeout)
    if seconds < 0:
        raise ValueError("timeout must not be negative")
    return seconds


def _timeout_ms(seconds: float) -> int:
    return int(round(seconds * 1000))


def _exit_code(returncode: int) -> int | None:
    """Exit code, or None when the process was ended by a signal."""
    return returncode if returncode >= 0 else None


class _CappedReader(threading.Thread):
    """Background reader that collects at most ``cap`` bytes from a stream."""

    def __init__(self, stream: IO[bytes], cap: int) -> None:
        super().__init__(daemon=True)
        self._stream = stream
        self._cap = cap
        self.data = bytearray()
        self.error: Exception | None = None

    def run(self) -> None:
        try:
            while len(self.data) < self._cap:
                chunk = self._stream.read1(min(self._cap - len(self.data), _READ_CHUNK))
                if not chunk:
                    break
                self.data.extend(chunk)
        except (OSError, ValueError) as exc:
            self.error = exc

    def result(self) -> bytes:
        self.join()
        if self.error is not None:
            raise PluginIoError(self.error)
        return bytes(self.data)


def _spawn_plugin_process(config: PluginLaunchConfig) -> subprocess.Popen[bytes]:
    program, args = config.command_spec()
    attempt = 0
    while True:
        try:
            return subprocess.Popen(
                [program, *args],
                stdin=subprocess.PIPE,
                stdout=subprocess.PIPE,
                stderr=subprocess.PIPE,
                env=dict(config.env),
                cwd=config.cwd,
                start_new_session=_POSIX,
            )
        except OSError as exc:
            attempt += 1
            busy = _ETXTBSY is not None and exc.errno == _ETXTBSY
            if busy and attempt < _MAX_SPAWN_ATTEMPTS:
                time.sleep(_SPAWN_RETRY_DELAY)
                continue
            raise PluginIoError(exc) from exc


def _kill_process(process: subprocess.Popen[bytes]) -> None:
    if process.returncode is None:
        try:
            if _POSIX:
                os.killpg(process.pid, signal.SIGKILL)
            else:
                process.kill()
        except OSError:
            pass
    process.wait()


def _close_quietly(stream: IO[bytes] | None) -> None:
    if stream is None:
        return
    try:
        stream.close()
    except (OSError, ValueError):
        pass


def _shutdown(process: subprocess.Popen[bytes], readers: Iterable[threading.Thread]) -> None:
    """Kill the process, let reader threads drain, then close its pipes."""
    _kill_process(process)
    _close_quietly(process.stdin)
    readers = list(readers)
    for reader in readers:
        reader.join(_JOIN_GRACE)
    if not any(reader.is_alive() for reader in readers):
        _close_quietly(process.stdout)
        _close_quietly(process.stderr)


def _run_request_line(config: PluginLaunchConfig, request: bytes, seconds: float) -> bytes:
    process = _spawn_plugin_process(config)
    assert process.stdin is not None and process.stdout is not None
    assert process.stderr is not None
    stdout_reader = _CappedReader(process.stdout, config.limits.max_payload_bytes + 1)
    stderr_reader = _CappedReader(process.stderr, config.stderr_cap_bytes)
    stdout_reader.start()
    stderr_reader.start()
    try:
        try:
            process.stdin.write(request)
            process.stdin.close()
        except BrokenPipeError:
            pass
        except OSError as exc:
            raise PluginIoError(exc) from exc
        try:
            returncode = process.wait(timeout=seconds)
        except subprocess.TimeoutExpired:
            _kill_process(process)
            stdout_reader.join()
            stderr_reader.join()
            raise PluginTimeoutError(_timeout_ms(seconds)) from None
        stdout = stdout_reader.result()
        stderr = stderr_reader.result()
        if returncode != 0:
            raise NonZeroExitError(_exit_code(returncode), len(stderr))
        if len(stdout) > config.limits.max_payload_bytes:
            raise PayloadTooLargeError(config.limits.max_payload_bytes, len(stdout))
        return stdout
    finally:
        _shutdown(process, (stdout_reader, stderr_reader))


def run_plugin_call(
    config: PluginLaunchConfig,
    method: PluginMethod,
    request_id: PluginRequestId,
    params: Any,
    timeout: float | timedelta,
) -> JsonRpcResponse:
    """Run one request against a fresh plugin process and decode its reply.

    ``timeout`` is in seconds or a timedelta.
    """
    request = encode_request_line(method, request_id, params, config.limits)
    stdout = _run_request_line(config, request, _timeout_seconds(timeout))
    return decode_response_line(stdout, request_id, config.limits)