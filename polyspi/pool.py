"""Bounded pools of long-lived plugin worker processes."""

from __future__ import annotations

import dataclasses
import queue
import subprocess
import threading
from dataclasses import dataclass
from datetime import timedelta
from typing import IO, Any

from polyspi.envelope import JsonRpcResponse
from polyspi.limits import Limits
from polyspi.memo import PluginMemoKey, PluginMemoStore
from polyspi.process import (
    PluginLaunchConfig,
    _CappedReader,
    _exit_code,
    _JOIN_GRACE,
    _shutdown,
    _spawn_plugin_process,
    _timeout_ms,
    _timeout_seconds,
)
from polyspi.protocol import (
    BackpressureError,
    InvalidPoolConfigError,
    NonZeroExitError,
    PayloadTooLargeError,
    PluginHostError,
    PluginIoError,
    PluginMethod,
    PluginRequestId,
    PluginTimeoutError,
    decode_response_line,
    encode_request_payload,
)

_EOF = object()


@dataclass(frozen=True)
class PluginKind:
    """Pool partition: ``extractor``, or ``checker`` for one correspondence kind."""

    role: str
    correspondence_kind: str | None = None

    def __post_init__(self) -> None:
        if self.role == "extractor":
            if self.correspondence_kind is not None:
                raise ValueError("extractor pools take no correspondence kind")
        elif self.role == "checker":
            if not isinstance(self.correspondence_kind, str) or not self.correspondence_kind:
                raise ValueError("checker pools need a correspondence kind")
        else:
            raise ValueError(f"unknown plugin kind: {self.role!r}")

    def __str__(self) -> str:
        if self.correspondence_kind is None:
            return self.role
        return f"{self.role}({self.correspondence_kind})"


@dataclass(frozen=True)
class PluginPoolConfig:
    """Bounded plugin-pool configuration."""

    kind: PluginKind
    max_processes: int = 2
    queue_bound: int = 32
    max_requests_per_worker: int = 200

    def with_max_processes(self, max_processes: int) -> PluginPoolConfig:
        return dataclasses.replace(self, max_processes=max_processes)

    def with_queue_bound(self, queue_bound: int) -> PluginPoolConfig:
        return dataclasses.replace(self, queue_bound=queue_bound)

    def with_max_requests_per_worker(self, max_requests_per_worker: int) -> PluginPoolConfig:
        return dataclasses.replace(self, max_requests_per_worker=max_requests_per_worker)


class _Worker:
    """One long-lived plugin process answering one request line at a time."""

    def __init__(self, launch: PluginLaunchConfig) -> None:
        self.process: subprocess.Popen[bytes] = _spawn_plugin_process(launch)
        assert self.process.stdout is not None and self.process.stderr is not None
        self.completed_requests = 0
        self._lines: queue.Queue[Any] = queue.Queue()
        self._stdout_thread = threading.Thread(
            target=self._pump_stdout,
            args=(self.process.stdout, launch.limits.max_payload_bytes),
            daemon=True,
        )
        self._stderr = _CappedReader(self.process.stderr, launch.stderr_cap_bytes)
        self._stdout_thread.start()
        self._stderr.start()

    def _pump_stdout(self, stream: IO[bytes], limit: int) -> None:
        try:
            while True:
                line = stream.readline(limit + 1)
                if not line:
                    break
                if len(line) > limit:
                    self._lines.put(PayloadTooLargeError(limit, limit + 1))
                    return
                self._lines.put(line)
        except (OSError, ValueError) as exc:
            self._lines.put(PluginIoError(exc))
            return
        self._lines.put(_EOF)

    def _stderr_len(self) -> int:
        self._stderr.join(_JOIN_GRACE)
        return len(self._stderr.data)

    def call_raw(self, request: bytes, seconds: float, limits: Limits) -> bytes:
        returncode = self.process.poll()
        if returncode is not None:
            raise NonZeroExitError(_exit_code(returncode), self._stderr_len())
        assert self.process.stdin is not None
        try:
            self.process.stdin.write(request)
            self.process.stdin.flush()
        except OSError as exc:
            raise PluginIoError(exc) from exc
        try:
            item = self._lines.get(timeout=seconds)
        except queue.Empty:
            self.kill()
            raise PluginTimeoutError(_timeout_ms(seconds)) from None
        if isinstance(item, PluginHostError):
            raise item
        if item is _EOF:
            returncode = self.process.poll()
            code = None if returncode is None else _exit_code(returncode)
            raise NonZeroExitError(code, self._stderr_len())
        if len(item) > limits.max_payload_bytes:
            raise PayloadTooLargeError(limits.max_payload_bytes, len(item))
        self.completed_requests += 1
        return item

    def kill(self) -> None:
        _shutdown(self.process, (self._stdout_thread, self._stderr))


class PluginPool:
    """Dispatches calls to at most ``max_processes`` reusable plugin workers."""

    def __init__(self, config: PluginPoolConfig, launch: PluginLaunchConfig) -> None:
        if config.max_processes <= 0:
            raise InvalidPoolConfigError("max_processes must be greater than zero")
        if config.max_requests_per_worker <= 0:
            raise InvalidPoolConfigError("max_requests_per_worker must be greater than zero")
        self.config = config
        self.launch = launch
        self._available = threading.Condition()
        self._idle: list[_Worker] = []
        self._live_total = 0
        self._waiting = 0

    def call(
        self,
        method: PluginMethod,
        request_id: PluginRequestId,
        params: Any,
        timeout: float | timedelta,
    ) -> JsonRpcResponse:
        """Run one call through the pool; ``timeout`` is seconds or a timedelta."""
        limits = self.launch.limits
        request = encode_request_payload(method, request_id, params, limits) + b"\n"
        seconds = _timeout_seconds(timeout)
        worker = self._acquire_worker()
        try:
            raw = worker.call_raw(request, seconds, limits)
            response = decode_response_line(raw, request_id, limits)
        except BaseException:
            self._drop_worker(worker)
            raise
        self._release_or_recycle(worker)
        return response

    def call_memoized(
        self,
        memo: PluginMemoStore,
        protocol_version: str,
        method: PluginMethod,
        request_id: PluginRequestId,
        params: Any,
        timeout: float | timedelta,
    ) -> JsonRpcResponse:
        """Replay cached response bytes, or run the plugin once and cache them."""
        limits = self.launch.limits
        payload = encode_request_payload(method, request_id, params, limits)
        key = PluginMemoKey.for_request(method, payload, self.launch.binary, protocol_version)
        cached = memo.get(key)
        if cached is not None:
            return decode_response_line(cached, request_id, limits)
        seconds = _timeout_seconds(timeout)
        worker = self._acquire_worker()
        try:
            raw = worker.call_raw(payload + b"\n", seconds, limits)
            response = decode_response_line(raw, request_id, limits)
            memo.insert(key, raw)
        except BaseException:
            self._drop_worker(worker)
            raise
        self._release_or_recycle(worker)
        return response

    def close(self) -> None:
        """Stop every idle worker process."""
        with self._available:
            idle, self._idle = self._idle, []
            self._live_total -= len(idle)
            self._available.notify_all()
        for worker in idle:
            worker.kill()

    def __enter__(self) -> PluginPool:
        return self

    def __exit__(self, *exc_info: object) -> None:
        self.close()

    def __repr__(self) -> str:
        return f"PluginPool(config={self.config!r}, launch={self.launch!r})"

    def _acquire_worker(self) -> _Worker:
        with self._available:
            while True:
                if self._idle:
                    return self._idle.pop()
                if self._live_total < self.config.max_processes:
                    self._live_total += 1
                    break
                if self._waiting >= self.config.queue_bound:
                    raise BackpressureError(
                        self.config.kind,
                        self._live_total,
                        self._waiting,
                        self.config.queue_bound,
                    )
                self._waiting += 1
                try:
                    self._available.wait()
                finally:
                    self._waiting -= 1
        try:
            return _Worker(self.launch)
        except BaseException:
            self._forget_slot()
            raise

    def _release_or_recycle(self, worker: _Worker) -> None:
        if worker.completed_requests >= self.config.max_requests_per_worker:
            self._drop_worker(worker)
            return
        with self._available:
            self._idle.append(worker)
            self._available.notify()

    def _drop_worker(self, worker: _Worker) -> None:
        worker.kill()
        self._forget_slot()

    def _forget_slot(self) -> None:
        with self._available:
            self._live_total = max(0, self._live_total - 1)
            self._available.notify()