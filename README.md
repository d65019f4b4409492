# polyspi

The host side of a small plugin interface. Extractor and kind-checker plugins
are separate executables. Each one speaks JSON-RPC 2.0 over stdin and stdout.
Every message is exactly one line of JSON, and a byte cap applies to each line.
The package has no dependencies beyond the standard library.

## Modules

- `polyspi.limits`: `Limits`, the hard caps (payload bytes, id bytes and
  others), and `SafePath`. A `SafePath` is always relative. `SafePath.parse`
  raises `SafePathError` for an empty or over-long path (more than 4 KiB), an
  absolute path, a `..` segment, NUL, control characters, bidi overrides or
  zero-width characters. `SpiError` is the base of the package's error classes.
- `polyspi.envelope`: the `JsonRpcRequest`, `JsonRpcResponse` and `JsonRpcError`
  records, each with `to_dict()` and `from_dict()`.
- `polyspi.cgroup`: `PluginIsolationProfile` and `SeccompPolicy`. A profile is
  fail-closed. `validate()` raises `IsolationError` if the profile allows
  network access, if it has a zero limit, or if its seccomp policy is weak.
  `backend_command()` builds the `nsjail` or `sandbox-exec` command prefix for a
  plugin (`IsolationBackend.NSJAIL`, `IsolationBackend.SANDBOX_EXEC`).
- `polyspi.protocol`: `PluginMethod`, `PluginRequestId` and `PluginBinary`.
  `encode_request_payload` and `encode_request_line` give deterministic request
  encoding. `decode_response_line` decodes a response strictly. The module also
  holds the `PluginHostError` hierarchy.
- `polyspi.memo`: `PluginMemoKey` and `PluginMemoStore`. A key is the SHA-256 of
  the protocol version, the method, the plugin digest and the canonical request
  bytes. The store keeps the exact response bytes and replays them.
- `polyspi.process`: `PluginLaunchConfig` and `run_plugin_call`.
  `run_plugin_call` starts a fresh plugin process for one call and supervises it.
- `polyspi.pool`: `PluginKind`, `PluginPoolConfig` and `PluginPool`.
  `PluginPool` is a bounded pool of long-lived worker processes.

## Install

```
pip install .
```

## Encoding and decoding

```python
from polyspi.limits import Limits
from polyspi.protocol import (
    PluginMethod, PluginRequestId, encode_request_line, decode_response_line,
)

rid = PluginRequestId("req-1")
line = encode_request_line(PluginMethod.CHECK, rid, {"z": 1, "a": 2}, Limits())
# b'{"jsonrpc":"2.0","method":"check","id":"req-1","params":{"a":2,"z":1}}\n'

response = decode_response_line(
    b'{"jsonrpc":"2.0","id":"req-1","result":{}}\n', rid, Limits()
)
```

`decode_response_line` rejects each of the following:

- LSP-style `Content-Length:` framing.
- A response that spans more than one line.
- A response that is over the size cap.
- A response that is not valid JSON.
- A response with the wrong `jsonrpc` version or a mismatched id.
- A response that has both `result` and `error`, or neither.

## Running a plugin

```python
from polyspi.protocol import PluginBinary, PluginMethod, PluginRequestId
from polyspi.process import PluginLaunchConfig, run_plugin_call

config = (
    PluginLaunchConfig(PluginBinary("/opt/plugins/route-checker", "digest-1"))
    .with_env("LANG", "C")
)
response = run_plugin_call(
    config, PluginMethod.CHECK, PluginRequestId("req-1"), {"value": 7}, timeout=2.0
)
```

The plugin runs with an empty environment except for the variables set with
`with_env`. `repr()` of a config shows only the environment keys, never the
values. `with_cwd` sets the plugin's working directory. `with_limits` replaces
the caps.

To run a plugin under an isolation backend, use `with_isolation_backend`. It
validates the profile first and raises `PluginIsolationError` if the profile is
weak:

```python
from polyspi.cgroup import IsolationBackend, PluginIsolationProfile

isolated = config.with_isolation_backend(IsolationBackend.NSJAIL, PluginIsolationProfile())
program, args = isolated.command_spec()   # ("nsjail", [..., "--", "/opt/plugins/route-checker"])
```

The `timeout` argument is in seconds, or a `datetime.timedelta`. Failures raise
subclasses of `PluginHostError`:

- A plugin that times out raises `PluginTimeoutError`.
- A plugin that exits with a non-zero status raises `NonZeroExitError`.
- Output that is too large raises `PayloadTooLargeError`.
- Malformed output raises `ProtocolJsonError`, `MalformedResponseError` or
  `UnexpectedIdError`.

Each error's `unknown_reason()` returns an `UnknownReason`. A timeout gives
`CHECKER_TIMEOUT`. Every other failure gives `PLUGIN_FAILURE`.

## Pools and memoization

```python
from polyspi.memo import PluginMemoStore
from polyspi.pool import PluginKind, PluginPool, PluginPoolConfig

pool_config = PluginPoolConfig(PluginKind("extractor")).with_max_processes(2).with_queue_bound(8)
with PluginPool(pool_config, config) as pool:
    memo = PluginMemoStore()
    response = pool.call_memoized(
        memo, "0.1.0", PluginMethod.EXTRACT, PluginRequestId("req-1"), {}, timeout=2.0
    )
```

A pool starts at most `max_processes` workers and reuses them between calls. If
every worker is busy, a call waits for one. When `queue_bound` calls are already
waiting, the next call raises `BackpressureError` instead. A worker is recycled
after `max_requests_per_worker` successful calls. A worker that fails a call is
killed. A checker pool is keyed by a correspondence kind, for example
`PluginKind("checker", "route")`. `close()`, or leaving the `with` block, stops
the workers that are idle.

`call_memoized` first looks up the request's key in the store. If the key is
there, the stored bytes are decoded and returned, and no plugin process runs.

## What it does not do

- It has no command-line program.
- It does not enforce a sandbox itself. It only builds the `nsjail` or
  `sandbox-exec` command prefix, and running that still needs the backend to be
  installed.
- `PluginMemoStore` keeps responses in memory only. Nothing is persisted.
- `Limits.max_json_depth`, `max_path_bytes` and `max_deadline_ms` are carried,
  but no code checks them.

## Tests

```
pip install .[test]
pytest
```