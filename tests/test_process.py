import time
from datetime import timedelta
from pathlib import Path

import pytest

from polyspi.cgroup import (
    SANDBOX_EXEC_PROFILE,
    IsolationBackend,
    PluginIsolationProfile,
)
from polyspi.limits import Limits
from polyspi.process import PluginLaunchConfig, run_plugin_call
from polyspi.protocol import (
    NonZeroExitError,
    PayloadTooLargeError,
    PluginBinary,
    PluginIoError,
    PluginIsolationError,
    PluginMethod,
    PluginRequestId,
    PluginTimeoutError,
    ProtocolJsonError,
    UnknownReason,
)

ECHO_PLUGIN = r"""#!/bin/sh
IFS= read -r line
id=$(printf '%s' "$line" | sed -n 's/.*"id":"\([^"]*\)".*/\1/p')
method=$(printf '%s' "$line" | sed -n 's/.*"method":"\([^"]*\)".*/\1/p')
printf '{"jsonrpc":"2.0","id":"%s","result":{"echo":"%s"}}\n' "$id" "$method"
"""

CRASH_PLUGIN = """#!/bin/sh
echo 'boom' >&2
exit 42
"""

SLEEP_PLUGIN = """#!/bin/sh
sleep 5
"""

MALFORMED_PLUGIN = """#!/bin/sh
printf '{not-json}\\n'
"""

OVERSIZED_PLUGIN = """#!/bin/sh
printf '%065d' 0
"""

ENV_PLUGIN = r"""#!/bin/sh
IFS= read -r line
id=$(printf '%s' "$line" | sed -n 's/.*"id":"\([^"]*\)".*/\1/p')
printf '{"jsonrpc":"2.0","id":"%s","result":{"greeting":"%s","home":"%s"}}\n' "$id" "$GREETING" "${HOME:-unset}"
"""

CWD_PLUGIN = r"""#!/bin/sh
IFS= read -r line
id=$(printf '%s' "$line" | sed -n 's/.*"id":"\([^"]*\)".*/\1/p')
printf '{"jsonrpc":"2.0","id":"%s","result":{"cwd":"%s"}}\n' "$id" "$(pwd)"
"""


def _plugin(tmp_path: Path, name: str, body: str) -> Path:
    path = tmp_path / name
    path.write_text(body)
    path.chmod(0o755)
    return path


def _config(path: Path) -> PluginLaunchConfig:
    return PluginLaunchConfig(PluginBinary(path, "digest-1")).with_limits(Limits())


def test_echo_plugin_returns_typed_response(tmp_path):
    config = _config(_plugin(tmp_path, "echo", ECHO_PLUGIN))
    response = run_plugin_call(
        config, PluginMethod.CHECK, PluginRequestId("req-1"), {"value": 7}, 2
    )
    assert response.result == {"echo": "check"}
    assert response.id == "req-1"


def test_timeout_accepts_timedelta(tmp_path):
    config = _config(_plugin(tmp_path, "echo", ECHO_PLUGIN))
    response = run_plugin_call(
        config, PluginMethod.DESCRIBE, PluginRequestId("req-2"), {}, timedelta(seconds=2)
    )
    assert response.result == {"echo": "describe"}


def test_crashing_plugin_maps_to_plugin_failure(tmp_path):
    config = _config(_plugin(tmp_path, "crash", CRASH_PLUGIN))
    with pytest.raises(NonZeroExitError) as info:
        run_plugin_call(config, PluginMethod.CHECK, PluginRequestId("req-1"), {}, 2)
    assert info.value.code == 42
    assert info.value.stderr_bytes == 5
    assert info.value.unknown_reason() is UnknownReason.PLUGIN_FAILURE


def test_sleeping_plugin_times_out_and_maps_to_checker_timeout(tmp_path):
    config = _config(_plugin(tmp_path, "sleep", SLEEP_PLUGIN))
    started = time.monotonic()
    with pytest.raises(PluginTimeoutError) as info:
        run_plugin_call(config, PluginMethod.CHECK, PluginRequestId("req-1"), {}, 0.1)
    assert time.monotonic() - started < 4
    assert info.value.timeout_ms == 100
    assert info.value.unknown_reason() is UnknownReason.CHECKER_TIMEOUT


def test_malformed_stdout_maps_to_plugin_failure(tmp_path):
    config = _config(_plugin(tmp_path, "malformed", MALFORMED_PLUGIN))
    with pytest.raises(ProtocolJsonError) as info:
        run_plugin_call(config, PluginMethod.DESCRIBE, PluginRequestId("req-1"), {}, 2)
    assert info.value.unknown_reason() is UnknownReason.PLUGIN_FAILURE


def test_oversized_stdout_is_rejected(tmp_path):
    path = _plugin(tmp_path, "oversized", OVERSIZED_PLUGIN)
    config = _config(path).with_limits(Limits(max_payload_bytes=64))
    with pytest.raises(PayloadTooLargeError) as info:
        run_plugin_call(config, PluginMethod.EXTRACT, PluginRequestId("r"), {}, 2)
    assert info.value.limit == 64
    assert info.value.actual == 65


def test_environment_is_cleared_and_explicit_values_passed(tmp_path):
    config = _config(_plugin(tmp_path, "env", ENV_PLUGIN)).with_env("GREETING", "hello")
    response = run_plugin_call(config, PluginMethod.CHECK, PluginRequestId("req-1"), {}, 2)
    assert response.result == {"greeting": "hello", "home": "unset"}


def test_plugin_runs_in_configured_cwd(tmp_path):
    workdir = tmp_path / "work"
    workdir.mkdir()
    config = _config(_plugin(tmp_path, "cwd", CWD_PLUGIN)).with_cwd(workdir)
    response = run_plugin_call(config, PluginMethod.CHECK, PluginRequestId("req-1"), {}, 2)
    assert Path(response.result["cwd"]).resolve() == workdir.resolve()


def test_missing_binary_is_io_error(tmp_path):
    config = _config(tmp_path / "does-not-exist")
    with pytest.raises(PluginIoError) as info:
        run_plugin_call(config, PluginMethod.CHECK, PluginRequestId("req-1"), {}, 2)
    assert info.value.unknown_reason() is UnknownReason.PLUGIN_FAILURE


def test_repr_hides_env_values(tmp_path):
    path = _plugin(tmp_path, "echo", ECHO_PLUGIN)
    config = (
        PluginLaunchConfig(PluginBinary(path, "digest-1"))
        .with_env("API_KEY", "secret")
        .with_env("SERVICE_PASSWORD", "placeholder")
    )
    text = repr(config)
    assert "API_KEY" in text
    assert "SERVICE_PASSWORD" in text
    assert "secret" not in text
    assert "placeholder" not in text


def test_builders_leave_original_unchanged(tmp_path):
    base = PluginLaunchConfig(PluginBinary(tmp_path / "p", "digest-1"))
    derived = base.with_env("A", "1").with_env("B", "2")
    assert base.env == ()
    assert derived.env == (("A", "1"), ("B", "2"))
    assert base.stderr_cap_bytes == 8 * 1024


def test_direct_command_spec_is_plugin_path(tmp_path):
    config = PluginLaunchConfig(PluginBinary("/tmp/polyspi-plugin", "digest"))
    assert config.command_spec() == ("/tmp/polyspi-plugin", [])


def test_launch_config_can_build_nsjail_isolated_command():
    config = PluginLaunchConfig(
        PluginBinary("/tmp/polyspi-plugin", "digest")
    ).with_isolation_backend(IsolationBackend.NSJAIL, PluginIsolationProfile())
    program, args = config.command_spec()
    assert program == "nsjail"
    assert "--disable_clone_newnet" in args
    assert "--" in args
    assert "/tmp/polyspi-plugin" in args
    assert args[-2:] == ["--", "/tmp/polyspi-plugin"]


def test_launch_config_can_build_sandbox_exec_command():
    config = PluginLaunchConfig(
        PluginBinary("/tmp/polyspi-plugin", "digest")
    ).with_isolation_backend(IsolationBackend.SANDBOX_EXEC, PluginIsolationProfile())
    assert config.command_spec() == (
        "sandbox-exec",
        ["-p", SANDBOX_EXEC_PROFILE, "/tmp/polyspi-plugin"],
    )


def test_isolation_backend_rejects_weak_profile():
    base = PluginLaunchConfig(PluginBinary("/tmp/polyspi-plugin", "digest"))
    with pytest.raises(PluginIsolationError) as info:
        base.with_isolation_backend(
            IsolationBackend.NSJAIL, PluginIsolationProfile(network_allowed=True)
        )
    assert info.value.error.kind == "network_allowed"
    assert info.value.unknown_reason() is UnknownReason.PLUGIN_FAILURE