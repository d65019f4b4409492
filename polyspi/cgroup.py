"""Declarative plugin isolation profile and backend argument building."""

from __future__ import annotations

from dataclasses import dataclass, field
from enum import Enum

REQUIRED_DENIED_SYSCALLS = ("ptrace", "mount", "chroot", "kexec_load")
SANDBOX_EXEC_PROFILE = "(version 1) (deny default) (allow file-read*)"


class IsolationBackend(Enum):
    """Backend family that can enforce a plugin isolation profile."""

    NSJAIL = "nsjail"
    SANDBOX_EXEC = "sandbox-exec"

    def program(self) -> str:
        """Backend executable name."""
        return self.value


class IsolationError(Exception):
    """A profile weakens the required isolation defaults.

    ``kind`` is one of ``network_allowed``, ``zero_limit`` or ``weak_seccomp``;
    ``detail`` names the offending field or syscall.
    """

    _MESSAGES = {
        "network_allowed": "plugin isolation must deny network",
        "zero_limit": "plugin isolation limit must be non-zero: {}",
        "weak_seccomp": "plugin isolation seccomp policy is incomplete: {}",
    }

    def __init__(self, kind: str, detail: str = "") -> None:
        if kind not in self._MESSAGES:
            raise ValueError(f"unknown isolation error kind: {kind!r}")
        self.kind = kind
        self.detail = detail
        super().__init__(self._MESSAGES[kind].format(detail))


@dataclass
class SeccompPolicy:
    """Seccomp policy requirements for plugin processes."""

    no_new_privileges: bool = True
    denied_syscalls: list[str] = field(default_factory=lambda: list(REQUIRED_DENIED_SYSCALLS))


@dataclass
class PluginIsolationProfile:
    """Resource and security profile for one plugin call."""

    cpu_seconds: int = 60
    wallclock_ms: int = 60_000
    memory_bytes: int = 1024 * 1024 * 1024
    tmpfs_bytes: int = 256 * 1024 * 1024
    network_allowed: bool = False
    seccomp: SeccompPolicy = field(default_factory=SeccompPolicy)

    def validate(self) -> None:
        """Raise IsolationError unless the profile meets the fail-closed defaults."""
        if self.network_allowed:
            raise IsolationError("network_allowed")
        for name in ("cpu_seconds", "wallclock_ms", "memory_bytes", "tmpfs_bytes"):
            if getattr(self, name) <= 0:
                raise IsolationError("zero_limit", name)
        if not self.seccomp.no_new_privileges:
            raise IsolationError("weak_seccomp", "no_new_privileges")
        for required in REQUIRED_DENIED_SYSCALLS:
            if required not in self.seccomp.denied_syscalls:
                raise IsolationError("weak_seccomp", required)

    def backend_args(self, backend: IsolationBackend) -> list[str]:
        """Arguments for ``backend`` after validating the profile."""
        self.validate()
        if backend is IsolationBackend.NSJAIL:
            return [
                "--disable_clone_newnet",
                "--rlimit_cpu",
                str(self.cpu_seconds),
                "--rlimit_as",
                str(self.memory_bytes),
                "--time_limit",
                str(-(-self.wallclock_ms // 1000)),
            ]
        return ["-p", SANDBOX_EXEC_PROFILE]

    def backend_command(self, backend: IsolationBackend, plugin_path: str) -> tuple[str, list[str]]:
        """Program and arguments that run ``plugin_path`` under ``backend``."""
        args = self.backend_args(backend)
        if backend is IsolationBackend.NSJAIL:
            args.append("--")
        args.append(plugin_path)
        return backend.program(), args