"""Plugin host interface: one-line JSON-RPC framing, safe paths, isolation profiles, process supervision, pools and memoization."""

__version__ = "0.1.0"

__all__ = ["cgroup", "envelope", "limits", "memo", "pool", "process", "protocol"]