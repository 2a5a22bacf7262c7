"""Cgroup v2 state, per-interval context caching, a stats socket and logging for out-of-memory monitoring."""

__version__ = "0.1.0"