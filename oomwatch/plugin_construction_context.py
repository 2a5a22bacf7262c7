"""Settings handed to plugins while they are constructed."""

from __future__ import annotations

from dataclasses import dataclass


@dataclass(frozen=True)
class PluginConstructionContext:
    """Context for building plugins: the cgroup2 filesystem mount point."""

    cgroup_fs: str = ""