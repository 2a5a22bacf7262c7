"""Value types shared by the cgroup and context modules."""

from __future__ import annotations

import fnmatch
import os
import posixpath
from dataclasses import dataclass, field
from enum import Enum, IntEnum
from typing import Optional

_GLOB_CHARS = frozenset("*?[")


class PressureType(Enum):
    """Which PSI line to read: some tasks stalled, or all of them."""

    SOME = "some"
    FULL = "full"


@dataclass(frozen=True)
class ResourcePressure:
    """PSI averages over 10, 60 and 300 seconds, and total stall time in µs."""

    sec_10: float = 0.0
    sec_60: float = 0.0
    sec_300: float = 0.0
    total: Optional[int] = None


@dataclass(frozen=True)
class DeviceIOStat:
    """Cumulative IO counters of one block device, from io.stat."""

    dev_id: str
    rbytes: int = 0
    wbytes: int = 0
    rios: int = 0
    wios: int = 0
    dbytes: int = 0
    dios: int = 0


class DeviceType(Enum):
    """Kind of block device, which selects the IO cost coefficients."""

    SSD = "ssd"
    HDD = "hdd"


class KillPreference(IntEnum):
    """How eager a cgroup is to be chosen as a kill target."""

    AVOID = -1
    NORMAL = 0
    PREFER = 1

    def __str__(self) -> str:
        return self.name


@dataclass
class IOCostCoeffs:
    """Weights turning IO counters into a single cost figure."""

    read_iops: float = 0.0
    readbw: float = 0.0
    write_iops: float = 0.0
    writebw: float = 0.0
    trim_iops: float = 0.0
    trimbw: float = 0.0


@dataclass
class SystemContext:
    """Machine-wide figures gathered once per interval."""

    swaptotal: int = 0
    swapused: int = 0
    swappiness: int = 0
    vmstat: dict[str, int] = field(default_factory=dict)
    swapout_bps: float = 0.0
    swapout_bps_60: float = 0.0
    swapout_bps_300: float = 0.0


@dataclass
class ContextParams:
    """Settings used when deriving cgroup figures."""

    average_size_decay: float = 4.0
    io_devs: dict[str, DeviceType] = field(default_factory=dict)
    hdd_coeffs: IOCostCoeffs = field(default_factory=IOCostCoeffs)
    ssd_coeffs: IOCostCoeffs = field(default_factory=IOCostCoeffs)


@dataclass
class ActionContext:
    """Which ruleset and detector group triggered an action."""

    ruleset_name: str = ""
    detectorgroup: str = ""
    action_group_run_uuid: str = ""
    prekill_hook_timeout_ts: Optional[float] = None
    target_cgroup: Optional["CgroupPath"] = None


def _expand_braces(pattern: str) -> list[str]:
    """Expand ``{a,b}`` alternatives the way shell globbing does."""
    start = pattern.find("{")
    if start < 0:
        return [pattern]
    depth = 0
    options: list[str] = []
    last = start + 1
    for pos, char in enumerate(pattern[start:], start):
        if char == "{":
            depth += 1
        elif char == "}":
            depth -= 1
            if depth == 0:
                options.append(pattern[last:pos])
                prefix, suffix = pattern[:start], pattern[pos + 1 :]
                return [
                    expanded
                    for option in options
                    for expanded in _expand_braces(prefix + option + suffix)
                ]
        elif char == "," and depth == 1:
            options.append(pattern[last:pos])
            last = pos + 1
    return [pattern]


def _has_magic(pattern: str) -> bool:
    return any(char in _GLOB_CHARS for char in pattern)


class CgroupPath:
    """A cgroup given by the cgroup2 mount point and a path below it."""

    __slots__ = ("_fs", "_parts")

    def __init__(self, cgroup_fs: str, cgroup_path: str = "") -> None:
        self._fs = cgroup_fs.rstrip("/") or "/"
        self._parts = tuple(part for part in cgroup_path.split("/") if part)

    @property
    def cgroup_fs(self) -> str:
        return self._fs

    def absolute_path(self) -> str:
        """The full filesystem path of the cgroup directory."""
        if not self._parts:
            return self._fs
        return posixpath.join(self._fs, *self._parts)

    def relative_path(self) -> str:
        """The path below the mount point, without leading or trailing '/'."""
        return "/".join(self._parts)

    def is_root(self) -> bool:
        return not self._parts

    def get_parent(self) -> "CgroupPath":
        """The parent cgroup; the root is its own parent."""
        if not self._parts:
            return self
        return CgroupPath(self._fs, "/".join(self._parts[:-1]))

    def get_child(self, name: str) -> "CgroupPath":
        return CgroupPath(self._fs, f"{self.relative_path()}/{name}")

    def resolve_wildcard(self) -> list["CgroupPath"]:
        """Expand glob patterns and braces into the existing directories."""
        candidates: list[tuple[str, ...]] = [()]
        for part in self._parts:
            matched: list[tuple[str, ...]] = []
            for prefix in candidates:
                directory = posixpath.join(self._fs, *prefix)
                for alternative in _expand_braces(part):
                    if not _has_magic(alternative):
                        matched.append(prefix + (alternative,))
                        continue
                    try:
                        names = sorted(os.listdir(directory))
                    except OSError:
                        continue
                    matched.extend(
                        prefix + (name,)
                        for name in names
                        if (alternative.startswith(".") or not name.startswith("."))
                        and fnmatch.fnmatchcase(name, alternative)
                    )
            candidates = matched
        results: list[CgroupPath] = []
        seen: set[tuple[str, ...]] = set()
        for parts in candidates:
            if parts in seen:
                continue
            seen.add(parts)
            if os.path.isdir(posixpath.join(self._fs, *parts)):
                results.append(CgroupPath(self._fs, "/".join(parts)))
        return results

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, CgroupPath):
            return NotImplemented
        return self._fs == other._fs and self._parts == other._parts

    def __hash__(self) -> int:
        return hash((self._fs, self._parts))

    def __repr__(self) -> str:
        return f"CgroupPath({self._fs!r}, {self.relative_path()!r})"

    def __str__(self) -> str:
        return self.absolute_path()