"""Per-cgroup figures read lazily from cgroupfs and cached per interval."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional, Protocol, TypeVar

from .cgroupfs import (
    DirFd,
    is_cgroup_valid,
    read_child_dirs,
    read_iostat_at,
    read_is_populated_at,
    read_mem_value_at,
    read_memcurrent_at,
    read_memhightmp_at,
    read_memstat_at,
    read_nr_dying_descendants_at,
    read_oom_group_at,
    read_pressure_at,
    read_root_memcurrent,
    read_root_pressure,
)
from .types import (
    CgroupPath,
    ContextParams,
    DeviceIOStat,
    DeviceType,
    PressureType,
    ResourcePressure,
    SystemContext,
)

T = TypeVar("T")


class ContextOwner(Protocol):
    """What a cgroup context needs from the context that holds it."""

    params: ContextParams
    system_context: SystemContext

    def add_to_cache_and_get(self, cgroup: CgroupPath) -> Optional["CgroupContext"]:
        ...

    def add_many_to_cache_and_get(
        self, cgroups: Iterable[CgroupPath]
    ) -> list["CgroupContext"]:
        ...


@dataclass(frozen=True)
class _Archive:
    """Values kept from the previous interval for temporal counters."""

    average_usage: Optional[int] = None
    io_cost_cumulative: Optional[float] = None
    pg_scan_cumulative: Optional[int] = None


def _raw_protection(cgroup_ctx: "CgroupContext") -> Optional[int]:
    current = cgroup_ctx.current_usage()
    memory_min = cgroup_ctx.memory_min()
    memory_low = cgroup_ctx.memory_low()
    if current is None or memory_min is None or memory_low is None:
        return None
    return min(current, max(memory_min, memory_low))


class CgroupContext:
    """State of one cgroup.

    Every accessor reads its value from cgroupfs on first use and keeps it
    until :meth:`refresh`. An accessor returns None when the value cannot be
    read, for instance because the cgroup no longer exists.
    """

    def __init__(self, ctx: ContextOwner, path: CgroupPath, dir_fd: DirFd) -> None:
        self._ctx = ctx
        self._cgroup = path
        self._dir = dir_fd
        self._data: dict[str, Any] = {}
        self._archive = _Archive()

    @classmethod
    def make(cls, ctx: ContextOwner, cgroup: CgroupPath) -> Optional["CgroupContext"]:
        """Open ``cgroup`` (not a glob pattern); None if it cannot be opened."""
        try:
            dir_fd = DirFd.open(cgroup.absolute_path())
        except OSError:
            return None
        return cls(ctx, cgroup, dir_fd)

    def create_child(self, child_name: str) -> Optional["CgroupContext"]:
        """Open the child cgroup ``child_name``; None if it cannot be opened.

        The result is not added to any cache.
        """
        try:
            dir_fd = self._dir.open_child(child_name)
        except OSError:
            return None
        return CgroupContext(self._ctx, self._cgroup.get_child(child_name), dir_fd)

    def refresh(self) -> bool:
        """Archive temporal data, drop cached values, report if still valid."""
        self._archive = _Archive(
            average_usage=self._data.get("average_usage"),
            io_cost_cumulative=self._data.get("io_cost_cumulative"),
            pg_scan_cumulative=self._data.get("pg_scan_cumulative"),
        )
        self._data.clear()
        return is_cgroup_valid(self._dir)

    @property
    def fd(self) -> DirFd:
        return self._dir

    @property
    def cgroup(self) -> CgroupPath:
        return self._cgroup

    @property
    def oomd_ctx(self) -> ContextOwner:
        return self._ctx

    def __repr__(self) -> str:
        return f"CgroupContext({self._cgroup!r})"

    # Caching helpers

    def _read(self, name: str, reader: Callable[[], T]) -> Optional[T]:
        if name in self._data:
            return self._data[name]
        try:
            value = reader()
        except (OSError, ValueError):
            return None
        self._data[name] = value
        return value

    def _derive(self, name: str, compute: Callable[[], Optional[T]]) -> Optional[T]:
        if name in self._data:
            return self._data[name]
        value = compute()
        if value is not None:
            self._data[name] = value
        return value

    def _parent(self) -> Optional["CgroupContext"]:
        return self._ctx.add_to_cache_and_get(self._cgroup.get_parent())

    # Raw readings

    def children(self) -> list[str]:
        """Names (not paths) of the child cgroups; empty if unreadable."""

        def compute() -> list[str]:
            try:
                return read_child_dirs(self._dir)
            except OSError:
                return []

        return self._derive("children", compute) or []

    def _pressure(self, resource: str, pressure_type: PressureType) -> ResourcePressure:
        if self._cgroup.is_root():
            return read_root_pressure(resource, pressure_type)
        return read_pressure_at(self._dir, resource, pressure_type)

    def mem_pressure(self) -> Optional[ResourcePressure]:
        return self._read(
            "mem_pressure", lambda: self._pressure("memory", PressureType.FULL)
        )

    def mem_pressure_some(self) -> Optional[ResourcePressure]:
        return self._read(
            "mem_pressure_some", lambda: self._pressure("memory", PressureType.SOME)
        )

    def io_pressure(self) -> Optional[ResourcePressure]:
        return self._read("io_pressure", lambda: self._pressure("io", PressureType.FULL))

    def io_pressure_some(self) -> Optional[ResourcePressure]:
        return self._read(
            "io_pressure_some", lambda: self._pressure("io", PressureType.SOME)
        )

    def memory_stat(self) -> Optional[dict[str, int]]:
        return self._read("memory_stat", lambda: read_memstat_at(self._dir))

    def io_stat(self) -> Optional[list[DeviceIOStat]]:
        return self._read("io_stat", lambda: read_iostat_at(self._dir))

    def id(self) -> Optional[int]:
        """Non-zero identifier unique to this cgroup, stable across intervals."""
        return self._read("id", self._dir.inode)

    def current_usage(self) -> Optional[int]:
        def reader() -> int:
            if self._cgroup.is_root():
                return read_root_memcurrent()
            return read_memcurrent_at(self._dir)

        return self._read("current_usage", reader)

    def _mem_value(self, key: str, filename: str) -> Optional[int]:
        return self._read(key, lambda: read_mem_value_at(self._dir, filename))

    def swap_usage(self) -> Optional[int]:
        return self._mem_value("swap_usage", "memory.swap.current")

    def swap_max(self) -> Optional[int]:
        return self._mem_value("swap_max", "memory.swap.max")

    def memory_low(self) -> Optional[int]:
        return self._mem_value("memory_low", "memory.low")

    def memory_min(self) -> Optional[int]:
        return self._mem_value("memory_min", "memory.min")

    def memory_high(self) -> Optional[int]:
        return self._mem_value("memory_high", "memory.high")

    def memory_high_tmp(self) -> Optional[int]:
        return self._read("memory_high_tmp", lambda: read_memhightmp_at(self._dir))

    def memory_max(self) -> Optional[int]:
        return self._mem_value("memory_max", "memory.max")

    def nr_dying_descendants(self) -> Optional[int]:
        return self._read(
            "nr_dying_descendants", lambda: read_nr_dying_descendants_at(self._dir)
        )

    def is_populated(self) -> Optional[bool]:
        return self._read("is_populated", lambda: read_is_populated_at(self._dir))

    def oom_group(self) -> Optional[bool]:
        return self._read("oom_group", lambda: read_oom_group_at(self._dir))

    # Derived values

    def effective_swap_max(self) -> Optional[int]:
        """swap_max taking the limits of all ancestors into account."""

        def compute() -> Optional[int]:
            if self._cgroup.is_root():
                return self._ctx.system_context.swaptotal
            parent = self._parent()
            if parent is None:
                return None
            parent_max = parent.effective_swap_max()
            if parent_max is None:
                return None
            own_max = self.swap_max()
            if own_max is None:
                return None
            return min(parent_max, own_max)

        return self._derive("effective_swap_max", compute)

    def effective_swap_free(self) -> Optional[int]:
        """Lowest free swap (max - usage) along the ancestry; may be negative."""

        def compute() -> Optional[int]:
            if self._cgroup.is_root():
                system = self._ctx.system_context
                return system.swaptotal - system.swapused
            own_max = self.swap_max()
            if own_max is None:
                return None
            usage = self.swap_usage()
            if usage is None:
                return None
            local_free = own_max - usage
            parent = self._parent()
            if parent is None:
                return None
            parent_free = parent.effective_swap_free()
            if parent_free is None:
                return None
            return min(parent_free, local_free)

        return self._derive("effective_swap_free", compute)

    def effective_swap_util_pct(self) -> Optional[float]:
        """Highest swap utilisation (usage / max) along the ancestry."""

        def compute() -> Optional[float]:
            if self._cgroup.is_root():
                system = self._ctx.system_context
                if system.swaptotal == 0:
                    return 0.0
                return system.swapused / system.swaptotal
            own_max = self.swap_max()
            if own_max is None:
                return None
            if own_max == 0:
                return 0.0
            usage = self.swap_usage()
            if usage is None:
                return None
            local_pct = usage / own_max
            parent = self._parent()
            if parent is None:
                return None
            parent_pct = parent.effective_swap_util_pct()
            if parent_pct is None:
                return None
            return max(parent_pct, local_pct)

        return self._derive("effective_swap_util_pct", compute)

    def memory_protection(self) -> Optional[int]:
        """Actual memory.min/low protection, given how the parent's is shared.

        With R(c) = min(current, max(min, low)), the protection is
        R(c) * min(1, P(parent) / sum of R over the parent's children).
        """

        def compute() -> Optional[int]:
            if self._cgroup.is_root():
                return self.current_usage()
            parent_path = self._cgroup.get_parent()
            if parent_path.is_root():
                return _raw_protection(self)
            parent = self._ctx.add_to_cache_and_get(parent_path)
            if parent is None:
                return None
            sibling_paths = {parent_path.get_child(name) for name in parent.children()}
            siblings = self._ctx.add_many_to_cache_and_get(sibling_paths)
            protection_sum = sum(_raw_protection(sibling) or 0 for sibling in siblings)
            if protection_sum == 0:
                return 0
            raw = _raw_protection(self)
            if raw is None:
                return None
            parent_protection = parent.memory_protection()
            if parent_protection is None:
                return None
            return int(raw * min(1.0, parent_protection / protection_sum))

        return self._derive("memory_protection", compute)

    def io_cost_cumulative(self) -> Optional[float]:
        """Sum over configured devices of IO counters weighted by coefficients."""

        def compute() -> Optional[float]:
            stats = self.io_stat()
            if stats is None:
                return None
            params = self._ctx.params
            cost = 0.0
            for stat in stats:
                dev_type = params.io_devs.get(stat.dev_id)
                if dev_type is None:
                    continue
                coeffs = (
                    params.ssd_coeffs if dev_type is DeviceType.SSD else params.hdd_coeffs
                )
                cost += (
                    stat.rios * coeffs.read_iops
                    + stat.rbytes * coeffs.readbw
                    + stat.wios * coeffs.write_iops
                    + stat.wbytes * coeffs.writebw
                    + stat.dios * coeffs.trim_iops
                    + stat.dbytes * coeffs.trimbw
                )
            return cost

        return self._derive("io_cost_cumulative", compute)

    def pg_scan_cumulative(self) -> Optional[int]:
        """The ``pgscan`` counter of memory.stat.

        Raises RuntimeError if memory.stat is readable but lacks it.
        """

        def compute() -> Optional[int]:
            stat = self.memory_stat()
            if stat is None:
                return None
            if "pgscan" not in stat:
                raise RuntimeError("Bad memory.stat format: missing pgscan entry")
            return stat["pgscan"]

        return self._derive("pg_scan_cumulative", compute)

    # Temporal counters: load them every interval for them to be accurate.

    def average_usage(self) -> Optional[int]:
        """Exponential moving average of memory usage across intervals."""

        def compute() -> Optional[int]:
            current = self.current_usage()
            if current is None:
                return None
            previous = self._archive.average_usage or 0
            decay = self._ctx.params.average_size_decay
            return int(previous * ((decay - 1) / decay) + current / decay)

        return self._derive("average_usage", compute)

    def io_cost_rate(self) -> Optional[float]:
        """Change of cumulative IO cost since the previous interval."""

        def compute() -> Optional[float]:
            cumulative = self.io_cost_cumulative()
            if cumulative is None:
                return None
            if self._archive.io_cost_cumulative is None:
                return 0.0
            return cumulative - self._archive.io_cost_cumulative

        return self._derive("io_cost_rate", compute)

    def pg_scan_rate(self) -> Optional[int]:
        """Change of pgscan since the previous interval; None without history."""

        def compute() -> Optional[int]:
            cumulative = self.pg_scan_cumulative()
            if cumulative is None or self._archive.pg_scan_cumulative is None:
                return None
            return cumulative - self._archive.pg_scan_cumulative

        return self._derive("pg_scan_rate", compute)

    # Uncached derived values

    def _memory_stat_entry(self, key: str) -> Optional[int]:
        stat = self.memory_stat()
        if stat is None:
            return None
        return stat.get(key)

    def anon_usage(self) -> Optional[int]:
        return self._memory_stat_entry("anon")

    def file_usage(self) -> Optional[int]:
        return self._memory_stat_entry("file")

    def shmem_usage(self) -> Optional[int]:
        return self._memory_stat_entry("shmem")

    def effective_usage(self, memory_scale: int = 1, memory_adj: int = 0) -> Optional[int]:
        """Scaled usage minus protection, plus an adjustment."""
        current = self.current_usage()
        protection = self.memory_protection()
        if current is None or protection is None:
            return None
        return current * memory_scale - protection + memory_adj

    def memory_growth(self) -> Optional[float]:
        """Current usage over average usage; load average_usage beforehand."""
        current = self.current_usage()
        average = self.average_usage()
        if current is None or average is None:
            return None
        if average == 0:
            # A zero average implies zero usage.
            return 0.0
        return current / average