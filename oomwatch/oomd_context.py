"""The per-interval cache of cgroup contexts and the state shared by plugins."""

from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Callable, Iterable, Optional

from .cgroup_context import CgroupContext
from .cgroupfs import parse_meminfo
from .log import olog
from .types import (
    ActionContext,
    CgroupPath,
    ContextParams,
    KillPreference,
    ResourcePressure,
    SystemContext,
)

_CGROUP_MAX = 2**63 - 1
_PROC_MEMINFO = "/proc/meminfo"

PrekillHookHandler = Callable[[CgroupContext], Any]


def _or(value: Any, default: Any) -> Any:
    return default if value is None else value


def _kill_preference(cgroup_ctx: Any) -> KillPreference:
    """The kill preference of a context, NORMAL when it has none to offer."""
    reader = getattr(cgroup_ctx, "kill_preference", None)
    preference = reader() if callable(reader) else None
    return KillPreference.NORMAL if preference is None else preference


def _read_meminfo() -> Optional[dict[str, int]]:
    try:
        with open(_PROC_MEMINFO, encoding="utf-8") as handle:
            return parse_meminfo(handle.read().splitlines())
    except (OSError, ValueError):
        return None


@dataclass(frozen=True)
class _Snapshot:
    """The figures of one cgroup shown by a context dump."""

    name: str
    mem_pressure: ResourcePressure
    io_pressure: ResourcePressure
    current_usage: int
    average_usage: int
    memory_low: int
    memory_min: int
    memory_high: int
    memory_high_tmp: int
    memory_max: int
    memory_protection: int
    anon_usage: int
    swap_usage: int
    io_cost_cumulative: float
    io_cost_rate: float
    pg_scan_cumulative: int
    pg_scan_rate: int
    kill_preference: KillPreference

    @classmethod
    def of(cls, cgroup_ctx: CgroupContext) -> "_Snapshot":
        return cls(
            name=cgroup_ctx.cgroup.relative_path(),
            mem_pressure=_or(cgroup_ctx.mem_pressure(), ResourcePressure()),
            io_pressure=_or(cgroup_ctx.io_pressure(), ResourcePressure()),
            current_usage=_or(cgroup_ctx.current_usage(), 0),
            average_usage=_or(cgroup_ctx.average_usage(), 0),
            memory_low=_or(cgroup_ctx.memory_low(), 0),
            memory_min=_or(cgroup_ctx.memory_min(), 0),
            memory_high=_or(cgroup_ctx.memory_high(), _CGROUP_MAX),
            memory_high_tmp=_or(cgroup_ctx.memory_high_tmp(), _CGROUP_MAX),
            memory_max=_or(cgroup_ctx.memory_max(), _CGROUP_MAX),
            memory_protection=_or(cgroup_ctx.memory_protection(), 0),
            anon_usage=_or(cgroup_ctx.anon_usage(), 0),
            swap_usage=_or(cgroup_ctx.swap_usage(), 0),
            io_cost_cumulative=_or(cgroup_ctx.io_cost_cumulative(), 0),
            io_cost_rate=_or(cgroup_ctx.io_cost_rate(), 0),
            pg_scan_cumulative=_or(cgroup_ctx.pg_scan_cumulative(), 0),
            pg_scan_rate=_or(cgroup_ctx.pg_scan_rate(), 0),
            kill_preference=_kill_preference(cgroup_ctx),
        )

    def negligible(self, meminfo: dict[str, int]) -> bool:
        """Under 1% pressure everywhere and under 0.1% of memory and swap."""
        press_min = 1.0
        mem_min = meminfo.get("MemTotal", 0) // 1000
        swap_min = meminfo.get("SwapTotal", 0) // 1000
        pressures = (
            self.mem_pressure.sec_10,
            self.mem_pressure.sec_60,
            self.mem_pressure.sec_300,
            self.io_pressure.sec_10,
            self.io_pressure.sec_60,
            self.io_pressure.sec_300,
        )
        significant = (
            any(value >= press_min for value in pressures)
            or self.current_usage > mem_min
            or self.average_usage > mem_min
            or self.swap_usage > swap_min
        )
        return not significant

    def lines(self) -> list[str]:
        mem, io = self.mem_pressure, self.io_pressure
        mb = {
            "mem": self.current_usage,
            "mem_avg": self.average_usage,
            "mem_low": self.memory_low,
            "mem_min": self.memory_min,
            "mem_high": self.memory_high,
            "mem_high_tmp": self.memory_high_tmp,
            "mem_max": self.memory_max,
            "mem_prot": self.memory_protection,
            "anon": self.anon_usage,
            "swap_usage": self.swap_usage,
        }
        return [
            f"name={self.name}",
            f"  pressure={mem.sec_10:g}:{mem.sec_60:g}:{mem.sec_300:g}"
            f"-{io.sec_10:g}:{io.sec_60:g}:{io.sec_300:g}",
            "  " + " ".join(f"{key}={int(value) >> 20}MB" for key, value in mb.items()),
            f"  io_cost_cumulative={self.io_cost_cumulative:g}"
            f" io_cost_rate={self.io_cost_rate:g}",
            f"  pg_scan_cumulative={self.pg_scan_cumulative}"
            f" pg_scan_rate={self.pg_scan_rate}",
            f"  kill_preference={self.kill_preference}",
        ]


class OomdContext:
    """Cache of cgroup contexts for one interval, plus shared plugin state.

    Contexts handed out are valid for the current interval only; plugins
    should not keep them across intervals.
    """

    def __init__(self, params: Optional[ContextParams] = None) -> None:
        self.params = params if params is not None else ContextParams()
        self.system_context = SystemContext()
        self.action_context = ActionContext()
        self.current_tick = 0
        self.invoking_ruleset: Optional[Any] = None
        self.ruleset_cgroup: Optional[CgroupPath] = None
        self._cgroups: dict[CgroupPath, CgroupContext] = {}
        self._prekill_hook_handler: Optional[PrekillHookHandler] = None

    def cgroups(self) -> list[CgroupPath]:
        """Paths of all cached cgroups."""
        return list(self._cgroups)

    def add_to_cache_and_get(self, cgroup: CgroupPath) -> Optional[CgroupContext]:
        """The cached context of ``cgroup``, opening it if new; None if invalid."""
        cached = self._cgroups.get(cgroup)
        if cached is not None:
            return cached
        cgroup_ctx = CgroupContext.make(self, cgroup)
        if cgroup_ctx is None:
            return None
        self._cgroups[cgroup] = cgroup_ctx
        return cgroup_ctx

    def add_many_to_cache_and_get(
        self, cgroups: Iterable[CgroupPath]
    ) -> list[CgroupContext]:
        """Contexts of all cgroups matching the given paths or glob patterns.

        Only valid cgroups are returned, each once.
        """
        patterns = list(cgroups)
        if not patterns:
            olog(
                "Trying to add empty cgroup set to context cache, "
                "is your plugin configured correctly?"
            )
            return []
        resolved: dict[CgroupPath, None] = {}
        for pattern in patterns:
            resolved.update(dict.fromkeys(pattern.resolve_wildcard()))
        found = (self.add_to_cache_and_get(path) for path in resolved)
        return [cgroup_ctx for cgroup_ctx in found if cgroup_ctx is not None]

    def add_child_to_cache_and_get(
        self, cgroup_ctx: CgroupContext, child: str
    ) -> Optional[CgroupContext]:
        """The context of the child ``child`` of ``cgroup_ctx``, cached."""
        child_ctx = cgroup_ctx.create_child(child)
        if child_ctx is None:
            olog(
                "failed to get child of ",
                cgroup_ctx.cgroup.relative_path(),
                " named ",
                child,
            )
            return None
        cached = self._cgroups.setdefault(child_ctx.cgroup, child_ctx)
        if cached is not child_ctx:
            child_ctx.fd.close()
        return cached

    def add_children_to_cache_and_get(
        self, cgroup_ctx: CgroupContext
    ) -> list[CgroupContext]:
        """Contexts of all children of ``cgroup_ctx``, cached."""
        result: list[CgroupContext] = []
        for name in cgroup_ctx.children():
            child_ctx = self.add_child_to_cache_and_get(cgroup_ctx, name)
            if child_ctx is None:
                olog(
                    "failed to get child of ",
                    cgroup_ctx.cgroup.relative_path(),
                    " named ",
                    name,
                )
            else:
                result.append(child_ctx)
        return result

    def reverse_sort(
        self, cgroups: Iterable[CgroupPath], key: Callable[[CgroupContext], Any]
    ) -> list[CgroupContext]:
        """Contexts of ``cgroups`` ordered by ``key``, largest first."""
        return sorted(self.add_many_to_cache_and_get(cgroups), key=key, reverse=True)

    @staticmethod
    def sort_desc_with_kill_prefs(
        cgroups: Iterable[CgroupContext], key: Callable[[CgroupContext], Any]
    ) -> list[CgroupContext]:
        """A new list ordered by kill preference, then ``key``, highest first."""
        return sorted(
            cgroups,
            key=lambda cgroup_ctx: (_kill_preference(cgroup_ctx), key(cgroup_ctx)),
            reverse=True,
        )

    def dump(
        self,
        cgroup_ctxs: Optional[Iterable[CgroupContext]] = None,
        skip_negligible: bool = False,
    ) -> None:
        """Log the figures of ``cgroup_ctxs``, or of every cached cgroup."""
        targets = list(self._cgroups.values()) if cgroup_ctxs is None else cgroup_ctxs
        olog("Dumping OomdContext: ")
        for cgroup_ctx in targets:
            snapshot = _Snapshot.of(cgroup_ctx)
            if skip_negligible:
                meminfo = _read_meminfo()
                if meminfo is not None and snapshot.negligible(meminfo):
                    continue
            for line in snapshot.lines():
                olog(line)

    def bump_current_tick(self) -> None:
        self.current_tick += 1

    def set_prekill_hooks_handler(self, handler: Optional[PrekillHookHandler]) -> None:
        """Install the function kill plugins use to run prekill hooks."""
        self._prekill_hook_handler = handler

    def fire_prekill_hook(self, cgroup_ctx: CgroupContext) -> Any:
        """Run the prekill hook handler on ``cgroup_ctx``; None if there is none."""
        if self._prekill_hook_handler is None:
            return None
        return self._prekill_hook_handler(cgroup_ctx)

    def refresh(self) -> None:
        """Refresh every cached cgroup and drop those that no longer exist."""
        for path, cgroup_ctx in list(self._cgroups.items()):
            if not cgroup_ctx.refresh():
                del self._cgroups[path]
                cgroup_ctx.fd.close()