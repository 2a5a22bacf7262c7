# oomwatch

`oomwatch` is a library for watching memory use on Linux hosts that run
cgroup v2. It reads cgroup state from the cgroup filesystem, caches it for one
polling interval, and derives the figures a kill policy needs. It also has a
small counter service on a Unix socket, with a client for it, and a logger.

## Installation

```
pip install .
```

For the test suite:

```
pip install ".[test]"
pytest
```

## Modules

- `oomwatch.types`: value types. `CgroupPath` holds a cgroup2 mount point and
  a path below it. It offers `absolute_path()`, `relative_path()`,
  `is_root()`, `get_parent()` and `get_child(name)`, and
  `resolve_wildcard()`, which expands `*`, `?`, `[...]` and `{a,b}` into the
  directories that exist. There are also `ResourcePressure`, `DeviceIOStat`,
  `IOCostCoeffs`, `SystemContext`, `ContextParams`, `ActionContext`, and the
  enums `PressureType`, `DeviceType` and `KillPreference`.
- `oomwatch.cgroupfs`: readers for cgroup control files: `memory.current`,
  `memory.stat`, `io.stat`, `memory.pressure` and `io.pressure`,
  `memory.high.tmp`, `cgroup.stat`, `cgroup.events`, `memory.oom.group`, and
  single-number files such as `memory.low` (`max` reads as `UNLIMITED`).
  The root cgroup's pressure comes from `/proc/pressure` and its usage from
  `/proc/meminfo`. Reads go through `DirFd`, an open directory handle, so they
  stay tied to the directory that was opened even if a cgroup of the same
  name is created again. Readers raise `OSError` when a file cannot be read
  and `ValueError` when its contents are malformed.
- `oomwatch.cgroup_context`: `CgroupContext`, the state of one cgroup. Each
  accessor reads its value on first use and keeps it until `refresh()`. It
  returns `None` when the value cannot be read, for example because the
  cgroup has gone away. Derived values include memory protection shared
  among siblings (`memory_protection()`), `effective_swap_max()`,
  `effective_swap_free()` and `effective_swap_util_pct()` along the ancestry,
  an IO cost weighted by device type (`io_cost_cumulative()`),
  `effective_usage()`, `memory_growth()`, and the temporal counters
  `average_usage()`, `io_cost_rate()` and `pg_scan_rate()`.
- `oomwatch.oomd_context`: `OomdContext`, the cache of cgroup contexts for one
  interval, along with the system context, action context, tick counter and
  prekill hook handler. It resolves wildcard paths
  (`add_many_to_cache_and_get`), opens children
  (`add_child_to_cache_and_get`, `add_children_to_cache_and_get`), sorts
  contexts (`reverse_sort`, `sort_desc_with_kill_prefs`), logs their figures
  (`dump`), and drops cgroups that have disappeared (`refresh`).
- `oomwatch.stats` and `oomwatch.stats_client`: `Stats`, a table of integer
  counters served as JSON on a Unix stream socket, and `StatsClient`, which
  reads the counters (`get_stats`) or resets them (`reset_stats`). The
  functions `init_stats`, `get_stats`, `increment_stat`, `set_stat` and
  `reset_stats` act on one process-wide `Stats`.
- `oomwatch.log`: `Log` appends kill messages to a kmsg file and writes debug
  lines to stderr, either inline or from a background thread. `LogStream`
  builds one line, and accepts `Control.DISABLE` / `Control.ENABLE` tokens
  and `Offset` padding. `olog(*args)` writes a timestamped line tagged with
  the caller's file and line.
- `oomwatch.plugin_registry`: `PluginRegistry`, named factories, with the
  process-wide registries `get_plugin_registry()` and
  `get_prekill_hook_registry()`.
- `oomwatch.plugin_construction_context`: `PluginConstructionContext`, which
  carries the cgroup filesystem path handed to plugins.

## Example

```python
from oomwatch.oomd_context import OomdContext
from oomwatch.types import CgroupPath, ContextParams

ctx = OomdContext(ContextParams())
cgroups = ctx.add_many_to_cache_and_get({CgroupPath("/sys/fs/cgroup", "system.slice/*")})
for cg in ctx.reverse_sort(
    {CgroupPath("/sys/fs/cgroup", "system.slice/*")},
    lambda c: c.current_usage() or 0,
):
    print(cg.cgroup.relative_path(), cg.current_usage(), cg.memory_protection())

ctx.refresh()  # start the next interval: cached values are dropped
```

Temporal counters only come out right when they are read every interval.
Read `average_usage()` before `memory_growth()`.

### Stats

```python
from oomwatch.stats import Stats
from oomwatch.stats_client import StatsClient

with Stats("/tmp/oomwatch-stats.socket") as stats:
    stats.increment("kills", 1)
    print(StatsClient("/tmp/oomwatch-stats.socket").get_stats())  # {'kills': 1}
```

A request to the socket is one line. Its first character selects the action:
`g` returns all counters, `r` resets them to zero, and `0` does nothing. The
reply is a JSON object with an `error` code and a `body`. `StatsClient`
raises `StatsClientError` on failure.

### Logging

```python
from oomwatch.log import LogStream, olog

olog("checked ", 3, " cgroups")
with LogStream() as line:
    line << "usage=" << 42
```

## What it does not do

- There is no command-line program and no daemon loop. Nothing polls on a
  timer, reads a configuration file, or runs detector and action plugins.
  `PluginRegistry` only stores factories. No plugins come with the package.
- `CgroupContext` does not read a kill preference. `sort_desc_with_kill_prefs`
  and `dump` treat every `CgroupContext` as `KillPreference.NORMAL`, unless
  the object passed in has a `kill_preference()` method of its own.
- `SystemContext` is not filled in from `/proc`. The caller sets
  `OomdContext.system_context`, which the root cgroup's swap figures use.
- Nothing kills processes.