"""Reading cgroup2 control files through an open directory handle.

Reads raise OSError when a file cannot be read (for example because the
cgroup is gone) and ValueError when its contents are malformed.
"""

from __future__ import annotations

import errno
import os
from typing import Any, Iterable, Optional

from .types import DeviceIOStat, PressureType, ResourcePressure

UNLIMITED = 2**63 - 1

_CONTROLLERS_FILE = "cgroup.controllers"
_PROC_PRESSURE = "/proc/pressure"
_PROC_MEMINFO = "/proc/meminfo"
_LEGACY_MEMPRESSURE = "/proc/mempressure"
_PRESSURE_RESOURCES = frozenset({"memory", "io"})


class DirFd:
    """An open handle on a cgroup directory.

    Holding the handle keeps reads tied to the directory that was opened,
    even if a cgroup of the same name is later created in its place.
    """

    def __init__(self, fd: int) -> None:
        self._fd: Optional[int] = fd

    @classmethod
    def open(cls, path: str) -> "DirFd":
        """Open the directory at ``path``; raises OSError if that fails."""
        return cls(os.open(path, os.O_RDONLY | os.O_DIRECTORY | os.O_CLOEXEC))

    def fileno(self) -> int:
        if self._fd is None:
            raise OSError(errno.EBADF, "directory handle is closed")
        return self._fd

    def open_child(self, name: str) -> "DirFd":
        """Open the subdirectory ``name``; raises OSError if that fails."""
        return DirFd(
            os.open(
                name,
                os.O_RDONLY | os.O_DIRECTORY | os.O_CLOEXEC,
                dir_fd=self.fileno(),
            )
        )

    def inode(self) -> int:
        """Inode number of the directory, unique per cgroup."""
        return os.fstat(self.fileno()).st_ino

    @property
    def closed(self) -> bool:
        return self._fd is None

    def close(self) -> None:
        if self._fd is not None:
            fd, self._fd = self._fd, None
            os.close(fd)

    def __enter__(self) -> "DirFd":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()

    def __del__(self) -> None:
        try:
            self.close()
        except OSError:
            pass


def _read_lines_at(dir_fd: DirFd, name: str) -> list[str]:
    fd = os.open(name, os.O_RDONLY | os.O_CLOEXEC, dir_fd=dir_fd.fileno())
    with open(fd, encoding="utf-8") as handle:
        return handle.read().splitlines()


def _read_lines(path: str) -> list[str]:
    with open(path, encoding="utf-8") as handle:
        return handle.read().splitlines()


def _parse_int(text: str, source: str) -> int:
    text = text.strip()
    if text == "max":
        return UNLIMITED
    try:
        return int(text)
    except ValueError as exc:
        raise ValueError(f"{source}: not an integer: {text!r}") from exc


def _parse_key_values(lines: Iterable[str], source: str) -> dict[str, int]:
    values: dict[str, int] = {}
    for line in lines:
        tokens = line.split()
        if not tokens:
            continue
        if len(tokens) != 2:
            raise ValueError(f"{source}: malformed line {line!r}")
        values[tokens[0]] = _parse_int(tokens[1], source)
    return values


def _first_line(lines: list[str], source: str) -> str:
    if not lines or not lines[0].strip():
        raise ValueError(f"{source}: empty file")
    return lines[0]


def is_cgroup_valid(dir_fd: DirFd) -> bool:
    """Whether the directory behind ``dir_fd`` is still a live cgroup."""
    try:
        os.stat(_CONTROLLERS_FILE, dir_fd=dir_fd.fileno())
    except OSError:
        return False
    return True


def read_child_dirs(dir_fd: DirFd) -> list[str]:
    """Names of the subdirectories, sorted."""
    with os.scandir(dir_fd.fileno()) as entries:
        return sorted(
            entry.name for entry in entries if entry.is_dir(follow_symlinks=False)
        )


def parse_pressure(lines: Iterable[str], pressure_type: PressureType) -> ResourcePressure:
    """Parse the ``some`` or ``full`` line of a PSI file.

    Both the ``avg10=... total=...`` format and the older three-float
    format are accepted.
    """
    key = pressure_type.value
    for line in lines:
        tokens = line.split()
        if not tokens or tokens[0] != key:
            continue
        fields = tokens[1:]
        try:
            if all("=" in item for item in fields):
                values = dict(item.split("=", 1) for item in fields)
                total = values.get("total")
                return ResourcePressure(
                    float(values["avg10"]),
                    float(values["avg60"]),
                    float(values["avg300"]),
                    int(total) if total is not None else None,
                )
            if len(fields) >= 3:
                return ResourcePressure(
                    float(fields[0]), float(fields[1]), float(fields[2])
                )
        except (KeyError, ValueError) as exc:
            raise ValueError(f"malformed pressure line {line!r}") from exc
        raise ValueError(f"malformed pressure line {line!r}")
    raise ValueError(f"no {key} line in pressure data")


def _check_resource(resource: str) -> None:
    if resource not in _PRESSURE_RESOURCES:
        raise ValueError(f"unknown pressure resource {resource!r}")


def read_pressure_at(
    dir_fd: DirFd, resource: str, pressure_type: PressureType
) -> ResourcePressure:
    """Read ``memory.pressure`` or ``io.pressure`` of a cgroup."""
    _check_resource(resource)
    return parse_pressure(_read_lines_at(dir_fd, f"{resource}.pressure"), pressure_type)


def read_root_pressure(resource: str, pressure_type: PressureType) -> ResourcePressure:
    """Read the system-wide pressure of ``memory`` or ``io`` from /proc."""
    _check_resource(resource)
    try:
        lines = _read_lines(f"{_PROC_PRESSURE}/{resource}")
    except OSError:
        if resource != "memory":
            raise
        lines = _read_lines(_LEGACY_MEMPRESSURE)
    return parse_pressure(lines, pressure_type)


def parse_meminfo(lines: Iterable[str]) -> dict[str, int]:
    """Parse /proc/meminfo lines into byte counts (``kB`` values scaled)."""
    info: dict[str, int] = {}
    for line in lines:
        name, sep, rest = line.partition(":")
        if not sep:
            continue
        tokens = rest.split()
        if not tokens:
            raise ValueError(f"meminfo: malformed line {line!r}")
        value = _parse_int(tokens[0], "meminfo")
        if len(tokens) > 1 and tokens[1] == "kB":
            value *= 1024
        info[name.strip()] = value
    return info


def read_root_memcurrent() -> int:
    """Memory in use by the whole system: MemTotal minus MemFree."""
    info = parse_meminfo(_read_lines(_PROC_MEMINFO))
    try:
        return info["MemTotal"] - info["MemFree"]
    except KeyError as exc:
        raise ValueError(f"meminfo: missing {exc.args[0]}") from exc


def read_memcurrent_at(dir_fd: DirFd) -> int:
    return read_mem_value_at(dir_fd, "memory.current")


def read_memstat_at(dir_fd: DirFd) -> dict[str, int]:
    """Read ``memory.stat`` as a mapping of counter name to value."""
    return _parse_key_values(_read_lines_at(dir_fd, "memory.stat"), "memory.stat")


def read_iostat_at(dir_fd: DirFd) -> list[DeviceIOStat]:
    """Read ``io.stat``: one entry per device, in file order."""
    stats: list[DeviceIOStat] = []
    for line in _read_lines_at(dir_fd, "io.stat"):
        tokens = line.split()
        if not tokens:
            continue
        dev_id, *fields = tokens
        values: dict[str, str] = {}
        for item in fields:
            name, sep, value = item.partition("=")
            if not sep:
                raise ValueError(f"io.stat: malformed field {item!r}")
            values[name] = value
        try:
            stats.append(
                DeviceIOStat(
                    dev_id,
                    *(
                        int(values.get(name, "0"))
                        for name in ("rbytes", "wbytes", "rios", "wios", "dbytes", "dios")
                    ),
                )
            )
        except ValueError as exc:
            raise ValueError(f"io.stat: malformed line {line!r}") from exc
    return stats


def read_mem_value_at(dir_fd: DirFd, name: str) -> int:
    """Read a single-number file such as ``memory.low``; ``max`` is unlimited."""
    return _parse_int(_first_line(_read_lines_at(dir_fd, name), name), name)


def read_memhightmp_at(dir_fd: DirFd) -> int:
    """Read the limit part of ``memory.high.tmp`` (``<limit> <duration>``)."""
    line = _first_line(_read_lines_at(dir_fd, "memory.high.tmp"), "memory.high.tmp")
    return _parse_int(line.split()[0], "memory.high.tmp")


def read_nr_dying_descendants_at(dir_fd: DirFd) -> int:
    stat = _parse_key_values(_read_lines_at(dir_fd, "cgroup.stat"), "cgroup.stat")
    try:
        return stat["nr_dying_descendants"]
    except KeyError as exc:
        raise ValueError("cgroup.stat: missing nr_dying_descendants") from exc


def read_is_populated_at(dir_fd: DirFd) -> bool:
    events = _parse_key_values(_read_lines_at(dir_fd, "cgroup.events"), "cgroup.events")
    try:
        return bool(events["populated"])
    except KeyError as exc:
        raise ValueError("cgroup.events: missing populated") from exc


def read_oom_group_at(dir_fd: DirFd) -> bool:
    return bool(read_mem_value_at(dir_fd, "memory.oom.group"))