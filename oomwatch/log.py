"""Kernel-message and debug logging with an optional asynchronous writer."""

from __future__ import annotations

import inspect
import io
import os
import sys
import threading
import time
from abc import ABC, abstractmethod
from dataclasses import dataclass
from enum import Enum
from typing import Any, ClassVar, Optional, TextIO

_DEFAULT_MAX_SIZE = 1024 * 1024


class LogBase(ABC):
    """Destination for kernel-message and debug log output."""

    @abstractmethod
    def kmsg_log(self, buf: str, prefix: str) -> None:
        """Write ``buf`` to the kernel message log, prefixed by ``prefix``."""

    @abstractmethod
    def debug_log(self, buf: str) -> None:
        """Write a finished debug line."""


class Log(LogBase):
    """Logger writing kill messages to a kmsg file and debug lines to a sink.

    When ``inline`` is false, debug lines are queued and written by a
    background thread; at most ``max_size`` characters are held before new
    lines are dropped and counted.
    """

    _instance: ClassVar[Optional["Log"]] = None
    _instance_lock: ClassVar[threading.Lock] = threading.Lock()

    def __init__(
        self,
        kmsg: Optional[TextIO] = None,
        debug_sink: Optional[TextIO] = None,
        inline: bool = True,
        *,
        max_size: int = _DEFAULT_MAX_SIZE,
    ) -> None:
        self._kmsg = kmsg
        self._debug_sink = debug_sink
        self._inline = inline
        self._max_size = max_size
        self._cond = threading.Condition()
        self._queue: list[str] = []
        self._cur_size = 0
        self._discarded = 0
        self._running = True
        self._thread: Optional[threading.Thread] = None
        if not inline:
            self._thread = threading.Thread(
                target=self._io_loop, name="log-io", daemon=True
            )
            self._thread.start()

    @classmethod
    def init(cls, kmsg_path: str) -> "Log":
        """Open ``kmsg_path`` for appending and install the process logger.

        Raises OSError when the file cannot be opened. Inline logging is
        chosen when the INLINE_LOGGING environment variable is set. If a
        process logger already exists it is kept and returned.
        """
        try:
            kmsg = open(
                kmsg_path,
                "a",
                encoding="utf-8",
                opener=lambda path, flags: os.open(
                    path, flags | os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o644
                ),
            )
        except OSError as exc:
            print(f"open: {exc}", file=sys.stderr)
            print(
                f"Unable to open outfile {kmsg_path}, not logging",
                file=sys.stderr,
            )
            raise
        inline = os.environ.get("INLINE_LOGGING") is not None
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls(kmsg, None, inline)
                return cls._instance
        kmsg.close()
        return cls._instance

    @classmethod
    def get(cls) -> "Log":
        """Return the process logger, creating an inline stderr logger if needed."""
        with cls._instance_lock:
            if cls._instance is None:
                cls._instance = cls()
            return cls._instance

    def _sink(self) -> TextIO:
        return self._debug_sink if self._debug_sink is not None else sys.stderr

    def kmsg_log(self, buf: str, prefix: str) -> None:
        if self._kmsg is not None:
            message = f"{prefix}: {buf}" if prefix else buf
            # The kernel only shows a message right away once it ends a line.
            if message and not message.endswith("\n"):
                message += "\n"
            try:
                self._kmsg.write(message)
                self._kmsg.flush()
            except (OSError, ValueError) as exc:
                print(f"error writing: {exc}", file=sys.stderr)
                olog("Unable to write log to output file")
        else:
            olog("kmsg logging disabled: no kmsg file")
        olog(buf)

    def debug_log(self, buf: str) -> None:
        if self._inline:
            self._sink().write("(inl) " + buf)
            return
        with self._cond:
            if len(buf) + self._cur_size > self._max_size:
                self._discarded += 1
                return
            self._queue.append(buf)
            self._cur_size += len(buf)
            self._cond.notify()

    def _io_loop(self) -> None:
        running = True
        while running:
            with self._cond:
                self._cond.wait_for(lambda: not self._running or bool(self._queue))
                running = self._running
                batch, self._queue = self._queue, []
                discarded, self._discarded = self._discarded, 0
                self._cur_size = 0
            sink = self._sink()
            for line in batch:
                sink.write(line)
            if discarded:
                sink.write(f"...\n{discarded} messages dropped\n...\n")
            sink.flush()

    def close(self) -> None:
        """Stop the writer thread after flushing, and close the kmsg file."""
        with self._cond:
            self._running = False
            self._cond.notify_all()
        if self._thread is not None:
            self._thread.join()
            self._thread = None
        if self._kmsg is not None:
            self._kmsg.close()
            self._kmsg = None

    def __enter__(self) -> "Log":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


class Control(Enum):
    """Tokens that switch log output off and on for the current thread."""

    DISABLE = "disable"
    ENABLE = "enable"


@dataclass(frozen=True)
class Offset:
    """Pad the line being built with spaces up to column ``n``."""

    n: int


_thread_state = threading.local()


def _enabled() -> bool:
    return getattr(_thread_state, "enabled", True)


def _set_enabled(value: bool) -> None:
    _thread_state.enabled = value


class LogStream:
    """Builds one log line and hands it to a sink when closed.

    Values are added with :meth:`write` or ``<<``. Output can be switched
    off per thread with :class:`Control` tokens.
    """

    def __init__(self, sink: Optional[LogBase] = None) -> None:
        self._sink = sink if sink is not None else Log.get()
        self._buffer = io.StringIO()
        self._skip = False
        self._closed = False

    def write(self, value: Any) -> "LogStream":
        if isinstance(value, Control):
            if value is Control.DISABLE:
                _set_enabled(False)
            else:
                self._skip = True
                _set_enabled(True)
            return self
        if isinstance(value, Offset):
            indent = value.n - self._buffer.tell()
            if indent > 0:
                self._buffer.write(" " * indent)
            return self
        # Content after an ENABLE token means the line is wanted after all.
        self._skip = False
        if _enabled():
            self._buffer.write(str(value))
        return self

    __lshift__ = write

    def close(self) -> None:
        """Emit the line to the sink unless output is disabled or skipped."""
        if self._closed:
            return
        self._closed = True
        if not _enabled() or self._skip:
            return
        self._sink.debug_log(self._buffer.getvalue() + "\n")

    def __enter__(self) -> "LogStream":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


def log_time() -> str:
    """Return the local time formatted as ``MMDD HH:MM:SS``."""
    return time.strftime("%m%d %H:%M:%S", time.localtime())


def olog(*args: Any) -> None:
    """Write one timestamped debug line, tagged with the caller's file and line."""
    frame = inspect.currentframe()
    caller = frame.f_back if frame is not None else None
    if caller is not None:
        where = f"{os.path.basename(caller.f_code.co_filename)}:{caller.f_lineno}"
    else:
        where = "?:0"
    del frame, caller
    with LogStream() as stream:
        stream.write(log_time()).write(f" [{where}] ")
        for arg in args:
            stream.write(arg)


def kmsg_log(buf: str, prefix: str) -> None:
    """Write to the kernel message log of the process logger."""
    Log.get().kmsg_log(buf, prefix)