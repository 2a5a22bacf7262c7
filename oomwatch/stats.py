"""Process-wide counters, served as JSON over a Unix stream socket."""

from __future__ import annotations

import json
import os
import socket
import threading
from typing import Any, Optional

from .log import olog
from .stats_client import StatsClient, StatsClientError

_IO_TIMEOUT = 2.0
_CLOSE_TIMEOUT = 5.0
_MAX_REQUEST_BYTES = 32
_LISTEN_BACKLOG = 5


class StatsError(RuntimeError):
    """The stats server could not be started or stopped cleanly."""


class Stats:
    """A table of named integer counters with a socket for querying it.

    Clients connect to the socket and send one request line whose first
    character selects the action: ``g`` returns every counter, ``r`` resets
    them all to zero and ``0`` does nothing. The reply is a JSON object with
    an ``error`` code and a ``body``.
    """

    def __init__(self, stats_socket_path: str) -> None:
        self._path = stats_socket_path
        self._stats: dict[str, int] = {}
        self._stats_lock = threading.Lock()
        self._running = True
        self._closed = False
        self._workers = 0
        self._workers_cond = threading.Condition()
        self._sock = self._start_socket()
        self._thread = threading.Thread(
            target=self._serve, name="stats-server", daemon=True
        )
        self._thread.start()

    @property
    def socket_path(self) -> str:
        return self._path

    def _start_socket(self) -> socket.socket:
        try:
            sock = socket.socket(socket.AF_UNIX, socket.SOCK_STREAM)
        except OSError as exc:
            raise StatsError(f"Error creating socket: {exc}") from exc
        try:
            try:
                os.unlink(self._path)
            except FileNotFoundError:
                pass
            except OSError as exc:
                raise StatsError(
                    f"Pre-unlinking of socket path failed. {self._path}. "
                    f"Errno: {exc.strerror}"
                ) from exc
            try:
                sock.bind(self._path)
            except OSError as exc:
                raise StatsError(
                    f"Error binding stats collection socket: {exc}"
                ) from exc
            try:
                os.chmod(self._path, 0o666)
            except OSError as exc:
                raise StatsError(
                    f"Unable to set permissions on {self._path}"
                ) from exc
            try:
                sock.listen(_LISTEN_BACKLOG)
            except OSError as exc:
                raise StatsError(f"Error listening at socket: {exc}") from exc
        except BaseException:
            sock.close()
            raise
        return sock

    def _serve(self) -> None:
        while self._running:
            try:
                conn, _ = self._sock.accept()
            except OSError as exc:
                if not self._running:
                    break
                olog("Stats server error: accepting connection: ", exc)
                continue
            conn.settimeout(_IO_TIMEOUT)
            with self._workers_cond:
                self._workers += 1
            threading.Thread(
                target=self._process, args=(conn,), name="stats-msg", daemon=True
            ).start()

    def _process(self, conn: socket.socket) -> None:
        try:
            with conn:
                mode = self._read_mode(conn)
                if mode is None:
                    return
                reply = self._respond(mode)
                try:
                    conn.sendall(reply.encode())
                except OSError as exc:
                    olog("Stats server error: writing to socket: ", exc)
        finally:
            with self._workers_cond:
                self._workers -= 1
                self._workers_cond.notify_all()

    @staticmethod
    def _read_mode(conn: socket.socket) -> Optional[str]:
        """Read the request line; its first character is the mode."""
        mode = "a"
        count = 0
        while count < _MAX_REQUEST_BYTES:
            try:
                byte = conn.recv(1)
            except OSError as exc:
                olog("Stats server error: reading from socket: ", exc)
                return None
            if not byte or byte in (b"\n", b"\0"):
                break
            if count == 0:
                mode = byte.decode("latin-1")
            count += 1
        if count == 0:
            olog("Stats server error: no msg received")
        return mode

    def _respond(self, mode: str) -> str:
        error = 0
        body: dict[str, int] = {}
        if mode == "g":
            body = self.get_all()
        elif mode == "r":
            self.reset()
        elif mode == "0":
            pass
        else:
            error = 1
            olog("Stats server error: received unknown request: ", mode)
        return json.dumps({"body": body, "error": error}, indent=3, sort_keys=True) + "\n"

    def get_all(self) -> dict[str, int]:
        """A copy of all counters."""
        with self._stats_lock:
            return dict(self._stats)

    def increment(self, key: str, val: int) -> None:
        """Add ``val`` to ``key``, starting from zero if it is new."""
        with self._stats_lock:
            self._stats[key] = self._stats.get(key, 0) + val

    def set(self, key: str, val: int) -> None:
        """Set ``key`` to ``val``."""
        with self._stats_lock:
            self._stats[key] = val

    def reset(self) -> None:
        """Set every existing counter to zero."""
        with self._stats_lock:
            for key in self._stats:
                self._stats[key] = 0

    def close(self) -> None:
        """Stop serving, wait for open requests and remove the socket file."""
        if self._closed:
            return
        self._closed = True
        self._running = False
        # Wake the accept loop with a request that changes nothing.
        try:
            StatsClient(self._path).close_socket()
        except StatsClientError as exc:
            olog("Closing stats error: ", exc)
        with self._workers_cond:
            drained = self._workers_cond.wait_for(
                lambda: self._workers == 0, timeout=_CLOSE_TIMEOUT
            )
        self._thread.join(timeout=_CLOSE_TIMEOUT)
        try:
            os.unlink(self._path)
        except OSError as exc:
            olog("Closing stats error: unlinking socket path: ", exc)
        try:
            self._sock.close()
        except OSError as exc:
            olog("Closing stats error: closing stats socket: ", exc)
        if not drained:
            raise StatsError("Closing stats error: timed out waiting for a thread")

    def __enter__(self) -> "Stats":
        return self

    def __exit__(self, *exc_info: Any) -> None:
        self.close()


_singleton: Optional[Stats] = None
_singleton_lock = threading.Lock()


def init_stats(stats_socket_path: str) -> bool:
    """Start the process-wide stats server; False if it cannot start.

    If the server is already running it is kept as it is.
    """
    global _singleton
    with _singleton_lock:
        if _singleton is None:
            try:
                _singleton = Stats(stats_socket_path)
            except StatsError as exc:
                olog("Initializing singleton failed: ", exc)
                return False
    return True


def is_initialized() -> bool:
    """Whether the process-wide stats server is running."""
    return _singleton is not None


def _instance() -> Optional[Stats]:
    instance = _singleton
    if instance is None:
        olog("Warning: stats module not initialized")
    return instance


def get_stats() -> dict[str, int]:
    """All process-wide counters, or an empty dict before initialisation."""
    instance = _instance()
    return instance.get_all() if instance is not None else {}


def increment_stat(key: str, val: int) -> bool:
    """Increment a process-wide counter; False before initialisation."""
    instance = _instance()
    if instance is None:
        return False
    instance.increment(key, val)
    return True


def set_stat(key: str, val: int) -> bool:
    """Set a process-wide counter; False before initialisation."""
    instance = _instance()
    if instance is None:
        return False
    instance.set(key, val)
    return True


def reset_stats() -> bool:
    """Zero all process-wide counters; False before initialisation."""
    instance = _instance()
    if instance is None:
        return False
    instance.reset()
    return True