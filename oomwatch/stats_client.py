"""Client for querying and resetting a running stats server."""

from __future__ import annotations

import json
import socket
from typing import Any

_IO_TIMEOUT = 2.0
_CHUNK = 511


class StatsClientError(RuntimeError):
    """Talking to the stats server failed or it reported an error."""


def _parse_json(text: str) -> Any:
    try:
        return json.loads(text)
    except ValueError as exc:
        raise StatsClientError(f"Unable to parse JSON: {exc}") from exc


def _error_code(root: Any) -> int:
    if not isinstance(root, dict):
        raise StatsClientError("StatsClient error: reply is not a JSON object")
    code = root.get("error", 0)
    if code is None:
        return 0
    if isinstance(code, bool) or not isinstance(code, int):
        raise StatsClientError("StatsClient error: parsed error value not an int")
    return code


class StatsClient:
    """Sends one-line requests to the stats socket at ``stats_socket_path``."""

    def __init__(self, stats_socket_path: str, timeout: float = _IO_TIMEOUT) -> None:
        self._path = stats_socket_path
        self._timeout = timeout

    @property
    def socket_path(self) -> str:
        return self._path

    def get_stats(self) -> dict[str, int]:
        """Fetch all counters from the server."""
        root = _parse_json(self.msg_socket("g"))
        code = _error_code(root)
        if code:
            raise StatsClientError(f"StatsClient error: received error code={code}")
        body = root.get("body") or {}
        if not isinstance(body, dict):
            raise StatsClientError("StatsClient error: body is not an object")
        try:
            return {key: int(value) for key, value in body.items()}
        except (TypeError, ValueError) as exc:
            raise StatsClientError(f"StatsClient error: bad counter value: {exc}") from exc

    def reset_stats(self) -> None:
        """Ask the server to zero every counter."""
        code = _error_code(_parse_json(self.msg_socket("r")))
        if code:
            raise StatsClientError(f"Reset stats error: received error code={code}")

    def close_socket(self) -> None:
        """Send the no-op request used to wake the server when it stops."""
        code = _error_code(_parse_json(self.msg_socket("0")))
        if code:
            raise StatsClientError(f"Close socket error: received error code={code}")

    def msg_socket(self, msg: str) -> str:
        """Send ``msg`` followed by a newline and return the whole reply."""
        with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
            sock.settimeout(self._timeout)
            try:
                sock.connect(self._path)
            except OSError as exc:
                raise StatsClientError(
                    f"Error: connecting to stats socket: {exc}\n"
                    f"Socket path: {self._path}"
                ) from exc
            try:
                sock.sendall((msg + "\n").encode())
            except OSError as exc:
                raise StatsClientError(
                    f"Error: writing to stats socket: {exc}"
                ) from exc
            chunks: list[bytes] = []
            while True:
                try:
                    data = sock.recv(_CHUNK)
                except OSError as exc:
                    raise StatsClientError(
                        f"Error: reading from stats socket: {exc}"
                    ) from exc
                if not data:
                    break
                chunks.append(data)
        return b"".join(chunks).decode("utf-8", errors="replace")