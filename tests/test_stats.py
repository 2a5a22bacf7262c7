import json
import os
import shutil
import socket
import stat
import tempfile

import pytest

from oomwatch import stats as stats_module
from oomwatch.stats import (
    Stats,
    StatsError,
    get_stats,
    increment_stat,
    init_stats,
    is_initialized,
    reset_stats,
    set_stat,
)


@pytest.fixture
def socket_path():
    directory = tempfile.mkdtemp(prefix="ow")
    yield os.path.join(directory, "stats.socket")
    shutil.rmtree(directory, ignore_errors=True)


@pytest.fixture
def server(socket_path):
    instance = Stats(socket_path)
    yield instance
    instance.close()


def _read_all(sock, chunk=4096):
    return b"".join(iter(lambda: sock.recv(chunk), b""))


def _request(path, payload):
    with socket.socket(socket.AF_UNIX, socket.SOCK_STREAM) as sock:
        sock.settimeout(5)
        sock.connect(path)
        sock.sendall(payload)
        return _read_all(sock).decode()


def test_basic_stats(server):
    assert len(server.get_all()) == 0

    server.increment("one", 1)
    server.increment("two", 2)
    assert len(server.get_all()) == 2

    server.reset()
    values = server.get_all()
    assert len(values) == 2
    assert all(v == 0 for v in values.values())

    server.increment("one", 1)
    server.set("two", 2)
    server.increment("two", 2)
    values = server.get_all()
    assert len(values) == 2
    assert values["one"] == 1
    assert values["two"] == 2 * 2


def test_get_all_returns_copy(server):
    server.set("k", 7)
    snapshot = server.get_all()
    snapshot["k"] = 100
    assert server.get_all() == {"k": 7}


def test_invalid_socket_path():
    with pytest.raises(StatsError):
        Stats("/var/")


def test_socket_file_permissions(socket_path):
    with Stats(socket_path) as server:
        mode = os.stat(socket_path).st_mode
        assert server.get_all() == {}
    assert stat.S_ISSOCK(mode)
    assert stat.S_IMODE(mode) == 0o666


def test_close_removes_socket(socket_path):
    instance = Stats(socket_path)
    instance.set("x", 1)
    assert instance.get_all() == {"x": 1}
    assert os.path.exists(socket_path)
    instance.close()
    assert not os.path.exists(socket_path)
    instance.close()
    assert not os.path.exists(socket_path)


def test_context_manager_closes(socket_path):
    with Stats(socket_path) as instance:
        instance.set("x", 1)
        assert instance.get_all() == {"x": 1}
        assert os.path.exists(socket_path)
    assert not os.path.exists(socket_path)


def test_get_request_returns_counters(socket_path):
    with Stats(socket_path) as server:
        server.increment("one", 1)
        reply = _request(socket_path, b"g\n")
        assert reply.endswith("\n")
        parsed = json.loads(reply)
        assert parsed["error"] == 0
        assert parsed["body"] == server.get_all()
        assert server.get_all() == {"one": 1}


def test_reset_request(server, socket_path):
    server.increment("a", 4)
    server.increment("b", 9)
    reply = json.loads(_request(socket_path, b"r\n"))
    assert reply["error"] == 0
    assert server.get_all() == {"a": 0, "b": 0}


def test_noop_request(server, socket_path):
    server.set("a", 3)
    reply = json.loads(_request(socket_path, b"0\n"))
    assert reply == {"body": {}, "error": 0}
    assert server.get_all() == {"a": 3}


def test_unknown_request(socket_path):
    with Stats(socket_path) as server:
        server.set("a", 1)
        reply = json.loads(_request(socket_path, b"xlskdjfksdj\n"))
        assert reply["error"] == 1
        assert server.get_all() == {"a": 1}


def test_empty_request(socket_path):
    with Stats(socket_path) as server:
        server.set("a", 2)
        reply = json.loads(_request(socket_path, b"\n"))
        assert reply["error"] == 1
        assert server.get_all() == {"a": 2}


def test_nul_ends_request(socket_path):
    with Stats(socket_path) as server:
        server.set("n", 2)
        reply = json.loads(_request(socket_path, b"g\0"))
        assert reply["error"] == 0
        assert reply["body"] == server.get_all()
        assert server.get_all() == {"n": 2}


def test_module_functions_uninitialized(monkeypatch):
    monkeypatch.setattr(stats_module, "_singleton", None)
    assert is_initialized() is False
    assert get_stats() == {}
    assert increment_stat("a", 1) is False
    assert set_stat("a", 1) is False
    assert reset_stats() is False


def test_module_functions_initialized(monkeypatch, socket_path):
    monkeypatch.setattr(stats_module, "_singleton", None)
    assert init_stats(socket_path) is True
    try:
        assert is_initialized() is True
        first = stats_module._singleton
        assert init_stats(socket_path + ".other") is True
        assert stats_module._singleton is first
        assert set_stat("a", 3) is True
        assert increment_stat("a", 2) is True
        assert get_stats() == {"a": 5}
        assert reset_stats() is True
        assert get_stats() == {"a": 0}
    finally:
        stats_module._singleton.close()


def test_init_stats_failure(monkeypatch):
    monkeypatch.setattr(stats_module, "_singleton", None)
    assert init_stats("/var/") is False
    assert is_initialized() is False