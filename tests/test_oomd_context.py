import shutil

import pytest

from oomwatch.oomd_context import OomdContext, _Snapshot
from oomwatch.types import CgroupPath, KillPreference


def make_dir(base, name, files=None):
    directory = base / name
    directory.mkdir(parents=True)
    for filename, content in (files or {}).items():
        (directory / filename).write_text(content)
    return directory


@pytest.fixture
def ctx():
    return OomdContext()


def test_missing_cgroup_is_not_cached(ctx, tmp_path):
    path = CgroupPath(str(tmp_path), "asdf")
    assert ctx.add_to_cache_and_get(path) is None
    assert ctx.cgroups() == []


def test_cgroup_keys(ctx, tmp_path):
    make_dir(tmp_path, "asdf")
    make_dir(tmp_path, "wow")
    p1 = CgroupPath(str(tmp_path), "asdf")
    p2 = CgroupPath(str(tmp_path), "wow")
    assert ctx.cgroups() == []
    assert ctx.add_to_cache_and_get(p1).cgroup == p1
    assert ctx.add_to_cache_and_get(p2).cgroup == p2
    assert set(ctx.cgroups()) == {p1, p2}


def test_cgroup_key_root(ctx, tmp_path):
    root = CgroupPath(str(tmp_path), "/")
    assert ctx.add_to_cache_and_get(root).cgroup == root
    assert ctx.cgroups() == [root]


def test_cached_context_is_reused(ctx, tmp_path):
    directory = make_dir(tmp_path, "a", {"memory.current": "5\n"})
    path = CgroupPath(str(tmp_path), "a")
    first = ctx.add_to_cache_and_get(path)
    assert first.current_usage() == 5
    (directory / "memory.current").write_text("9\n")
    second = ctx.add_to_cache_and_get(path)
    assert second.current_usage() == 5
    assert ctx.cgroups() == [path]


def test_get_multiple(ctx, tmp_path):
    for name in ("dir1", "dir2", "dir3"):
        make_dir(tmp_path, name)
    (tmp_path / "file1").write_text("")
    base = str(tmp_path)
    p1, p2, p3 = (CgroupPath(base, n) for n in ("dir1", "dir2", "dir3"))
    p4 = CgroupPath(base, "file1")
    p5 = CgroupPath(base, "NOT_EXIST")

    cgroups = ctx.add_many_to_cache_and_get({p1, p2, p3, p4, p5})
    expected = {id(ctx.add_to_cache_and_get(p)) for p in (p1, p2, p3)}
    assert len(cgroups) == 3
    assert {id(c) for c in cgroups} == expected

    p6 = CgroupPath(base, "*")
    assert {id(c) for c in ctx.add_many_to_cache_and_get({p6})} == expected
    no_dupes = ctx.add_many_to_cache_and_get({p1, p2, p3, p4, p5, p6})
    assert len(no_dupes) == 3
    assert {id(c) for c in no_dupes} == expected
    assert ctx.add_many_to_cache_and_get({p4, p5}) == []
    assert ctx.add_many_to_cache_and_get(set()) == []


def test_sort_context(ctx, tmp_path):
    make_dir(tmp_path, "biggest", {"memory.current": "99999999\n", "memory.low": "1\n"})
    make_dir(tmp_path, "smallest", {"memory.current": "1\n", "memory.low": "4\n"})
    make_dir(tmp_path, "asdf", {"memory.current": "88888888\n", "memory.low": "2\n"})
    make_dir(tmp_path, "fdsa", {"memory.current": "77777777\n", "memory.low": "3\n"})
    base = str(tmp_path)
    paths = [CgroupPath(base, n) for n in ("biggest", "smallest", "asdf", "fdsa")]

    ranked = ctx.reverse_sort(set(paths), lambda c: c.current_usage() or 0)
    cg1, cg2, cg3, cg4 = (ctx.add_to_cache_and_get(p) for p in paths)
    assert [id(c) for c in ranked] == [id(cg1), id(cg3), id(cg4), id(cg2)]

    patterns = {
        CgroupPath(base, "*est"),
        CgroupPath(base, "{biggest,smallest,asdf,fdsa}"),
        CgroupPath(base, "NOT_EXIST"),
    }
    ranked = ctx.reverse_sort(patterns, lambda c: c.memory_low() or 0)
    assert [id(c) for c in ranked] == [id(cg2), id(cg4), id(cg3), id(cg1)]


class _Candidate:
    def __init__(self, name, preference, value):
        self.name = name
        self._preference = preference
        self.value = value

    def kill_preference(self):
        return self._preference


def test_sort_desc_with_kill_prefs_orders_preference_first():
    candidates = [
        _Candidate("a", KillPreference.NORMAL, 10),
        _Candidate("b", KillPreference.PREFER, 1),
        _Candidate("c", KillPreference.AVOID, 100),
        _Candidate("d", None, 20),
    ]
    ranked = OomdContext.sort_desc_with_kill_prefs(candidates, lambda c: c.value)
    assert [c.name for c in ranked] == ["b", "d", "a", "c"]
    assert [c.name for c in candidates] == ["a", "b", "c", "d"]


def test_add_child_to_cache_and_get(ctx, tmp_path):
    make_dir(tmp_path, "parent/child")
    parent_path = CgroupPath(str(tmp_path), "parent")
    parent = ctx.add_to_cache_and_get(parent_path)
    child = ctx.add_child_to_cache_and_get(parent, "child")
    assert child.cgroup == parent_path.get_child("child")
    assert child.cgroup in ctx.cgroups()
    assert ctx.add_child_to_cache_and_get(parent, "child") is child
    assert ctx.add_child_to_cache_and_get(parent, "missing") is None


def test_add_children_to_cache_and_get(ctx, tmp_path):
    for name in ("s1", "s2", "s3"):
        make_dir(tmp_path, f"parent/{name}")
    parent_path = CgroupPath(str(tmp_path), "parent")
    parent = ctx.add_to_cache_and_get(parent_path)
    children = ctx.add_children_to_cache_and_get(parent)
    assert {c.cgroup for c in children} == {
        parent_path.get_child(n) for n in ("s1", "s2", "s3")
    }
    assert len(ctx.cgroups()) == 4


def test_refresh_drops_removed_cgroups(ctx, tmp_path):
    make_dir(tmp_path, "a", {"cgroup.controllers": ""})
    make_dir(tmp_path, "b", {"cgroup.controllers": ""})
    pa = CgroupPath(str(tmp_path), "a")
    pb = CgroupPath(str(tmp_path), "b")
    ctx.add_to_cache_and_get(pa)
    removed = ctx.add_to_cache_and_get(pb)
    shutil.rmtree(tmp_path / "b")
    ctx.refresh()
    assert ctx.cgroups() == [pa]
    assert removed.fd.closed


def test_refresh_clears_cached_values(ctx, tmp_path):
    directory = make_dir(
        tmp_path, "a", {"cgroup.controllers": "", "memory.current": "123\n"}
    )
    cgroup_ctx = ctx.add_to_cache_and_get(CgroupPath(str(tmp_path), "a"))
    assert cgroup_ctx.current_usage() == 123
    (directory / "memory.current").write_text("234\n")
    assert cgroup_ctx.current_usage() == 123
    ctx.refresh()
    assert cgroup_ctx.current_usage() == 234


def test_bump_current_tick(ctx):
    assert ctx.current_tick == 0
    ctx.bump_current_tick()
    ctx.bump_current_tick()
    assert ctx.current_tick == 2


def test_prekill_hook_handler(ctx, tmp_path):
    make_dir(tmp_path, "a")
    cgroup_ctx = ctx.add_to_cache_and_get(CgroupPath(str(tmp_path), "a"))
    assert ctx.fire_prekill_hook(cgroup_ctx) is None
    seen = []
    ctx.set_prekill_hooks_handler(lambda c: seen.append(c) or "invocation")
    assert ctx.fire_prekill_hook(cgroup_ctx) == "invocation"
    assert seen == [cgroup_ctx]


def test_system_context_feeds_cgroup_figures(ctx, tmp_path):
    ctx.system_context.swaptotal = 3000
    root = ctx.add_to_cache_and_get(CgroupPath(str(tmp_path), ""))
    assert root.effective_swap_max() == 3000


def test_snapshot_lines_and_negligible(ctx, tmp_path):
    make_dir(tmp_path, "A", {"memory.current": "1048576\n"})
    cgroup_ctx = ctx.add_to_cache_and_get(CgroupPath(str(tmp_path), "A"))
    snapshot = _Snapshot.of(cgroup_ctx)
    lines = snapshot.lines()
    assert lines[0] == "name=A"
    assert "mem=1MB" in lines[2].split()
    assert lines[-1] == "  kill_preference=NORMAL"
    assert snapshot.negligible({"MemTotal": 10**12, "SwapTotal": 0})
    assert not snapshot.negligible({"MemTotal": 1000, "SwapTotal": 0})