import itertools

from oomwatch.plugin_registry import (
    PluginRegistry,
    get_plugin_registry,
    get_prekill_hook_registry,
)


class Dummy:
    pass


def test_add_and_create():
    registry = PluginRegistry()
    assert registry.add("dummy", Dummy) is True
    created = registry.create("dummy")
    assert isinstance(created, Dummy)


def test_create_builds_new_instance_each_time():
    registry = PluginRegistry()
    counter = itertools.count()
    registry.add("counted", lambda: next(counter))
    assert [registry.create("counted"), registry.create("counted")] == [0, 1]


def test_duplicate_name_rejected_and_first_kept():
    registry = PluginRegistry()
    assert registry.add("p", lambda: "first")
    assert registry.add("p", lambda: "second") is False
    assert registry.create("p") == "first"


def test_create_unknown_returns_none():
    registry = PluginRegistry()
    assert registry.create("missing") is None


def test_registered_lists_names():
    registry = PluginRegistry()
    registry.add("a", Dummy)
    registry.add("b", Dummy)
    assert sorted(registry.registered()) == ["a", "b"]
    assert len(registry) == 2
    assert "a" in registry
    assert "c" not in registry


def test_global_registries_are_stable_and_separate():
    assert get_plugin_registry() is get_plugin_registry()
    assert get_prekill_hook_registry() is get_prekill_hook_registry()
    assert get_plugin_registry() is not get_prekill_hook_registry()


def test_global_registry_keeps_registration():
    name = "test_plugin_registry_global_entry"
    assert get_plugin_registry().add(name, Dummy)
    assert name in get_plugin_registry().registered()
    assert name not in get_prekill_hook_registry().registered()