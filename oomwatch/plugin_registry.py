"""Registries mapping plugin names to factories."""

from __future__ import annotations

from typing import Callable, Generic, Optional, TypeVar

T = TypeVar("T")


class PluginRegistry(Generic[T]):
    """Named factories; each ``create`` call builds a fresh instance."""

    def __init__(self) -> None:
        self._factories: dict[str, Callable[[], T]] = {}

    def add(self, name: str, factory: Callable[[], T]) -> bool:
        """Register ``factory`` under ``name``; False if the name is taken."""
        if name in self._factories:
            return False
        self._factories[name] = factory
        return True

    def create(self, name: str) -> Optional[T]:
        """Build the plugin registered as ``name``, or None if there is none."""
        factory = self._factories.get(name)
        if factory is None:
            return None
        return factory()

    def registered(self) -> list[str]:
        """Names of all registered plugins."""
        return list(self._factories)

    def __contains__(self, name: object) -> bool:
        return name in self._factories

    def __len__(self) -> int:
        return len(self._factories)


_plugin_registry: PluginRegistry = PluginRegistry()
_prekill_hook_registry: PluginRegistry = PluginRegistry()


def get_plugin_registry() -> PluginRegistry:
    """The process-wide registry of plugins."""
    return _plugin_registry


def get_prekill_hook_registry() -> PluginRegistry:
    """The process-wide registry of prekill hooks."""
    return _prekill_hook_registry