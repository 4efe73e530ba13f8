"""Plugin registration and event fan-out."""

from __future__ import annotations

import logging
from collections.abc import Callable
from dataclasses import dataclass, field
from typing import Protocol, runtime_checkable

from chatharness.plugins.registries import (
    PaneRegistry,
    PluginCommandRegistry,
    StateSliceRegistry,
    ToolRegistry,
)
from chatharness.types.events import HarnessEvent

logger = logging.getLogger(__name__)

EmitFn = Callable[[HarnessEvent], None]


@dataclass(slots=True)
class PluginContext:
    """What a plugin receives at registration time."""

    emit: EmitFn
    tools: ToolRegistry = field(default_factory=ToolRegistry)
    panes: PaneRegistry = field(default_factory=PaneRegistry)
    state: StateSliceRegistry = field(default_factory=StateSliceRegistry)
    commands: PluginCommandRegistry = field(default_factory=PluginCommandRegistry)


@runtime_checkable
class HarnessPlugin(Protocol):
    """A plugin. ``on_event`` is optional; define it to observe events."""

    name: str

    def register(self, ctx: PluginContext) -> None: ...


class PluginManager:
    """Registers plugins and delivers every event to them in order."""

    def __init__(self, emit: EmitFn) -> None:
        self._plugins: list[HarnessPlugin] = []
        self._context = PluginContext(emit=emit)

    @property
    def context(self) -> PluginContext:
        return self._context

    @property
    def plugins(self) -> list[HarnessPlugin]:
        return list(self._plugins)

    def use(self, plugin: HarnessPlugin) -> None:
        """Register a plugin. Registration errors propagate to the caller."""
        plugin.register(self._context)
        self._plugins.append(plugin)
        logger.debug("Registered plugin '%s'", plugin.name)

    def notify_event(self, event: HarnessEvent) -> None:
        """Deliver *event* to each plugin's ``on_event`` hook.

        Plugins observe only: a failing hook is logged and the remaining
        plugins still see the event.
        """
        for plugin in self._plugins:
            on_event = getattr(plugin, "on_event", None)
            if on_event is None:
                continue
            try:
                on_event(event)
            except Exception:
                logger.exception(
                    "Plugin '%s' failed handling %s", plugin.name, event.type,
                )
