"""Named registries exposed to plugins through :class:`PluginContext`."""

from __future__ import annotations

import logging
from collections.abc import Callable, Mapping
from dataclasses import is_dataclass, replace
from typing import Any

logger = logging.getLogger(__name__)

ToolHandler = Callable[..., Any]
CommandHandler = Callable[[], None]


class ToolRegistry:
    """Named tool handlers contributed by plugins."""

    def __init__(self) -> None:
        self._tools: dict[str, ToolHandler] = {}

    def register(self, name: str, handler: ToolHandler) -> None:
        self._tools[name] = handler

    def get(self, name: str) -> ToolHandler | None:
        return self._tools.get(name)

    def list(self) -> list[str]:
        return list(self._tools)


class PaneRegistry:
    """Named UI panes. The harness stores them; a front end decides how to draw them."""

    def __init__(self) -> None:
        self._panes: dict[str, Any] = {}

    def register(self, pane_id: str, component: Any) -> None:
        self._panes[pane_id] = component

    def get(self, pane_id: str) -> Any | None:
        return self._panes.get(pane_id)

    def list(self) -> list[str]:
        return list(self._panes)


class StateSliceRegistry:
    """Plugin-owned state slices with patch-merge updates.

    A slice may be a mapping (patched with ``{**current, **patch}``) or a
    dataclass instance (patched with :func:`dataclasses.replace`). Other
    values cannot be patched and are replaced only by re-registering.
    """

    def __init__(self) -> None:
        self._slices: dict[str, Any] = {}

    def register(self, name: str, initial_state: Any) -> None:
        self._slices[name] = initial_state

    def get(self, name: str) -> Any | None:
        return self._slices.get(name)

    def update(self, name: str, patch: Mapping[str, Any]) -> None:
        current = self._slices.get(name)
        if isinstance(current, Mapping):
            self._slices[name] = {**current, **patch}
        elif is_dataclass(current) and not isinstance(current, type):
            self._slices[name] = replace(current, **patch)
        else:
            logger.debug("Ignoring patch for unpatchable state slice '%s'", name)

    def list(self) -> list[str]:
        return list(self._slices)


class PluginCommandRegistry:
    """Zero-argument commands contributed by plugins."""

    def __init__(self) -> None:
        self._commands: dict[str, CommandHandler] = {}

    def register(self, name: str, handler: CommandHandler) -> None:
        self._commands[name] = handler

    def execute(self, name: str) -> bool:
        """Run a command. Returns False when no such command exists."""
        handler = self._commands.get(name)
        if handler is None:
            return False
        handler()
        return True

    def list(self) -> list[str]:
        return list(self._commands)
