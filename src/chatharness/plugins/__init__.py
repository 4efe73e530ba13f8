"""Plugin extension points for the chat harness."""

from chatharness.plugins.manager import HarnessPlugin, PluginContext, PluginManager
from chatharness.plugins.registries import (
    PaneRegistry,
    PluginCommandRegistry,
    StateSliceRegistry,
    ToolRegistry,
)

__all__ = [
    "HarnessPlugin",
    "PaneRegistry",
    "PluginCommandRegistry",
    "PluginContext",
    "PluginManager",
    "StateSliceRegistry",
    "ToolRegistry",
]
