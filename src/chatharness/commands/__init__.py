"""Slash commands discovered from installed skills."""

from chatharness.commands.loader import (
    CommandDefinition,
    SlashCommand,
    discover_commands,
    parse_frontmatter,
    parse_slash_command,
)
from chatharness.commands.registry import CommandRegistry

__all__ = [
    "CommandDefinition",
    "CommandRegistry",
    "SlashCommand",
    "discover_commands",
    "parse_frontmatter",
    "parse_slash_command",
]
