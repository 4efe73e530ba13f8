"""Registry of slash commands, rebuilt wholesale on reload."""

from __future__ import annotations

import logging
from pathlib import Path

from chatharness.commands.loader import (
    CommandDefinition,
    discover_commands,
    load_skill_content,
)
from chatharness.types.config import DEFAULT_SKILLS_DIR

logger = logging.getLogger(__name__)


class CommandRegistry:
    """Name -> CommandDefinition lookup over a skills root.

    Later definitions of the same name replace earlier ones.
    """

    def __init__(self, skills_root: str | Path | None = None) -> None:
        self._skills_root = (
            Path(skills_root) if skills_root else Path.cwd() / DEFAULT_SKILLS_DIR
        )
        self._commands: dict[str, CommandDefinition] = {}
        self.reload()

    @property
    def skills_root(self) -> Path:
        return self._skills_root

    def reload(self) -> None:
        """Re-scan the skills root, replacing the registry contents."""
        commands: dict[str, CommandDefinition] = {}
        for command in discover_commands(self._skills_root):
            if command.name in commands:
                logger.debug(
                    "Command /%s from skill '%s' overrides skill '%s'",
                    command.name, command.skill_name, commands[command.name].skill_name,
                )
            commands[command.name] = command
        self._commands = commands

    def get(self, name: str) -> CommandDefinition | None:
        return self._commands.get(name)

    def list(self) -> list[CommandDefinition]:
        return list(self._commands.values())

    def has(self, name: str) -> bool:
        return name in self._commands

    def build_prompt(self, name: str, args: str) -> str | None:
        """Expand a command invocation into the prompt sent to the model.

        Every ``$ARGUMENTS`` in the body is replaced with *args*; the skill's
        SKILL.md, when present, is included ahead of the instructions.
        """
        command = self._commands.get(name)
        if command is None:
            return None

        body = command.body.replace("$ARGUMENTS", args)
        skill_content = load_skill_content(command.skill_dir)

        parts = [f"# Command: /{name}", ""]
        if skill_content:
            parts.extend(["## Skill Reference", "", skill_content, ""])
        parts.extend(["## Command Instructions", "", body])
        return "\n".join(parts)
