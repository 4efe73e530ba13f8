"""Slash command discovery from installed skills.

Skills ship commands as markdown files at::

    <skills-root>/<skill-name>/command/<command-name>.md

An optional ``---`` frontmatter block holds flat ``key: value`` pairs; the
markdown body is the workflow injected into the prompt.
"""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path

logger = logging.getLogger(__name__)

_SLASH_RE = re.compile(r"^/([a-zA-Z0-9_-]+)(?:\s+(.*))?$", re.DOTALL)


@dataclass(frozen=True, slots=True)
class CommandDefinition:
    """A slash command discovered under a skill directory."""

    name: str
    description: str
    skill_name: str
    body: str
    file_path: Path
    skill_dir: Path


@dataclass(frozen=True, slots=True)
class ParsedCommandFile:
    frontmatter: dict[str, str] = field(default_factory=dict)
    body: str = ""


@dataclass(frozen=True, slots=True)
class SlashCommand:
    """A ``/name args`` invocation typed by the user."""

    name: str
    args: str = ""


def parse_frontmatter(content: str) -> ParsedCommandFile:
    """Split a command file into frontmatter pairs and body.

    Values stay strings: no lists, booleans or nesting. Content without a
    closed ``---`` block is returned whole as the body.
    """
    trimmed = content.lstrip()
    if not trimmed.startswith("---"):
        return ParsedCommandFile(body=content)

    end = trimmed.find("---", 3)
    if end == -1:
        return ParsedCommandFile(body=content)

    block = trimmed[3:end].strip()
    body = trimmed[end + 3:].strip()

    frontmatter: dict[str, str] = {}
    for line in block.splitlines():
        key, sep, value = line.partition(":")
        if not sep:
            continue
        frontmatter[key.strip()] = value.strip()

    return ParsedCommandFile(frontmatter=frontmatter, body=body)


def load_skill_content(skill_dir: Path) -> str | None:
    """Read the skill's SKILL.md, or None when it is missing or unreadable."""
    skill_file = skill_dir / "SKILL.md"
    if not skill_file.is_file():
        return None
    try:
        return skill_file.read_text(encoding="utf-8")
    except (OSError, UnicodeDecodeError):
        return None


def discover_commands(skills_root: str | Path) -> list[CommandDefinition]:
    """Scan every skill under *skills_root* for command files."""
    root = Path(skills_root)
    if not root.is_dir():
        return []

    try:
        skill_dirs = sorted(root.iterdir())
    except OSError as exc:
        logger.warning("Cannot read skills directory %s: %s", root, exc)
        return []

    commands: list[CommandDefinition] = []
    for skill_dir in skill_dirs:
        command_dir = skill_dir / "command"
        if not skill_dir.is_dir() or not command_dir.is_dir():
            continue

        try:
            command_files = sorted(command_dir.glob("*.md"))
        except OSError:
            continue

        for file_path in command_files:
            try:
                parsed = parse_frontmatter(file_path.read_text(encoding="utf-8"))
            except (OSError, UnicodeDecodeError) as exc:
                logger.debug("Skipping command file %s: %s", file_path, exc)
                continue
            commands.append(CommandDefinition(
                name=file_path.stem,
                description=parsed.frontmatter.get("description", ""),
                skill_name=skill_dir.name,
                body=parsed.body,
                file_path=file_path.resolve(),
                skill_dir=skill_dir.resolve(),
            ))

    logger.debug("Discovered %d commands under %s", len(commands), root)
    return commands


def parse_slash_command(text: str) -> SlashCommand | None:
    """Detect a ``/name args`` invocation; None when *text* is not one."""
    trimmed = text.strip()
    if not trimmed.startswith("/"):
        return None
    match = _SLASH_RE.match(trimmed)
    if match is None:
        return None
    return SlashCommand(name=match.group(1), args=(match.group(2) or "").strip())
