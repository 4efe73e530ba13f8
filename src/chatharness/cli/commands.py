"""CLI subcommands (config, commands, sessions)."""

from __future__ import annotations

from dataclasses import asdict

import click


@click.group()
def config_cmd() -> None:
    """Inspect configuration."""


@config_cmd.command("list")
@click.option("--cwd", default=None, help="Project directory")
def config_list(cwd: str | None) -> None:
    """Show the resolved configuration and where it came from."""
    from chatharness.core.config import load_config, load_env_config, load_toml_config

    click.echo("Environment:")
    env = load_env_config()
    if env:
        for k, v in sorted(env.items()):
            display = v if "key" not in k.lower() else v[:8] + "..."
            click.echo(f"  {k}: {display}")
    else:
        click.echo("  (no environment variables set)")

    click.echo("\nTOML config:")
    toml = load_toml_config(cwd)
    if toml:
        for k, v in sorted(toml.items()):
            click.echo(f"  {k}: {v}")
    else:
        click.echo("  (no config.toml found)")

    click.echo("\nResolved:")
    resolved = asdict(load_config(cwd))
    if resolved.get("api_key"):
        resolved["api_key"] = resolved["api_key"][:8] + "..."
    for k, v in resolved.items():
        click.echo(f"  {k}: {v}")


@click.group()
def commands_cmd() -> None:
    """Inspect slash commands shipped by skills."""


@commands_cmd.command("list")
@click.option("--cwd", default=None, help="Project directory")
@click.option("--skills-dir", default=None, help="Skills root (default: .agents/skills)")
def commands_list(cwd: str | None, skills_dir: str | None) -> None:
    """List discovered slash commands."""
    from chatharness.commands.registry import CommandRegistry
    from chatharness.core.config import load_config, resolve_skills_root

    config = load_config(cwd, skills_dir=skills_dir)
    root = resolve_skills_root(config)
    commands = CommandRegistry(root).list()
    if not commands:
        click.echo(f"No skill commands installed under {root}")
        return

    click.echo(f"{'Command':<24} {'Skill':<20} {'Description'}")
    click.echo("-" * 80)
    for cmd in commands:
        click.echo(f"{'/' + cmd.name:<24} {cmd.skill_name:<20} {cmd.description}")


@click.group()
def sessions_cmd() -> None:
    """Manage sessions."""


@sessions_cmd.command("list")
@click.option("--limit", "-n", default=20, help="Max sessions to show")
def sessions_list(limit: int) -> None:
    """List recent sessions."""
    from chatharness.core.session import list_sessions

    sessions = list_sessions()[:limit]
    if not sessions:
        click.echo("No sessions found.")
        return

    click.echo(f"{'Session ID':<14} {'Model':<25} {'Turns':<7} {'Last used':<17} {'Summary'}")
    click.echo("-" * 100)
    for s in sessions:
        last_used = (s.last_used_at or s.created_at).strftime("%Y-%m-%d %H:%M")
        click.echo(
            f"{s.session_id:<14} {s.model or '-':<25} {s.turns:<7} {last_used:<17} {s.summary}"
        )
