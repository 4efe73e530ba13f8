"""CLI entry point for chatharness."""

from __future__ import annotations

import asyncio
import logging
import sys

import click

from chatharness.types.config import HarnessConfig


class HarnessGroup(click.Group):
    """Custom group that treats unknown args as a one-shot prompt.

    When the first arg is NOT a subcommand, we separate Click options from
    positional prompt words and let Click parse the options normally.
    """

    # Options that take a value argument
    _VALUE_OPTS = {
        "-m", "--model", "--cwd", "--api-key", "--base-url", "--skills-dir",
    }
    # Boolean flags (no value argument)
    _FLAG_OPTS = {"-v", "--verbose"}

    def parse_args(self, ctx: click.Context, args: list[str]) -> list[str]:
        # If first arg matches a subcommand, dispatch normally
        if args and args[0] in self.commands:
            return super().parse_args(ctx, args)

        click_args: list[str] = []
        prompt_words: list[str] = []
        i = 0
        while i < len(args):
            arg = args[i]
            if arg in self._VALUE_OPTS and i + 1 < len(args):
                click_args.extend([arg, args[i + 1]])
                i += 2
            elif arg in self._FLAG_OPTS or (arg.startswith("-") and "=" in arg):
                click_args.append(arg)
                i += 1
            elif arg in ("--help", "-h"):
                click_args.append(arg)
                i += 1
            else:
                prompt_words.append(arg)
                i += 1

        ctx.ensure_object(dict)
        ctx.obj["prompt_args"] = prompt_words
        return super().parse_args(ctx, click_args)


@click.group(cls=HarnessGroup, invoke_without_command=True)
@click.option("--model", "-m", default=None, help="Model ID")
@click.option("--cwd", default=None, help="Working directory")
@click.option("--api-key", default=None, help="Provider API key")
@click.option("--base-url", default=None, help="OpenAI-compatible base URL")
@click.option("--skills-dir", default=None, help="Skills root (default: .agents/skills)")
@click.option("--verbose", "-v", is_flag=True, help="Verbose output")
@click.pass_context
def cli(
    ctx: click.Context,
    model: str | None,
    cwd: str | None,
    api_key: str | None,
    base_url: str | None,
    skills_dir: str | None,
    verbose: bool,
) -> None:
    """chatharness -- terminal chat client.

    \b
    Usage:
      chatharness                          (interactive REPL)
      chatharness "Explain this stack trace"
      chatharness commands list
      chatharness sessions list
      chatharness config list
    """
    if ctx.invoked_subcommand is not None:
        return

    logging.basicConfig(
        level=logging.DEBUG if verbose else logging.WARNING,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )

    from chatharness.core.config import load_config

    try:
        config = load_config(
            cwd, model=model, api_key=api_key, base_url=base_url, skills_dir=skills_dir,
        )
    except ValueError as exc:
        click.echo(f"Error: {exc}", err=True)
        sys.exit(1)

    ctx.ensure_object(dict)
    prompt_args = ctx.obj.get("prompt_args", [])

    if prompt_args:
        prompt_text = " ".join(prompt_args)
    elif not sys.stdin.isatty():
        # Piped input: one-shot mode
        prompt_text = sys.stdin.read().strip()
        if not prompt_text:
            click.echo("Error: empty prompt", err=True)
            sys.exit(1)
    else:
        from chatharness.cli.repl import Repl
        from chatharness.ui.terminal import RichEventPrinter

        asyncio.run(Repl(config, printer=RichEventPrinter(verbose=verbose)).run())
        return

    ok = asyncio.run(_run_once(config, prompt_text, verbose=verbose))
    if not ok:
        sys.exit(1)


async def _run_once(config: HarnessConfig, prompt: str, *, verbose: bool = False) -> bool:
    """Send one prompt, print the reply, and exit. Returns False on failure."""
    from chatharness.cli.repl import Repl
    from chatharness.types.events import LogEvent, SubmitPromptAction
    from chatharness.ui.terminal import RichEventPrinter

    repl = Repl(config, printer=RichEventPrinter(verbose=verbose))
    if not await repl.start():
        return False

    errors: list[LogEvent] = []
    repl.harness.subscribe(
        lambda event: errors.append(event)
        if isinstance(event, LogEvent) and event.level == "error" else None
    )
    try:
        await repl.harness.dispatch(SubmitPromptAction(text=prompt))
        await repl.harness.wait_idle()
    finally:
        await repl.close()
    return not errors


def _register_subcommands() -> None:
    """Register CLI subcommands."""
    from chatharness.cli.commands import commands_cmd, config_cmd, sessions_cmd

    cli.add_command(config_cmd, "config")
    cli.add_command(commands_cmd, "commands")
    cli.add_command(sessions_cmd, "sessions")


_register_subcommands()


def main() -> None:
    """Entry point."""
    cli()


if __name__ == "__main__":
    main()
