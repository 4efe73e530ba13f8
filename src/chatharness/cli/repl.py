"""Interactive REPL over the harness."""

from __future__ import annotations

import asyncio
from collections.abc import Coroutine
from typing import Any

from chatharness.core.config import resolve_skills_root
from chatharness.core.harness import Harness
from chatharness.providers import create_provider
from chatharness.types.config import HarnessConfig
from chatharness.types.events import (
    AnswerQuestionAction,
    CancelAction,
    ChangeModelAction,
    CloseEphemeralAction,
    NewSessionAction,
    RefreshSessionsAction,
    SubmitPromptAction,
    SwitchSessionAction,
)
from chatharness.types.providers import RunProvider
from chatharness.ui.terminal import RichEventPrinter


class Repl:
    """Interactive read-eval-print loop.

    Prompts run in background tasks so the loop keeps reading: lines typed
    while a run is in progress are queued by the harness, ``/cancel``
    interrupts it, and a pending question takes the next plain line as
    its answer.
    """

    # Ordered: this is the order they appear in /help
    SLASH_COMMANDS = {
        "/help": "Show available commands",
        "/model": "Switch model (e.g. /model gpt-4o)",
        "/models": "List available models",
        "/new": "Start a new session",
        "/sessions": "List saved sessions",
        "/switch": "Switch to a saved session",
        "/cancel": "Cancel the running prompt",
        "/answer": "Answer the pending question",
        "/ask": "Ask a side question without touching the conversation",
        "/close": "Dismiss the side conversation",
        "/reload": "Re-scan skill commands",
        "/exit": "Exit (or press Ctrl+D)",
    }

    def __init__(
        self,
        config: HarnessConfig,
        *,
        harness: Harness | None = None,
        provider: RunProvider | None = None,
        printer: RichEventPrinter | None = None,
    ) -> None:
        self._config = config
        self._harness = harness or Harness(config, skills_root=resolve_skills_root(config))
        self._provider = provider
        self._printer = printer or RichEventPrinter()
        self._printer.bind(self._harness.get_state)
        self._tasks: set[asyncio.Task[Any]] = set()

    @property
    def harness(self) -> Harness:
        return self._harness

    # -- Main loop -------------------------------------------------------------

    async def start(self) -> bool:
        """Wire the provider and initialize. Returns False when startup failed."""
        self._harness.subscribe(self._printer.handle_event)
        provider = self._provider or create_provider(
            self._config.provider,
            api_key=self._config.api_key,
            model=self._config.model,
            base_url=self._config.base_url,
            system_prompt=self._config.system_prompt,
            max_tokens=self._config.max_tokens,
            cwd=self._config.cwd,
        )
        self._harness.set_provider(provider)
        try:
            await self._harness.initialize()
        except Exception as exc:
            self._printer.print_error(f"Could not start: {exc}")
            return False
        return True

    async def run(self) -> None:
        """Main REPL loop."""
        if not await self.start():
            return
        self._printer.print_banner(self._harness.get_state(), self._config)

        try:
            while True:
                try:
                    line = await self._read_prompt()
                except EOFError:
                    print("\nGoodbye!")
                    break
                except KeyboardInterrupt:
                    print()
                    await self._harness.dispatch(CancelAction())
                    continue

                if not line:
                    continue
                if not await self.handle_line(line):
                    break
        finally:
            await self.close()

    async def close(self) -> None:
        for task in list(self._tasks):
            task.cancel()
        if self._tasks:
            await asyncio.gather(*self._tasks, return_exceptions=True)
        await self._harness.shutdown()

    async def _read_prompt(self) -> str:
        """Read a line from stdin without blocking the event loop."""
        loop = asyncio.get_running_loop()
        state = self._harness.get_state()
        if state.pending_question is not None:
            prompt_str = "answer > "
        elif state.status == "running":
            prompt_str = "... "
        else:
            prompt_str = f"{state.current_model or 'chat'} > "
        line = await loop.run_in_executor(None, lambda: input(prompt_str))
        return line.strip()

    def _spawn(self, coro: Coroutine[Any, Any, None]) -> None:
        task = asyncio.create_task(coro)
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    # -- Line handling -----------------------------------------------------------

    async def handle_line(self, line: str) -> bool:
        """Act on one input line. Returns False when the REPL should exit."""
        if not line.startswith("/"):
            if self._harness.get_state().pending_question is not None:
                await self._answer(line)
            else:
                self._spawn(self._harness.dispatch(SubmitPromptAction(text=line)))
            return True

        parts = line.split(maxsplit=1)
        base = parts[0].lower()
        arg = parts[1].strip() if len(parts) > 1 else ""

        match base:
            case "/exit" | "/quit":
                return False
            case "/help":
                self._printer.print_help(self.SLASH_COMMANDS, self._harness.get_commands())
            case "/cancel":
                await self._harness.dispatch(CancelAction())
            case "/model":
                if arg:
                    await self._harness.dispatch(ChangeModelAction(model_id=arg))
                else:
                    self._printer.print_models(self._harness.get_state())
            case "/models":
                self._printer.print_models(self._harness.get_state())
            case "/new":
                await self._harness.dispatch(NewSessionAction())
            case "/sessions":
                await self._harness.dispatch(RefreshSessionsAction())
                self._printer.print_sessions(self._harness.get_state())
            case "/switch":
                if not arg:
                    self._printer.print_error("Usage: /switch <session-id>")
                else:
                    await self._harness.dispatch(SwitchSessionAction(session_id=arg))
            case "/answer":
                await self._answer(arg)
            case "/ask":
                if not arg:
                    self._printer.print_error("Usage: /ask <question>")
                else:
                    self._spawn(self._harness.run_ephemeral_prompt(arg))
            case "/close":
                await self._harness.dispatch(CloseEphemeralAction())
            case "/reload":
                self._harness.reload_commands()
                self._printer.print_help({}, self._harness.get_commands())
            case _:
                # Skill commands and /commands are resolved by the harness.
                self._spawn(self._harness.dispatch(SubmitPromptAction(text=line)))
        return True

    async def _answer(self, text: str) -> None:
        question = self._harness.get_state().pending_question
        if question is None:
            self._printer.print_error("No question is waiting for an answer.")
            return

        answer, was_freeform = text, True
        choices = question.choices or ()
        if text.isdigit() and 1 <= int(text) <= len(choices):
            answer, was_freeform = choices[int(text) - 1], False
        elif text in choices:
            was_freeform = False
        elif not question.allow_freeform:
            self._printer.print_error("Pick one of the listed choices.")
            return

        await self._harness.dispatch(AnswerQuestionAction(
            request_id=question.request_id, answer=answer, was_freeform=was_freeform,
        ))
