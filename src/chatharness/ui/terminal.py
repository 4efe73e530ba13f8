"""Rich-powered rendering of harness events."""

from __future__ import annotations

from collections.abc import Callable, Mapping
from typing import Any

from rich.console import Console
from rich.panel import Panel
from rich.table import Table
from rich.text import Text

from chatharness.commands.loader import CommandDefinition
from chatharness.types.config import HarnessConfig
from chatharness.types.events import (
    AssistantDeltaEvent,
    AssistantMessageEvent,
    HarnessEvent,
    LogEvent,
    QuestionRequestedEvent,
    ReasoningDeltaEvent,
    RunCancelledEvent,
    RunFinishedEvent,
    RunStartedEvent,
    SessionCreatedEvent,
    SessionSwitchedEvent,
    SkillInvokedEvent,
    SubagentStartedEvent,
    ToolCompletedEvent,
    ToolProgressEvent,
    ToolStartedEvent,
)
from chatharness.types.state import HarnessState

# ── Palette ──────────────────────────────────────────────────────────────────

TOOL_ICON = "\u25b8"       # ▸
SUBAGENT_ICON = "\u25c6"   # ◆

STYLE_ACCENT = "bold #a78bfa"         # violet
STYLE_DETAIL = "#7c7c8a"              # muted grey
STYLE_REASONING = "dim italic #94a3b8"
STYLE_EPHEMERAL = "#67e8f9"           # cyan
STYLE_ERROR = "bold #f87171"
STYLE_WARN = "#fbbf24"
STYLE_INFO = "dim #7c7c8a"
STYLE_LABEL = "bold #94a3b8"
STYLE_VALUE = "#e2e8f0"

_RESULT_PREVIEW = 300


class RichEventPrinter:
    """Subscriber that renders harness events to the terminal.

    Assistant text streams to stdout; everything else goes to stderr.
    *get_state* lets the printer tell ephemeral runs apart from the
    foreground one.
    """

    def __init__(
        self,
        get_state: Callable[[], HarnessState] | None = None,
        console: Console | None = None,
        stdout: Console | None = None,
        verbose: bool = False,
    ) -> None:
        self._get_state = get_state
        self._console = console or Console(stderr=True)
        self._stdout = stdout or Console()
        self._verbose = verbose
        self._streamed: set[str] = set()
        self._reasoning: set[str] = set()

    def bind(self, get_state: Callable[[], HarnessState]) -> None:
        self._get_state = get_state

    def _is_ephemeral(self, run_id: str | None) -> bool:
        if self._get_state is None or run_id is None:
            return False
        ephemeral = self._get_state().ephemeral_run
        return ephemeral is not None and ephemeral.run_id == run_id

    def handle_event(self, event: HarnessEvent) -> None:
        match event:
            case RunStartedEvent(run_id=run_id):
                self._streamed.discard(run_id)
                self._reasoning.discard(run_id)

            case ReasoningDeltaEvent(run_id=run_id, text=text):
                self._reasoning.add(run_id)
                self._stdout.print(Text(text, style=STYLE_REASONING), end="")

            case AssistantDeltaEvent(run_id=run_id, text=text):
                if run_id in self._reasoning:
                    self._reasoning.discard(run_id)
                    self._stdout.print()
                self._streamed.add(run_id)
                style = STYLE_EPHEMERAL if self._is_ephemeral(run_id) else None
                self._stdout.print(text, end="", style=style, highlight=False)

            case AssistantMessageEvent(run_id=run_id, message=message):
                if run_id not in self._streamed:
                    style = STYLE_EPHEMERAL if self._is_ephemeral(run_id) else None
                    self._stdout.print(message.content, style=style, highlight=False)
                else:
                    self._stdout.print()
                    self._streamed.discard(run_id)

            case RunFinishedEvent(run_id=run_id):
                if run_id in self._streamed:
                    self._stdout.print()
                    self._streamed.discard(run_id)
                if self._is_ephemeral(run_id):
                    self._console.print(
                        Text("  (side conversation finished; /close to dismiss)", style=STYLE_INFO),
                    )

            case RunCancelledEvent(run_id=run_id):
                if run_id in self._streamed:
                    self._stdout.print()
                    self._streamed.discard(run_id)
                self._console.print(Text("[cancelled]", style=STYLE_WARN))

            case ToolStartedEvent(tool_name=name, arguments=arguments):
                self._print_tool_use(name, arguments or {})

            case ToolProgressEvent(message=message):
                self._console.print(Text(f"    {message}", style=STYLE_DETAIL))

            case ToolCompletedEvent(success=success, output=output, error=error):
                self._print_tool_result(success, output, error)

            case SubagentStartedEvent(agent_name=name, agent_display_name=display):
                line = Text(f"  {SUBAGENT_ICON} ", style=STYLE_ACCENT)
                line.append(display or name, style=STYLE_ACCENT)
                self._console.print(line)

            case SkillInvokedEvent(name=name):
                self._console.print(Text(f"  skill: {name}", style=STYLE_DETAIL))

            case QuestionRequestedEvent():
                self._print_question(event)

            case SessionCreatedEvent(session_id=session_id):
                self._console.print(Text(f"New session {session_id}", style=STYLE_INFO))

            case SessionSwitchedEvent(session_id=session_id, transcript=transcript):
                count = len(transcript) if transcript else 0
                self._console.print(
                    Text(f"Session {session_id} ({count} messages)", style=STYLE_INFO),
                )

            case LogEvent():
                self._print_log(event)

    # ── Pieces ───────────────────────────────────────────────────────────────

    def _print_log(self, event: LogEvent) -> None:
        if event.level == "error":
            self._console.print(Text(f"error: {event.message}", style=STYLE_ERROR))
        elif event.level == "warn":
            self._console.print(Text(f"warning: {event.message}", style=STYLE_WARN))
        elif event.level == "debug":
            if self._verbose:
                self._console.print(Text(event.message, style=STYLE_INFO))
        elif self._verbose or event.run_id is None:
            # Run-scoped info lines only show when verbose.
            self._console.print(Text(event.message, style=STYLE_INFO))

    def _print_tool_use(self, name: str, arguments: Mapping[str, Any]) -> None:
        line = Text(f"  {TOOL_ICON} ", style=STYLE_ACCENT)
        line.append(name, style=STYLE_ACCENT)
        detail = ", ".join(f"{k}={v}" for k, v in arguments.items())
        if detail:
            if len(detail) > 120:
                detail = detail[:117] + "..."
            line.append(f"  {detail}", style=STYLE_DETAIL)
        self._console.print(line)

    def _print_tool_result(self, success: bool, output: str | None, error: str | None) -> None:
        if not success:
            label = Text("    \u2717 ", style=STYLE_ERROR)
            label.append((error or output or "failed")[:_RESULT_PREVIEW], style=STYLE_ERROR)
            self._console.print(label)
        elif output:
            preview = output if len(output) <= _RESULT_PREVIEW else output[:_RESULT_PREVIEW] + "\u2026"
            self._console.print(Text(f"    {preview}", style=STYLE_INFO))

    def _print_question(self, event: QuestionRequestedEvent) -> None:
        body = Text(event.question, style=STYLE_VALUE)
        for number, choice in enumerate(event.choices or (), start=1):
            body.append(f"\n  {number}. {choice}", style=STYLE_DETAIL)
        hint = "type an answer" if event.allow_freeform else "pick a number"
        self._console.print(Panel(
            body,
            title="Question",
            subtitle=hint,
            border_style="#3f3f50",
            expand=False,
        ))

    # ── Listings ─────────────────────────────────────────────────────────────

    def print_banner(self, state: HarnessState, config: HarnessConfig) -> None:
        tbl = _two_column_table()
        tbl.add_row("Provider", config.provider)
        tbl.add_row("Model", state.current_model or "(default)")
        tbl.add_row("Session", state.current_session_id or "-")
        self._console.print(Panel(
            tbl,
            title="chatharness",
            border_style="#3f3f50",
            expand=False,
            padding=(0, 1),
        ))
        self._console.print(Text("Type /help for commands, /exit to quit.", style=STYLE_INFO))

    def print_help(
        self,
        builtins: Mapping[str, str],
        commands: list[CommandDefinition],
    ) -> None:
        tbl = _two_column_table()
        for name, description in builtins.items():
            tbl.add_row(name, description)
        for cmd in commands:
            tbl.add_row(f"/{cmd.name}", cmd.description or f"{cmd.skill_name} skill")
        self._console.print(tbl)

    def print_models(self, state: HarnessState) -> None:
        if not state.available_models:
            self._console.print(Text("No models reported by the provider.", style=STYLE_INFO))
            return
        for model in state.available_models:
            marker = "*" if model.id == state.current_model else " "
            self._console.print(Text(f" {marker} {model.id}", style=STYLE_VALUE))

    def print_sessions(self, state: HarnessState) -> None:
        if not state.available_sessions:
            self._console.print(Text("No sessions found.", style=STYLE_INFO))
            return
        tbl = Table(show_edge=False, padding=(0, 1), header_style=STYLE_LABEL)
        tbl.add_column("")
        tbl.add_column("Session")
        tbl.add_column("Turns", justify="right")
        tbl.add_column("Last used")
        tbl.add_column("Summary", overflow="ellipsis", no_wrap=True, max_width=60)
        for info in state.available_sessions:
            marker = "*" if info.session_id == state.current_session_id else ""
            last_used = info.last_used_at or info.created_at
            tbl.add_row(
                marker,
                info.session_id,
                str(info.turns),
                last_used.strftime("%Y-%m-%d %H:%M"),
                info.summary,
            )
        self._console.print(tbl)

    def print_error(self, message: str) -> None:
        self._console.print(Text(message, style=STYLE_ERROR))


def _two_column_table() -> Table:
    tbl = Table(
        show_header=False,
        show_edge=False,
        show_lines=False,
        padding=(0, 1),
        expand=False,
    )
    tbl.add_column(style=STYLE_LABEL, justify="right", no_wrap=True)
    tbl.add_column(style=STYLE_VALUE)
    return tbl
