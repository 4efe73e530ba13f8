"""The harness: owns the state, turns user actions into provider calls.

Every state change goes through :meth:`Harness.emit`: the reducer folds the
event into a new :class:`HarnessState`, then subscribers and plugins observe
it in that order. Provider callbacks, orchestration bookkeeping (queued
messages, the ephemeral slot, session swaps) and plugins all use the same
path, so the reducer is the only code that ever changes the transcript.
"""

from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable, Sequence
from pathlib import Path

from chatharness.commands.loader import CommandDefinition, parse_slash_command
from chatharness.commands.registry import CommandRegistry
from chatharness.core.reducer import ReducerContext, apply_event
from chatharness.plugins.manager import HarnessPlugin, PluginManager
from chatharness.types.config import HarnessConfig
from chatharness.types.events import (
    AnswerQuestionAction,
    CancelAction,
    ChangeModelAction,
    CloseEphemeralAction,
    EphemeralClosedEvent,
    EphemeralFailedEvent,
    EphemeralStartedEvent,
    HarnessEvent,
    HarnessFailedEvent,
    LogEvent,
    LogLevel,
    MessageDequeuedEvent,
    MessageQueuedEvent,
    ModelsUpdatedEvent,
    NewSessionAction,
    QuestionAnsweredEvent,
    QuestionRequestedEvent,
    RefreshSessionsAction,
    RunCancelledEvent,
    RunFinishedEvent,
    RunStartedEvent,
    SessionCreatedEvent,
    SessionListUpdatedEvent,
    SessionSwitchedEvent,
    SubmitPromptAction,
    SwitchSessionAction,
    UIAction,
    UserMessageEvent,
    create_log_event,
    create_user_message,
    generate_id,
)
from chatharness.types.providers import (
    EphemeralOptions,
    EventHandler,
    QuestionAnswer,
    RunProvider,
    UserInputRequest,
)
from chatharness.types.state import HarnessState

logger = logging.getLogger(__name__)

_LOG_LEVELS: dict[LogLevel, int] = {
    "debug": logging.DEBUG,
    "info": logging.INFO,
    "warn": logging.WARNING,
    "error": logging.ERROR,
}

_LIST_COMMANDS = frozenset({"commands", "help"})


class HarnessError(Exception):
    """Base error for harness misuse."""


class ProviderNotSetError(HarnessError):
    """Raised when the harness needs a run provider and none was set."""


class Harness:
    """Event-sourced conversation state plus run orchestration.

    Usage::

        harness = Harness(config)
        harness.set_provider(OpenAIRunProvider(model="gpt-4o"))
        harness.subscribe(print_event)
        await harness.initialize()
        await harness.dispatch(SubmitPromptAction(text="hello"))
    """

    def __init__(
        self,
        config: HarnessConfig | None = None,
        *,
        skills_root: str | Path | None = None,
    ) -> None:
        self._config = config or HarnessConfig()
        self._state = HarnessState()
        self._reducer_ctx = ReducerContext(limits=self._config.limits)
        self._subscribers: list[EventHandler] = []
        self._plugins = PluginManager(self.emit)
        if skills_root is None:
            base = Path(self._config.cwd) if self._config.cwd else Path.cwd()
            skills_root = base / self._config.skills_dir
        self._commands = CommandRegistry(skills_root)
        self._provider: RunProvider | None = None
        self._questions: dict[str, asyncio.Future[QuestionAnswer]] = {}
        self._generation = 0
        self._pending: set[asyncio.Task[None]] = set()

    # ── Provider and plugin wiring ───────────────────────────────────────────

    def set_provider(self, provider: RunProvider) -> None:
        self._provider = provider
        provider.on_event(self.emit)
        provider.on_user_input_request(self._handle_user_input_request)

    @property
    def provider(self) -> RunProvider | None:
        return self._provider

    @property
    def plugins(self) -> PluginManager:
        return self._plugins

    def use(self, plugin: HarnessPlugin) -> None:
        self._plugins.use(plugin)

    def get_commands(self) -> list[CommandDefinition]:
        return self._commands.list()

    def reload_commands(self) -> None:
        self._commands.reload()

    # ── State and subscriptions ──────────────────────────────────────────────

    def get_state(self) -> HarnessState:
        """The current state. It is frozen; later events replace it."""
        return self._state

    def subscribe(self, handler: EventHandler) -> Callable[[], None]:
        """Register *handler* for every event; returns an unsubscribe callable."""
        self._subscribers.append(handler)

        def unsubscribe() -> None:
            if handler in self._subscribers:
                self._subscribers.remove(handler)

        return unsubscribe

    def emit(self, event: HarnessEvent) -> None:
        """Apply *event* to the state, then notify subscribers and plugins."""
        previous_run_id = self._state.current_run_id
        self._state = apply_event(self._state, event, self._reducer_ctx)

        if isinstance(event, LogEvent):
            logger.log(_LOG_LEVELS.get(event.level, logging.INFO), "%s", event.message)

        for handler in list(self._subscribers):
            try:
                handler(event)
            except Exception:
                logger.exception("Subscriber failed handling %s", event.type)

        self._plugins.notify_event(event)

        if (
            isinstance(event, RunFinishedEvent)
            and previous_run_id is not None
            and previous_run_id == event.run_id
        ):
            self._schedule_queue_drain()

    def _log(self, level: LogLevel, message: str, run_id: str | None = None) -> None:
        self.emit(create_log_event(level, message, run_id))

    # ── Action dispatch ──────────────────────────────────────────────────────

    async def dispatch(self, action: UIAction) -> None:
        match action:
            case SubmitPromptAction(text=text, attachments=attachments):
                await self._submit(text, attachments)
            case CancelAction():
                await self._cancel()
            case ChangeModelAction(model_id=model_id):
                await self._change_model(model_id)
            case AnswerQuestionAction():
                self._answer_question(action.request_id, action.answer, action.was_freeform)
            case NewSessionAction():
                await self._new_session()
            case SwitchSessionAction(session_id=session_id):
                await self._switch_session(session_id)
            case RefreshSessionsAction():
                await self._refresh_sessions()
            case CloseEphemeralAction():
                self._close_ephemeral()
            case _:
                logger.warning("Ignoring unknown action: %r", action)

    # ── Lifecycle ────────────────────────────────────────────────────────────

    async def initialize(self) -> None:
        """Initialize the provider. Failure is fatal and re-raised."""
        provider = self._require_provider()
        self._log("info", "Initializing run provider...")

        try:
            await provider.initialize()
        except Exception as exc:
            self._log("error", f"Initialization failed: {exc}")
            self.emit(HarnessFailedEvent(error=str(exc)))
            raise

        self.emit(ModelsUpdatedEvent(
            model=provider.current_model,
            available_models=tuple(provider.available_models),
        ))
        if provider.current_session_id:
            self.emit(SessionSwitchedEvent(session_id=provider.current_session_id))

        self._log("info", "Run provider ready")
        if provider.current_model:
            self._log("info", f"Using model: {provider.current_model}")

        await self._refresh_sessions()

    async def shutdown(self) -> None:
        for task in list(self._pending):
            task.cancel()
        self._abandon_questions()
        if self._provider is not None:
            try:
                await self._provider.shutdown()
            except Exception as exc:
                self._log("warn", f"Provider shutdown failed: {exc}")
        self._log("info", "Harness shutdown complete")

    async def wait_idle(self) -> None:
        """Wait until no deferred queue processing is outstanding."""
        while self._pending:
            await asyncio.gather(*list(self._pending), return_exceptions=True)

    def _require_provider(self) -> RunProvider:
        if self._provider is None:
            raise ProviderNotSetError("Run provider not set. Call set_provider() first.")
        return self._provider

    # ── Prompts ──────────────────────────────────────────────────────────────

    def _emit_command_list(self) -> None:
        commands = self._commands.list()
        if not commands:
            self._log(
                "info",
                f"No skill commands installed. Add command files to "
                f"{self._config.skills_dir}/<name>/command/",
            )
            return
        lines = [
            f"  /{cmd.name} — {cmd.description or cmd.skill_name + ' skill'}"
            for cmd in commands
        ]
        self._log("info", "Available commands:\n" + "\n".join(lines))

    async def _submit(self, text: str, attachments: Sequence[str] = ()) -> None:
        if self._state.status == "running":
            if attachments:
                self._log("warn", f"Dropped {len(attachments)} attachment(s) from queued message")
            self.emit(MessageQueuedEvent(text=text))
            self._log("info", f"Message queued ({len(self._state.message_queue)} waiting)")
            return

        if self._provider is None:
            self._log("error", "Run provider not initialized")
            return

        parsed = parse_slash_command(text)
        if parsed is not None:
            if parsed.name in _LIST_COMMANDS:
                self._emit_command_list()
                return
            if self._commands.has(parsed.name):
                prompt = self._commands.build_prompt(parsed.name, parsed.args)
                if prompt is not None:
                    self._log("info", f"Invoking command: /{parsed.name}")
                    await self._execute_prompt(prompt, text, attachments)
                    return

        await self._execute_prompt(text, None, attachments)

    async def _execute_prompt(
        self,
        text: str,
        display_text: str | None = None,
        attachments: Sequence[str] = (),
    ) -> None:
        provider = self._require_provider()
        run_id = generate_id()
        self._generation += 1
        generation = self._generation

        self.emit(UserMessageEvent(
            message=create_user_message(display_text or text), run_id=run_id,
        ))
        self.emit(RunStartedEvent(run_id=run_id))
        self._log("info", f"Run started: {run_id}", run_id)

        try:
            await provider.send_prompt(text, run_id, list(attachments) or None)
        except Exception as exc:
            self._log("error", f"Run failed: {exc}", run_id)
            # A newer prompt owns the state now; leave it alone.
            if generation == self._generation:
                self.emit(RunFinishedEvent(run_id=run_id))

    # ── Queue ────────────────────────────────────────────────────────────────

    def _schedule_queue_drain(self) -> None:
        if not self._state.message_queue:
            return
        try:
            loop = asyncio.get_running_loop()
        except RuntimeError:
            logger.warning(
                "No running event loop; %d queued message(s) left waiting",
                len(self._state.message_queue),
            )
            return
        task = loop.create_task(self._process_next_queued())
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)

    async def _process_next_queued(self) -> None:
        """Start the next queued message. Runs on a later loop turn than the finish."""
        if self._state.status == "running" or not self._state.message_queue:
            return

        next_message = self._state.message_queue[0]
        self.emit(MessageDequeuedEvent(text=next_message))
        self._log(
            "info", f"Processing queued message ({len(self._state.message_queue)} remaining)",
        )

        generation = self._generation
        try:
            await self._submit(next_message)
        except Exception as exc:
            self._log("error", f"Queue processing failed: {exc}")
        # Nothing ran (a command listing, a missing provider), so no finish will follow.
        if generation == self._generation:
            self._schedule_queue_drain()

    # ── Cancel ───────────────────────────────────────────────────────────────

    async def _cancel(self) -> None:
        run_id = self._state.current_run_id
        if self._state.status != "running" or run_id is None:
            return

        if self._provider is not None:
            try:
                await self._provider.abort()
            except Exception as exc:
                self._log("warn", f"Abort error: {exc}", run_id)

        self._abandon_questions()
        self.emit(RunCancelledEvent(run_id=run_id))
        self._log("info", f"Run cancelled: {run_id}", run_id)

    # ── Models ───────────────────────────────────────────────────────────────

    async def _change_model(self, model_id: str) -> None:
        if self._state.status == "running":
            self._log("warn", "Cannot switch model while a run is in progress")
            return
        if self._provider is None:
            self._log("error", "Run provider not initialized")
            return

        self._log("info", f"Switching to model: {model_id}...")
        try:
            await self._provider.switch_model(model_id)
        except Exception as exc:
            self._log("error", f"Model switch failed: {exc}")
            return

        self.emit(ModelsUpdatedEvent(
            model=self._provider.current_model,
            available_models=tuple(self._provider.available_models),
            reset_context=True,
        ))
        self._log("info", f"Model switched to: {model_id}")

    # ── Questions ────────────────────────────────────────────────────────────

    async def ask_user(
        self,
        question: str,
        choices: Sequence[str] | None = None,
        allow_freeform: bool = True,
    ) -> QuestionAnswer:
        """Publish a question and wait for the matching ``answer.question`` action."""
        request_id = generate_id()
        future: asyncio.Future[QuestionAnswer] = asyncio.get_running_loop().create_future()
        self._questions[request_id] = future

        self.emit(QuestionRequestedEvent(
            request_id=request_id,
            question=question,
            choices=tuple(choices) if choices is not None else None,
            allow_freeform=allow_freeform,
        ))
        try:
            return await future
        finally:
            self._questions.pop(request_id, None)

    async def _handle_user_input_request(self, request: UserInputRequest) -> QuestionAnswer:
        return await self.ask_user(request.question, request.choices, request.allow_freeform)

    def _answer_question(self, request_id: str, answer: str, was_freeform: bool) -> None:
        future = self._questions.pop(request_id, None)
        if future is None:
            return
        if not future.done():
            future.set_result(QuestionAnswer(answer=answer, was_freeform=was_freeform))
        self.emit(QuestionAnsweredEvent(
            request_id=request_id, answer=answer, was_freeform=was_freeform,
        ))

    def _abandon_questions(self) -> None:
        for future in self._questions.values():
            if not future.done():
                future.cancel()
        self._questions.clear()

    # ── Sessions ─────────────────────────────────────────────────────────────

    async def _new_session(self) -> None:
        if self._state.status == "running":
            self._log("warn", "Cannot create new session while a run is in progress")
            return
        if self._provider is None:
            self._log("error", "Run provider not initialized")
            return

        self._log("info", "Creating new session...")
        try:
            session_id = await self._provider.create_new_session()
        except Exception as exc:
            self._log("error", f"Failed to create session: {exc}")
            return

        self.emit(SessionCreatedEvent(session_id=session_id))
        await self._refresh_sessions()
        self._log("info", f"New session created: {session_id}")

    async def _switch_session(self, session_id: str) -> None:
        if self._state.status == "running":
            self._log("warn", "Cannot switch session while a run is in progress")
            return
        if self._provider is None:
            self._log("error", "Run provider not initialized")
            return
        if session_id == self._state.current_session_id:
            return

        self._log("info", f"Switching to session: {session_id}...")
        try:
            messages = await self._provider.switch_to_session(session_id)
        except Exception as exc:
            self._log("error", f"Failed to switch session: {exc}")
            return

        self.emit(SessionSwitchedEvent(
            session_id=session_id,
            transcript=tuple(messages) if messages is not None else None,
        ))
        self._log("info", f"Switched to session: {session_id}")

    async def _refresh_sessions(self) -> None:
        if self._provider is None:
            return
        try:
            sessions = await self._provider.list_sessions()
        except Exception as exc:
            self._log("error", f"Failed to load sessions: {exc}")
            return
        self.emit(SessionListUpdatedEvent(sessions=tuple(sessions)))

    # ── Ephemeral runs ───────────────────────────────────────────────────────

    async def run_ephemeral_prompt(
        self,
        prompt: str,
        *,
        model: str | None = None,
        display_text: str | None = None,
    ) -> None:
        """Run *prompt* in the isolated ephemeral slot, away from the transcript."""
        if self._provider is None:
            self._log("error", "Run provider not initialized")
            return

        run_id = generate_id()
        self.emit(EphemeralStartedEvent(
            ephemeral_run_id=run_id,
            message=create_user_message(display_text or prompt),
        ))
        self.emit(RunStartedEvent(run_id=run_id))
        self._log("info", f"Ephemeral run started: {run_id}", run_id)

        try:
            await self._provider.run_ephemeral_prompt(
                prompt, run_id, EphemeralOptions(model=model),
            )
        except Exception as exc:
            self._log("error", f"Ephemeral run failed: {exc}", run_id)
            self.emit(EphemeralFailedEvent(run_id=run_id, error=str(exc)))
            self.emit(RunFinishedEvent(run_id=run_id))

    def _close_ephemeral(self) -> None:
        self.emit(EphemeralClosedEvent())
        self._log("info", "Ephemeral run closed")
