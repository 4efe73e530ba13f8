"""Tests for chatharness.core.harness: dispatch, queueing, questions, sessions."""

from __future__ import annotations

import asyncio
from pathlib import Path

import pytest

from chatharness.core.harness import Harness, ProviderNotSetError
from chatharness.types.config import HarnessConfig
from chatharness.types.events import (
    AnswerQuestionAction,
    AssistantMessageEvent,
    CancelAction,
    ChangeModelAction,
    ChatMessage,
    CloseEphemeralAction,
    HarnessEvent,
    LogEvent,
    MessageDequeuedEvent,
    NewSessionAction,
    PlanUpdatedEvent,
    QuestionRequestedEvent,
    RefreshSessionsAction,
    RunFinishedEvent,
    RunStartedEvent,
    SubmitPromptAction,
    SwitchSessionAction,
    UsageInfoEvent,
    create_assistant_message,
    create_user_message,
)
from chatharness.types.providers import QuestionAnswer
from tests.conftest import FailingRunProvider, MockRunProvider, MockTurn


def _harness(tmp_path: Path, provider: MockRunProvider | None = None) -> Harness:
    harness = Harness(HarnessConfig(cwd=str(tmp_path)), skills_root=tmp_path / "no-skills")
    if provider is not None:
        harness.set_provider(provider)
    return harness


def _messages(harness: Harness) -> list[tuple[str, str]]:
    return [
        (item.role, item.content)
        for item in harness.get_state().transcript
        if isinstance(item, ChatMessage)
    ]


def _logs(harness: Harness, level: str | None = None) -> list[str]:
    return [
        log.message for log in harness.get_state().logs
        if level is None or log.level == level
    ]


async def _start_gated(harness: Harness, text: str = "first") -> asyncio.Task[None]:
    task = asyncio.create_task(harness.dispatch(SubmitPromptAction(text=text)))
    await asyncio.sleep(0)
    assert harness.get_state().status == "running"
    return task


class TestInitialize:
    @pytest.mark.asyncio
    async def test_initialize_populates_state(self, tmp_path: Path, mock_provider):
        harness = _harness(tmp_path, mock_provider)
        await harness.initialize()

        state = harness.get_state()
        assert state.status == "idle"
        assert state.current_model == "mock-model"
        assert [m.id for m in state.available_models] == ["mock-model", "mock-large"]
        assert state.current_session_id == "mock-session"
        assert [s.session_id for s in state.available_sessions] == ["mock-session"]
        assert "Run provider ready" in _logs(harness)
        assert "Using model: mock-model" in _logs(harness)

    @pytest.mark.asyncio
    async def test_initialize_without_provider(self, tmp_path: Path):
        harness = _harness(tmp_path)
        with pytest.raises(ProviderNotSetError):
            await harness.initialize()

    @pytest.mark.asyncio
    async def test_initialize_failure_is_fatal(self, tmp_path: Path):
        provider = MockRunProvider(init_error=RuntimeError("no api key"))
        harness = _harness(tmp_path, provider)

        with pytest.raises(RuntimeError, match="no api key"):
            await harness.initialize()

        assert harness.get_state().status == "error"
        assert "Initialization failed: no api key" in _logs(harness, "error")

    @pytest.mark.asyncio
    async def test_shutdown_calls_provider(self, tmp_path: Path, mock_provider):
        harness = _harness(tmp_path, mock_provider)
        await harness.initialize()
        await harness.shutdown()
        assert mock_provider.calls[-1] == "shutdown"


class TestSubmitPrompt:
    @pytest.mark.asyncio
    async def test_hello_round_trip(self, tmp_path: Path):
        provider = MockRunProvider(turns=[MockTurn(text="Hi! How can I help?")])
        harness = _harness(tmp_path, provider)
        await harness.initialize()

        seen: list[HarnessEvent] = []
        harness.subscribe(seen.append)
        await harness.dispatch(SubmitPromptAction(text="hello"))

        state = harness.get_state()
        assert state.status == "idle"
        assert state.current_run_id is None
        assert state.streaming_content == ""
        assert _messages(harness) == [("user", "hello"), ("assistant", "Hi! How can I help?")]
        assert provider.prompts == ["hello"]

        types = [e.type for e in seen if not isinstance(e, LogEvent)]
        assert types[0] == "user.message"
        assert types[1] == "run.started"
        assert types[-2:] == ["assistant.message", "run.finished"]
        assert state.context_info.consumed_requests == 1

    @pytest.mark.asyncio
    async def test_provider_failure_returns_to_idle(self, tmp_path: Path):
        provider = FailingRunProvider()
        harness = _harness(tmp_path, provider)
        await harness.initialize()

        await harness.dispatch(SubmitPromptAction(text="hello"))

        state = harness.get_state()
        assert state.status == "idle"
        assert state.current_run_id is None
        assert _messages(harness) == [("user", "hello")]
        assert "Run failed: boom" in _logs(harness, "error")

    @pytest.mark.asyncio
    async def test_submit_without_provider_logs_error(self, tmp_path: Path):
        harness = _harness(tmp_path)
        await harness.dispatch(SubmitPromptAction(text="hello"))
        assert _logs(harness, "error") == ["Run provider not initialized"]
        assert harness.get_state().transcript == ()

    @pytest.mark.asyncio
    async def test_attachments_reach_provider(self, tmp_path: Path, mock_provider):
        harness = _harness(tmp_path, mock_provider)
        await harness.initialize()
        await harness.dispatch(SubmitPromptAction(text="look", attachments=("a.png",)))
        assert mock_provider.attachments == [["a.png"]]

    @pytest.mark.asyncio
    async def test_tool_calls_land_in_transcript(self, tmp_path: Path):
        provider = MockRunProvider(turns=[MockTurn(
            text="Done.",
            tool_calls=[{
                "id": "t1", "name": "Read", "args": {"path": "x.py"},
                "progress": ["reading"], "output": "print(1)",
            }],
        )])
        harness = _harness(tmp_path, provider)
        await harness.initialize()
        await harness.dispatch(SubmitPromptAction(text="read x.py"))

        transcript = harness.get_state().transcript
        assert [item.kind for item in transcript] == ["message", "tool-call", "message"]
        tool = transcript[1]
        assert tool.status == "completed"
        assert tool.progress == ("reading",)
        assert tool.output == "print(1)"


class TestSlashCommands:
    @pytest.mark.asyncio
    async def test_help_without_commands(self, tmp_path: Path, mock_provider):
        harness = _harness(tmp_path, mock_provider)
        await harness.initialize()

        await harness.dispatch(SubmitPromptAction(text="/help"))

        assert mock_provider.prompts == []
        assert harness.get_state().transcript == ()
        assert any(
            msg.startswith("No skill commands installed. Add command files to ")
            for msg in _logs(harness, "info")
        )

    @pytest.mark.asyncio
    async def test_commands_lists_installed(self, tmp_path: Path, tmp_skills: Path, mock_provider):
        harness = Harness(HarnessConfig(), skills_root=tmp_skills)
        harness.set_provider(mock_provider)
        await harness.initialize()

        await harness.dispatch(SubmitPromptAction(text="/commands"))

        listing = [m for m in _logs(harness, "info") if m.startswith("Available commands:")]
        assert listing == ["Available commands:\n  /check — Review a file"]

    @pytest.mark.asyncio
    async def test_skill_command_expands_prompt(self, tmp_skills: Path, mock_provider):
        harness = Harness(HarnessConfig(), skills_root=tmp_skills)
        harness.set_provider(mock_provider)
        await harness.initialize()

        await harness.dispatch(SubmitPromptAction(text="/check main.py"))

        sent = mock_provider.prompts[0]
        assert sent.startswith("# Command: /check")
        assert "Be thorough." in sent
        assert "Review main.py carefully." in sent
        # The transcript shows what the user typed, not the expansion.
        assert _messages(harness)[0] == ("user", "/check main.py")
        assert "Invoking command: /check" in _logs(harness, "info")

    @pytest.mark.asyncio
    async def test_unknown_slash_is_sent_verbatim(self, tmp_path: Path, mock_provider):
        harness = _harness(tmp_path, mock_provider)
        await harness.initialize()
        await harness.dispatch(SubmitPromptAction(text="/nope with args"))
        assert mock_provider.prompts == ["/nope with args"]

    def test_reload_picks_up_new_commands(self, tmp_skills: Path):
        harness = Harness(HarnessConfig(), skills_root=tmp_skills)
        assert [c.name for c in harness.get_commands()] == ["check"]
        (tmp_skills / "review" / "command" / "fix.md").write_text("Fix it.")
        harness.reload_commands()
        assert sorted(c.name for c in harness.get_commands()) == ["check", "fix"]


class TestMessageQueue:
    @pytest.mark.asyncio
    async def test_queue_while_running(self, tmp_path: Path):
        gate = asyncio.Event()
        provider = MockRunProvider(turns=[MockTurn(text="one", gate=gate)])
        harness = _harness(tmp_path, provider)
        await harness.initialize()

        first = await _start_gated(harness)
        await harness.dispatch(SubmitPromptAction(text="second"))
        await harness.dispatch(SubmitPromptAction(text="third"))

        assert harness.get_state().message_queue == ("second", "third")
        assert provider.prompts == ["first"]
        assert "Message queued (2 waiting)" in _logs(harness, "info")

        gate.set()
        await first
        await harness.wait_idle()

        assert provider.prompts == ["first", "second", "third"]
        assert harness.get_state().message_queue == ()
        assert _messages(harness) == [
            ("user", "first"), ("assistant", "one"),
            ("user", "second"), ("assistant", "ok"),
            ("user", "third"), ("assistant", "ok"),
        ]

    @pytest.mark.asyncio
    async def test_drain_is_deferred_and_one_at_a_time(self, tmp_path: Path):
        gate = asyncio.Event()
        provider = MockRunProvider(turns=[MockTurn(text="one", gate=gate)])
        harness = _harness(tmp_path, provider)
        await harness.initialize()

        snapshots: list[tuple[str, tuple[str, ...]]] = []
        dequeues: list[str] = []

        def observe(event: HarnessEvent) -> None:
            if isinstance(event, RunFinishedEvent):
                state = harness.get_state()
                snapshots.append((state.status, state.message_queue))
            elif isinstance(event, MessageDequeuedEvent):
                dequeues.append(event.text)

        harness.subscribe(observe)
        first = await _start_gated(harness)
        await harness.dispatch(SubmitPromptAction(text="second"))
        await harness.dispatch(SubmitPromptAction(text="third"))
        gate.set()
        await first
        await harness.wait_idle()

        # Each finish leaves the queue untouched; the next message starts later.
        assert snapshots == [
            ("idle", ("second", "third")),
            ("idle", ("third",)),
            ("idle", ()),
        ]
        assert dequeues == ["second", "third"]

    @pytest.mark.asyncio
    async def test_queued_slash_command_is_resolved(self, tmp_skills: Path):
        gate = asyncio.Event()
        provider = MockRunProvider(turns=[MockTurn(text="one", gate=gate)])
        harness = Harness(HarnessConfig(), skills_root=tmp_skills)
        harness.set_provider(provider)
        await harness.initialize()

        first = await _start_gated(harness)
        await harness.dispatch(SubmitPromptAction(text="/check a.py"))
        gate.set()
        await first
        await harness.wait_idle()

        assert provider.prompts[1].startswith("# Command: /check")

    @pytest.mark.asyncio
    async def test_queued_listing_does_not_stall_queue(self, tmp_path: Path):
        gate = asyncio.Event()
        provider = MockRunProvider(turns=[MockTurn(text="one", gate=gate)])
        harness = _harness(tmp_path, provider)
        await harness.initialize()

        first = await _start_gated(harness)
        await harness.dispatch(SubmitPromptAction(text="/help"))
        await harness.dispatch(SubmitPromptAction(text="after"))
        gate.set()
        await first
        await harness.wait_idle()

        assert provider.prompts == ["first", "after"]
        assert harness.get_state().message_queue == ()

    @pytest.mark.asyncio
    async def test_queued_attachments_are_dropped(self, tmp_path: Path):
        gate = asyncio.Event()
        provider = MockRunProvider(turns=[MockTurn(text="one", gate=gate)])
        harness = _harness(tmp_path, provider)
        await harness.initialize()

        first = await _start_gated(harness)
        await harness.dispatch(SubmitPromptAction(text="later", attachments=("a.png",)))
        assert "Dropped 1 attachment(s) from queued message" in _logs(harness, "warn")
        gate.set()
        await first
        await harness.wait_idle()
        assert provider.attachments[-1] is None


class TestCancel:
    @pytest.mark.asyncio
    async def test_cancel_running_prompt(self, tmp_path: Path):
        gate = asyncio.Event()
        provider = MockRunProvider(turns=[MockTurn(text="never shown", gate=gate)])
        harness = _harness(tmp_path, provider)
        await harness.initialize()

        first = await _start_gated(harness)
        await harness.dispatch(CancelAction())

        state = harness.get_state()
        assert state.status == "idle"
        assert state.current_run_id is None
        assert "abort" in provider.calls

        gate.set()
        await first
        # The late stream from the aborted run is dropped.
        assert _messages(harness) == [("user", "first")]
        assert any(m.startswith("Run cancelled: ") for m in _logs(harness, "info"))

    @pytest.mark.asyncio
    async def test_cancel_when_idle_is_noop(self, tmp_path: Path, mock_provider):
        harness = _harness(tmp_path, mock_provider)
        await harness.initialize()
        before = harness.get_state()
        await harness.dispatch(CancelAction())
        assert harness.get_state() is before
        assert "abort" not in mock_provider.calls

    @pytest.mark.asyncio
    async def test_cancel_leaves_queue_waiting(self, tmp_path: Path):
        gate = asyncio.Event()
        provider = MockRunProvider(turns=[MockTurn(text="x", gate=gate)])
        harness = _harness(tmp_path, provider)
        await harness.initialize()

        first = await _start_gated(harness)
        await harness.dispatch(SubmitPromptAction(text="queued"))
        await harness.dispatch(CancelAction())
        gate.set()
        await first
        await harness.wait_idle()

        assert harness.get_state().message_queue == ("queued",)
        assert provider.prompts == ["first"]


class TestQuestions:
    @pytest.mark.asyncio
    async def test_answer_resumes_provider(self, tmp_path: Path):
        provider = MockRunProvider(turns=[MockTurn(
            text="Going with it.",
            ask={"question": "Which file?", "choices": ["a.py", "b.py"], "allow_freeform": False},
        )])
        harness = _harness(tmp_path, provider)
        await harness.initialize()

        run = await _start_gated(harness, "fix it")
        pending = harness.get_state().pending_question
        assert pending is not None
        assert pending.question == "Which file?"
        assert pending.choices == ("a.py", "b.py")
        assert pending.allow_freeform is False

        await harness.dispatch(AnswerQuestionAction(
            request_id=pending.request_id, answer="b.py", was_freeform=False,
        ))
        await run

        assert provider.answers == [QuestionAnswer(answer="b.py", was_freeform=False)]
        assert harness.get_state().pending_question is None
        assert _messages(harness)[-1] == ("assistant", "Going with it.")

    @pytest.mark.asyncio
    async def test_unknown_request_id_is_ignored(self, tmp_path: Path):
        provider = MockRunProvider(turns=[MockTurn(ask={"question": "Sure?"})])
        harness = _harness(tmp_path, provider)
        await harness.initialize()

        run = await _start_gated(harness)
        pending = harness.get_state().pending_question
        await harness.dispatch(AnswerQuestionAction(request_id="nope", answer="yes"))
        assert harness.get_state().pending_question == pending

        await harness.dispatch(AnswerQuestionAction(request_id=pending.request_id, answer="yes"))
        await run
        assert provider.answers == [QuestionAnswer(answer="yes", was_freeform=True)]

    @pytest.mark.asyncio
    async def test_cancel_abandons_question(self, tmp_path: Path):
        provider = MockRunProvider(turns=[MockTurn(ask={"question": "Sure?"})])
        harness = _harness(tmp_path, provider)
        await harness.initialize()

        run = await _start_gated(harness)
        await harness.dispatch(CancelAction())
        await asyncio.gather(run, return_exceptions=True)

        state = harness.get_state()
        assert state.pending_question is None
        assert state.status == "idle"
        assert provider.answers == []

    @pytest.mark.asyncio
    async def test_ask_user_directly(self, tmp_path: Path):
        harness = _harness(tmp_path)
        requests: list[QuestionRequestedEvent] = []
        harness.subscribe(
            lambda e: requests.append(e) if isinstance(e, QuestionRequestedEvent) else None
        )

        ask = asyncio.create_task(harness.ask_user("Name?", choices=["x", "y"]))
        await asyncio.sleep(0)
        await harness.dispatch(AnswerQuestionAction(request_id=requests[0].request_id, answer="x"))

        assert await ask == QuestionAnswer(answer="x", was_freeform=True)


class TestModels:
    @pytest.mark.asyncio
    async def test_change_model(self, tmp_path: Path, mock_provider):
        harness = _harness(tmp_path, mock_provider)
        await harness.initialize()
        harness.emit(UsageInfoEvent(token_limit=1000, current_tokens=500, messages_length=4))

        await harness.dispatch(ChangeModelAction(model_id="mock-large"))

        state = harness.get_state()
        assert state.current_model == "mock-large"
        assert state.context_info.current_tokens == 0
        assert state.context_info.token_limit == 0
        assert "Model switched to: mock-large" in _logs(harness, "info")

    @pytest.mark.asyncio
    async def test_change_model_failure(self, tmp_path: Path, mock_provider):
        harness = _harness(tmp_path, mock_provider)
        await harness.initialize()
        await harness.dispatch(ChangeModelAction(model_id="missing"))
        assert harness.get_state().current_model == "mock-model"
        assert "Model switch failed: Unknown model: missing" in _logs(harness, "error")

    @pytest.mark.asyncio
    async def test_change_model_refused_while_running(self, tmp_path: Path):
        gate = asyncio.Event()
        provider = MockRunProvider(turns=[MockTurn(text="x", gate=gate)])
        harness = _harness(tmp_path, provider)
        await harness.initialize()

        run = await _start_gated(harness)
        await harness.dispatch(ChangeModelAction(model_id="mock-large"))
        assert "switch_model" not in provider.calls
        assert "Cannot switch model while a run is in progress" in _logs(harness, "warn")
        gate.set()
        await run


class TestSessions:
    @pytest.mark.asyncio
    async def test_new_session_clears_transcript(self, tmp_path: Path, mock_provider):
        harness = _harness(tmp_path, mock_provider)
        await harness.initialize()
        await harness.dispatch(SubmitPromptAction(text="hello"))

        await harness.dispatch(NewSessionAction())

        state = harness.get_state()
        assert state.current_session_id == "mock-session-1"
        assert state.transcript == ()
        assert {s.session_id for s in state.available_sessions} == {
            "mock-session", "mock-session-1",
        }
        # Completed-request counter survives the swap.
        assert state.context_info.consumed_requests == 1

    @pytest.mark.asyncio
    async def test_switch_session_loads_history(self, tmp_path: Path):
        history = [create_user_message("earlier"), create_assistant_message("reply")]
        provider = MockRunProvider(sessions={"mock-session": [], "old": history})
        harness = _harness(tmp_path, provider)
        await harness.initialize()

        await harness.dispatch(SwitchSessionAction(session_id="old"))

        state = harness.get_state()
        assert state.current_session_id == "old"
        assert _messages(harness) == [("user", "earlier"), ("assistant", "reply")]

    @pytest.mark.asyncio
    async def test_switch_unknown_session(self, tmp_path: Path, mock_provider):
        harness = _harness(tmp_path, mock_provider)
        await harness.initialize()
        await harness.dispatch(SwitchSessionAction(session_id="ghost"))
        assert harness.get_state().current_session_id == "mock-session"
        assert any(
            m.startswith("Failed to switch session:") for m in _logs(harness, "error")
        )

    @pytest.mark.asyncio
    async def test_session_actions_refused_while_running(self, tmp_path: Path):
        gate = asyncio.Event()
        provider = MockRunProvider(turns=[MockTurn(text="x", gate=gate)])
        harness = _harness(tmp_path, provider)
        await harness.initialize()

        run = await _start_gated(harness)
        await harness.dispatch(NewSessionAction())
        await harness.dispatch(SwitchSessionAction(session_id="mock-session"))
        assert harness.get_state().current_session_id == "mock-session"
        assert "Cannot create new session while a run is in progress" in _logs(harness, "warn")
        assert "Cannot switch session while a run is in progress" in _logs(harness, "warn")
        gate.set()
        await run

    @pytest.mark.asyncio
    async def test_refresh_sessions(self, tmp_path: Path, mock_provider):
        harness = _harness(tmp_path, mock_provider)
        await harness.initialize()
        await mock_provider.create_new_session()
        await harness.dispatch(RefreshSessionsAction())
        assert len(harness.get_state().available_sessions) == 2


class TestEphemeral:
    @pytest.mark.asyncio
    async def test_ephemeral_run_is_isolated(self, tmp_path: Path, mock_provider):
        harness = _harness(tmp_path, mock_provider)
        await harness.initialize()
        await harness.dispatch(SubmitPromptAction(text="hello"))
        transcript_before = harness.get_state().transcript

        await harness.run_ephemeral_prompt("quick question", model="mock-large")

        state = harness.get_state()
        assert state.transcript == transcript_before
        assert state.status == "idle"
        ephemeral = state.ephemeral_run
        assert ephemeral is not None
        assert ephemeral.status == "completed"
        assert [m.content for m in ephemeral.transcript] == ["quick question", "side answer"]
        assert mock_provider.ephemeral_prompts[0][1].model == "mock-large"

        await harness.dispatch(CloseEphemeralAction())
        assert harness.get_state().ephemeral_run is None

    @pytest.mark.asyncio
    async def test_ephemeral_during_foreground_run(self, tmp_path: Path):
        gate = asyncio.Event()
        provider = MockRunProvider(turns=[MockTurn(text="main reply", gate=gate)])
        harness = _harness(tmp_path, provider)
        await harness.initialize()

        run = await _start_gated(harness)
        foreground_run = harness.get_state().current_run_id
        await harness.run_ephemeral_prompt("aside")

        state = harness.get_state()
        assert state.status == "running"
        assert state.current_run_id == foreground_run
        assert state.streaming_content == ""
        assert state.ephemeral_run.status == "completed"

        gate.set()
        await run
        assert _messages(harness) == [("user", "first"), ("assistant", "main reply")]

    @pytest.mark.asyncio
    async def test_ephemeral_failure(self, tmp_path: Path):
        provider = MockRunProvider(ephemeral_error=RuntimeError("quota"))
        harness = _harness(tmp_path, provider)
        await harness.initialize()

        await harness.run_ephemeral_prompt("aside")

        ephemeral = harness.get_state().ephemeral_run
        assert ephemeral.status == "failed"
        assert ephemeral.error == "quota"
        assert harness.get_state().status == "idle"

    @pytest.mark.asyncio
    async def test_closed_ephemeral_run_does_not_leak(self, tmp_path: Path):
        gate = asyncio.Event()
        provider = MockRunProvider(ephemeral_gate=gate)
        harness = _harness(tmp_path, provider)
        await harness.initialize()
        await harness.dispatch(SubmitPromptAction(text="hello"))
        transcript_before = harness.get_state().transcript

        side = asyncio.create_task(harness.run_ephemeral_prompt("aside"))
        await asyncio.sleep(0)
        assert harness.get_state().ephemeral_run.streaming_content == "side "

        await harness.dispatch(CloseEphemeralAction())
        gate.set()
        await side
        await harness.wait_idle()

        state = harness.get_state()
        assert state.ephemeral_run is None
        assert state.transcript == transcript_before
        assert state.streaming_content == ""
        assert state.status == "idle"

    @pytest.mark.asyncio
    async def test_replaced_ephemeral_run_does_not_leak(self, tmp_path: Path):
        gate = asyncio.Event()
        provider = MockRunProvider(ephemeral_gate=gate)
        harness = _harness(tmp_path, provider)
        await harness.initialize()

        first = asyncio.create_task(harness.run_ephemeral_prompt("first aside"))
        await asyncio.sleep(0)
        await harness.run_ephemeral_prompt("second aside")
        replacement = harness.get_state().ephemeral_run

        gate.set()
        await first

        state = harness.get_state()
        assert state.ephemeral_run == replacement
        assert [m.content for m in replacement.transcript] == ["second aside", "side answer"]
        assert state.transcript == ()
        assert state.streaming_content == ""


class _RecordingPlugin:
    def __init__(self, name: str = "recorder", fail: bool = False) -> None:
        self.name = name
        self.fail = fail
        self.events: list[HarnessEvent] = []
        self.ctx = None

    def register(self, ctx) -> None:
        self.ctx = ctx
        ctx.commands.register("ping", lambda: None)

    def on_event(self, event: HarnessEvent) -> None:
        if self.fail:
            raise RuntimeError("plugin broke")
        self.events.append(event)


class TestSubscribersAndPlugins:
    @pytest.mark.asyncio
    async def test_subscribers_before_plugins(self, tmp_path: Path, mock_provider):
        harness = _harness(tmp_path, mock_provider)
        order: list[str] = []
        plugin = _RecordingPlugin()
        plugin.on_event = lambda event: order.append(f"plugin:{event.type}")
        harness.use(plugin)
        harness.subscribe(lambda event: order.append(f"sub:{event.type}"))

        harness.emit(RunStartedEvent(run_id="r1"))

        assert order == ["sub:run.started", "plugin:run.started"]

    @pytest.mark.asyncio
    async def test_plugin_sees_every_event(self, tmp_path: Path, mock_provider):
        harness = _harness(tmp_path, mock_provider)
        plugin = _RecordingPlugin()
        harness.use(plugin)
        seen: list[HarnessEvent] = []
        harness.subscribe(seen.append)
        await harness.initialize()
        await harness.dispatch(SubmitPromptAction(text="hi"))

        assert plugin.events == seen
        assert plugin.ctx.commands.list() == ["ping"]
        assert harness.plugins.plugins == [plugin]

    def test_failing_plugin_and_subscriber_do_not_stop_fanout(self, tmp_path: Path):
        harness = _harness(tmp_path)
        harness.use(_RecordingPlugin("broken", fail=True))
        healthy = _RecordingPlugin("healthy")
        harness.use(healthy)

        def bad_subscriber(event: HarnessEvent) -> None:
            raise ValueError("subscriber broke")

        seen: list[HarnessEvent] = []
        harness.subscribe(bad_subscriber)
        harness.subscribe(seen.append)

        event = AssistantMessageEvent(run_id="r1", message=create_assistant_message("x"))
        harness.emit(event)

        assert seen == [event]
        assert healthy.events == [event]

    def test_plugin_emit_changes_state(self, tmp_path: Path):
        harness = _harness(tmp_path)
        plugin = _RecordingPlugin()
        harness.use(plugin)
        plugin.ctx.emit(PlanUpdatedEvent(content="1. do it"))
        assert harness.get_state().current_plan == "1. do it"

    def test_unsubscribe(self, tmp_path: Path):
        harness = _harness(tmp_path)
        seen: list[HarnessEvent] = []
        unsubscribe = harness.subscribe(seen.append)
        harness.emit(PlanUpdatedEvent(content="a"))
        unsubscribe()
        unsubscribe()
        harness.emit(PlanUpdatedEvent(content="b"))
        assert len(seen) == 1

    def test_state_snapshots_are_stable(self, tmp_path: Path):
        harness = _harness(tmp_path)
        before = harness.get_state()
        harness.emit(PlanUpdatedEvent(content="a"))
        assert before.current_plan is None
        assert harness.get_state().current_plan == "a"
