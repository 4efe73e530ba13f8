"""Test fixtures including MockRunProvider for deterministic testing."""

from __future__ import annotations

import asyncio
from collections.abc import Sequence
from dataclasses import dataclass, field
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

import pytest

from chatharness.providers.base import BaseRunProvider
from chatharness.types.events import (
    AssistantDeltaEvent,
    AssistantMessageEvent,
    ChatMessage,
    ModelChangedEvent,
    ModelDescription,
    RunFinishedEvent,
    ToolCompletedEvent,
    ToolProgressEvent,
    ToolStartedEvent,
    create_assistant_message,
)
from chatharness.types.providers import EphemeralOptions, QuestionAnswer
from chatharness.types.session import SessionInfo


@dataclass
class MockTurn:
    """A scripted reply for MockRunProvider.

    ``gate`` holds the run open until the test sets it, which is how tests
    get a prompt "in flight" to queue behind or cancel.
    """

    text: str = ""
    reasoning: str = ""
    tool_calls: list[dict[str, Any]] = field(default_factory=list)
    # Each tool call: {"id": "t1", "name": "Read", "args": {...}, "output": "...", "success": True}
    ask: dict[str, Any] | None = None
    # {"question": "Which?", "choices": ["a", "b"], "allow_freeform": False}
    gate: asyncio.Event | None = None


class MockRunProvider(BaseRunProvider):
    """A deterministic run provider for testing.

    Usage:
        provider = MockRunProvider(turns=[
            MockTurn(text="Hello there."),
            MockTurn(tool_calls=[{"id": "t1", "name": "Read", "output": "ok"}]),
        ])
    """

    def __init__(
        self,
        turns: list[MockTurn] | None = None,
        model: str = "mock-model",
        models: Sequence[str] = ("mock-model", "mock-large"),
        init_error: Exception | None = None,
        ephemeral_reply: str = "side answer",
        ephemeral_error: Exception | None = None,
        ephemeral_gate: asyncio.Event | None = None,
        sessions: dict[str, list[ChatMessage]] | None = None,
    ) -> None:
        super().__init__(model)
        self._turns = list(turns or [])
        self._turn_index = 0
        self._model_ids = list(models)
        self._init_error = init_error
        self._ephemeral_reply = ephemeral_reply
        self._ephemeral_error = ephemeral_error
        self._ephemeral_gate = ephemeral_gate
        self._sessions: dict[str, list[ChatMessage]] = sessions or {"mock-session": []}
        self._session_counter = 0

        self.prompts: list[str] = []
        self.attachments: list[Sequence[str] | None] = []
        self.answers: list[QuestionAnswer] = []
        self.ephemeral_prompts: list[tuple[str, EphemeralOptions]] = []
        self.calls: list[str] = []

    async def initialize(self) -> None:
        self.calls.append("initialize")
        if self._init_error is not None:
            raise self._init_error
        self._available_models = [ModelDescription(id=m, name=m) for m in self._model_ids]
        self._session_id = next(iter(self._sessions))

    async def send_prompt(
        self, text: str, run_id: str, attachments: Sequence[str] | None = None,
    ) -> None:
        self.calls.append("send_prompt")
        self.prompts.append(text)
        self.attachments.append(attachments)

        if self._turn_index < len(self._turns):
            turn = self._turns[self._turn_index]
            self._turn_index += 1
        else:
            turn = MockTurn(text="ok")

        generation = self._begin_run(run_id)
        if turn.gate is not None:
            await turn.gate.wait()

        for call in turn.tool_calls:
            if not self._is_live(generation):
                break
            self._emit(ToolStartedEvent(
                run_id=run_id,
                tool_call_id=call["id"],
                tool_name=call["name"],
                arguments=call.get("args"),
            ))
            for message in call.get("progress", []):
                self._emit(ToolProgressEvent(
                    run_id=run_id, tool_call_id=call["id"], message=message,
                ))
            self._emit(ToolCompletedEvent(
                run_id=run_id,
                tool_call_id=call["id"],
                success=call.get("success", True),
                output=call.get("output"),
                error=call.get("error"),
            ))

        if turn.ask is not None:
            answer = await self._request_user_input(
                turn.ask["question"],
                turn.ask.get("choices"),
                turn.ask.get("allow_freeform", True),
            )
            self.answers.append(answer)

        if turn.reasoning:
            self._stream_reasoning(generation, "r1", turn.reasoning)
            self._complete_reasoning(generation, "r1")
        for i in range(0, len(turn.text), 5):
            self._stream_text(generation, turn.text[i:i + 5])
        self._finish_run(generation)

    async def abort(self) -> None:
        self.calls.append("abort")
        self._mark_aborted()

    async def switch_model(self, model_id: str) -> None:
        self.calls.append("switch_model")
        if model_id not in self._model_ids:
            raise ValueError(f"Unknown model: {model_id}")
        self._model = model_id
        self._emit(ModelChangedEvent(model=model_id))

    async def run_ephemeral_prompt(
        self, prompt: str, run_id: str, options: EphemeralOptions,
    ) -> None:
        self.ephemeral_prompts.append((prompt, options))
        if self._ephemeral_error is not None:
            raise self._ephemeral_error
        if self._ephemeral_gate is not None:
            # Only the first ephemeral run waits at the gate.
            gate, self._ephemeral_gate = self._ephemeral_gate, None
            half = len(self._ephemeral_reply) // 2
            self._emit(AssistantDeltaEvent(run_id=run_id, text=self._ephemeral_reply[:half]))
            await gate.wait()
            self._emit(AssistantDeltaEvent(run_id=run_id, text=self._ephemeral_reply[half:]))
        else:
            self._emit(AssistantDeltaEvent(run_id=run_id, text=self._ephemeral_reply))
        self._emit(AssistantMessageEvent(
            run_id=run_id, message=create_assistant_message(self._ephemeral_reply),
        ))
        self._emit(RunFinishedEvent(run_id=run_id))

    async def create_new_session(self) -> str:
        self._session_counter += 1
        session_id = f"mock-session-{self._session_counter}"
        self._sessions[session_id] = []
        self._session_id = session_id
        return session_id

    async def switch_to_session(self, session_id: str) -> Sequence[ChatMessage] | None:
        if session_id not in self._sessions:
            raise ValueError(f"Unknown session: {session_id}")
        self._session_id = session_id
        return list(self._sessions[session_id])

    async def list_sessions(self) -> list[SessionInfo]:
        now = datetime.now(UTC)
        return [
            SessionInfo(session_id=sid, created_at=now, turns=len(messages) // 2)
            for sid, messages in self._sessions.items()
        ]

    async def shutdown(self) -> None:
        self.calls.append("shutdown")


class FailingRunProvider(MockRunProvider):
    """A mock provider whose prompts always raise."""

    async def send_prompt(
        self, text: str, run_id: str, attachments: Sequence[str] | None = None,
    ) -> None:
        self.prompts.append(text)
        raise RuntimeError("boom")


@pytest.fixture
def mock_provider() -> MockRunProvider:
    """A simple mock provider that responds with text."""
    return MockRunProvider(turns=[MockTurn(text="I can help with that.")])


@pytest.fixture
def tmp_skills(tmp_path: Path) -> Path:
    """A skills root with one skill shipping one command."""
    root = tmp_path / "skills"
    command_dir = root / "review" / "command"
    command_dir.mkdir(parents=True)
    (root / "review" / "SKILL.md").write_text("# Review skill\n\nBe thorough.\n")
    (command_dir / "check.md").write_text(
        "---\ndescription: Review a file\n---\nReview $ARGUMENTS carefully.\n"
    )
    return root
