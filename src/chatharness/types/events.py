"""Internal event protocol for the chat harness.

Events are immutable records describing something that happened; actions are
immutable records describing something the user asked for. Both carry a
class-level ``type`` tag so they can be logged and matched by name, and both
are plain values (no callbacks) so the reducer stays pure and plugins can
observe everything without knowing about the run provider.
"""

from __future__ import annotations

import secrets
import time
from dataclasses import dataclass, field
from datetime import UTC, datetime
from typing import Any, ClassVar, Literal

from chatharness.types.session import SessionInfo

MessageRole = Literal["user", "assistant", "tool", "system"]
ItemStatus = Literal["running", "completed", "failed"]
LogLevel = Literal["debug", "info", "warn", "error"]


def _now() -> datetime:
    return datetime.now(UTC)


# ── Transcript items ──────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ChatMessage:
    """A text message in the transcript."""

    id: str
    role: MessageRole
    content: str
    reasoning: str | None = None
    created_at: datetime = field(default_factory=_now)
    kind: ClassVar[str] = "message"


@dataclass(frozen=True, slots=True)
class ToolCallItem:
    """An inline tool invocation in the transcript."""

    id: str
    tool_call_id: str
    tool_name: str
    arguments: dict[str, Any] | None = None
    progress: tuple[str, ...] = ()
    status: ItemStatus = "running"
    started_at: datetime = field(default_factory=_now)
    completed_at: datetime | None = None
    output: str | None = None
    error: str | None = None
    kind: ClassVar[str] = "tool-call"


TranscriptItem = ChatMessage | ToolCallItem


# ── Run lifecycle ─────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class RunStartedEvent:
    run_id: str
    created_at: datetime = field(default_factory=_now)
    type: ClassVar[str] = "run.started"


@dataclass(frozen=True, slots=True)
class RunFinishedEvent:
    run_id: str
    created_at: datetime = field(default_factory=_now)
    type: ClassVar[str] = "run.finished"


@dataclass(frozen=True, slots=True)
class RunCancelledEvent:
    run_id: str
    created_at: datetime = field(default_factory=_now)
    type: ClassVar[str] = "run.cancelled"


@dataclass(frozen=True, slots=True)
class TurnStartedEvent:
    run_id: str
    turn_id: str
    type: ClassVar[str] = "turn.started"


@dataclass(frozen=True, slots=True)
class TurnEndedEvent:
    run_id: str
    turn_id: str
    type: ClassVar[str] = "turn.ended"


# ── Streaming and messages ────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class AssistantDeltaEvent:
    run_id: str
    text: str
    type: ClassVar[str] = "assistant.delta"


@dataclass(frozen=True, slots=True)
class AssistantMessageEvent:
    run_id: str
    message: ChatMessage
    type: ClassVar[str] = "assistant.message"


@dataclass(frozen=True, slots=True)
class ReasoningDeltaEvent:
    run_id: str
    reasoning_id: str
    text: str
    type: ClassVar[str] = "reasoning.delta"


@dataclass(frozen=True, slots=True)
class ReasoningMessageEvent:
    run_id: str
    reasoning_id: str
    content: str
    type: ClassVar[str] = "reasoning.message"


@dataclass(frozen=True, slots=True)
class UserMessageEvent:
    """A user message entering the foreground transcript."""

    message: ChatMessage
    run_id: str | None = None
    type: ClassVar[str] = "user.message"


@dataclass(frozen=True, slots=True)
class LogEvent:
    run_id: str | None
    level: LogLevel
    message: str
    data: Any = None
    created_at: datetime = field(default_factory=_now)
    type: ClassVar[str] = "log"


# ── Tools, subagents, skills ──────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ToolStartedEvent:
    run_id: str
    tool_call_id: str
    tool_name: str
    arguments: dict[str, Any] | None = None
    type: ClassVar[str] = "tool.started"


@dataclass(frozen=True, slots=True)
class ToolProgressEvent:
    run_id: str
    tool_call_id: str
    message: str
    type: ClassVar[str] = "tool.progress"


@dataclass(frozen=True, slots=True)
class ToolCompletedEvent:
    run_id: str
    tool_call_id: str
    success: bool
    output: str | None = None
    error: str | None = None
    type: ClassVar[str] = "tool.completed"


@dataclass(frozen=True, slots=True)
class SubagentStartedEvent:
    run_id: str
    tool_call_id: str
    agent_name: str
    agent_display_name: str = ""
    agent_description: str = ""
    type: ClassVar[str] = "subagent.started"


@dataclass(frozen=True, slots=True)
class SubagentCompletedEvent:
    run_id: str
    tool_call_id: str
    agent_name: str
    type: ClassVar[str] = "subagent.completed"


@dataclass(frozen=True, slots=True)
class SubagentFailedEvent:
    run_id: str
    tool_call_id: str
    agent_name: str
    error: str
    type: ClassVar[str] = "subagent.failed"


@dataclass(frozen=True, slots=True)
class SkillInvokedEvent:
    run_id: str
    name: str
    path: str
    type: ClassVar[str] = "skill.invoked"


# ── Scratch fields ────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class IntentUpdatedEvent:
    run_id: str
    intent: str
    type: ClassVar[str] = "intent.updated"


@dataclass(frozen=True, slots=True)
class TodoUpdatedEvent:
    run_id: str
    todos: str
    type: ClassVar[str] = "todo.updated"


@dataclass(frozen=True, slots=True)
class PlanUpdatedEvent:
    content: str
    type: ClassVar[str] = "plan.updated"


# ── Model, usage, quota ───────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ModelDescription:
    """A model the run provider can switch to."""

    id: str
    name: str


@dataclass(frozen=True, slots=True)
class ModelChangedEvent:
    model: str | None
    type: ClassVar[str] = "model.changed"


@dataclass(frozen=True, slots=True)
class ModelsUpdatedEvent:
    """Current model and catalog as reported by the provider."""

    model: str | None
    available_models: tuple[ModelDescription, ...] = ()
    reset_context: bool = False
    type: ClassVar[str] = "models.updated"


@dataclass(frozen=True, slots=True)
class UsageInfoEvent:
    token_limit: int
    current_tokens: int
    messages_length: int
    type: ClassVar[str] = "usage.info"


@dataclass(frozen=True, slots=True)
class QuotaInfoEvent:
    remaining_premium_requests: int | None
    type: ClassVar[str] = "quota.info"


# ── Questions ─────────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class QuestionRequestedEvent:
    request_id: str
    question: str
    choices: tuple[str, ...] | None = None
    allow_freeform: bool = True
    type: ClassVar[str] = "question.requested"


@dataclass(frozen=True, slots=True)
class QuestionAnsweredEvent:
    request_id: str
    answer: str
    was_freeform: bool
    type: ClassVar[str] = "question.answered"


# ── Sessions ──────────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class SessionSwitchedEvent:
    session_id: str
    transcript: tuple[TranscriptItem, ...] | None = None
    type: ClassVar[str] = "session.switched"


@dataclass(frozen=True, slots=True)
class SessionCreatedEvent:
    session_id: str
    type: ClassVar[str] = "session.created"


@dataclass(frozen=True, slots=True)
class SessionListUpdatedEvent:
    sessions: tuple[SessionInfo, ...]
    type: ClassVar[str] = "session.list.updated"


# ── Orchestrator bookkeeping ──────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class MessageQueuedEvent:
    text: str
    type: ClassVar[str] = "message.queued"


@dataclass(frozen=True, slots=True)
class MessageDequeuedEvent:
    text: str
    type: ClassVar[str] = "message.dequeued"


@dataclass(frozen=True, slots=True)
class EphemeralStartedEvent:
    """Opens the ephemeral slot; emitted before the run's ``run.started``.

    The id is not named ``run_id``: the slot does not exist yet, so this
    event must reach the main transition.
    """

    ephemeral_run_id: str
    message: ChatMessage
    created_at: datetime = field(default_factory=_now)
    type: ClassVar[str] = "ephemeral.started"


@dataclass(frozen=True, slots=True)
class EphemeralFailedEvent:
    run_id: str
    error: str
    type: ClassVar[str] = "ephemeral.failed"


@dataclass(frozen=True, slots=True)
class EphemeralClosedEvent:
    type: ClassVar[str] = "ephemeral.closed"


@dataclass(frozen=True, slots=True)
class HarnessFailedEvent:
    """Provider initialization failed; the harness is unusable."""

    error: str
    type: ClassVar[str] = "harness.failed"


HarnessEvent = (
    RunStartedEvent
    | RunFinishedEvent
    | RunCancelledEvent
    | TurnStartedEvent
    | TurnEndedEvent
    | AssistantDeltaEvent
    | AssistantMessageEvent
    | ReasoningDeltaEvent
    | ReasoningMessageEvent
    | UserMessageEvent
    | LogEvent
    | ToolStartedEvent
    | ToolProgressEvent
    | ToolCompletedEvent
    | SubagentStartedEvent
    | SubagentCompletedEvent
    | SubagentFailedEvent
    | SkillInvokedEvent
    | IntentUpdatedEvent
    | TodoUpdatedEvent
    | PlanUpdatedEvent
    | ModelChangedEvent
    | ModelsUpdatedEvent
    | UsageInfoEvent
    | QuotaInfoEvent
    | QuestionRequestedEvent
    | QuestionAnsweredEvent
    | SessionSwitchedEvent
    | SessionCreatedEvent
    | SessionListUpdatedEvent
    | MessageQueuedEvent
    | MessageDequeuedEvent
    | EphemeralStartedEvent
    | EphemeralFailedEvent
    | EphemeralClosedEvent
    | HarnessFailedEvent
)


# ── UI actions ────────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class SubmitPromptAction:
    text: str
    attachments: tuple[str, ...] = ()
    type: ClassVar[str] = "submit.prompt"


@dataclass(frozen=True, slots=True)
class CancelAction:
    type: ClassVar[str] = "cancel"


@dataclass(frozen=True, slots=True)
class ChangeModelAction:
    model_id: str
    type: ClassVar[str] = "change.model"


@dataclass(frozen=True, slots=True)
class AnswerQuestionAction:
    request_id: str
    answer: str
    was_freeform: bool = True
    type: ClassVar[str] = "answer.question"


@dataclass(frozen=True, slots=True)
class NewSessionAction:
    type: ClassVar[str] = "session.new"


@dataclass(frozen=True, slots=True)
class SwitchSessionAction:
    session_id: str
    type: ClassVar[str] = "session.switch"


@dataclass(frozen=True, slots=True)
class RefreshSessionsAction:
    type: ClassVar[str] = "session.refresh"


@dataclass(frozen=True, slots=True)
class CloseEphemeralAction:
    type: ClassVar[str] = "ephemeral.close"


UIAction = (
    SubmitPromptAction
    | CancelAction
    | ChangeModelAction
    | AnswerQuestionAction
    | NewSessionAction
    | SwitchSessionAction
    | RefreshSessionsAction
    | CloseEphemeralAction
)


# ── Helpers ───────────────────────────────────────────────────────────────────


def generate_id() -> str:
    """Return a short id that sorts roughly by creation time."""
    return f"{int(time.time() * 1000)}-{secrets.token_hex(4)}"


def create_user_message(content: str) -> ChatMessage:
    return ChatMessage(id=generate_id(), role="user", content=content)


def create_assistant_message(content: str, reasoning: str | None = None) -> ChatMessage:
    return ChatMessage(
        id=generate_id(), role="assistant", content=content, reasoning=reasoning,
    )


def create_log_event(
    level: LogLevel,
    message: str,
    run_id: str | None = None,
    data: Any = None,
) -> LogEvent:
    return LogEvent(run_id=run_id, level=level, message=message, data=data)
