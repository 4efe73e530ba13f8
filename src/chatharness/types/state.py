"""Harness state types.

These records are the contract between the harness and anything rendering
it. Every record is frozen and every collection is a tuple: the harness
replaces the whole ``HarnessState`` on each event, so a reference obtained
from ``Harness.get_state()`` never changes underneath the reader.
"""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Literal

from chatharness.types.events import (
    ItemStatus,
    LogEvent,
    ModelDescription,
    TranscriptItem,
)
from chatharness.types.session import SessionInfo

HarnessStatus = Literal["idle", "running", "error"]

MAX_TRANSCRIPT = 500
MAX_LOGS = 100
MAX_TASKS = 50
MAX_SUBAGENTS = 50
MAX_SKILLS = 50


@dataclass(frozen=True, slots=True)
class Limits:
    """Caps for every bounded collection in the state."""

    max_transcript: int = MAX_TRANSCRIPT
    max_logs: int = MAX_LOGS
    max_tasks: int = MAX_TASKS
    max_subagents: int = MAX_SUBAGENTS
    max_skills: int = MAX_SKILLS


# ── Entity types ──────────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class ActiveTool:
    tool_call_id: str
    tool_name: str
    started_at: datetime
    arguments: dict[str, Any] | None = None
    progress: tuple[str, ...] = ()
    status: ItemStatus = "running"
    completed_at: datetime | None = None
    output: str | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class Task:
    id: str
    name: str
    started_at: datetime
    status: ItemStatus = "running"
    completed_at: datetime | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class Subagent:
    tool_call_id: str
    agent_name: str
    started_at: datetime
    agent_display_name: str = ""
    agent_description: str = ""
    status: ItemStatus = "running"
    completed_at: datetime | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class Skill:
    name: str
    path: str
    invoked_at: datetime
    invoke_count: int = 1


@dataclass(frozen=True, slots=True)
class PendingQuestion:
    request_id: str
    question: str
    choices: tuple[str, ...] | None = None
    allow_freeform: bool = True


@dataclass(frozen=True, slots=True)
class EphemeralRun:
    """An isolated background conversation, separate from the transcript."""

    run_id: str
    display_text: str
    started_at: datetime
    transcript: tuple[TranscriptItem, ...] = ()
    streaming_content: str = ""
    status: ItemStatus = "running"
    completed_at: datetime | None = None
    error: str | None = None


@dataclass(frozen=True, slots=True)
class ContextInfo:
    current_tokens: int = 0
    token_limit: int = 0
    conversation_length: int = 0
    remaining_premium_requests: int | None = None
    consumed_requests: int = 0

    def fresh(self) -> ContextInfo:
        """Zero the session-scoped fields, keeping cross-session counters."""
        return ContextInfo(
            remaining_premium_requests=self.remaining_premium_requests,
            consumed_requests=self.consumed_requests,
        )


# ── Aggregate state ───────────────────────────────────────────────────────────


@dataclass(frozen=True, slots=True)
class HarnessState:
    status: HarnessStatus = "idle"
    transcript: tuple[TranscriptItem, ...] = ()
    logs: tuple[LogEvent, ...] = ()
    current_run_id: str | None = None
    streaming_content: str = ""
    streaming_reasoning: str = ""
    active_tools: tuple[ActiveTool, ...] = ()
    tasks: tuple[Task, ...] = ()
    subagents: tuple[Subagent, ...] = ()
    skills: tuple[Skill, ...] = ()
    current_model: str | None = None
    available_models: tuple[ModelDescription, ...] = ()
    message_queue: tuple[str, ...] = ()
    current_todo: str | None = None
    current_plan: str | None = None
    current_intent: str | None = None
    pending_question: PendingQuestion | None = None
    current_session_id: str | None = None
    available_sessions: tuple[SessionInfo, ...] = ()
    ephemeral_run: EphemeralRun | None = None
    context_info: ContextInfo = field(default_factory=ContextInfo)

    def active_tool(self, tool_call_id: str) -> ActiveTool | None:
        """Look up an active tool by its call id."""
        for tool in self.active_tools:
            if tool.tool_call_id == tool_call_id:
                return tool
        return None


INITIAL_STATE = HarnessState()
