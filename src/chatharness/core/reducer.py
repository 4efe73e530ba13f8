"""State reducer for HarnessEvent -> HarnessState transitions.

Kept apart from the Harness class so the orchestrator stays focused on
coordination (dispatch, subscriptions, provider lifecycle).

The tool-call index lives in :class:`ReducerContext`, outside the state, so
``tool.progress`` and ``tool.completed`` can find their transcript entry
without a scan. This module is the only owner of transcript length changes:
every append that trims also rebuilds the index, and every session swap
clears it.
"""

from __future__ import annotations

from collections import deque
from collections.abc import Callable
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime

from chatharness.types.events import (
    AssistantDeltaEvent,
    AssistantMessageEvent,
    EphemeralClosedEvent,
    EphemeralFailedEvent,
    EphemeralStartedEvent,
    HarnessEvent,
    HarnessFailedEvent,
    IntentUpdatedEvent,
    LogEvent,
    MessageDequeuedEvent,
    MessageQueuedEvent,
    ModelChangedEvent,
    ModelsUpdatedEvent,
    PlanUpdatedEvent,
    QuestionAnsweredEvent,
    QuestionRequestedEvent,
    QuotaInfoEvent,
    ReasoningDeltaEvent,
    RunCancelledEvent,
    RunFinishedEvent,
    RunStartedEvent,
    SessionCreatedEvent,
    SessionListUpdatedEvent,
    SessionSwitchedEvent,
    SkillInvokedEvent,
    SubagentCompletedEvent,
    SubagentFailedEvent,
    SubagentStartedEvent,
    TodoUpdatedEvent,
    ToolCallItem,
    ToolCompletedEvent,
    ToolProgressEvent,
    ToolStartedEvent,
    TranscriptItem,
    UsageInfoEvent,
    UserMessageEvent,
    create_assistant_message,
)
from chatharness.types.state import (
    ActiveTool,
    EphemeralRun,
    HarnessState,
    Limits,
    PendingQuestion,
    Skill,
    Subagent,
    Task,
)


@dataclass(slots=True)
class ReducerContext:
    """Side-channel state shared by successive reducer calls."""

    tool_call_index: dict[str, int] = field(default_factory=dict)
    limits: Limits = field(default_factory=Limits)
    # Closed or replaced ephemeral runs whose late events must be dropped.
    retired_ephemeral_ids: deque[str] = field(default_factory=lambda: deque(maxlen=32))


def _now() -> datetime:
    return datetime.now(UTC)


# ── Helpers ───────────────────────────────────────────────────────────────────


def _reset_run_fields() -> dict[str, object]:
    """Fields cleared at the start and end of every run and on session swaps."""
    return {
        "streaming_content": "",
        "streaming_reasoning": "",
        "current_intent": None,
        "current_todo": None,
        "current_plan": None,
    }


def _bounded(items: tuple, item: object, limit: int) -> tuple:
    """Append *item*, keeping only the most recent *limit* entries."""
    combined = (*items, item)
    return combined[max(0, len(combined) - limit):]


def rebuild_tool_call_index(
    transcript: tuple[TranscriptItem, ...], ctx: ReducerContext,
) -> None:
    """Recompute every tool-call position from scratch."""
    ctx.tool_call_index.clear()
    for position, item in enumerate(transcript):
        if isinstance(item, ToolCallItem):
            ctx.tool_call_index[item.tool_call_id] = position


def _trim_transcript(
    transcript: tuple[TranscriptItem, ...], ctx: ReducerContext,
) -> tuple[TranscriptItem, ...]:
    excess = len(transcript) - ctx.limits.max_transcript
    if excess <= 0:
        return transcript
    trimmed = transcript[excess:]
    # Positions shifted, so the whole index is stale.
    rebuild_tool_call_index(trimmed, ctx)
    return trimmed


def _append_transcript(
    transcript: tuple[TranscriptItem, ...],
    item: TranscriptItem,
    ctx: ReducerContext,
) -> tuple[TranscriptItem, ...]:
    extended = (*transcript, item)
    if isinstance(item, ToolCallItem):
        ctx.tool_call_index[item.tool_call_id] = len(extended) - 1
    return _trim_transcript(extended, ctx)


def _update_indexed_tool(
    transcript: tuple[TranscriptItem, ...],
    tool_call_id: str,
    ctx: ReducerContext,
    update: Callable[[ToolCallItem], ToolCallItem],
) -> tuple[TranscriptItem, ...]:
    """Copy-on-write update of the transcript entry for *tool_call_id*."""
    position = ctx.tool_call_index.get(tool_call_id)
    if position is None or position >= len(transcript):
        return transcript
    item = transcript[position]
    if not isinstance(item, ToolCallItem) or item.tool_call_id != tool_call_id:
        return transcript
    updated = list(transcript)
    updated[position] = update(item)
    return tuple(updated)


def _is_stale(state: HarnessState, run_id: str) -> bool:
    """True when *run_id* is not the current foreground run, including when idle."""
    return run_id != state.current_run_id


def _reset_session(
    state: HarnessState,
    session_id: str,
    transcript: tuple[TranscriptItem, ...],
    ctx: ReducerContext,
) -> HarnessState:
    transcript = transcript[max(0, len(transcript) - ctx.limits.max_transcript):]
    rebuild_tool_call_index(transcript, ctx)
    return replace(
        state,
        current_session_id=session_id,
        transcript=transcript,
        active_tools=(),
        pending_question=None,
        context_info=state.context_info.fresh(),
        **_reset_run_fields(),
    )


# ── Main reducer ──────────────────────────────────────────────────────────────


def process_event(
    state: HarnessState,
    event: HarnessEvent,
    ctx: ReducerContext,
) -> HarnessState:
    """Fold one event into the foreground state. Unknown events are no-ops."""
    limits = ctx.limits

    match event:
        case RunStartedEvent(run_id=run_id):
            return replace(
                state,
                status="running",
                current_run_id=run_id,
                active_tools=tuple(t for t in state.active_tools if t.status == "running"),
                **_reset_run_fields(),
            )

        case AssistantDeltaEvent(run_id=run_id, text=text):
            if _is_stale(state, run_id):
                return state
            return replace(state, streaming_content=state.streaming_content + text)

        case ReasoningDeltaEvent(run_id=run_id, text=text):
            if _is_stale(state, run_id):
                return state
            return replace(state, streaming_reasoning=state.streaming_reasoning + text)

        case AssistantMessageEvent(run_id=run_id, message=message):
            if _is_stale(state, run_id):
                return state
            finalized = replace(
                message, reasoning=state.streaming_reasoning or message.reasoning,
            )
            return replace(
                state,
                transcript=_append_transcript(state.transcript, finalized, ctx),
                streaming_content="",
                streaming_reasoning="",
            )

        case UserMessageEvent(message=message):
            return replace(
                state, transcript=_append_transcript(state.transcript, message, ctx),
            )

        case LogEvent():
            return replace(state, logs=_bounded(state.logs, event, limits.max_logs))

        case RunCancelledEvent(run_id=run_id):
            if run_id != state.current_run_id:
                return state
            return replace(
                state,
                status="idle",
                current_run_id=None,
                pending_question=None,
                **_reset_run_fields(),
            )

        case RunFinishedEvent(run_id=run_id):
            # Duplicate or late finish for a run that is no longer current.
            if state.current_run_id is None or run_id != state.current_run_id:
                return state
            transcript = state.transcript
            if state.streaming_content:
                # The provider ended the run without a final message.
                final = create_assistant_message(
                    state.streaming_content, state.streaming_reasoning or None,
                )
                transcript = _append_transcript(transcript, final, ctx)
            return replace(
                state,
                status="idle",
                current_run_id=None,
                transcript=transcript,
                context_info=replace(
                    state.context_info,
                    consumed_requests=state.context_info.consumed_requests + 1,
                ),
                **_reset_run_fields(),
            )

        case ToolStartedEvent(tool_call_id=tool_call_id, tool_name=tool_name):
            started_at = _now()
            arguments = dict(event.arguments) if event.arguments is not None else None
            item = ToolCallItem(
                id=f"tool-{tool_call_id}",
                tool_call_id=tool_call_id,
                tool_name=tool_name,
                arguments=arguments,
                started_at=started_at,
            )
            tool = ActiveTool(
                tool_call_id=tool_call_id,
                tool_name=tool_name,
                arguments=arguments,
                started_at=started_at,
            )
            task = Task(id=tool_call_id, name=tool_name, started_at=started_at)
            return replace(
                state,
                transcript=_append_transcript(state.transcript, item, ctx),
                active_tools=(*state.active_tools, tool),
                tasks=_bounded(state.tasks, task, limits.max_tasks),
            )

        case ToolProgressEvent(tool_call_id=tool_call_id, message=message):
            tools = tuple(
                replace(t, progress=(*t.progress, message))
                if t.tool_call_id == tool_call_id else t
                for t in state.active_tools
            )
            transcript = _update_indexed_tool(
                state.transcript,
                tool_call_id,
                ctx,
                lambda item: replace(item, progress=(*item.progress, message)),
            )
            return replace(state, active_tools=tools, transcript=transcript)

        case ToolCompletedEvent(tool_call_id=tool_call_id, success=success):
            completed_at = _now()
            status = "completed" if success else "failed"
            tools = tuple(
                replace(
                    t,
                    status=status,
                    completed_at=completed_at,
                    output=event.output,
                    error=event.error,
                )
                if t.tool_call_id == tool_call_id else t
                for t in state.active_tools
            )
            tasks = tuple(
                replace(t, status=status, completed_at=completed_at, error=event.error)
                if t.id == tool_call_id else t
                for t in state.tasks
            )
            transcript = _update_indexed_tool(
                state.transcript,
                tool_call_id,
                ctx,
                lambda item: replace(
                    item,
                    status=status,
                    completed_at=completed_at,
                    output=event.output,
                    error=event.error,
                ),
            )
            return replace(state, active_tools=tools, tasks=tasks, transcript=transcript)

        case ModelChangedEvent(model=model):
            return replace(state, current_model=model)

        case ModelsUpdatedEvent(model=model, available_models=models):
            context_info = (
                state.context_info.fresh() if event.reset_context else state.context_info
            )
            return replace(
                state,
                current_model=model,
                available_models=tuple(models),
                context_info=context_info,
            )

        case UsageInfoEvent():
            return replace(
                state,
                context_info=replace(
                    state.context_info,
                    current_tokens=event.current_tokens,
                    token_limit=event.token_limit,
                    conversation_length=event.messages_length,
                ),
            )

        case QuotaInfoEvent(remaining_premium_requests=remaining):
            return replace(
                state,
                context_info=replace(state.context_info, remaining_premium_requests=remaining),
            )

        case SubagentStartedEvent():
            subagent = Subagent(
                tool_call_id=event.tool_call_id,
                agent_name=event.agent_name,
                agent_display_name=event.agent_display_name,
                agent_description=event.agent_description,
                started_at=_now(),
            )
            return replace(
                state,
                subagents=_bounded(state.subagents, subagent, limits.max_subagents),
            )

        case SubagentCompletedEvent(tool_call_id=tool_call_id):
            subagents = tuple(
                replace(a, status="completed", completed_at=_now())
                if a.tool_call_id == tool_call_id else a
                for a in state.subagents
            )
            return replace(state, subagents=subagents)

        case SubagentFailedEvent(tool_call_id=tool_call_id, error=error):
            subagents = tuple(
                replace(a, status="failed", completed_at=_now(), error=error)
                if a.tool_call_id == tool_call_id else a
                for a in state.subagents
            )
            return replace(state, subagents=subagents)

        case SkillInvokedEvent(name=name, path=path):
            if any(s.name == name for s in state.skills):
                skills = tuple(
                    replace(s, invoked_at=_now(), invoke_count=s.invoke_count + 1)
                    if s.name == name else s
                    for s in state.skills
                )
                return replace(state, skills=skills)
            skill = Skill(name=name, path=path, invoked_at=_now())
            return replace(state, skills=_bounded(state.skills, skill, limits.max_skills))

        case IntentUpdatedEvent(intent=intent):
            return replace(state, current_intent=intent)

        case TodoUpdatedEvent(todos=todos):
            return replace(state, current_todo=todos)

        case PlanUpdatedEvent(content=content):
            return replace(state, current_plan=content)

        case QuestionRequestedEvent():
            question = PendingQuestion(
                request_id=event.request_id,
                question=event.question,
                choices=event.choices,
                allow_freeform=event.allow_freeform,
            )
            return replace(state, pending_question=question)

        case QuestionAnsweredEvent(request_id=request_id):
            pending = state.pending_question
            if pending is None or pending.request_id != request_id:
                return state
            return replace(state, pending_question=None)

        case SessionSwitchedEvent(session_id=session_id, transcript=transcript):
            return _reset_session(state, session_id, tuple(transcript or ()), ctx)

        case SessionCreatedEvent(session_id=session_id):
            return _reset_session(state, session_id, (), ctx)

        case SessionListUpdatedEvent(sessions=sessions):
            return replace(state, available_sessions=tuple(sessions))

        case MessageQueuedEvent(text=text):
            return replace(state, message_queue=(*state.message_queue, text))

        case MessageDequeuedEvent(text=text):
            queue = list(state.message_queue)
            if text in queue:
                queue.remove(text)
            return replace(state, message_queue=tuple(queue))

        case EphemeralStartedEvent(ephemeral_run_id=run_id, message=message):
            if state.ephemeral_run is not None and state.ephemeral_run.run_id != run_id:
                ctx.retired_ephemeral_ids.append(state.ephemeral_run.run_id)
            ephemeral = EphemeralRun(
                run_id=run_id,
                display_text=message.content,
                started_at=event.created_at,
                transcript=(message,),
            )
            return replace(state, ephemeral_run=ephemeral)

        case EphemeralClosedEvent():
            if state.ephemeral_run is not None:
                ctx.retired_ephemeral_ids.append(state.ephemeral_run.run_id)
            return replace(state, ephemeral_run=None)

        case HarnessFailedEvent():
            return replace(
                state, status="error", current_run_id=None, **_reset_run_fields(),
            )

        case _:
            return state


# ── Ephemeral reducer ─────────────────────────────────────────────────────────


def process_ephemeral_event(state: HarnessState, event: HarnessEvent) -> HarnessState:
    """Fold an event belonging to the ephemeral run into its isolated slot."""
    ephemeral = state.ephemeral_run
    if ephemeral is None:
        return state

    match event:
        case AssistantDeltaEvent(text=text):
            ephemeral = replace(
                ephemeral, streaming_content=ephemeral.streaming_content + text,
            )

        case AssistantMessageEvent(message=message):
            ephemeral = replace(
                ephemeral,
                transcript=(*ephemeral.transcript, message),
                streaming_content="",
            )

        case RunFinishedEvent():
            transcript = ephemeral.transcript
            if ephemeral.streaming_content:
                transcript = (
                    *transcript, create_assistant_message(ephemeral.streaming_content),
                )
            ephemeral = replace(
                ephemeral,
                transcript=transcript,
                streaming_content="",
                status="completed" if ephemeral.status == "running" else ephemeral.status,
                completed_at=ephemeral.completed_at or _now(),
            )

        case RunCancelledEvent():
            ephemeral = replace(ephemeral, status="failed", completed_at=_now())

        case EphemeralFailedEvent(error=error):
            ephemeral = replace(
                ephemeral, status="failed", completed_at=_now(), error=error,
            )

        case _:
            # Reasoning, tools and the rest never reach the ephemeral slot.
            return state

    return replace(state, ephemeral_run=ephemeral)


def is_ephemeral_event(state: HarnessState, event: HarnessEvent) -> bool:
    """True when *event* belongs to the live ephemeral run."""
    if state.ephemeral_run is None or isinstance(event, LogEvent):
        return False
    return getattr(event, "run_id", None) == state.ephemeral_run.run_id


def apply_event(
    state: HarnessState,
    event: HarnessEvent,
    ctx: ReducerContext,
) -> HarnessState:
    """Route *event* to the ephemeral or the main transition."""
    if (
        not isinstance(event, LogEvent)
        and getattr(event, "run_id", None) in ctx.retired_ephemeral_ids
    ):
        return state
    if is_ephemeral_event(state, event):
        return process_ephemeral_event(state, event)
    return process_event(state, event, ctx)
