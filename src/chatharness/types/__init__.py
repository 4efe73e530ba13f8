"""Type definitions for the chat harness."""

from chatharness.types.config import HarnessConfig
from chatharness.types.events import (
    ChatMessage,
    HarnessEvent,
    LogEvent,
    ToolCallItem,
    TranscriptItem,
    UIAction,
)
from chatharness.types.providers import (
    EphemeralOptions,
    QuestionAnswer,
    RunProvider,
    UserInputRequest,
)
from chatharness.types.session import SessionInfo
from chatharness.types.state import HarnessState, Limits

__all__ = [
    "ChatMessage",
    "EphemeralOptions",
    "HarnessConfig",
    "HarnessEvent",
    "HarnessState",
    "Limits",
    "LogEvent",
    "QuestionAnswer",
    "RunProvider",
    "SessionInfo",
    "ToolCallItem",
    "TranscriptItem",
    "UIAction",
    "UserInputRequest",
]
