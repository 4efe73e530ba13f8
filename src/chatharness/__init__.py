"""chatharness: event-sourced terminal chat harness.

Usage:
    from chatharness import Harness, SubmitPromptAction
    from chatharness.providers.openai import OpenAIRunProvider

    harness = Harness()
    harness.set_provider(OpenAIRunProvider(model="gpt-4o"))
    await harness.initialize()
    await harness.dispatch(SubmitPromptAction(text="hello"))
"""

from chatharness.core.harness import Harness, HarnessError, ProviderNotSetError
from chatharness.types.config import HarnessConfig
from chatharness.types.events import (
    AnswerQuestionAction,
    CancelAction,
    ChangeModelAction,
    CloseEphemeralAction,
    HarnessEvent,
    NewSessionAction,
    RefreshSessionsAction,
    SubmitPromptAction,
    SwitchSessionAction,
    UIAction,
)
from chatharness.types.state import HarnessState

__version__ = "0.1.0"

__all__ = [
    # Core API
    "Harness",
    "HarnessError",
    "ProviderNotSetError",
    # State and events
    "HarnessConfig",
    "HarnessEvent",
    "HarnessState",
    # Actions
    "AnswerQuestionAction",
    "CancelAction",
    "ChangeModelAction",
    "CloseEphemeralAction",
    "NewSessionAction",
    "RefreshSessionsAction",
    "SubmitPromptAction",
    "SwitchSessionAction",
    "UIAction",
]
