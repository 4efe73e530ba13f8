"""Run provider protocol: the contract the harness needs from a backend."""

from __future__ import annotations

from collections.abc import Awaitable, Callable, Sequence
from dataclasses import dataclass
from typing import Protocol, runtime_checkable

from chatharness.types.events import ChatMessage, HarnessEvent, ModelDescription
from chatharness.types.session import SessionInfo


@dataclass(frozen=True, slots=True)
class UserInputRequest:
    """A question the backend wants the user to answer."""

    question: str
    choices: tuple[str, ...] | None = None
    allow_freeform: bool = True


@dataclass(frozen=True, slots=True)
class QuestionAnswer:
    answer: str
    was_freeform: bool


@dataclass(frozen=True, slots=True)
class EphemeralOptions:
    """Options for a prompt that must not touch the main conversation."""

    model: str | None = None


EventHandler = Callable[[HarnessEvent], None]
UserInputHandler = Callable[[UserInputRequest], Awaitable[QuestionAnswer]]


@runtime_checkable
class RunProvider(Protocol):
    """Protocol every run provider must implement.

    Providers push events through the handler registered with
    :meth:`on_event`; the harness never polls them.
    """

    @property
    def current_model(self) -> str | None: ...

    @property
    def available_models(self) -> Sequence[ModelDescription]: ...

    @property
    def current_session_id(self) -> str | None: ...

    def on_event(self, handler: EventHandler) -> None: ...

    def on_user_input_request(self, handler: UserInputHandler) -> None: ...

    async def initialize(self) -> None: ...

    async def send_prompt(
        self, text: str, run_id: str, attachments: Sequence[str] | None = None,
    ) -> None: ...

    async def abort(self) -> None: ...

    async def switch_model(self, model_id: str) -> None: ...

    async def run_ephemeral_prompt(
        self, prompt: str, run_id: str, options: EphemeralOptions,
    ) -> None: ...

    async def create_new_session(self) -> str: ...

    async def switch_to_session(self, session_id: str) -> Sequence[ChatMessage] | None:
        """Switch conversations, optionally returning the prior messages."""
        ...

    async def list_sessions(self) -> list[SessionInfo]: ...

    async def shutdown(self) -> None: ...
