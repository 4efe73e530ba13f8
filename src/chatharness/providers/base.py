"""Base run provider with shared run bookkeeping and retry logic."""

from __future__ import annotations

import asyncio
import logging
from abc import ABC, abstractmethod
from collections.abc import Sequence
from typing import Any

from chatharness.types.events import (
    AssistantDeltaEvent,
    AssistantMessageEvent,
    ChatMessage,
    HarnessEvent,
    ModelDescription,
    ReasoningDeltaEvent,
    ReasoningMessageEvent,
    RunFinishedEvent,
    create_assistant_message,
    create_log_event,
)
from chatharness.types.providers import (
    EphemeralOptions,
    EventHandler,
    QuestionAnswer,
    UserInputHandler,
    UserInputRequest,
)
from chatharness.types.session import SessionInfo

logger = logging.getLogger(__name__)

# Rate limits, overload and dropped connections are retried.
_RETRYABLE_STATUS_CODES: frozenset[int] = frozenset({429, 503, 529})
_MAX_RETRIES: int = 3
_BACKOFF_BASE: float = 1.0  # seconds; doubled each retry


def _is_retryable(exc: BaseException) -> bool:
    """Return True when *exc* represents a transient error worth retrying."""
    if type(exc).__name__ in {"RateLimitError", "APITimeoutError", "APIConnectionError"}:
        return True
    status_code: int | None = getattr(exc, "status_code", None)
    return status_code is not None and status_code in _RETRYABLE_STATUS_CODES


class BaseRunProvider(ABC):
    """Abstract base class for run providers.

    Holds what every backend needs to speak the harness event protocol:
    the registered handlers, the in-flight run's buffers, and a pair of
    generation counters. ``_expected_generation`` is bumped by each
    :meth:`_begin_run`; a backend callback captured under an older
    generation is dropped, so a slow stream from a cancelled run can never
    leak into the next one.
    """

    def __init__(self, model: str | None = None) -> None:
        self._model = model
        self._available_models: list[ModelDescription] = []
        self._session_id: str | None = None
        self._event_handler: EventHandler | None = None
        self._input_handler: UserInputHandler | None = None

        self._current_run_id: str | None = None
        self._streaming_buffer = ""
        self._reasoning_buffer = ""
        self._cancelled = False
        self._processing = False
        self._expected_generation = 0
        self._current_generation = 0

    # ------------------------------------------------------------------
    # RunProvider protocol: properties and registration
    # ------------------------------------------------------------------

    @property
    def current_model(self) -> str | None:
        return self._model

    @property
    def available_models(self) -> Sequence[ModelDescription]:
        return list(self._available_models)

    @property
    def current_session_id(self) -> str | None:
        return self._session_id

    @property
    def is_processing(self) -> bool:
        return self._processing

    def on_event(self, handler: EventHandler) -> None:
        self._event_handler = handler

    def on_user_input_request(self, handler: UserInputHandler) -> None:
        self._input_handler = handler

    # ------------------------------------------------------------------
    # Abstract interface
    # ------------------------------------------------------------------

    @abstractmethod
    async def initialize(self) -> None: ...

    @abstractmethod
    async def send_prompt(
        self, text: str, run_id: str, attachments: Sequence[str] | None = None,
    ) -> None: ...

    @abstractmethod
    async def abort(self) -> None: ...

    @abstractmethod
    async def switch_model(self, model_id: str) -> None: ...

    @abstractmethod
    async def run_ephemeral_prompt(
        self, prompt: str, run_id: str, options: EphemeralOptions,
    ) -> None: ...

    @abstractmethod
    async def create_new_session(self) -> str: ...

    @abstractmethod
    async def switch_to_session(self, session_id: str) -> Sequence[ChatMessage] | None: ...

    @abstractmethod
    async def list_sessions(self) -> list[SessionInfo]: ...

    @abstractmethod
    async def shutdown(self) -> None: ...

    # ------------------------------------------------------------------
    # Protected helpers
    # ------------------------------------------------------------------

    def _emit(self, event: HarnessEvent) -> None:
        if self._event_handler is None:
            logger.debug("Dropping %s: no event handler registered", event.type)
            return
        self._event_handler(event)

    def _begin_run(self, run_id: str) -> int:
        """Start bookkeeping for a foreground run and return its generation."""
        self._expected_generation += 1
        self._current_generation = self._expected_generation
        self._current_run_id = run_id
        self._reset_buffers()
        self._cancelled = False
        self._processing = True
        return self._current_generation

    def _is_live(self, generation: int) -> bool:
        return (
            not self._cancelled
            and self._processing
            and generation == self._expected_generation
        )

    def _stream_text(self, generation: int, text: str) -> None:
        if not text or not self._is_live(generation) or self._current_run_id is None:
            return
        self._streaming_buffer += text
        self._emit(AssistantDeltaEvent(run_id=self._current_run_id, text=text))

    def _stream_reasoning(self, generation: int, reasoning_id: str, text: str) -> None:
        if not text or not self._is_live(generation) or self._current_run_id is None:
            return
        self._reasoning_buffer += text
        self._emit(ReasoningDeltaEvent(
            run_id=self._current_run_id, reasoning_id=reasoning_id, text=text,
        ))

    def _complete_reasoning(self, generation: int, reasoning_id: str) -> None:
        if not self._reasoning_buffer or not self._is_live(generation):
            return
        if self._current_run_id is not None:
            self._emit(ReasoningMessageEvent(
                run_id=self._current_run_id,
                reasoning_id=reasoning_id,
                content=self._reasoning_buffer,
            ))

    def _finish_run(self, generation: int) -> None:
        """Emit the final message and ``run.finished`` for *generation*."""
        if not self._processing or generation != self._expected_generation:
            return
        run_id = self._current_run_id
        if run_id is None:
            return

        content = self._streaming_buffer
        if content:
            self._emit(AssistantMessageEvent(
                run_id=run_id, message=create_assistant_message(content),
            ))
        self._emit(RunFinishedEvent(run_id=run_id))
        self._emit(create_log_event(
            "info", f"Response complete ({len(content)} chars)", run_id,
        ))

        self._reset_buffers()
        self._current_run_id = None
        self._processing = False

    def _mark_aborted(self) -> None:
        self._cancelled = True
        self._processing = False
        self._reset_buffers()
        self._current_run_id = None

    def _reset_buffers(self) -> None:
        self._streaming_buffer = ""
        self._reasoning_buffer = ""

    async def _request_user_input(
        self,
        question: str,
        choices: Sequence[str] | None = None,
        allow_freeform: bool = True,
    ) -> QuestionAnswer:
        """Ask the user through the harness and wait for the answer."""
        if self._input_handler is None:
            raise RuntimeError("No user input handler registered")
        request = UserInputRequest(
            question=question,
            choices=tuple(choices) if choices is not None else None,
            allow_freeform=allow_freeform,
        )
        return await self._input_handler(request)

    async def _retry_with_backoff(
        self,
        coro_fn: Any,
        /,
        *args: Any,
        **kwargs: Any,
    ) -> Any:
        """Call *coro_fn* with exponential back-off on transient errors.

        Up to :data:`_MAX_RETRIES` additional attempts are made when the
        raised exception is identified as retryable by :func:`_is_retryable`.
        The delay doubles after each failure, starting at :data:`_BACKOFF_BASE`
        seconds. The last exception is re-raised when retries run out.
        """
        delay = _BACKOFF_BASE
        for attempt in range(1, _MAX_RETRIES + 2):
            try:
                return await coro_fn(*args, **kwargs)
            except Exception as exc:
                if not _is_retryable(exc) or attempt > _MAX_RETRIES:
                    raise
                logger.warning(
                    "Transient error on attempt %d/%d (%s). Retrying in %.1fs.",
                    attempt,
                    _MAX_RETRIES + 1,
                    type(exc).__name__,
                    delay,
                )
                await asyncio.sleep(delay)
                delay *= 2.0
        raise RuntimeError("Unexpected state in _retry_with_backoff")  # pragma: no cover
