"""OpenAI run provider.

Streams chat completions from OpenAI or any OpenAI-compatible endpoint
(Ollama ``http://localhost:11434/v1``, Groq, OpenRouter) by passing a custom
``base_url``. Conversation history is kept in memory and mirrored to the
JSONL session store so sessions can be switched and resumed.
"""

from __future__ import annotations

import asyncio
import base64
import logging
import mimetypes
from collections.abc import Sequence
from pathlib import Path
from typing import Any

from openai import AsyncOpenAI

from chatharness.core.session import Session, default_sessions_dir, list_sessions
from chatharness.providers.base import BaseRunProvider
from chatharness.types.events import (
    AssistantDeltaEvent,
    AssistantMessageEvent,
    ChatMessage,
    ModelChangedEvent,
    ModelDescription,
    RunFinishedEvent,
    UsageInfoEvent,
    create_assistant_message,
    create_user_message,
)
from chatharness.types.providers import EphemeralOptions
from chatharness.types.session import SessionInfo

logger = logging.getLogger(__name__)

DEFAULT_MODEL = "gpt-4o"
DEFAULT_CONTEXT_WINDOW = 128_000


def _uses_completion_tokens(model: str) -> bool:
    """GPT-5+ and reasoning models take ``max_completion_tokens``."""
    model_lower = model.lower()
    return any(model_lower.startswith(p) for p in ("gpt-5", "o1", "o3", "o4"))


def _attachment_part(attachment: str) -> dict[str, Any]:
    """Build an ``image_url`` content part from a URL or a local file path."""
    if attachment.startswith(("http://", "https://", "data:")):
        url = attachment
    else:
        path = Path(attachment).expanduser()
        mime = mimetypes.guess_type(path.name)[0] or "application/octet-stream"
        encoded = base64.b64encode(path.read_bytes()).decode("ascii")
        url = f"data:{mime};base64,{encoded}"
    return {"type": "image_url", "image_url": {"url": url}}


class OpenAIRunProvider(BaseRunProvider):
    """Run provider backed by the ``openai`` SDK's async streaming API.

    Each foreground prompt streams inside its own asyncio task so
    :meth:`abort` can cancel it while :meth:`send_prompt` is awaiting.

    Parameters
    ----------
    api_key:
        OpenAI API key. When *None* the SDK falls back to the
        ``OPENAI_API_KEY`` environment variable.
    model:
        Model ID to start with. When *None* the first listed model is used,
        falling back to ``"gpt-4o"``.
    base_url:
        Optional custom base URL for OpenAI-compatible endpoints.
    system_prompt:
        Prepended to every request as a ``role="system"`` message.
    sessions_dir:
        Where session JSONL files live. Defaults to ``~/.chatharness/sessions``.
    """

    def __init__(
        self,
        api_key: str | None = None,
        model: str | None = None,
        base_url: str | None = None,
        system_prompt: str | None = None,
        max_tokens: int = 4096,
        cwd: str | None = None,
        sessions_dir: Path | None = None,
        context_window: int = DEFAULT_CONTEXT_WINDOW,
    ) -> None:
        super().__init__(model)
        self._api_key = api_key
        self._base_url = base_url
        self._system_prompt = system_prompt
        self._max_tokens = max_tokens
        self._cwd = cwd or "."
        self._sessions_dir = sessions_dir
        self._context_window = context_window

        self._client: AsyncOpenAI | None = None
        self._session: Session | None = None
        self._history: list[ChatMessage] = []
        self._run_task: asyncio.Task[None] | None = None

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    async def initialize(self) -> None:
        kwargs: dict[str, Any] = {}
        if self._api_key is not None:
            kwargs["api_key"] = self._api_key
        if self._base_url is not None:
            kwargs["base_url"] = self._base_url
        self._client = AsyncOpenAI(**kwargs)

        self._available_models = await self._load_models()
        if self._model is None:
            self._model = self._available_models[0].id if self._available_models else DEFAULT_MODEL

        self._open_session(Session(cwd=self._cwd, sessions_dir=self._sessions_dir))
        self._session_metadata()
        logger.info("OpenAI provider ready (model=%s)", self._model)

    async def _load_models(self) -> list[ModelDescription]:
        if self._client is None:
            raise RuntimeError("Client not initialized")
        models: list[ModelDescription] = []
        try:
            async for model in self._client.models.list():
                models.append(ModelDescription(id=model.id, name=model.id))
        except Exception as exc:
            # Some compatible endpoints do not implement /models.
            logger.warning("Could not list models: %s", exc)
        models.sort(key=lambda m: m.id)
        if self._model and all(m.id != self._model for m in models):
            models.insert(0, ModelDescription(id=self._model, name=self._model))
        return models

    async def shutdown(self) -> None:
        if self._run_task is not None and not self._run_task.done():
            self._mark_aborted()
            self._run_task.cancel()
        if self._client is not None:
            await self._client.close()
            self._client = None
        self._session = None

    # ------------------------------------------------------------------
    # Foreground runs
    # ------------------------------------------------------------------

    async def send_prompt(
        self, text: str, run_id: str, attachments: Sequence[str] | None = None,
    ) -> None:
        if self._session is None or self._client is None:
            raise RuntimeError("Session not initialized")

        user_message = create_user_message(text)
        content: str | list[dict[str, Any]] = text
        if attachments:
            content = [{"type": "text", "text": text}]
            content.extend(_attachment_part(a) for a in attachments)

        generation = self._begin_run(run_id)
        request = [*self._request_messages(self._history), {"role": "user", "content": content}]
        self._history.append(user_message)
        self._session.add_message(user_message)

        task = asyncio.create_task(self._stream_run(generation, request))
        self._run_task = task
        try:
            await task
        except asyncio.CancelledError:
            # abort() cancelled the stream; anything else is our own cancellation.
            if not (self._cancelled and task.cancelled()):
                raise
        finally:
            if self._run_task is task:
                self._run_task = None

    async def _stream_run(self, generation: int, request: list[dict[str, Any]]) -> None:
        if self._client is None or self._model is None:
            raise RuntimeError("Client not initialized")
        usage_tokens = 0
        try:
            stream = await self._retry_with_backoff(
                self._client.chat.completions.create,
                model=self._model,
                messages=request,
                stream=True,
                stream_options={"include_usage": True},
                **self._token_kwargs(self._model),
            )
            reasoning_id = ""
            async for chunk in stream:
                if not self._is_live(generation):
                    break
                raw_usage = getattr(chunk, "usage", None)
                if raw_usage is not None:
                    usage_tokens = getattr(raw_usage, "total_tokens", 0) or 0

                choice = chunk.choices[0] if chunk.choices else None
                if choice is None:
                    continue
                delta = choice.delta
                reasoning_id = chunk.id or reasoning_id
                # Reasoning text is an extension some compatible servers send.
                reasoning = getattr(delta, "reasoning_content", None)
                if reasoning:
                    self._stream_reasoning(generation, reasoning_id, reasoning)
                if delta.content:
                    self._stream_text(generation, delta.content)
        except Exception:
            if generation == self._expected_generation:
                self._processing = False
            raise

        if not self._is_live(generation):
            return

        self._complete_reasoning(generation, reasoning_id)
        content = self._streaming_buffer
        if content and self._session is not None:
            reply = create_assistant_message(content, self._reasoning_buffer or None)
            self._history.append(reply)
            self._session.add_message(reply)
            self._session.record_turn(tokens=usage_tokens)
        self._emit(UsageInfoEvent(
            token_limit=self._context_window,
            current_tokens=usage_tokens,
            messages_length=len(self._history),
        ))
        self._finish_run(generation)

    async def abort(self) -> None:
        self._mark_aborted()
        task = self._run_task
        if task is not None and not task.done():
            task.cancel()

    # ------------------------------------------------------------------
    # Models
    # ------------------------------------------------------------------

    async def switch_model(self, model_id: str) -> None:
        if self._client is None:
            raise RuntimeError("Client not initialized")
        if self._processing:
            raise RuntimeError("Cannot switch model while processing")
        self._model = model_id
        if all(m.id != model_id for m in self._available_models):
            self._available_models.append(ModelDescription(id=model_id, name=model_id))
        self._session_metadata()
        self._emit(ModelChangedEvent(model=model_id))

    # ------------------------------------------------------------------
    # Ephemeral runs
    # ------------------------------------------------------------------

    async def run_ephemeral_prompt(
        self, prompt: str, run_id: str, options: EphemeralOptions,
    ) -> None:
        """Stream *prompt* on a throwaway history; the session is untouched."""
        if self._client is None:
            raise RuntimeError("Client not initialized")
        model = options.model or self._model or DEFAULT_MODEL
        request = [*self._request_messages([]), {"role": "user", "content": prompt}]

        stream = await self._retry_with_backoff(
            self._client.chat.completions.create,
            model=model,
            messages=request,
            stream=True,
            **self._token_kwargs(model),
        )
        content = ""
        async for chunk in stream:
            choice = chunk.choices[0] if chunk.choices else None
            if choice is None or not choice.delta.content:
                continue
            content += choice.delta.content
            self._emit(AssistantDeltaEvent(run_id=run_id, text=choice.delta.content))

        if content:
            self._emit(AssistantMessageEvent(
                run_id=run_id, message=create_assistant_message(content),
            ))
        self._emit(RunFinishedEvent(run_id=run_id))

    # ------------------------------------------------------------------
    # Sessions
    # ------------------------------------------------------------------

    async def create_new_session(self) -> str:
        if self._processing:
            raise RuntimeError("Cannot create a session while processing")
        self._open_session(Session(cwd=self._cwd, sessions_dir=self._sessions_dir))
        self._session_metadata()
        if self._session_id is None:
            raise RuntimeError("Session not initialized")
        return self._session_id

    async def switch_to_session(self, session_id: str) -> Sequence[ChatMessage] | None:
        if self._processing:
            raise RuntimeError("Cannot switch session while processing")
        directory = self._sessions_dir or default_sessions_dir()
        if not (directory / f"{session_id}.jsonl").is_file():
            raise ValueError(f"Unknown session: {session_id}")
        self._open_session(Session(session_id, cwd=self._cwd, sessions_dir=directory))
        return list(self._history)

    async def list_sessions(self) -> list[SessionInfo]:
        return list_sessions(self._sessions_dir)

    # ------------------------------------------------------------------
    # Helpers
    # ------------------------------------------------------------------

    def _open_session(self, session: Session) -> None:
        self._session = session
        self._session_id = session.session_id
        self._history = session.messages

    def _session_metadata(self) -> None:
        if self._session is not None:
            self._session.save_metadata("openai", self._model)

    def _request_messages(self, history: Sequence[ChatMessage]) -> list[dict[str, Any]]:
        messages: list[dict[str, Any]] = []
        if self._system_prompt:
            messages.append({"role": "system", "content": self._system_prompt})
        for msg in history:
            if msg.role in ("user", "assistant", "system"):
                messages.append({"role": msg.role, "content": msg.content})
        return messages

    def _token_kwargs(self, model: str) -> dict[str, int]:
        if _uses_completion_tokens(model):
            return {"max_completion_tokens": self._max_tokens}
        return {"max_tokens": self._max_tokens}
