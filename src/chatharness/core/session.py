"""JSONL append-only session persistence."""

from __future__ import annotations

import json
import logging
import uuid
from datetime import UTC, datetime
from pathlib import Path
from typing import Any

from chatharness.types.events import ChatMessage, generate_id
from chatharness.types.session import SessionInfo

logger = logging.getLogger(__name__)

_SUMMARY_LENGTH = 60


def default_sessions_dir() -> Path:
    """Get the sessions directory, creating it if needed."""
    d = Path.home() / ".chatharness" / "sessions"
    d.mkdir(parents=True, exist_ok=True)
    return d


def new_session_id() -> str:
    """Generate a new session ID."""
    return uuid.uuid4().hex[:12]


class Session:
    """Append-only JSONL conversation log.

    Each line is one entry: ``metadata`` (merged in order), ``message`` or
    ``turn``. Reopening an existing id replays the file.
    """

    def __init__(
        self,
        session_id: str | None = None,
        cwd: str = ".",
        sessions_dir: Path | None = None,
    ):
        self.session_id = session_id or new_session_id()
        directory = sessions_dir or default_sessions_dir()
        directory.mkdir(parents=True, exist_ok=True)
        self._path = directory / f"{self.session_id}.jsonl"
        self._messages: list[ChatMessage] = []
        self._metadata: dict[str, Any] = {
            "session_id": self.session_id,
            "cwd": cwd,
            "created_at": datetime.now(UTC).isoformat(),
        }
        self._turns = 0
        self._total_tokens = 0

        if self._path.exists():
            self._load()

    @property
    def path(self) -> Path:
        return self._path

    def _load(self) -> None:
        """Load existing session from JSONL."""
        with open(self._path, encoding="utf-8") as f:
            for line in f:
                line = line.strip()
                if not line:
                    continue
                try:
                    entry = json.loads(line)
                except json.JSONDecodeError:
                    logger.warning("Skipping corrupt line in %s", self._path)
                    continue
                kind = entry.get("type")
                if kind == "metadata":
                    self._metadata.update(entry.get("data", {}))
                elif kind == "message":
                    self._messages.append(_message_from_dict(entry["data"]))
                elif kind == "turn":
                    self._turns = entry.get("turn", self._turns)
                    self._total_tokens += entry.get("tokens", 0)

    def _append(self, entry: dict[str, Any]) -> None:
        """Append an entry to the JSONL file."""
        with open(self._path, "a", encoding="utf-8") as f:
            f.write(json.dumps(entry, default=str) + "\n")

    def save_metadata(self, provider: str, model: str | None) -> None:
        self._metadata["provider"] = provider
        self._metadata["model"] = model
        self._metadata["updated_at"] = datetime.now(UTC).isoformat()
        self._append({"type": "metadata", "data": self._metadata})

    def add_message(self, msg: ChatMessage) -> None:
        """Add a message to the session."""
        self._messages.append(msg)
        data: dict[str, Any] = {
            "id": msg.id,
            "role": msg.role,
            "content": msg.content,
            "created_at": msg.created_at.isoformat(),
        }
        if msg.reasoning:
            data["reasoning"] = msg.reasoning
        self._append({"type": "message", "data": data})

    def record_turn(self, tokens: int = 0) -> None:
        """Record a completed turn."""
        self._turns += 1
        self._total_tokens += tokens
        self._append({
            "type": "turn",
            "turn": self._turns,
            "tokens": tokens,
            "timestamp": datetime.now(UTC).isoformat(),
        })

    @property
    def messages(self) -> list[ChatMessage]:
        return list(self._messages)

    @property
    def turns(self) -> int:
        return self._turns

    @property
    def total_tokens(self) -> int:
        return self._total_tokens

    def get_info(self) -> SessionInfo:
        """Get session info summary."""
        created = self._metadata.get("created_at", datetime.now(UTC).isoformat())
        updated = self._metadata.get("updated_at", created)
        return SessionInfo(
            session_id=self.session_id,
            created_at=datetime.fromisoformat(created),
            last_used_at=datetime.fromisoformat(updated),
            summary=self._summary(),
            model=self._metadata.get("model"),
            turns=self._turns,
        )

    def _summary(self) -> str:
        for msg in self._messages:
            if msg.role == "user":
                text = " ".join(msg.content.split())
                if len(text) > _SUMMARY_LENGTH:
                    return text[:_SUMMARY_LENGTH - 3] + "..."
                return text
        return ""


def _message_from_dict(data: dict[str, Any]) -> ChatMessage:
    created = data.get("created_at")
    return ChatMessage(
        id=data.get("id") or generate_id(),
        role=data["role"],
        content=data["content"],
        reasoning=data.get("reasoning"),
        created_at=datetime.fromisoformat(created) if created else datetime.now(UTC),
    )


def list_sessions(sessions_dir: Path | None = None) -> list[SessionInfo]:
    """List all saved sessions, most recently used first."""
    directory = sessions_dir or default_sessions_dir()
    if not directory.is_dir():
        return []
    results = []
    for path in sorted(directory.glob("*.jsonl"), key=lambda p: p.stat().st_mtime, reverse=True):
        try:
            results.append(Session(path.stem, sessions_dir=directory).get_info())
        except (OSError, KeyError, ValueError) as exc:
            logger.debug("Skipping unreadable session %s: %s", path, exc)
            continue
    return results
