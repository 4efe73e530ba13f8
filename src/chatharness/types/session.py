"""Session information types."""

from __future__ import annotations

from dataclasses import dataclass
from datetime import datetime


@dataclass(frozen=True, slots=True)
class SessionInfo:
    """Metadata about a switchable conversation."""

    session_id: str
    created_at: datetime
    last_used_at: datetime | None = None
    summary: str = ""
    model: str | None = None
    turns: int = 0
