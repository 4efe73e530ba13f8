"""Configuration types for the chat harness."""

from __future__ import annotations

from dataclasses import dataclass, field

from chatharness.types.state import Limits

DEFAULT_SKILLS_DIR = ".agents/skills"


@dataclass(slots=True)
class HarnessConfig:
    """Resolved configuration for one harness process."""

    provider: str = "openai"
    model: str | None = None
    api_key: str | None = None
    base_url: str | None = None
    cwd: str | None = None
    skills_dir: str = DEFAULT_SKILLS_DIR
    system_prompt: str | None = None
    max_tokens: int = 4096
    limits: Limits = field(default_factory=Limits)
