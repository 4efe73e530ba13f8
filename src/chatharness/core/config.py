"""Configuration loading (TOML, env vars, CLI overrides)."""

from __future__ import annotations

import logging
import os
import tomllib
from dataclasses import fields
from pathlib import Path
from typing import Any

from dotenv import load_dotenv

from chatharness.types.config import HarnessConfig
from chatharness.types.state import Limits

logger = logging.getLogger(__name__)

# Load .env from current directory (and parents), won't override existing env vars
load_dotenv()

CONFIG_DIR_NAME = ".chatharness"

_ENV_KEYS = {
    "CHATHARNESS_PROVIDER": "provider",
    "CHATHARNESS_MODEL": "model",
    "CHATHARNESS_BASE_URL": "base_url",
    "CHATHARNESS_SKILLS_DIR": "skills_dir",
    "OPENAI_API_KEY": "api_key",
}

_SCALAR_KEYS = {
    "provider", "model", "api_key", "base_url", "skills_dir", "system_prompt", "max_tokens",
}


def load_env_config() -> dict[str, Any]:
    """Load configuration from environment variables."""
    config: dict[str, Any] = {}
    for env_var, key in _ENV_KEYS.items():
        if value := os.environ.get(env_var):
            config[key] = value
    return config


def _read_toml(path: Path) -> dict[str, Any]:
    try:
        with open(path, "rb") as f:
            return tomllib.load(f)
    except (OSError, tomllib.TOMLDecodeError) as exc:
        logger.warning("Ignoring unreadable config %s: %s", path, exc)
        return {}


def load_toml_config(cwd: str | None = None) -> dict[str, Any]:
    """Load the first config.toml found.

    Search order: ``<cwd>/.chatharness/config.toml``, then
    ``~/.chatharness/config.toml``.
    """
    project_dir = Path(cwd) if cwd else Path.cwd()
    candidates = [
        project_dir / CONFIG_DIR_NAME / "config.toml",
        Path.home() / CONFIG_DIR_NAME / "config.toml",
    ]
    for toml_path in candidates:
        if toml_path.is_file():
            logger.debug("Loading config from %s", toml_path)
            return _read_toml(toml_path)
    return {}


def _limits_from(section: Any, base: Limits) -> Limits:
    if not isinstance(section, dict):
        return base
    known = {f.name for f in fields(Limits)}
    values = {k: int(v) for k, v in section.items() if k in known}
    unknown = set(section) - known
    if unknown:
        logger.warning("Unknown [limits] keys ignored: %s", ", ".join(sorted(unknown)))
    return Limits(**{**{f.name: getattr(base, f.name) for f in fields(Limits)}, **values})


def load_config(cwd: str | None = None, **overrides: Any) -> HarnessConfig:
    """Resolve the harness configuration.

    Priority, lowest first: defaults, config.toml, environment, then
    *overrides* (CLI flags). ``None`` overrides are ignored.
    """
    config = HarnessConfig(cwd=cwd)

    toml_data = load_toml_config(cwd)
    for key, value in toml_data.items():
        if key in _SCALAR_KEYS:
            setattr(config, key, value)
    config.limits = _limits_from(toml_data.get("limits"), config.limits)

    for key, value in load_env_config().items():
        setattr(config, key, value)

    for key, value in overrides.items():
        if value is None:
            continue
        if not hasattr(config, key):
            raise ValueError(f"Unknown configuration key: {key}")
        setattr(config, key, value)

    config.max_tokens = int(config.max_tokens)
    return config


def resolve_skills_root(config: HarnessConfig) -> Path:
    """Absolute skills root: relative ``skills_dir`` values hang off ``cwd``."""
    skills_dir = Path(config.skills_dir).expanduser()
    if skills_dir.is_absolute():
        return skills_dir
    base = Path(config.cwd) if config.cwd else Path.cwd()
    return (base / skills_dir).resolve()
