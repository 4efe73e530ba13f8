"""Run provider implementations."""

from chatharness.providers.base import BaseRunProvider


def create_provider(name: str, **kwargs) -> BaseRunProvider:
    """Create a run provider by name.

    Args:
        name: Provider name. Only ``"openai"`` (and OpenAI-compatible
            endpoints through ``base_url``) is built in.
        **kwargs: Passed to the provider constructor.
    """
    if name == "openai":
        from chatharness.providers.openai import OpenAIRunProvider
        return OpenAIRunProvider(**kwargs)
    raise ValueError(f"Unknown provider: {name}")


__all__ = ["BaseRunProvider", "create_provider"]
