"""Provider registry: maps provider names to backend factories.

Wires settings into concrete backends. Models are created lazily, once per
Task, so credentials are only required for providers actually used.
"""

from __future__ import annotations

import logging
from typing import Callable, Dict, List, Optional

from langchain_openai import ChatOpenAI

from taskAgent.backends.base import Backend
from taskAgent.backends.langchain_backend import LangChainBackend
from taskAgent.config.settings import BackendSettings
from taskAgent.context.token_tracker import get_context_window

LOGGER = logging.getLogger(__name__)

BackendFactory = Callable[[BackendSettings], Backend]


def _openai_kwargs(settings: BackendSettings) -> Dict[str, object]:
    if not settings.api_key:
        raise RuntimeError(f"Missing API key for model {settings.model}; set MODEL_API_KEY or OPENAI_API_KEY in .env")
    kwargs: Dict[str, object] = {
        "model": settings.model,
        "api_key": settings.api_key,
        "temperature": settings.temperature,
        "max_tokens": settings.max_tokens,
        "stream_usage": True,
    }
    if settings.base_url:
        kwargs["base_url"] = settings.base_url
    return kwargs


def create_openai_backend(settings: BackendSettings) -> Backend:
    """OpenAI-compatible endpoint (OpenAI, DeepSeek, Moonshot, GLM, ...) through ChatOpenAI."""
    chat_model = ChatOpenAI(**_openai_kwargs(settings))
    return LangChainBackend(
        chat_model,
        model_id=settings.model,
        context_window=get_context_window(settings.model, settings.context_window),
    )


class BackendRegistry:
    """Explicit provider lookup, constructed once per runtime."""

    def __init__(self, factories: Optional[Dict[str, BackendFactory]] = None) -> None:
        self._factories: Dict[str, BackendFactory] = {}
        for name, factory in (factories or {}).items():
            self.register(name, factory)

    def register(self, name: str, factory: BackendFactory) -> None:
        self._factories[name] = factory

    def providers(self) -> List[str]:
        return list(self._factories)

    def create(self, settings: BackendSettings, provider: Optional[str] = None) -> Backend:
        """Build the backend for ``provider`` (default: ``settings.provider``).

        Raises:
            KeyError: No factory is registered under that name
        """
        name = provider or settings.provider
        if name not in self._factories:
            raise KeyError(f"Unknown backend provider: {name}. Available: {', '.join(self._factories)}")
        backend = self._factories[name](settings)
        LOGGER.info(f"Created backend {name} ({backend.model_id})")
        return backend


def build_default_backend_registry() -> BackendRegistry:
    return BackendRegistry({"openai": create_openai_backend})


__all__ = ["BackendFactory", "BackendRegistry", "build_default_backend_registry", "create_openai_backend"]
