"""Model backends and the provider registry."""

from .base import Backend
from .langchain_backend import LangChainBackend, to_langchain_messages
from .registry import BackendRegistry, build_default_backend_registry

__all__ = [
    "Backend",
    "BackendRegistry",
    "LangChainBackend",
    "build_default_backend_registry",
    "to_langchain_messages",
]
