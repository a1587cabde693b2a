"""
Base provider protocol.

The engine consumes a single black-box capability: judgment calls
(free text in, free text out) and text embeddings. Using Protocol for
structural subtyping - no explicit inheritance required.
"""

import threading
from typing import Protocol, runtime_checkable


@runtime_checkable
class Model(Protocol):
    """
    Judgment and embedding backend.

    Both calls are synchronous and may raise. The engine never assumes a
    specific backend: on failure it skips, retries later, or falls back.

    Example implementation:
        class EchoModel:
            name = "echo"

            def generate(self, prompt: str) -> str:
                return "no"

            def embed(self, texts: list[str]) -> list[list[float]]:
                return [[float(len(t)), 1.0] for t in texts]
    """

    @property
    def name(self) -> str:
        """Identifier of the model producing embeddings.

        Stored next to every embedding so that a model change makes old
        vectors stale instead of silently comparable.
        """
        ...

    def generate(self, prompt: str) -> str:
        """
        Run a judgment prompt and return the raw text response.

        Raises:
            Exception: on transport or backend failure
        """
        ...

    def embed(self, texts: list[str]) -> list[list[float]]:
        """
        Embed each text.

        Returns:
            One vector per input text, in order
        """
        ...


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating model providers.

    Providers are registered by name so that the store configuration
    (TOML) can select one without code changes.

    Example:
        registry = ProviderRegistry()
        registry.register_model("ollama", OllamaModel)

        # Later, from config:
        model = registry.create_model("ollama", {"chat_model": "llama3.2"})
    """

    def __init__(self):
        self._model_providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily import provider modules so they can register themselves."""
        if self._lazy_loaded:
            return
        self._lazy_loaded = True
        from . import llm  # noqa: F401

    def register_model(self, name: str, provider_class: type) -> None:
        """Register a model provider class."""
        self._model_providers[name] = provider_class

    def create_model(self, name: str, params: dict | None = None) -> Model:
        """Create a model provider instance."""
        self._ensure_providers_loaded()
        if name not in self._model_providers:
            available = ", ".join(self._model_providers.keys()) or "none"
            raise ValueError(
                f"Unknown model provider: '{name}'. "
                f"Available providers: {available}."
            )
        try:
            return self._model_providers[name](**(params or {}))
        except ImportError as e:
            raise RuntimeError(
                f"Failed to create model provider '{name}': {e}\n"
                f"Install required dependencies."
            ) from e
        except Exception as e:
            raise RuntimeError(
                f"Failed to create model provider '{name}': {e}"
            ) from e

    def list_model_providers(self) -> list[str]:
        """List registered model provider names."""
        self._ensure_providers_loaded()
        return list(self._model_providers.keys())


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry


class LazyModel:
    """
    Model proxy that creates the real provider on first use.

    Read-only operations (listing issues, status) never touch the network.
    `name` comes from configuration when given, so it doesn't force creation.
    """

    def __init__(self, provider: str, params: dict | None = None, name: str = ""):
        self._provider = provider
        self._params = dict(params or {})
        self._name = name
        self._model: Model | None = None
        self._lock = threading.Lock()

    def _get(self) -> Model:
        with self._lock:
            if self._model is None:
                self._model = get_registry().create_model(self._provider, self._params)
            return self._model

    @property
    def name(self) -> str:
        return self._name or getattr(self._get(), "name", self._provider)

    def generate(self, prompt: str) -> str:
        return self._get().generate(prompt)

    def embed(self, texts: list[str]) -> list[list[float]]:
        return self._get().embed(texts)
