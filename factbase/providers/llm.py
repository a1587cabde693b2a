"""
Judgment and embedding providers backed by LLM services.
"""

import logging
import os

from .base import get_registry

logger = logging.getLogger(__name__)


class OllamaModel:
    """
    Model provider using Ollama's local API.

    Judgment goes through /api/chat, embeddings through /api/embed.
    Respects OLLAMA_HOST env var (default: http://localhost:11434).
    """

    def __init__(
        self,
        chat_model: str = "llama3.2",
        embedding_model: str = "nomic-embed-text",
        base_url: str | None = None,
        ensure_models: bool = True,
    ):
        from .ollama_utils import ollama_base_url, ollama_ensure_model

        self.chat_model = chat_model
        self.embedding_model = embedding_model
        self.base_url = ollama_base_url(base_url)
        if ensure_models:
            ollama_ensure_model(self.base_url, self.chat_model)
            ollama_ensure_model(self.base_url, self.embedding_model)

    @property
    def name(self) -> str:
        return self.embedding_model

    def generate(self, prompt: str) -> str:
        """Send a judgment prompt to Ollama and return the reply text."""
        import requests

        response = requests.post(
            f"{self.base_url}/api/chat",
            json={
                "model": self.chat_model,
                "messages": [{"role": "user", "content": prompt}],
                "stream": False,
            },
            timeout=(10, 300),  # (connect, read)
        )
        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise RuntimeError(
                f"Ollama generate failed (model={self.chat_model}): "
                f"HTTP {response.status_code} from {self.base_url}. {detail}"
            )
        return response.json()["message"]["content"].strip()

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of texts with one request."""
        import requests

        if not texts:
            return []
        response = requests.post(
            f"{self.base_url}/api/embed",
            json={"model": self.embedding_model, "input": texts},
            timeout=(10, 120),
        )
        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise RuntimeError(
                f"Ollama embed failed (model={self.embedding_model}): "
                f"HTTP {response.status_code} from {self.base_url}. {detail}"
            )
        embeddings = response.json().get("embeddings") or []
        if len(embeddings) != len(texts):
            raise RuntimeError(
                f"Ollama returned {len(embeddings)} embeddings for {len(texts)} texts"
            )
        return embeddings


class OpenAIModel:
    """
    Model provider using OpenAI's chat and embeddings APIs.

    Requires: FACTBASE_OPENAI_API_KEY or OPENAI_API_KEY environment variable.
    """

    def __init__(
        self,
        chat_model: str = "gpt-4.1-mini",
        embedding_model: str = "text-embedding-3-small",
        api_key: str | None = None,
        max_tokens: int = 300,
    ):
        try:
            from openai import OpenAI
        except ImportError:
            raise RuntimeError("OpenAIModel requires 'openai' library")

        self.chat_model = chat_model
        self.embedding_model = embedding_model
        self.max_tokens = max_tokens

        key = (
            api_key
            or os.environ.get("FACTBASE_OPENAI_API_KEY")
            or os.environ.get("OPENAI_API_KEY")
        )
        if not key:
            raise ValueError(
                "OpenAI API key required. Set FACTBASE_OPENAI_API_KEY or OPENAI_API_KEY"
            )
        self._client = OpenAI(api_key=key)

        # GPT-5+ and reasoning models take max_completion_tokens and no temperature
        self._new_api = self.chat_model.startswith(("gpt-5", "o3", "o4"))

    @property
    def name(self) -> str:
        return self.embedding_model

    def _completion_kwargs(self) -> dict:
        if self._new_api:
            return {"max_completion_tokens": self.max_tokens}
        return {"max_tokens": self.max_tokens, "temperature": 0.0}

    def generate(self, prompt: str) -> str:
        """Send a judgment prompt to OpenAI and return the reply text."""
        response = self._client.chat.completions.create(
            model=self.chat_model,
            messages=[{"role": "user", "content": prompt}],
            **self._completion_kwargs(),
        )
        return (response.choices[0].message.content or "").strip()

    def embed(self, texts: list[str]) -> list[list[float]]:
        """Embed a batch of texts with one request."""
        if not texts:
            return []
        response = self._client.embeddings.create(
            model=self.embedding_model,
            input=texts,
        )
        # The API may return items out of order; sort by index
        items = sorted(response.data, key=lambda d: d.index)
        return [list(item.embedding) for item in items]


# Register providers
_registry = get_registry()
_registry.register_model("ollama", OllamaModel)
_registry.register_model("openai", OpenAIModel)
