"""
Shared pytest fixtures for factbase tests.

Provides a deterministic stub model so no test talks to a real LLM.
"""

import hashlib
import re
from pathlib import Path
from typing import Callable, Union

import pytest

from factbase.api import KnowledgeBase
from factbase.config import (
    ConsistencyConfig,
    ProviderConfig,
    StoreConfig,
    TreeConfig,
    WorkerConfig,
)

Reply = Union[str, Callable[[str], str]]


class StubModel:
    """
    Deterministic stand-in for a judgment and embedding backend.

    Embeddings are hashed bags of words unless a vector was pinned for the
    exact text with `pin()`. Replies come from rules registered with `on()`
    (first marker found in the prompt wins), then from neutral defaults.
    """

    dimension = 64

    def __init__(self, name: str = "stub-embed"):
        self.name = name
        self.vectors: dict[str, list[float]] = {}
        self.rules: list[tuple[str, Reply]] = []
        self.prompts: list[str] = []
        self.embed_calls = 0
        self.fail_embed = False
        self.fail_generate = False

    def pin(self, text: str, vector: list[float]) -> None:
        """Pin the embedding of an exact text, padded to the model dimension."""
        self.vectors[text] = list(vector) + [0.0] * (self.dimension - len(vector))

    def on(self, marker: str, reply: Reply) -> None:
        """Answer prompts containing `marker` with `reply` (text or callable)."""
        self.rules.insert(0, (marker, reply))

    def embed(self, texts: list[str]) -> list[list[float]]:
        self.embed_calls += 1
        if self.fail_embed:
            raise RuntimeError("embedding backend offline")
        return [self._vector(t) for t in texts]

    def generate(self, prompt: str) -> str:
        self.prompts.append(prompt)
        if self.fail_generate:
            raise RuntimeError("judgment backend offline")
        for marker, reply in self.rules:
            if marker in prompt:
                return reply(prompt) if callable(reply) else reply
        return _default_reply(prompt)

    def prompts_with(self, marker: str) -> list[str]:
        return [p for p in self.prompts if marker in p]

    def _vector(self, text: str) -> list[float]:
        if text in self.vectors:
            return list(self.vectors[text])
        vec = [0.0] * self.dimension
        for word in re.findall(r"[a-z0-9]+", text.lower()):
            h = int(hashlib.md5(word.encode()).hexdigest(), 16)
            vec[h % self.dimension] += 1.0
        return vec


def _default_reply(prompt: str) -> str:
    if "Summarize the following note" in prompt:
        m = re.search(r"^Title: (.*)$", prompt, re.MULTILINE)
        return f"About {m.group(1) if m else 'something'}."
    if "Pick categories/tags" in prompt:
        return "general"
    if "identify which notes are related" in prompt:
        return "none"
    if "contradict each other" in prompt:
        return "no"
    if "Describe what it covers" in prompt:
        m = re.search(r'named "([^"]*)"', prompt)
        return f"Notes about {m.group(1) if m else 'things'}."
    # Descent selection and split prompts get an unusable reply by default
    return ""


@pytest.fixture
def model():
    """Fresh StubModel."""
    return StubModel()


@pytest.fixture
def make_model():
    """Factory for additional StubModels (e.g. a different embedding model name)."""
    return StubModel


@pytest.fixture
def make_config(tmp_path):
    """Factory for StoreConfig rooted in tmp_path with overridable sections."""

    def make(
        consistency: dict | None = None,
        tree: dict | None = None,
        workers: dict | None = None,
        path: Path | None = None,
    ) -> StoreConfig:
        return StoreConfig(
            path=path or tmp_path / "store",
            model=ProviderConfig("stub"),
            consistency=ConsistencyConfig(**(consistency or {})),
            tree=TreeConfig(**(tree or {})),
            workers=WorkerConfig(**{"poll_interval": 0.05, **(workers or {})}),
        )

    return make


@pytest.fixture
def make_kb(make_config, model):
    """Factory for KnowledgeBase instances sharing the stub model; closed on teardown."""
    opened: list[KnowledgeBase] = []

    def make(model_override=None, **sections) -> KnowledgeBase:
        kb = KnowledgeBase(config=make_config(**sections), model=model_override or model)
        opened.append(kb)
        return kb

    yield make
    for kb in opened:
        kb.close()


@pytest.fixture
def kb(make_kb):
    """KnowledgeBase with default settings and the stub model."""
    return make_kb()
