"""
Tests for the provider registry, lazy model creation and the Ollama client.
"""

from unittest.mock import MagicMock, patch

import pytest

from factbase.providers import LazyModel, Model, ProviderRegistry, get_registry
from factbase.providers.llm import OllamaModel
from factbase.providers.ollama_utils import ollama_base_url, ollama_has_model


class EchoModel:
    name = "echo"
    created = 0

    def __init__(self, reply: str = "no"):
        EchoModel.created += 1
        self.reply = reply

    def generate(self, prompt: str) -> str:
        return self.reply

    def embed(self, texts: list[str]) -> list[list[float]]:
        return [[float(len(t)), 1.0] for t in texts]


class Broken:
    def __init__(self, **kwargs):
        raise KeyError("misconfigured")


def _response(status=200, payload=None, text=""):
    resp = MagicMock()
    resp.ok = status < 400
    resp.status_code = status
    resp.text = text
    resp.json.return_value = payload or {}
    return resp


class TestRegistry:

    def test_builtin_providers_registered(self):
        names = get_registry().list_model_providers()
        assert "ollama" in names
        assert "openai" in names

    def test_create_registered_provider(self):
        registry = ProviderRegistry()
        registry.register_model("echo", EchoModel)
        model = registry.create_model("echo", {"reply": "yes"})
        assert model.generate("?") == "yes"
        assert isinstance(model, Model)

    def test_unknown_provider(self):
        with pytest.raises(ValueError, match="Unknown model provider"):
            ProviderRegistry().create_model("nope")

    def test_creation_errors_wrapped(self):
        registry = ProviderRegistry()
        registry.register_model("broken", Broken)
        with pytest.raises(RuntimeError, match="broken"):
            registry.create_model("broken")


class TestLazyModel:

    def test_created_once_on_first_use(self):
        get_registry().register_model("echo-lazy", EchoModel)
        EchoModel.created = 0
        lazy = LazyModel("echo-lazy", {"reply": "yes"}, name="configured")

        assert lazy.name == "configured"
        assert EchoModel.created == 0
        assert lazy.generate("?") == "yes"
        assert lazy.embed(["abc"]) == [[3.0, 1.0]]
        assert EchoModel.created == 1

    def test_name_falls_back_to_provider_model(self):
        get_registry().register_model("echo-lazy", EchoModel)
        assert LazyModel("echo-lazy").name == "echo"


class TestOllama:

    def test_base_url(self, monkeypatch):
        monkeypatch.delenv("OLLAMA_HOST", raising=False)
        assert ollama_base_url() == "http://localhost:11434"
        monkeypatch.setenv("OLLAMA_HOST", "gpu-box:11434/")
        assert ollama_base_url() == "http://gpu-box:11434"
        assert ollama_base_url("https://example.org") == "https://example.org"

    def test_has_model_matches_tags(self):
        payload = {"models": [{"name": "llama3.2:latest"}, {"name": "nomic-embed-text:v1.5"}]}
        with patch("factbase.providers.ollama_utils.requests.get", return_value=_response(payload=payload)):
            assert ollama_has_model("http://x", "llama3.2")
            assert not ollama_has_model("http://x", "mistral")

    def test_unreachable_server(self):
        import requests

        with patch(
            "factbase.providers.ollama_utils.requests.get",
            side_effect=requests.ConnectionError("refused"),
        ):
            with pytest.raises(RuntimeError, match="Cannot reach Ollama"):
                ollama_has_model("http://x", "llama3.2")

    def test_generate_and_embed(self):
        model = OllamaModel(base_url="http://x", ensure_models=False)
        assert model.name == "nomic-embed-text"
        chat = _response(payload={"message": {"content": "  yes, they differ \n"}})
        with patch("requests.post", return_value=chat) as post:
            assert model.generate("prompt") == "yes, they differ"
        assert post.call_args.args[0] == "http://x/api/chat"
        assert post.call_args.kwargs["json"]["stream"] is False

        embedded = _response(payload={"embeddings": [[0.1, 0.2], [0.3, 0.4]]})
        with patch("requests.post", return_value=embedded):
            assert model.embed(["a", "b"]) == [[0.1, 0.2], [0.3, 0.4]]
        assert model.embed([]) == []

    def test_http_errors_raise(self):
        model = OllamaModel(base_url="http://x", ensure_models=False)
        with patch("requests.post", return_value=_response(500, text="boom")):
            with pytest.raises(RuntimeError, match="HTTP 500"):
                model.generate("prompt")
        short = _response(payload={"embeddings": [[0.1]]})
        with patch("requests.post", return_value=short):
            with pytest.raises(RuntimeError, match="1 embeddings for 2 texts"):
                model.embed(["a", "b"])
