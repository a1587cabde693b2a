"""
Shared Ollama utilities: base URL resolution and model availability check.
"""

import logging
import os

import requests

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"


def ollama_base_url(base_url: str | None = None) -> str:
    """Resolve the Ollama base URL. Respects OLLAMA_HOST."""
    url = base_url or os.environ.get("OLLAMA_HOST") or DEFAULT_OLLAMA_URL
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    return url.rstrip("/")


def ollama_has_model(base_url: str, model: str) -> bool:
    """Check whether an Ollama model is installed locally.

    Raises RuntimeError if Ollama is unreachable.
    """
    try:
        resp = requests.get(f"{base_url}/api/tags", timeout=5)
        resp.raise_for_status()
    except requests.RequestException as e:
        raise RuntimeError(
            f"Cannot reach Ollama at {base_url}. "
            "Is Ollama running? Start it with: ollama serve"
        ) from e

    installed = {m.get("name", "") for m in resp.json().get("models", [])}
    # Ollama lists models as "name:tag"; check both exact and bare+:latest
    bare = model.split(":")[0]
    return any(
        candidate in installed
        for candidate in (model, f"{model}:latest", bare, f"{bare}:latest")
    )


def ollama_ensure_model(base_url: str, model: str, *, pull: bool = True) -> None:
    """Make sure an Ollama model is available, pulling it on first use.

    Raises RuntimeError if Ollama is unreachable, the model is missing and
    pulling is disabled, or the pull fails.
    """
    if ollama_has_model(base_url, model):
        return
    if not pull:
        raise RuntimeError(
            f"Ollama model '{model}' is not installed. Run: ollama pull {model}"
        )

    logger.info("Pulling Ollama model %s (first use)", model)
    try:
        resp = requests.post(
            f"{base_url}/api/pull",
            json={"model": model, "stream": False},
            timeout=600,
        )
        resp.raise_for_status()
    except requests.RequestException as e:
        raise RuntimeError(f"Failed to pull Ollama model '{model}': {e}") from e

    error = resp.json().get("error")
    if error:
        raise RuntimeError(f"Ollama pull failed for '{model}': {error}")
    logger.info("Ollama model %s ready", model)
