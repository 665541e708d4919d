"""
Shared Ollama utilities: base URL resolution and model availability check.
"""

import logging
import os

import requests

logger = logging.getLogger(__name__)

DEFAULT_OLLAMA_URL = "http://localhost:11434"


def ollama_base_url(base_url: str | None = None) -> str:
    """Explicit URL, else OLLAMA_HOST, else localhost. Bare host:port gets a scheme."""
    url = base_url or os.environ.get("OLLAMA_HOST") or DEFAULT_OLLAMA_URL
    if not url.startswith(("http://", "https://")):
        url = f"http://{url}"
    return url.rstrip("/")


def ollama_installed_models(base_url: str) -> set[str]:
    """
    Names of the models the Ollama server has locally.

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
    return {m["name"] for m in resp.json().get("models", [])}


def ollama_has_model(base_url: str, model: str) -> bool:
    """Check if a model is installed. Ollama lists "name:tag"; bare names mean ":latest"."""
    installed = ollama_installed_models(base_url)
    bare = model.split(":")[0]
    candidates = {model, f"{model}:latest", bare, f"{bare}:latest"}
    return bool(candidates & installed)
