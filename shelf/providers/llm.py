"""
Local language model providers.

Two backends:
- llama-cpp: loads a GGUF file in-process through llama-cpp-python
- ollama: drives a local Ollama server over its HTTP API
"""

import logging

import requests

from .base import Generation, get_registry

logger = logging.getLogger(__name__)


class LlamaCppInference:
    """
    In-process GGUF model via llama-cpp-python.

    The model weights and the context are allocated together by ``load``;
    a context too large for available memory fails there, not later.
    """

    def __init__(self, model: str, gpu_layers: int = -1):
        from llama_cpp import Llama

        self._llama_cls = Llama
        self.model = model
        self.gpu_layers = gpu_layers
        self.context_size = 0
        self._llm = None

    def load(self, context_size: int) -> None:
        self.close()
        logger.debug("Loading %s with n_ctx=%d", self.model, context_size)
        self._llm = self._llama_cls(
            model_path=self.model,
            n_ctx=context_size,
            n_gpu_layers=self.gpu_layers,
            verbose=False,
        )
        self.context_size = context_size

    def generate(
        self,
        system: str,
        user: str,
        *,
        json_output: bool = False,
        max_tokens: int = 500,
        temperature: float = 0.3,
    ) -> Generation:
        """Run a chat completion, optionally grammar-constrained to a JSON object."""
        if self._llm is None:
            raise RuntimeError(f"Model not loaded: {self.model}")

        kwargs = {}
        if json_output:
            kwargs["response_format"] = {"type": "json_object"}

        result = self._llm.create_chat_completion(
            messages=[
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            max_tokens=max_tokens,
            temperature=temperature,
            **kwargs,
        )
        content = result["choices"][0]["message"].get("content") or ""
        usage = result.get("usage") or {}
        return Generation(text=content.strip(), total_tokens=int(usage.get("total_tokens", 0)))

    def close(self) -> None:
        if self._llm is None:
            return
        close = getattr(self._llm, "close", None)
        if close is not None:
            close()
        self._llm = None
        self.context_size = 0


class OllamaInference:
    """
    Inference through a local Ollama server.

    Respects OLLAMA_HOST env var (default: http://localhost:11434).
    The context size is passed as ``num_ctx`` on every request; ``load``
    issues a warm-up request so an oversized context fails up front.
    """

    def __init__(self, model: str, base_url: str | None = None):
        from .ollama_utils import ollama_base_url

        self.model = model
        self.base_url = ollama_base_url(base_url)
        self.context_size = 0

    def load(self, context_size: int) -> None:
        from .ollama_utils import ollama_has_model

        if not ollama_has_model(self.base_url, self.model):
            raise RuntimeError(
                f"Ollama model '{self.model}' is not installed. "
                f"Pull it with: ollama pull {self.model}"
            )

        response = requests.post(
            f"{self.base_url}/api/generate",
            json={
                "model": self.model,
                "prompt": "",
                "stream": False,
                "options": {"num_ctx": context_size},
            },
            timeout=(10, 300),  # (connect, read) - first load can be slow
        )
        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise RuntimeError(
                f"Ollama load failed (model={self.model}, num_ctx={context_size}): "
                f"HTTP {response.status_code} from {self.base_url}. {detail}"
            )
        self.context_size = context_size

    def generate(
        self,
        system: str,
        user: str,
        *,
        json_output: bool = False,
        max_tokens: int = 500,
        temperature: float = 0.3,
    ) -> Generation:
        """Send a chat request to Ollama and return the raw content."""
        payload = {
            "model": self.model,
            "messages": [
                {"role": "system", "content": system},
                {"role": "user", "content": user},
            ],
            "stream": False,
            "options": {
                "num_ctx": self.context_size,
                "num_predict": max_tokens,
                "temperature": temperature,
            },
        }
        if json_output:
            payload["format"] = "json"

        response = requests.post(
            f"{self.base_url}/api/chat",
            json=payload,
            timeout=(10, 300),
        )
        if not response.ok:
            detail = response.text[:200] if response.text else ""
            raise RuntimeError(
                f"Ollama generate failed (model={self.model}): "
                f"HTTP {response.status_code} from {self.base_url}. {detail}"
            )
        data = response.json()
        tokens = int(data.get("prompt_eval_count", 0)) + int(data.get("eval_count", 0))
        return Generation(text=data["message"]["content"].strip(), total_tokens=tokens)

    def close(self) -> None:
        """Ask the server to unload the model (keep_alive=0)."""
        if not self.context_size:
            return
        try:
            requests.post(
                f"{self.base_url}/api/generate",
                json={"model": self.model, "keep_alive": 0},
                timeout=10,
            )
        except requests.RequestException as e:
            logger.debug("Ollama unload failed for %s: %s", self.model, e)
        self.context_size = 0


# Register providers
_registry = get_registry()
_registry.register_inference("llama-cpp", LlamaCppInference)
_registry.register_inference("ollama", OllamaInference)
