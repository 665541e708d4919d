"""
Inference engine gateway.

Owns the one loaded local model. The model is loaded lazily on first use,
reused for every request, and reloaded when the configured model or
backend changes. Loading walks a ladder of decreasing context sizes and
keeps the first one that fits.
"""

import logging
import threading
from pathlib import Path
from typing import Any, Optional

from .config import ShelfConfig
from .errors import ContextInitExhausted, EngineUnavailable, ModelNotSelected
from .providers.base import Generation, InferenceProvider, ProviderRegistry, get_registry

logger = logging.getLogger(__name__)


class InferenceGateway:
    """
    Serialized access to a single local model.

    All calls go through one lock: one model, one context, one request at
    a time. Callers do their own parsing of the returned text.
    """

    def __init__(self, config: ShelfConfig, registry: Optional[ProviderRegistry] = None):
        self._config = config
        self._registry = registry or get_registry()
        self._lock = threading.RLock()
        self._provider: Optional[InferenceProvider] = None
        self._loaded_key: Optional[tuple[str, str, int]] = None

    @property
    def config(self) -> ShelfConfig:
        return self._config

    def configure(self, config: ShelfConfig) -> None:
        """Swap in a new config. The model reloads on next use if backend, model or GPU layers changed."""
        with self._lock:
            self._config = config

    @property
    def loaded_model(self) -> Optional[str]:
        return self._loaded_key[1] if self._loaded_key else None

    @property
    def context_size(self) -> int:
        """Context size in effect, or 0 when nothing is loaded."""
        provider = self._provider
        return provider.context_size if provider is not None else 0

    def _provider_params(self, backend: str, model: str) -> dict[str, Any]:
        inference = self._config.inference
        if backend == "llama-cpp":
            if not Path(model).is_file():
                raise EngineUnavailable(f"Model file not found: {model}")
            return {"model": model, "gpu_layers": inference.gpu_layers}
        if backend == "ollama":
            return {"model": model, "base_url": inference.base_url or None}
        return {"model": model}

    def ensure_loaded(self) -> InferenceProvider:
        """
        Return the loaded provider, loading or reloading as needed.

        Raises:
            ModelNotSelected: No active model configured
            EngineUnavailable: Backend unknown, library missing, or model missing
            ContextInitExhausted: No context size in the ladder could be allocated
        """
        model = self._config.active_model()
        if not model:
            raise ModelNotSelected()
        backend = self._config.inference.backend
        key = (backend, model, self._config.inference.gpu_layers)

        with self._lock:
            if self._provider is not None and self._loaded_key == key:
                return self._provider

            if self._provider is not None:
                logger.info("Model settings changed, reloading: %s -> %s", self.loaded_model, model)
            self.unload()

            params = self._provider_params(backend, model)
            try:
                provider = self._registry.create_inference(backend, params)
            except (ValueError, RuntimeError) as e:
                raise EngineUnavailable(str(e)) from e

            self._establish_context(provider, self._config.inference.context_sizes)
            self._provider = provider
            self._loaded_key = key
            return provider

    @staticmethod
    def _establish_context(provider: InferenceProvider, sizes: list[int]) -> int:
        """Try each context size in order; the first that loads wins."""
        for size in sizes:
            try:
                provider.load(size)
            except Exception as e:
                logger.warning("Context size %d failed for %s: %s", size, provider.model, e)
                continue
            logger.info("Loaded %s with context size %d", provider.model, size)
            return size
        raise ContextInitExhausted(sizes)

    def generate(
        self,
        system: str,
        user: str,
        *,
        json_output: bool = False,
        max_tokens: int = 500,
        temperature: float = 0.3,
    ) -> Generation:
        """Run one request against the active model, loading it first if needed."""
        with self._lock:
            provider = self.ensure_loaded()
            return provider.generate(
                system, user,
                json_output=json_output,
                max_tokens=max_tokens,
                temperature=temperature,
            )

    def unload(self) -> None:
        with self._lock:
            if self._provider is not None:
                try:
                    self._provider.close()
                finally:
                    self._provider = None
                    self._loaded_key = None

    def status(self) -> dict[str, Any]:
        """
        Health summary without loading anything.

        Returns:
            ``ai_status`` ("online"/"offline"), ``ai_name``, ``ai_detail``
            and ``ai_context_size`` (0 until a model has been loaded)
        """
        model = self._config.active_model()
        backend = self._config.inference.backend
        status, name, detail = "offline", "", ""

        if not model:
            detail = "Embedded (No Model Selected)"
        elif backend == "ollama":
            from .providers.ollama_utils import ollama_base_url, ollama_has_model
            name = model
            try:
                if ollama_has_model(ollama_base_url(self._config.inference.base_url or None), model):
                    status, detail = "online", "Ollama (Ready)"
                else:
                    detail = "Ollama (Model Missing)"
            except RuntimeError:
                detail = "Ollama (Offline)"
        elif Path(model).is_file():
            status, name, detail = "online", Path(model).name, "Embedded (Ready)"
        else:
            detail = "Embedded (Model Missing)"

        return {
            "ai_status": status,
            "ai_name": name,
            "ai_detail": detail,
            "ai_context_size": self.context_size,
        }


_gateway: Optional[InferenceGateway] = None
_gateway_lock = threading.Lock()


def get_gateway(config: ShelfConfig) -> InferenceGateway:
    """The process-wide gateway, created on first call and reconfigured on later ones."""
    global _gateway
    with _gateway_lock:
        if _gateway is None:
            _gateway = InferenceGateway(config)
        else:
            _gateway.configure(config)
        return _gateway


def reset_gateway() -> None:
    """Unload and forget the process-wide gateway."""
    global _gateway
    with _gateway_lock:
        if _gateway is not None:
            _gateway.unload()
        _gateway = None
