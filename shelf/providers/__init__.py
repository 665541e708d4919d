"""
Inference backends and document extraction.

Backends register themselves with the registry when their module is
imported; the registry imports ``llm`` lazily on first use.
"""

from .base import Generation, InferenceProvider, ProviderRegistry, get_registry

__all__ = ["Generation", "InferenceProvider", "ProviderRegistry", "get_registry"]
