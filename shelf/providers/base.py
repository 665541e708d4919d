"""
Base provider protocols.

These define the interfaces that concrete providers must implement.
Using Protocol for structural subtyping - no explicit inheritance required.
"""

from dataclasses import dataclass
from collections.abc import Iterable
from typing import Protocol, runtime_checkable


# -----------------------------------------------------------------------------
# Inference
# -----------------------------------------------------------------------------

@dataclass
class Generation:
    """
    Raw output of one inference call.

    Attributes:
        text: Generated text, unparsed. Callers do their own domain parsing.
        total_tokens: Prompt plus completion tokens, when the backend reports them
    """
    text: str
    total_tokens: int = 0


@runtime_checkable
class InferenceProvider(Protocol):
    """
    A locally hosted language model.

    A provider is constructed cheaply; ``load`` brings the model up with a
    given context size and may fail (out of memory, bad file), in which
    case the caller tries a smaller size. Once loaded, ``generate`` is
    called sequentially, never concurrently.

    Example implementation:
        class EchoProvider:
            def __init__(self, model: str):
                self.model = model
                self.context_size = 0

            def load(self, context_size: int) -> None:
                self.context_size = context_size

            def generate(self, system, user, *, json_output=False,
                         max_tokens=500, temperature=0.3) -> Generation:
                return Generation(text=user)

            def close(self) -> None:
                pass
    """

    model: str
    context_size: int

    def load(self, context_size: int) -> None:
        """
        Load the model and allocate a context of ``context_size`` tokens.

        Raises:
            Exception: Any failure to allocate; the gateway treats all
                failures here as "try the next size down"
        """
        ...

    def generate(
        self,
        system: str,
        user: str,
        *,
        json_output: bool = False,
        max_tokens: int = 500,
        temperature: float = 0.3,
    ) -> Generation:
        """
        Run one chat completion.

        Args:
            system: System instruction
            user: User message
            json_output: Constrain output to a JSON object
            max_tokens: Completion token limit
            temperature: Sampling temperature

        Returns:
            Generation with the raw text and token usage
        """
        ...

    def close(self) -> None:
        """Release the model and its context."""
        ...


# -----------------------------------------------------------------------------
# Prompts
# -----------------------------------------------------------------------------

TAGGING_SYSTEM_PROMPT = """You are a professional librarian and book classifier.
Analyze the provided text excerpt from a book (Preface, Introduction, or Content).
Provide:
1. A list of 5-8 specific, high-quality tags.
   CRITICAL: DO NOT include generic tags like "Fiction" or "Non-Fiction" - these will be determined automatically.
   CRITICAL: Focus on SPECIFIC genres, topics, and themes (e.g., "Science-Fiction", "Mystery-Thriller", "Machine-Learning", "Business-Strategy").
   CRITICAL: Each tag MUST be in "Pascal-Case-With-Hyphens" format. No spaces allowed.
2. A single-sentence summary of what the book is about.

Respond ONLY in valid JSON format:
{
  "tags": ["Science-Fiction", "Space-Opera", "Military-Fiction", ...],
  "summary": "..."
}"""

TAXONOMY_SYSTEM_PROMPT = "You are a data classification expert."


def build_tagging_system_prompt(rules: str | None = None) -> str:
    """
    Tagging instruction with the user-maintained rule text appended.

    Args:
        rules: Free text from the rules file; ignored when blank
    """
    if not rules or not rules.strip():
        return TAGGING_SYSTEM_PROMPT
    return (
        f"{TAGGING_SYSTEM_PROMPT}\n\nCRITICAL USER DEFINED RULES:\n{rules.strip()}\n\n"
        "Strictly follow the above rules when generating tags."
    )


def build_tagging_user_prompt(text: str) -> str:
    return f"Book Excerpt:\n\n{text}"


def build_taxonomy_prompt(tags: Iterable[str], categories: Iterable[str]) -> str:
    """
    Ask for a tag -> category JSON object covering every tag in the batch.

    Args:
        tags: Specific tags to classify
        categories: The closed vocabulary to choose from
    """
    return f"""Analyze this list of specific book tags:
{", ".join(tags)}

Your goal is to map each tag to ONE of the following "Master Categories":
{", ".join(categories)}

If a tag fits none of these perfectly, choose the closest match or a similarly broad category.

CRITICAL RULES:
1. DO NOT use generic terms like "General", "Book", "Novel", "Series".
2. "Fiction" and "Non-Fiction" ARE allowed and encouraged for generic tags.
3. Use "Science-Fiction" instead of "Sci-Fi".
4. Return ONLY a valid JSON object: key = specific tag, value = Master Category.

Example:
{{
  "Python-Programming": "Programming",
  "Space-Opera": "Science-Fiction",
  "World-War-II": "History",
  "Novel": "Fiction"
}}"""


# -----------------------------------------------------------------------------
# Provider Registry
# -----------------------------------------------------------------------------

class ProviderRegistry:
    """
    Registry for discovering and instantiating inference backends.

    Backends are registered by name so the config file can select one
    (``[inference] backend = "ollama"``) without code changes.

    Example:
        registry = ProviderRegistry()
        registry.register_inference("llama-cpp", LlamaCppInference)

        # Later, from config:
        provider = registry.create_inference("llama-cpp", {"model": "/models/qwen.gguf"})
    """

    def __init__(self):
        self._inference_providers: dict[str, type] = {}
        self._lazy_loaded = False

    def _ensure_providers_loaded(self) -> None:
        """Lazily load provider modules so they register themselves."""
        if self._lazy_loaded:
            return
        self._lazy_loaded = True
        from . import llm  # noqa: F401

    def register_inference(self, name: str, provider_class: type) -> None:
        """Register an inference provider class."""
        self._inference_providers[name] = provider_class

    def create_inference(self, name: str, params: dict | None = None) -> InferenceProvider:
        """
        Create an inference provider instance.

        Raises:
            ValueError: Unknown provider name
            RuntimeError: The provider's library is missing or construction failed
        """
        self._ensure_providers_loaded()
        providers = self._inference_providers
        if name not in providers:
            available = ", ".join(providers.keys()) or "none"
            raise ValueError(
                f"Unknown inference provider: '{name}'. "
                f"Available providers: {available}."
            )
        try:
            return providers[name](**(params or {}))
        except ImportError as e:
            raise RuntimeError(
                f"Failed to create inference provider '{name}': {e}\n"
                f"Install required dependencies."
            ) from e

    def list_inference_providers(self) -> list[str]:
        """List registered inference provider names."""
        self._ensure_providers_loaded()
        return list(self._inference_providers.keys())


# Global registry instance
# Concrete providers register themselves on import
_registry = ProviderRegistry()


def get_registry() -> ProviderRegistry:
    """Get the global provider registry."""
    return _registry
