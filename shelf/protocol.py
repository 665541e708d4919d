"""
Protocol definitions for the collaborators the engines depend on.

- LibraryStoreProtocol: the persistent item store (SQLite locally)
- ExtractorProtocol: per-format text extraction
- GeneratorProtocol: the inference gateway as seen by its callers

The tagging pipeline, taxonomy engine and job engine are written against
these, so tests can substitute in-memory fakes.
"""

from typing import Any, Callable, Optional, Protocol, TypeVar, runtime_checkable

from .providers.base import Generation
from .types import LibraryItem

T = TypeVar("T")


@runtime_checkable
class LibraryStoreProtocol(Protocol):
    """The store operations the engines consume."""

    def find_unprocessed(self, limit: int = 50) -> list[LibraryItem]: ...

    def count_unprocessed(self) -> int: ...

    def find_by_keys(self, keys: list[str]) -> list[LibraryItem]: ...

    def get(self, filepath: str) -> Optional[LibraryItem]: ...

    def items_with_tags(self) -> list[LibraryItem]: ...

    def update_content(self, filepath: str, *, tags: Optional[str], summary: Optional[str]) -> None: ...

    def update_master_tags(self, filepath: str, master_tags: str) -> None: ...

    def update_raw_tags(self, filepath: str, tags: str) -> None: ...

    def run_in_transaction(self, fn: Callable[..., T]) -> T: ...

    def reset_tag(self, tag: str) -> int: ...

    def add_tag_where_missing(self, child: str, parent: str) -> int: ...


@runtime_checkable
class ExtractorProtocol(Protocol):
    """Pulls a bounded text excerpt out of a file."""

    def extract(self, path: str) -> str:
        """
        Raises:
            ExtractionTimeout: Parsing exceeded the time limit
            ExtractionFailure: Missing, unsupported or unreadable file
        """
        ...


@runtime_checkable
class GeneratorProtocol(Protocol):
    """Single-capability view of the inference gateway."""

    @property
    def context_size(self) -> int: ...

    def ensure_loaded(self) -> Any:
        """Bring the model up now instead of on the first request."""
        ...

    def status(self) -> dict[str, Any]:
        """Health fields: ai_status, ai_name, ai_detail, ai_context_size."""
        ...

    def generate(
        self,
        system: str,
        user: str,
        *,
        json_output: bool = False,
        max_tokens: int = 500,
        temperature: float = 0.3,
    ) -> Generation: ...
