"""
Core API for shelf.

``Shelf`` wires the configuration, the library store, the inference
gateway and the three engines together. The CLI and the HTTP server are
thin layers over it.
"""

import logging
from collections.abc import Iterable, Iterator
from dataclasses import asdict, fields
from pathlib import Path
from typing import Any, Optional

from .config import InferenceConfig, ShelfConfig, load_or_create_config, resolve_data_path, save_config
from .inference import get_gateway
from .jobs import JobEngine
from .library_store import LibraryStore
from .models import ModelInfo, list_models, set_active_model
from .protocol import ExtractorProtocol, GeneratorProtocol
from .providers.documents import FileContentExtractor
from .tagger import TaggingPipeline, read_rules
from .taxonomy import MappingStore, TaxonomyEngine
from .types import JobSnapshot, ProgressEvent, epoch_ms

logger = logging.getLogger(__name__)


class Shelf:
    """
    A library of documents plus the machinery to tag and classify it.

    Example:
        shelf = Shelf()
        shelf.add(["~/Books"])
        for event in shelf.scan():
            print(event.to_dict())
    """

    def __init__(
        self,
        data_path: Optional[str | Path] = None,
        *,
        config: Optional[ShelfConfig] = None,
        store: Optional[LibraryStore] = None,
        generator: Optional[GeneratorProtocol] = None,
        extractor: Optional[ExtractorProtocol] = None,
    ) -> None:
        """
        Open (or create) a shelf data directory.

        Args:
            data_path: Data directory. Defaults to SHELF_DATA_PATH or the
                platform user-data directory.
            config: Pre-loaded config (skips filesystem config discovery)
            store: Injected store (tests, custom setups)
            generator: Injected inference gateway
            extractor: Injected content extractor
        """
        if config is None:
            config = load_or_create_config(resolve_data_path(data_path))
        self._config = config

        from .logging_config import configure_ops_log
        self._ops_log_handler = configure_ops_log(config.path)

        self._store = store or LibraryStore(config.db_path, key_chunk_size=config.jobs.key_chunk_size)
        self._generator = generator or get_gateway(config)
        tagging = config.tagging
        self._extractor = extractor or FileContentExtractor(
            max_chars=tagging.max_chars,
            timeout=tagging.extract_timeout,
            max_sections=tagging.max_sections,
            pdf_max_pages=tagging.pdf_max_pages,
        )

        self.pipeline = TaggingPipeline(
            self._extractor, self._generator,
            rules_path=config.rules_path,
            min_chars=tagging.min_chars,
        )
        self.taxonomy = TaxonomyEngine(
            self._store, self._generator, MappingStore(config.taxonomy_path),
            learn_batch_size=config.taxonomy.learn_batch_size,
        )
        self.jobs = JobEngine(self._store, self.pipeline, self.taxonomy, batch_size=config.jobs.batch_size)

    @property
    def config(self) -> ShelfConfig:
        return self._config

    @property
    def store(self) -> LibraryStore:
        return self._store

    @property
    def generator(self) -> GeneratorProtocol:
        return self._generator

    # -------------------------------------------------------------------------
    # Library
    # -------------------------------------------------------------------------

    def add(self, paths: Iterable[str | Path]) -> int:
        """
        Register supported files (directories are walked recursively).

        Files are marked metadata-scanned so the next default scan picks
        them up.

        Returns:
            Number of newly added items
        """
        added = 0
        for entry in paths:
            root = Path(entry).expanduser().resolve()
            candidates = sorted(p for p in root.rglob("*") if p.is_file()) if root.is_dir() else [root]
            for path in candidates:
                if not path.is_file() or not self._extractor_supports(path):
                    continue
                if self._store.add_item(str(path), title=path.stem, metadata_scanned=True):
                    added += 1
        logger.info("Added %d items", added)
        return added

    def _extractor_supports(self, path: Path) -> bool:
        supports = getattr(self._extractor, "supports", None)
        return supports(str(path)) if supports else True

    # -------------------------------------------------------------------------
    # Jobs
    # -------------------------------------------------------------------------

    def scan(self, targets: Optional[list[str]] = None) -> Iterator[ProgressEvent]:
        """Start a content scan. Raises JobConflict if one is running."""
        return self.jobs.start(targets)

    def stop(self) -> dict:
        return self.jobs.stop()

    def status(self) -> JobSnapshot:
        return self.jobs.status()

    def scan_single(self, filepath: str) -> dict:
        return self.jobs.process_single(filepath)

    def sync(self) -> Iterator[ProgressEvent]:
        """Start a taxonomy sync. Raises JobConflict if one is running."""
        return self.jobs.start_sync()

    # -------------------------------------------------------------------------
    # Taxonomy maintenance
    # -------------------------------------------------------------------------

    def re_evaluate(self, tag: str) -> int:
        return self.taxonomy.re_evaluate(tag)

    def read_rules(self) -> str:
        return read_rules(self._config.rules_path)

    def write_rules(self, content: str) -> None:
        self._config.rules_path.parent.mkdir(parents=True, exist_ok=True)
        self._config.rules_path.write_text(content, encoding="utf-8")
        logger.info("Rules updated")

    def apply_implications(self) -> dict[str, Any]:
        if not self._config.rules_path.exists():
            return {"changes": 0, "applied": [], "message": "No rules file found."}
        changes, applied = self.taxonomy.apply_implications(self.read_rules())
        return {"changes": changes, "applied": applied}

    def reset_failed(self) -> int:
        count = self._store.reset_failed()
        logger.info("Reset %d failed scans", count)
        return count

    def export_errors(self) -> tuple[int, Optional[Path]]:
        return self._store.export_errors(self._config.logs_path)

    # -------------------------------------------------------------------------
    # Models and inference config
    # -------------------------------------------------------------------------

    def list_models(self) -> list[ModelInfo]:
        return list_models(self._config)

    def set_active_model(self, model: str) -> str:
        set_active_model(self._config, model)
        return self._config.inference.active_model

    def llm_config(self) -> dict[str, Any]:
        return asdict(self._config.inference)

    def update_llm_config(self, updates: dict[str, Any]) -> dict[str, Any]:
        """
        Merge ``updates`` into the [inference] section and persist.

        Raises:
            ValueError: Unknown key or a value of the wrong type
        """
        known = {f.name: f for f in fields(InferenceConfig)}
        current = asdict(self._config.inference)
        for key, value in updates.items():
            if key not in known:
                raise ValueError(f"Unknown inference setting: {key}")
            if not isinstance(value, type(current[key])):
                raise ValueError(f"Invalid value for {key}: {value!r}")
        if "context_sizes" in updates:
            sizes = updates["context_sizes"]
            if not sizes or not all(isinstance(s, int) and s > 0 for s in sizes):
                raise ValueError(f"Invalid context_sizes: {sizes!r}")

        for key, value in updates.items():
            setattr(self._config.inference, key, value)
        save_config(self._config)
        return self.llm_config()

    def health(self) -> dict[str, Any]:
        status = self._generator.status()
        return {
            "status": "ok",
            "timestamp": epoch_ms(),
            "backend": True,
            "ai": status["ai_status"] == "online",
            **status,
        }

    def close(self) -> None:
        close = getattr(self._store, "close", None)
        if close is not None:
            close()
        if self._ops_log_handler is not None:
            logging.getLogger("shelf").removeHandler(self._ops_log_handler)
            self._ops_log_handler.close()
            self._ops_log_handler = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc_val, exc_tb):
        self.close()
        return False
