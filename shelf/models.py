"""
Local model manager: find GGUF files and pick the active one.
"""

import logging
from dataclasses import dataclass
from pathlib import Path
from typing import Any

from .config import ShelfConfig, save_config

logger = logging.getLogger(__name__)

MODEL_SUFFIX = ".gguf"


@dataclass
class ModelInfo:
    """A model file found on one of the search paths."""
    filepath: str
    name: str
    size_bytes: int
    folder: str
    active: bool = False

    @property
    def size_gb(self) -> str:
        return f"{self.size_bytes / (1024 ** 3):.2f} GB"

    def to_dict(self) -> dict[str, Any]:
        return {
            "filepath": self.filepath,
            "name": self.name,
            "size": self.size_gb,
            "reason": "ACTIVE" if self.active else "Available",
            "folder": self.folder,
        }


def search_paths(config: ShelfConfig) -> list[Path]:
    """Configured search paths, falling back to the models directory. Duplicates removed."""
    raw = config.inference.model_search_paths or [str(config.models_path)]
    paths: list[Path] = []
    for entry in raw:
        path = Path(entry).expanduser()
        if path not in paths:
            paths.append(path)
    return paths


def list_models(config: ShelfConfig) -> list[ModelInfo]:
    """Every .gguf file directly inside a search path, sorted by name within each path."""
    active = config.active_model()
    models: list[ModelInfo] = []
    for folder in search_paths(config):
        if not folder.is_dir():
            continue
        try:
            files = sorted(p for p in folder.iterdir() if p.suffix.lower() == MODEL_SUFFIX and p.is_file())
        except OSError as e:
            logger.warning("Failed to scan model dir %s: %s", folder, e)
            continue
        for path in files:
            models.append(ModelInfo(
                filepath=str(path),
                name=path.name,
                size_bytes=path.stat().st_size,
                folder=str(folder),
                active=str(path) == active,
            ))
    return models


def set_active_model(config: ShelfConfig, model: str) -> ShelfConfig:
    """
    Select the model and persist the choice.

    For the llama-cpp backend ``model`` must be an existing file; for
    ollama it is a model name and is not checked here.

    Raises:
        FileNotFoundError: The GGUF file does not exist
    """
    if config.inference.backend == "llama-cpp":
        path = Path(model).expanduser()
        if not path.is_file():
            raise FileNotFoundError(f"Model file not found: {model}")
        model = str(path.resolve())
    config.inference.active_model = model
    save_config(config)
    logger.info("Active model set to %s", model)
    return config
