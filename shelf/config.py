"""
Configuration management for shelf.

The configuration is stored as a TOML file in the data directory.
It specifies which inference backend and model to use, and the limits
applied by the tagging pipeline, job engine and taxonomy learner.
"""

import os
import platform
import tomllib
from dataclasses import asdict, dataclass, field
from datetime import datetime, timezone
from pathlib import Path
from typing import Any

import tomli_w


CONFIG_FILENAME = "shelf.toml"
CONFIG_VERSION = 1
APP_NAME = "Shelf"

DB_FILENAME = "library.db"
TAXONOMY_FILENAME = "taxonomy.json"
RULES_FILENAME = "tagging_rules.md"

DEFAULT_CONTEXT_SIZES = [8192, 4096, 2048]


def default_data_path() -> Path:
    """
    Platform user-data directory.

    Windows: %APPDATA%/Shelf
    macOS:   ~/Library/Application Support/Shelf
    Linux:   $XDG_CONFIG_HOME/shelf (or ~/.config/shelf)
    """
    system = platform.system()
    if system == "Windows":
        base = Path(os.environ.get("APPDATA") or Path.home() / "AppData" / "Roaming")
        return base / APP_NAME
    if system == "Darwin":
        return Path.home() / "Library" / "Application Support" / APP_NAME
    base = Path(os.environ.get("XDG_CONFIG_HOME") or Path.home() / ".config")
    return base / APP_NAME.lower()


def resolve_data_path(override: Path | None = None) -> Path:
    """Resolve the data directory: explicit override, SHELF_DATA_PATH, platform default."""
    if override:
        return Path(override).expanduser().resolve()
    env = os.environ.get("SHELF_DATA_PATH")
    if env:
        return Path(env).expanduser().resolve()
    return default_data_path()


@dataclass
class InferenceConfig:
    """Which local model to run and how to bring it up."""
    backend: str = "llama-cpp"
    active_model: str = ""
    models_dir: str = ""
    model_search_paths: list[str] = field(default_factory=list)
    context_sizes: list[int] = field(default_factory=lambda: list(DEFAULT_CONTEXT_SIZES))
    gpu_layers: int = -1
    base_url: str = ""


@dataclass
class TaggingConfig:
    max_chars: int = 5000
    extract_timeout: float = 15.0
    min_chars: int = 5
    max_sections: int = 5
    pdf_max_pages: int = 10


@dataclass
class JobsConfig:
    batch_size: int = 50
    # SQLite's default host-parameter limit is 999
    key_chunk_size: int = 900


@dataclass
class TaxonomyConfig:
    learn_batch_size: int = 500


@dataclass
class ShelfConfig:
    """Complete shelf configuration."""
    path: Path
    version: int = CONFIG_VERSION
    created: str = field(default_factory=lambda: datetime.now(timezone.utc).isoformat())

    inference: InferenceConfig = field(default_factory=InferenceConfig)
    tagging: TaggingConfig = field(default_factory=TaggingConfig)
    jobs: JobsConfig = field(default_factory=JobsConfig)
    taxonomy: TaxonomyConfig = field(default_factory=TaxonomyConfig)

    @property
    def config_path(self) -> Path:
        """Path to the TOML config file."""
        return self.path / CONFIG_FILENAME

    @property
    def db_path(self) -> Path:
        return self.path / DB_FILENAME

    @property
    def taxonomy_path(self) -> Path:
        return self.path / TAXONOMY_FILENAME

    @property
    def rules_path(self) -> Path:
        return self.path / RULES_FILENAME

    @property
    def logs_path(self) -> Path:
        return self.path / "logs"

    @property
    def models_path(self) -> Path:
        """Primary models directory."""
        if self.inference.models_dir:
            return Path(self.inference.models_dir)
        return self.path / "models"

    def active_model(self) -> str:
        """Active model, with SHELF_MODEL taking precedence over the file."""
        return os.environ.get("SHELF_MODEL") or self.inference.active_model

    def exists(self) -> bool:
        """Check if config file exists."""
        return self.config_path.exists()


def _section(cls, data: dict[str, Any]):
    """Build a section dataclass from a TOML table, ignoring unknown keys."""
    known = {f for f in cls.__dataclass_fields__}
    return cls(**{k: v for k, v in data.items() if k in known})


def load_config(data_path: Path) -> ShelfConfig:
    """
    Load configuration from a data directory.

    Raises:
        FileNotFoundError: If config doesn't exist
        ValueError: If config is invalid
    """
    config_path = data_path / CONFIG_FILENAME

    if not config_path.exists():
        raise FileNotFoundError(f"Config not found: {config_path}")

    with open(config_path, "rb") as f:
        data = tomllib.load(f)

    version = data.get("store", {}).get("version", 1)
    if version > CONFIG_VERSION:
        raise ValueError(f"Config version {version} is newer than supported ({CONFIG_VERSION})")

    inference = _section(InferenceConfig, data.get("inference", {}))
    if not inference.context_sizes or not all(isinstance(s, int) and s > 0 for s in inference.context_sizes):
        raise ValueError(f"Invalid context_sizes: {inference.context_sizes!r}")

    return ShelfConfig(
        path=data_path,
        version=version,
        created=data.get("store", {}).get("created", ""),
        inference=inference,
        tagging=_section(TaggingConfig, data.get("tagging", {})),
        jobs=_section(JobsConfig, data.get("jobs", {})),
        taxonomy=_section(TaxonomyConfig, data.get("taxonomy", {})),
    )


def save_config(config: ShelfConfig) -> None:
    """
    Save configuration to the data directory.

    Creates the directory if it doesn't exist.
    """
    config.path.mkdir(parents=True, exist_ok=True)

    data = {
        "store": {
            "version": config.version,
            "created": config.created,
        },
        "inference": asdict(config.inference),
        "tagging": asdict(config.tagging),
        "jobs": asdict(config.jobs),
        "taxonomy": asdict(config.taxonomy),
    }

    with open(config.config_path, "wb") as f:
        tomli_w.dump(data, f)


def create_default_config(data_path: Path) -> ShelfConfig:
    """Create a new config with a models directory inside the data directory."""
    models_dir = data_path / "models"
    return ShelfConfig(
        path=data_path,
        inference=InferenceConfig(
            models_dir=str(models_dir),
            model_search_paths=[str(models_dir)],
        ),
    )


def load_or_create_config(data_path: Path) -> ShelfConfig:
    """
    Load existing config or create a new one with defaults.

    This is the main entry point for config management.
    """
    config_path = data_path / CONFIG_FILENAME

    if config_path.exists():
        config = load_config(data_path)
    else:
        config = create_default_config(data_path)
        save_config(config)

    config.models_path.mkdir(parents=True, exist_ok=True)
    config.logs_path.mkdir(parents=True, exist_ok=True)
    return config
