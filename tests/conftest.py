"""
Shared pytest fixtures for shelf tests.

Provides fake generators and extractors so no model is ever loaded and
no real document has to be parsed.
"""

import json
import threading
from pathlib import Path
from typing import Any, Callable, Optional

import pytest

from shelf.config import create_default_config, save_config
from shelf.library_store import LibraryStore
from shelf.providers.base import Generation


class FakeGenerator:
    """
    Scripted stand-in for the inference gateway.

    ``responder(system, user)`` returns the reply text (or raises). The
    default echoes a fixed tagging reply. Every call is recorded.
    """

    def __init__(self, responder: Optional[Callable[[str, str], str]] = None, context_size: int = 4096):
        self.responder = responder or (lambda system, user: json.dumps(
            {"tags": ["Space Opera", "robotics"], "summary": "A story."}))
        self._context_size = context_size
        self.calls: list[dict[str, Any]] = []
        self.loaded = 0

    @property
    def context_size(self) -> int:
        return self._context_size

    def ensure_loaded(self):
        self.loaded += 1
        return self

    def status(self) -> dict[str, Any]:
        return {
            "ai_status": "online",
            "ai_name": "fake.gguf",
            "ai_detail": "Embedded (Ready)",
            "ai_context_size": self._context_size,
        }

    def generate(self, system, user, *, json_output=False, max_tokens=500, temperature=0.3):
        self.calls.append({
            "system": system, "user": user,
            "json_output": json_output, "max_tokens": max_tokens,
        })
        return Generation(self.responder(system, user), total_tokens=10)


class FakeExtractor:
    """Returns canned text per path; a path mapped to an exception raises it."""

    def __init__(self, texts: Optional[dict[str, Any]] = None, default: str = "Plenty of readable text here."):
        self.texts = texts or {}
        self.default = default
        self.calls: list[str] = []

    def supports(self, path: str) -> bool:
        return True

    def extract(self, path: str) -> str:
        self.calls.append(path)
        value = self.texts.get(path, self.default)
        if isinstance(value, BaseException):
            raise value
        return value


class GatedExtractor(FakeExtractor):
    """Blocks every extraction until ``gate`` is set; signals ``entered`` on each call."""

    def __init__(self, **kwargs):
        super().__init__(**kwargs)
        self.gate = threading.Event()
        self.entered = threading.Event()

    def extract(self, path: str) -> str:
        self.entered.set()
        assert self.gate.wait(10), "gate never opened"
        return super().extract(path)


@pytest.fixture(autouse=True)
def isolated_data_path(tmp_path, monkeypatch):
    """Keep error logs and config lookups inside the test's temp directory."""
    data = tmp_path.resolve() / "data"
    monkeypatch.setenv("SHELF_DATA_PATH", str(data))
    monkeypatch.delenv("SHELF_MODEL", raising=False)
    monkeypatch.delenv("SHELF_VERBOSE", raising=False)
    return data


@pytest.fixture
def store(tmp_path):
    """A LibraryStore on a temp database."""
    s = LibraryStore(tmp_path / "library.db")
    yield s
    s.close()


@pytest.fixture
def fake_generator():
    return FakeGenerator()


@pytest.fixture
def fake_extractor():
    return FakeExtractor()


@pytest.fixture
def config(isolated_data_path):
    """A saved default config in the temp data directory."""
    cfg = create_default_config(isolated_data_path)
    save_config(cfg)
    return cfg


@pytest.fixture
def shelf(config, fake_generator, fake_extractor):
    """A Shelf wired to fakes for inference and extraction."""
    from shelf import Shelf

    s = Shelf(config=config, generator=fake_generator, extractor=fake_extractor)
    yield s
    s.jobs.wait(5)
    s.close()


def _add_items(store: LibraryStore, *paths: str, scanned: bool = True) -> None:
    for path in paths:
        store.add_item(path, title=Path(path).stem, metadata_scanned=scanned)


@pytest.fixture
def add_items():
    """Register item paths in a store, marked metadata-scanned."""
    return _add_items
