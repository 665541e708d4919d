"""Tests for local model discovery and selection."""

import pytest

from shelf.config import load_config, load_or_create_config
from shelf.models import list_models, search_paths, set_active_model


@pytest.fixture
def cfg(tmp_path):
    return load_or_create_config(tmp_path.resolve() / "data")


def test_lists_gguf_files(cfg):
    (cfg.models_path / "b-model.gguf").write_bytes(b"x" * 2048)
    (cfg.models_path / "a-model.GGUF").write_bytes(b"x")
    (cfg.models_path / "readme.txt").write_text("not a model")

    models = list_models(cfg)

    assert [m.name for m in models] == ["a-model.GGUF", "b-model.gguf"]
    assert models[1].size_bytes == 2048
    assert models[1].to_dict()["size"] == "0.00 GB"
    assert all(m.folder == str(cfg.models_path) for m in models)


def test_extra_search_paths(cfg, tmp_path):
    extra = tmp_path.resolve() / "elsewhere"
    extra.mkdir()
    (extra / "other.gguf").write_bytes(b"x")
    cfg.inference.model_search_paths = [str(cfg.models_path), str(extra), str(extra), str(tmp_path / "missing")]

    assert len(search_paths(cfg)) == 3
    assert [m.name for m in list_models(cfg)] == ["other.gguf"]


def test_set_active_model_persists(cfg):
    model = cfg.models_path / "qwen.gguf"
    model.write_bytes(b"x")

    set_active_model(cfg, str(model))

    assert load_config(cfg.path).inference.active_model == str(model)
    assert [m.active for m in list_models(cfg)] == [True]
    assert list_models(cfg)[0].to_dict()["reason"] == "ACTIVE"


def test_set_missing_model(cfg):
    with pytest.raises(FileNotFoundError):
        set_active_model(cfg, str(cfg.models_path / "nope.gguf"))


def test_ollama_model_name_not_checked(cfg):
    cfg.inference.backend = "ollama"
    set_active_model(cfg, "llama3:8b")
    assert cfg.inference.active_model == "llama3:8b"
