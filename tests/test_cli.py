"""Tests for the command line interface."""

import json
import sys
import threading

import pytest
from typer.testing import CliRunner

from shelf import cli
from shelf.library_store import LibraryStore

runner = CliRunner()


@pytest.fixture(autouse=True)
def cli_state(isolated_data_path, monkeypatch):
    """Point the CLI at the temp data directory and reset its option globals."""
    monkeypatch.setattr(cli, "_data_override", None)
    monkeypatch.setattr(cli, "_json_output", False)
    return isolated_data_path


@pytest.fixture
def books(tmp_path):
    folder = tmp_path.resolve() / "books"
    folder.mkdir()
    (folder / "a.txt").write_text("Dragons fly over the mountain.")
    (folder / "cover.jpg").write_bytes(b"\xff\xd8")
    return folder


def _store(data_path):
    return LibraryStore(data_path / "library.db")


def test_add(books, cli_state):
    result = runner.invoke(cli.app, ["add", str(books)])

    assert result.exit_code == 0, result.output
    assert "Added 1 items" in result.output
    store = _store(cli_state)
    assert [i.filepath for i in store.list_items()] == [str(books / "a.txt")]
    store.close()


def test_add_missing_path(tmp_path):
    result = runner.invoke(cli.app, ["add", str(tmp_path / "nope")])
    assert result.exit_code == 1


def test_data_option(books, tmp_path):
    other = tmp_path.resolve() / "other"
    result = runner.invoke(cli.app, ["--data", str(other), "add", str(books)])
    assert result.exit_code == 0, result.output
    assert (other / "library.db").exists()


def test_status_json(books, cli_state):
    runner.invoke(cli.app, ["add", str(books)])
    result = runner.invoke(cli.app, ["--json", "status"])

    assert result.exit_code == 0, result.output
    counts = json.loads(result.output)
    assert counts["items"] == 1
    assert counts["unprocessed"] == 1
    assert counts["ai_detail"] == "Embedded (No Model Selected)"


def test_scan_without_model_fails(books, monkeypatch):
    # scan installs process-wide crash hooks
    monkeypatch.setattr(sys, "excepthook", sys.excepthook)
    monkeypatch.setattr(threading, "excepthook", threading.excepthook)
    runner.invoke(cli.app, ["add", str(books)])
    result = runner.invoke(cli.app, ["scan"])
    assert result.exit_code == 1
    assert "No local model selected" in result.output


def test_rules_set_and_show(tmp_path):
    rules = tmp_path / "rules.md"
    rules.write_text("Dragons -> Fantasy\n")

    assert runner.invoke(cli.app, ["rules", "--set", str(rules)]).exit_code == 0
    result = runner.invoke(cli.app, ["rules"])
    assert "Dragons -> Fantasy" in result.output


def test_implications(books, cli_state, tmp_path):
    runner.invoke(cli.app, ["add", str(books)])
    store = _store(cli_state)
    store.update_content(str(books / "a.txt"), tags="Dragons", summary="s")
    store.close()
    rules = tmp_path / "rules.md"
    rules.write_text("Dragons -> Fantasy\n")
    runner.invoke(cli.app, ["rules", "--set", str(rules)])

    result = runner.invoke(cli.app, ["implications"])

    assert result.exit_code == 0, result.output
    assert "Dragons -> Fantasy (1 books)" in result.output
    assert "1 tags added" in result.output


def test_re_eval_and_reset_failed(books, cli_state):
    runner.invoke(cli.app, ["add", str(books)])
    store = _store(cli_state)
    store.update_content(str(books / "a.txt"), tags="Error: Scan Failed", summary="x")
    store.close()

    assert "Reset 1 items" in runner.invoke(cli.app, ["reset-failed"]).output
    assert "Queued 0 items" in runner.invoke(cli.app, ["re-eval", "Dragons"]).output


def test_export_errors_none():
    result = runner.invoke(cli.app, ["export-errors"])
    assert result.exit_code == 0
    assert "No errors found." in result.output


def test_models_use_and_list(cli_state):
    models_dir = cli_state / "models"
    runner.invoke(cli.app, ["models", "list"])
    model = models_dir / "tiny.gguf"
    model.write_bytes(b"GGUF")

    assert runner.invoke(cli.app, ["models", "use", str(model)]).exit_code == 0
    result = runner.invoke(cli.app, ["models", "list"])
    assert result.output.startswith("* tiny.gguf")


def test_models_use_missing(cli_state):
    result = runner.invoke(cli.app, ["models", "use", str(cli_state / "none.gguf")])
    assert result.exit_code == 1
