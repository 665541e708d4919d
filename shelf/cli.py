"""
CLI interface for shelf.

Usage:
    shelf add ~/Books
    shelf scan
    shelf sync
    shelf serve --port 3001
"""

import json
import os
from pathlib import Path
from typing import Optional

import typer
from typing_extensions import Annotated

from .api import Shelf
from .errors import EngineUnavailable, JobConflict
from .logging_config import configure_quiet_mode, enable_debug_mode
from .types import ProgressEvent

# Set SHELF_VERBOSE=1 to enable debug mode via environment
if os.environ.get("SHELF_VERBOSE") == "1":
    enable_debug_mode()
else:
    configure_quiet_mode(quiet=True)


def _version_callback(value: bool):
    if value:
        from importlib.metadata import version
        print(f"shelf {version('shelf-tagger')}")
        raise typer.Exit()


def _verbose_callback(value: bool):
    if value:
        enable_debug_mode()


# Global state for CLI options
_json_output = False
_data_override: Optional[Path] = None


def _json_callback(value: bool):
    global _json_output
    _json_output = value


def _data_callback(value: Optional[Path]):
    global _data_override
    if value is not None:
        _data_override = value


app = typer.Typer(
    name="shelf",
    help="Content tagging and taxonomy for a local document library.",
    no_args_is_help=True,
    rich_markup_mode=None,
)


@app.callback()
def main_callback(
    verbose: Annotated[bool, typer.Option(
        "--verbose", "-v",
        help="Enable debug-level logging to stderr",
        callback=_verbose_callback,
        is_eager=True,
    )] = False,
    output_json: Annotated[bool, typer.Option(
        "--json", "-j",
        help="Output as JSON",
        callback=_json_callback,
        is_eager=True,
    )] = False,
    version: Annotated[Optional[bool], typer.Option(
        "--version",
        help="Show version and exit",
        callback=_version_callback,
        is_eager=True,
    )] = None,
    data: Annotated[Optional[Path], typer.Option(
        "--data", "-d",
        envvar="SHELF_DATA_PATH",
        help="Path to the data directory",
        callback=_data_callback,
        is_eager=True,
    )] = None,
):
    """Content tagging and taxonomy for a local document library."""


def _get_shelf() -> Shelf:
    """Open the shelf, turning setup failures into a clean exit."""
    import atexit

    try:
        shelf = Shelf(_data_override)
    except (OSError, ValueError) as e:
        typer.echo(f"Error: failed to open shelf: {e}", err=True)
        raise typer.Exit(1)
    atexit.register(shelf.close)
    return shelf


# -----------------------------------------------------------------------------
# Output Formatting
# -----------------------------------------------------------------------------

def _render_event(event: ProgressEvent) -> Optional[str]:
    """One line per event worth showing; None for events to skip."""
    d = event.data
    if event.type == "start":
        if "totalTags" in d:
            return f"Syncing {d['totalTags']} tags"
        return f"Scanning {d.get('total', 0)} items"
    if event.type == "progress":
        tags = d.get("tags") or ""
        return f"[{d['processed']}/{d['total']}] {d['current']}  {tags}"
    if event.type == "progress_learning":
        return f"Learning tags {d['processedGlobal']}/{d['totalGlobal']}"
    if event.type == "phase_applying":
        return "Applying categories"
    if event.type == "progress_applying":
        return f"Applied {d['current']}/{d['total']}"
    if event.type == "complete":
        if "count" in d:
            return f"Done. {d['count']} items updated."
        return "Done."
    if event.type == "error":
        return f"Error: {d.get('message', '')}"
    return None


def _follow(events) -> bool:
    """Print a job's events until its stream ends. Returns False on an error event."""
    ok = True
    for event in events:
        if event.type == "error":
            ok = False
        if _json_output:
            typer.echo(json.dumps(event.to_dict()))
            continue
        line = _render_event(event)
        if line is not None:
            typer.echo(line, err=event.type == "error")
    return ok


def _echo_result(result: dict, text: str) -> None:
    typer.echo(json.dumps(result, indent=2) if _json_output else text)


# -----------------------------------------------------------------------------
# Library
# -----------------------------------------------------------------------------

@app.command()
def add(
    paths: Annotated[list[Path], typer.Argument(help="Files or directories to register")],
):
    """Register EPUB, PDF and text files so the next scan picks them up."""
    shelf = _get_shelf()
    missing = [p for p in paths if not p.expanduser().exists()]
    if missing:
        typer.echo(f"Error: path not found: {missing[0]}", err=True)
        raise typer.Exit(1)
    added = shelf.add(paths)
    _echo_result({"added": added}, f"Added {added} items")


# -----------------------------------------------------------------------------
# Jobs
# -----------------------------------------------------------------------------

@app.command()
def scan(
    target: Annotated[Optional[list[str]], typer.Option(
        "--target", "-t",
        help="Scan only this file path (repeatable)",
    )] = None,
):
    """Tag every unprocessed item, or only the given targets."""
    shelf = _get_shelf()
    from .jobs import install_crash_handler
    install_crash_handler(shelf.jobs)
    try:
        events = shelf.scan(target or None)
    except JobConflict as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if not _follow(events):
        raise typer.Exit(1)


@app.command()
def status():
    """Show the library's processing counts."""
    shelf = _get_shelf()
    store = shelf.store
    counts = {
        "items": store.count(),
        "unprocessed": store.count_unprocessed(),
        "errors": len(store.list_errors()),
    }
    counts.update(shelf.generator.status())
    _echo_result(
        counts,
        f"{counts['items']} items, {counts['unprocessed']} unprocessed, {counts['errors']} errors\n"
        f"AI: {counts['ai_name']} ({counts['ai_detail']})",
    )


@app.command("single")
def scan_single(
    filepath: Annotated[str, typer.Argument(help="Path of a registered item")],
):
    """Tag one item right away, outside the background job."""
    shelf = _get_shelf()
    try:
        result = shelf.scan_single(filepath)
    except KeyError:
        typer.echo(f"Error: not in library: {filepath}", err=True)
        raise typer.Exit(1)
    except EngineUnavailable as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    _echo_result(result, f"{result.get('tags') or ''}\n{result.get('summary') or ''}".strip())


# -----------------------------------------------------------------------------
# Taxonomy
# -----------------------------------------------------------------------------

@app.command()
def sync():
    """Learn categories for new tags and recompute master tags."""
    shelf = _get_shelf()
    try:
        events = shelf.sync()
    except JobConflict as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    if not _follow(events):
        raise typer.Exit(1)


@app.command("re-eval")
def re_eval(
    tag: Annotated[str, typer.Argument(help="Items carrying this tag get queued for re-tagging")],
):
    """Queue every item with TAG for a fresh content scan."""
    if not tag.strip():
        typer.echo("Error: tag required", err=True)
        raise typer.Exit(1)
    shelf = _get_shelf()
    count = shelf.re_evaluate(tag.strip())
    _echo_result({"count": count}, f"Queued {count} items for re-scan")


@app.command()
def implications():
    """Apply 'If X ensures Y' and 'X -> Y' rules from the rules file."""
    shelf = _get_shelf()
    result = shelf.apply_implications()
    if _json_output:
        _echo_result(result, "")
        return
    if result.get("message"):
        typer.echo(result["message"])
        return
    for line in result["applied"]:
        typer.echo(line)
    typer.echo(f"{result['changes']} tags added")


@app.command()
def rules(
    set_from: Annotated[Optional[Path], typer.Option(
        "--set",
        help="Replace the rules with the contents of this file ('-' for stdin)",
    )] = None,
):
    """Show or replace the tagging rules."""
    shelf = _get_shelf()
    if set_from is None:
        typer.echo(shelf.read_rules())
        return
    if str(set_from) == "-":
        import sys
        content = sys.stdin.read()
    else:
        if not set_from.exists():
            typer.echo(f"Error: file not found: {set_from}", err=True)
            raise typer.Exit(1)
        content = set_from.read_text(encoding="utf-8")
    shelf.write_rules(content)
    typer.echo("Rules updated", err=True)


# -----------------------------------------------------------------------------
# Maintenance
# -----------------------------------------------------------------------------

@app.command("reset-failed")
def reset_failed():
    """Put errored and skipped items back in the scan queue."""
    shelf = _get_shelf()
    count = shelf.reset_failed()
    _echo_result({"count": count}, f"Reset {count} items")


@app.command("export-errors")
def export_errors():
    """Write a report of every errored or skipped item."""
    shelf = _get_shelf()
    count, path = shelf.export_errors()
    if path is None:
        _echo_result({"count": 0}, "No errors found.")
        return
    _echo_result({"count": count, "path": str(path)}, f"Exported {count} errors to {path}")


# -----------------------------------------------------------------------------
# Models
# -----------------------------------------------------------------------------

models_app = typer.Typer(
    name="models",
    help="Local model management.",
    rich_markup_mode=None,
)
app.add_typer(models_app)


@models_app.command("list")
def models_list():
    """List GGUF files on the model search paths."""
    shelf = _get_shelf()
    models = shelf.list_models()
    if _json_output:
        typer.echo(json.dumps([m.to_dict() for m in models], indent=2))
        return
    if not models:
        typer.echo("No models found.", err=True)
        return
    for m in models:
        marker = "*" if m.active else " "
        typer.echo(f"{marker} {m.name}  {m.size_gb}  {m.folder}")


@models_app.command("use")
def models_use(
    model: Annotated[str, typer.Argument(help="GGUF file path, or a model name for ollama")],
):
    """Select the active model."""
    shelf = _get_shelf()
    try:
        active = shelf.set_active_model(model)
    except FileNotFoundError as e:
        typer.echo(f"Error: {e}", err=True)
        raise typer.Exit(1)
    typer.echo(f"Active model: {active}")


# -----------------------------------------------------------------------------
# Server
# -----------------------------------------------------------------------------

@app.command()
def serve(
    host: Annotated[str, typer.Option("--host", help="Bind address")] = "127.0.0.1",
    port: Annotated[int, typer.Option("--port", "-p", help="Bind port")] = 3001,
):
    """Run the HTTP API."""
    import uvicorn

    from .jobs import install_crash_handler
    from .server import create_app

    shelf = _get_shelf()
    install_crash_handler(shelf.jobs)
    uvicorn.run(create_app(shelf), host=host, port=port)


# -----------------------------------------------------------------------------
# Entry point
# -----------------------------------------------------------------------------

def main():
    try:
        app()
    except SystemExit:
        raise
    except KeyboardInterrupt:
        raise SystemExit(130)
    except Exception as e:
        from .errors import log_exception
        log_path = log_exception(e, context="shelf CLI")
        typer.echo(f"Error: {e}", err=True)
        typer.echo(f"Details logged to {log_path}", err=True)
        raise SystemExit(1)


if __name__ == "__main__":
    main()
