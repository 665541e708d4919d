"""
Error types and error logging for shelf.

Logs full stack traces for debugging while showing clean messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path


class ShelfError(Exception):
    """Base class for all shelf errors."""


# -----------------------------------------------------------------------------
# Extraction
# -----------------------------------------------------------------------------

class ExtractionError(ShelfError):
    """Text could not be pulled out of a library file."""


class ExtractionTimeout(ExtractionError):
    """Extraction did not finish within the configured time limit."""

    def __init__(self, path: str, seconds: float):
        self.path = path
        self.seconds = seconds
        super().__init__(f"Parsing timed out ({seconds:g}s)")


class ExtractionFailure(ExtractionError):
    """The file could not be opened or parsed."""


# -----------------------------------------------------------------------------
# Inference
# -----------------------------------------------------------------------------

class EngineUnavailable(ShelfError):
    """The inference engine cannot serve any request; fatal for a job."""


class ModelNotSelected(EngineUnavailable):
    def __init__(self, message: str = "No local model selected. Please pick one in Utilities."):
        super().__init__(message)


class ContextInitExhausted(EngineUnavailable):
    """Every size in the context ladder failed to initialize."""

    def __init__(self, sizes: list[int]):
        self.sizes = list(sizes)
        lowest = min(self.sizes) if self.sizes else 0
        super().__init__(
            f"Failed to initialize AI context even at lowest setting ({lowest}). "
            "VRAM might be full."
        )


class AIResponseMalformed(ShelfError):
    """The model returned output that does not match the expected shape."""

    def __init__(self, message: str, raw: str = ""):
        self.raw = raw
        super().__init__(message)


# -----------------------------------------------------------------------------
# Jobs
# -----------------------------------------------------------------------------

class JobConflict(ShelfError):
    """A job of the same kind is already running."""


def _error_log_path() -> Path:
    """Resolve error log path, respecting SHELF_DATA_PATH."""
    data = os.environ.get("SHELF_DATA_PATH")
    if data:
        return Path(data) / "logs" / "shelf-errors.log"
    from .config import default_data_path
    return default_data_path() / "logs" / "shelf-errors.log"


def log_exception(exc: BaseException, context: str = "") -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., the file being processed)

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path()
    timestamp = datetime.now(timezone.utc).isoformat()
    try:
        log_path.parent.mkdir(parents=True, exist_ok=True)
        fd = os.open(log_path, os.O_WRONLY | os.O_CREAT | os.O_APPEND, 0o600)
        with os.fdopen(fd, "a") as f:
            f.write(f"\n{'='*60}\n")
            f.write(f"[{timestamp}]")
            if context:
                f.write(f" {context}")
            f.write("\n")
            f.write("".join(traceback.format_exception(type(exc), exc, exc.__traceback__)))
    except OSError:
        pass  # error log unwritable
    return log_path
