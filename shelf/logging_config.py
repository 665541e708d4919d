"""
Logging setup for shelf.

Third-party loggers are held at WARNING unless debug mode is on; job
activity always goes to a rotating ops log in the data directory.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

# Libraries that are chatty at INFO
_NOISY_LOGGERS = ("llama_cpp", "httpx", "httpcore", "urllib3", "uvicorn.access", "ebooklib")


def configure_quiet_mode(quiet: bool = True):
    """
    Hold chatty libraries at WARNING.

    Covers:
    - llama.cpp model loading chatter
    - HTTP client request logs
    - Library warnings (ebooklib emits FutureWarning on every read)

    Args:
        quiet: False leaves every logger untouched
    """
    if not quiet:
        return
    warnings.filterwarnings("ignore")
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING)


def enable_debug_mode():
    """Send DEBUG records from shelf and llama.cpp to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # once per process
    if not any(isinstance(h, logging.StreamHandler) and getattr(h, "stream", None) == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    for name in ("shelf", "llama_cpp"):
        logging.getLogger(name).setLevel(logging.DEBUG)


def configure_ops_log(data_path) -> RotatingFileHandler:
    """Configure a persistent operations log for a shelf data directory.

    Writes to {data_path}/logs/shelf-ops.log using a rotating file handler
    (1MB max, 3 backups). Independent of --verbose.
    Returns the handler so it can be removed on shutdown.
    """
    log_dir = Path(data_path) / "logs"
    log_dir.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_dir / "shelf-ops.log"),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    shelf_logger = logging.getLogger("shelf")
    shelf_logger.addHandler(handler)
    # Ensure shelf logger allows INFO through even in quiet mode
    if shelf_logger.level == logging.NOTSET or shelf_logger.level > logging.INFO:
        shelf_logger.setLevel(logging.INFO)

    return handler
