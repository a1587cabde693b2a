"""
Logging configuration for factbase.

Quiet by default for better CLI UX; FACTBASE_VERBOSE=1 or --verbose turns
on debug output. Every store also keeps a rotating operations log.
"""

import logging
import sys
import warnings
from logging.handlers import RotatingFileHandler
from pathlib import Path

_NOISY_LOGGERS = ("urllib3", "httpx", "httpcore", "openai")


def configure_quiet_mode(quiet: bool = True):
    """
    Configure logging to suppress verbose library output.

    Args:
        quiet: If True, suppress verbose output. If False, show everything.
    """
    if quiet:
        warnings.filterwarnings("ignore")
        for name in _NOISY_LOGGERS:
            logging.getLogger(name).setLevel(logging.ERROR)
        logging.getLogger("factbase").setLevel(logging.WARNING)


def enable_debug_mode():
    """Enable debug-level logging to stderr."""
    warnings.filterwarnings("default")

    root_logger = logging.getLogger()
    root_logger.setLevel(logging.DEBUG)

    # Add stderr handler if not already present
    if not any(isinstance(h, logging.StreamHandler) and h.stream == sys.stderr
               for h in root_logger.handlers):
        handler = logging.StreamHandler(sys.stderr)
        handler.setLevel(logging.DEBUG)
        handler.setFormatter(logging.Formatter(
            "%(asctime)s %(levelname)s %(name)s [%(threadName)s]: %(message)s",
            datefmt="%H:%M:%S"
        ))
        root_logger.addHandler(handler)

    logging.getLogger("factbase").setLevel(logging.DEBUG)
    # HTTP client chatter stays at INFO even in debug mode
    for name in _NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.INFO)


def configure_ops_log(store_path) -> RotatingFileHandler:
    """Configure a persistent operations log for a factbase store.

    Writes to {store_path}/factbase-ops.log using a rotating file handler
    (1MB max, 3 backups). Always active regardless of --verbose.
    Returns the handler so it can be removed on close().
    """
    log_path = Path(store_path) / "factbase-ops.log"
    log_path.parent.mkdir(parents=True, exist_ok=True)
    handler = RotatingFileHandler(
        str(log_path),
        maxBytes=1_000_000,
        backupCount=3,
    )
    handler.setLevel(logging.INFO)
    handler.setFormatter(logging.Formatter(
        "%(asctime)s %(levelname)s %(threadName)s %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))

    factbase_logger = logging.getLogger("factbase")
    factbase_logger.addHandler(handler)
    # Ensure factbase logger allows INFO through even in quiet mode
    if factbase_logger.level == logging.NOTSET or factbase_logger.level > logging.INFO:
        factbase_logger.setLevel(logging.INFO)

    return handler
