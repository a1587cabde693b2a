"""
Exceptions and error logging for factbase.

Foreground operations raise the exceptions below. The CLI logs full stack
traces to a file and shows clean one-line messages to users.
"""

import os
import traceback
from datetime import datetime, timezone
from pathlib import Path
from typing import Optional


class FactbaseError(Exception):
    """Base class for all factbase errors."""


class ValidationError(FactbaseError):
    """Input rejected before any state change. Never retried."""


class StatementTooLarge(ValidationError):
    """Statement text exceeds MAX_STATEMENT_SIZE."""


class InvalidResolution(ValidationError):
    """Unknown issue resolution action."""


class NotFoundError(FactbaseError):
    """Referenced record does not exist."""


class StatementNotFound(NotFoundError):
    pass


class IssueNotFound(NotFoundError):
    pass


class NoteNotFound(NotFoundError):
    pass


class IssueNotOpen(FactbaseError):
    """Resolution attempted on an issue that is already resolved."""


class ModelUnavailable(FactbaseError):
    """Embedding or judgment call failed. The affected item stays retryable."""


def _error_log_path(store_path: Optional[Path] = None) -> Path:
    """Resolve error log path: explicit store, then FACTBASE_STORE_PATH, then ~/.factbase."""
    store = store_path or os.environ.get("FACTBASE_STORE_PATH")
    if store:
        return Path(store).expanduser() / "factbase-errors.log"
    return Path.home() / ".factbase" / "factbase-errors.log"


def log_exception(
    exc: Exception, context: str = "", store_path: Optional[Path] = None
) -> Path:
    """
    Log exception with full traceback to file.

    Args:
        exc: The exception that occurred
        context: Optional context string (e.g., command name)
        store_path: Store directory the log belongs in, when known

    Returns:
        Path to the error log file
    """
    log_path = _error_log_path(store_path)
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
        pass  # Can't write error log, don't crash over it
    return log_path
