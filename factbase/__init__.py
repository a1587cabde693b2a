"""
Factbase

An embedded knowledge engine: a self-consistent store of short factual
statements plus a self-organizing category tree over markdown notes.

Quick Start:
    from factbase import KnowledgeBase

    kb = KnowledgeBase()  # uses ~/.factbase/
    kb.start_workers()
    kb.add_statement("Water boils at 100 C at sea level.", source="handbook")
    results = kb.query("boiling point of water")

CLI Usage:
    factbase add "Water boils at 100 C at sea level."
    factbase issues
    factbase note "Sourdough" notes.md
    factbase find "bread baking"

Environment Variables:
    FACTBASE_STORE_PATH      - Override default store location
    FACTBASE_OPENAI_API_KEY  - API key for the OpenAI provider
    FACTBASE_VERBOSE         - Set to 1 for debug logging
    OLLAMA_HOST              - Ollama server (default http://localhost:11434)

The store is initialized automatically on first use. Configuration is persisted
in a TOML file within the store directory.
"""

from .api import KnowledgeBase
from .consistency import AddResult, CycleResult, Issue, QueryResult, Statement
from .errors import (
    FactbaseError,
    InvalidResolution,
    IssueNotFound,
    IssueNotOpen,
    ModelUnavailable,
    NoteNotFound,
    NotFoundError,
    StatementNotFound,
    StatementTooLarge,
    ValidationError,
)
from .notes import Note

__version__ = "0.1.0"
__all__ = [
    "KnowledgeBase",
    "AddResult",
    "CycleResult",
    "Issue",
    "Note",
    "QueryResult",
    "Statement",
    "FactbaseError",
    "InvalidResolution",
    "IssueNotFound",
    "IssueNotOpen",
    "ModelUnavailable",
    "NoteNotFound",
    "NotFoundError",
    "StatementNotFound",
    "StatementTooLarge",
    "ValidationError",
]
